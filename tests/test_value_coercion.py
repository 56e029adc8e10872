import math
import re
import unittest
import uuid
from datetime import datetime, timezone

from resourcekit.schemas.resource import FieldType
from resourcekit.services.value_coercion import FilterOptions, coerce_value, parse_date, parse_int


class ParseIntTests(unittest.TestCase):
    def test_reads_integer_prefix(self):
        self.assertEqual(parse_int("42"), 42)
        self.assertEqual(parse_int(" -7 "), -7)
        self.assertEqual(parse_int("12abc"), 12)
        self.assertEqual(parse_int("3.9"), 3)

    def test_returns_nan_without_digits(self):
        self.assertTrue(math.isnan(parse_int("abc")))
        self.assertTrue(math.isnan(parse_int("")))
        self.assertTrue(math.isnan(parse_int(True)))


class ParseDateTests(unittest.TestCase):
    def test_strict_formats(self):
        self.assertEqual(parse_date("2024-03-05"), datetime(2024, 3, 5, tzinfo=timezone.utc))
        self.assertEqual(parse_date("2024-03"), datetime(2024, 3, 1, tzinfo=timezone.utc))
        self.assertEqual(parse_date("2024"), datetime(2024, 1, 1, tzinfo=timezone.utc))

    def test_epoch_milliseconds(self):
        self.assertEqual(parse_date("86400000"), datetime(1970, 1, 2, tzinfo=timezone.utc))

    def test_iso_with_offset(self):
        parsed = parse_date("2024-03-05T10:30:00+02:00")
        self.assertEqual(parsed.astimezone(timezone.utc), datetime(2024, 3, 5, 8, 30, tzinfo=timezone.utc))
        self.assertEqual(parse_date("2024-03-05T10:30:00Z"), datetime(2024, 3, 5, 10, 30, tzinfo=timezone.utc))

    def test_rejects_everything_else(self):
        self.assertIsNone(parse_date("yesterday"))
        self.assertIsNone(parse_date("2024-13-01"))
        self.assertIsNone(parse_date(""))


class CoerceValueTests(unittest.TestCase):
    def test_sentinels_only_for_eq_and_ne(self):
        self.assertIsNone(coerce_value("name", "null", FieldType.OTHER, selector="eq"))
        self.assertIs(coerce_value("name", "TRUE", FieldType.OTHER, selector="ne"), True)
        self.assertIs(coerce_value("name", "false", FieldType.OTHER, selector="eq"), False)
        self.assertEqual(coerce_value("name", "null", FieldType.OTHER, selector="gt"), "null")
        self.assertEqual(coerce_value("name", "null", FieldType.OTHER), "null")

    def test_quoted_sentinel_is_plain_string(self):
        self.assertEqual(coerce_value("name", '"null"', FieldType.OTHER, selector="eq"), "null")
        self.assertEqual(coerce_value("name", '"true"', FieldType.OTHER, selector="ne"), "true")

    def test_number_fields_parse_like_parse_int(self):
        self.assertEqual(coerce_value("price", "15", FieldType.NUMBER, selector="gte"), 15)
        self.assertTrue(math.isnan(coerce_value("price", "cheap", FieldType.NUMBER)))

    def test_date_fields_fall_back_to_raw(self):
        self.assertEqual(coerce_value("released_at", "2024-01-02", FieldType.DATE), datetime(2024, 1, 2, tzinfo=timezone.utc))
        self.assertEqual(coerce_value("released_at", "soon", FieldType.DATE), "soon")

    def test_identifier_conversion_follows_pattern(self):
        value = str(uuid.uuid4())
        options = FilterOptions.from_options({"convert_ids": True})
        self.assertEqual(coerce_value("owner_id", value, FieldType.IDENTIFIER, options), uuid.UUID(value))
        self.assertEqual(coerce_value("name", value, FieldType.OTHER, options), value)

    def test_invalid_identifier_is_kept(self):
        options = FilterOptions.from_options({"convert_ids": r"_id$"})
        with self.assertLogs("resourcekit.query", level="WARNING"):
            self.assertEqual(coerce_value("owner_id", "42", FieldType.IDENTIFIER, options), "42")

    def test_no_conversion_without_option(self):
        value = str(uuid.uuid4())
        self.assertEqual(coerce_value("owner_id", value, FieldType.IDENTIFIER), value)

    def test_filter_options_accept_patterns_and_callables(self):
        self.assertIsNone(FilterOptions.from_options({}).convert_ids)
        compiled = re.compile("ref$")
        self.assertIs(FilterOptions.from_options({"convert_ids": compiled}).convert_ids, compiled)
        options = FilterOptions.from_options({"convert_ids": lambda name: name == "key", "query_filter": 1})
        self.assertTrue(options.query_filter)
        value = str(uuid.uuid4())
        self.assertEqual(coerce_value("key", value, FieldType.OTHER, options), uuid.UUID(value))


if __name__ == "__main__":
    unittest.main()
