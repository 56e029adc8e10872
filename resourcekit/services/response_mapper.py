from __future__ import annotations

import logging
from http import HTTPStatus
from typing import Any

from resourcekit.schemas.resource import Outcome

_LOG = logging.getLogger("resourcekit.respond")

NOT_FOUND_BODY = {"status": 404, "errors": ["Resource not found"]}


def _phrase(status: int) -> str:
    try:
        return HTTPStatus(status).phrase
    except ValueError:
        return "Error"


def map_outcome(verb: str, outcome: Outcome) -> tuple[int, Any]:
    """Turn an Outcome into the ``(status, body)`` pair sent to the client."""
    status = outcome.status
    if status == 404:
        return 404, dict(NOT_FOUND_BODY)

    if status == 412:
        message = outcome.error.message if outcome.error is not None else _phrase(status)
        return 412, {"status": 412, "message": message, "item": outcome.item, "patch": outcome.patch}

    if status >= 400:
        error = outcome.error
        body = {
            "status": status,
            "message": error.message if error is not None else _phrase(status),
            "errors": {key: item.as_dict() for key, item in error.errors.items()} if error is not None else {},
        }
        return status, body

    if status == 204:
        # Empty results still carry a body shaped like the verb's normal one.
        _LOG.debug("Rewriting 204 to 200 for %s", verb)
        return 200, [] if verb == "index" else {}

    return status, outcome.item
