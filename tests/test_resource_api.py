import os
import unittest
from uuid import UUID, uuid4

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, delete
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure settings can be initialized in test environments
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")

from resourcekit.api.resources import register_resources
from resourcekit.api.router import Resource
from resourcekit.db.session import Base, get_db
from resourcekit.db.store import ModelStore
from resourcekit.models.owner import Owner
from resourcekit.models.widget import Widget
from resourcekit.services.errors import HookFailure
from resourcekit.services.resource import registry_for


class ResourceApiTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.engine = create_engine(
            "sqlite+pysqlite:///:memory:",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        cls.SessionLocal = sessionmaker(bind=cls.engine, autocommit=False, autoflush=False)
        Base.metadata.create_all(bind=cls.engine)

    @classmethod
    def tearDownClass(cls):
        Base.metadata.drop_all(bind=cls.engine)
        cls.engine.dispose()

    def setUp(self):
        self.app = self.build_app()
        self.app.dependency_overrides[get_db] = self.override_get_db
        self.client = TestClient(self.app)

    def tearDown(self):
        with self.SessionLocal() as db:
            db.execute(delete(Widget))
            db.execute(delete(Owner))
            db.commit()

    def build_app(self):
        app = FastAPI()
        register_resources(app, "/api")
        return app

    def override_get_db(self):
        db = self.SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def seed(self, *objects):
        with self.SessionLocal() as db:
            db.add_all(objects)
            db.commit()
            return [str(obj.id) for obj in objects]


class IndexTests(ResourceApiTestCase):
    def test_limit_and_skip_return_partial_window(self):
        self.seed(*[Widget(name=f"w{i:02d}", price=i) for i in range(23)])
        resp = self.client.get("/api/widget", params={"limit": 5, "skip": 10, "sort": "price"})
        self.assertEqual(resp.status_code, 206)
        self.assertEqual([item["name"] for item in resp.json()], ["w10", "w11", "w12", "w13", "w14"])
        self.assertEqual(resp.headers["content-range"], "10-14/23")
        self.assertIn('rel="next"', resp.headers["link"])

    def test_range_header(self):
        self.seed(*[Widget(name=f"w{i:02d}", price=i) for i in range(23)])
        resp = self.client.get("/api/widget?sort=-price", headers={"Range-Unit": "items", "Range": "0-2"})
        self.assertEqual(resp.status_code, 206)
        self.assertEqual([item["price"] for item in resp.json()], [22, 21, 20])

    def test_query_filters(self):
        self.seed(*[Widget(name=f"w{i:02d}", price=i) for i in range(23)])
        resp = self.client.get("/api/widget?price__gte=20&sort=price&select=name")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual([sorted(item) for item in resp.json()], [["id", "name"]] * 3)
        self.assertEqual(resp.headers["content-range"], "0-2/3")

        resp = self.client.get("/api/widget?name__regex=/W0[12]/i&sort=name")
        self.assertEqual([item["name"] for item in resp.json()], ["w01", "w02"])

    def test_empty_collection(self):
        resp = self.client.get("/api/owner")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), [])
        self.assertEqual(resp.headers["content-range"], "*/0")

    def test_unsatisfiable_range(self):
        self.seed(Widget(name="only"))
        resp = self.client.get("/api/widget", headers={"Range-Unit": "items", "Range": "5-9"})
        self.assertEqual(resp.status_code, 416)
        self.assertEqual(resp.json()["status"], 416)
        self.assertEqual(resp.headers["content-range"], "*/1")

    def test_populate(self):
        (owner_id,) = self.seed(Owner(name="Ada"))
        self.seed(Widget(name="Gadget", owner_id=UUID(owner_id)))
        resp = self.client.get("/api/widget?populate=owner")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()[0]["owner"]["name"], "Ada")

        resp = self.client.get("/api/widget?populate=price")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], 'Cannot populate "price" as it is not a reference in this resource')

    def test_bad_filter_is_client_error(self):
        self.seed(Widget(name="Gadget"))
        resp = self.client.get("/api/widget?tags=red")
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["status"], 400)


class ItemTests(ResourceApiTestCase):
    def test_get(self):
        (widget_id,) = self.seed(Widget(name="Gadget", price=3))
        resp = self.client.get(f"/api/widget/{widget_id}?select=price")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"id": widget_id, "price": 3})

    def test_get_missing(self):
        for identifier in (str(uuid4()), "not-an-id"):
            resp = self.client.get(f"/api/widget/{identifier}")
            self.assertEqual(resp.status_code, 404)
            self.assertEqual(resp.json(), {"status": 404, "errors": ["Resource not found"]})

    def test_post(self):
        resp = self.client.post("/api/widget", json={"name": "Lamp", "price": "7"})
        self.assertEqual(resp.status_code, 201)
        body = resp.json()
        self.assertEqual((body["name"], body["price"], body["version"]), ("Lamp", 7, 1))

    def test_post_validation(self):
        resp = self.client.post("/api/widget", json={"price": "cheap"})
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body["message"], "Widget validation failed")
        self.assertEqual(body["errors"]["price"]["name"], "CastError")

        resp = self.client.post("/api/widget", json={"price": 1})
        self.assertEqual(resp.json()["errors"]["name"]["message"], "Path `name` is required.")

        resp = self.client.post("/api/widget", json=["not", "an", "object"])
        self.assertEqual(resp.status_code, 400)

    def test_put(self):
        (widget_id,) = self.seed(Widget(name="Gadget", price=3))
        resp = self.client.put(f"/api/widget/{widget_id}", json={"price": 4, "version": 40, "id": str(uuid4())})
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual((body["id"], body["price"], body["version"]), (widget_id, 4, 2))

    def test_put_missing(self):
        resp = self.client.put(f"/api/widget/{uuid4()}", json={"price": 4})
        self.assertEqual(resp.status_code, 404)

    def test_delete(self):
        (widget_id,) = self.seed(Widget(name="Gadget"))
        resp = self.client.delete(f"/api/widget/{uuid4()}")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json(), {"status": 404, "errors": ["Resource not found"]})

        resp = self.client.delete(f"/api/widget/{widget_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {})
        self.assertEqual(self.client.get(f"/api/widget/{widget_id}").status_code, 404)


class PatchTests(ResourceApiTestCase):
    def setUp(self):
        super().setUp()
        (self.widget_id,) = self.seed(Widget(name="Gadget", price=3, tags={"color": "red"}))
        self.url = f"/api/widget/{self.widget_id}"

    def test_test_then_replace(self):
        resp = self.client.patch(
            self.url,
            json=[
                {"op": "test", "path": "/price", "value": 3},
                {"op": "replace", "path": "/price", "value": 42},
                {"op": "add", "path": "/tags/size", "value": "L"},
            ],
        )
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["price"], 42)
        self.assertEqual(resp.json()["tags"], {"color": "red", "size": "L"})

    def test_failed_test_changes_nothing(self):
        operations = [
            {"op": "replace", "path": "/price", "value": 42},
            {"op": "test", "path": "/name", "value": "Gizmo"},
        ]
        resp = self.client.patch(self.url, json=operations)
        self.assertEqual(resp.status_code, 412)
        body = resp.json()
        self.assertEqual(body["patch"], operations[1])
        self.assertEqual(body["item"]["price"], 3)
        self.assertEqual(self.client.get(self.url).json()["price"], 3)

    def test_empty_patch(self):
        resp = self.client.patch(self.url, json=[])
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json()["name"], "Gadget")

    def test_malformed_patch(self):
        resp = self.client.patch(self.url, json={"op": "replace", "path": "/price", "value": 1})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["message"], "Patch sequence must be an array")

        resp = self.client.patch(self.url, json=[{"op": "remove", "path": "/missing"}])
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json()["errors"]["0"]["name"], "path-unresolvable")

    def test_patch_missing(self):
        resp = self.client.patch(f"/api/widget/{uuid4()}", json=[])
        self.assertEqual(resp.status_code, 404)


class VirtualTests(ResourceApiTestCase):
    def test_summary(self):
        ada, bob = self.seed(Owner(name="Ada"), Owner(name="Bob"))
        self.seed(
            Widget(name="a1", price=10, owner_id=UUID(ada)),
            Widget(name="a2", price=20, owner_id=UUID(ada)),
            Widget(name="a3", price=99, is_active=False, owner_id=UUID(ada)),
            Widget(name="b1", price=5, owner_id=UUID(bob)),
        )
        resp = self.client.get("/api/widget/virtual/summary")
        self.assertEqual(resp.status_code, 200)
        rows = resp.json()
        self.assertEqual([(row["_id"], row["widgets"], row["total_price"]) for row in rows], [(ada, 2, 30), (bob, 1, 5)])
        self.assertAlmostEqual(rows[0]["average_price"], 15.0)


class HookTests(ResourceApiTestCase):
    def build_app(self):
        def closed(ctx):
            if ctx.body and ctx.body.get("name") == "forbidden":
                raise HookFailure("Closed for new widgets")

        def skip_index(ctx):
            if ctx.param("skip_all"):
                ctx.skip_resource = True

        def shout(ctx, body):
            body["name"] = body["name"].upper()

        def seen(ctx):
            ctx.response_headers["X-Seen"] = ctx.verb

        app = FastAPI()
        Resource(
            app,
            "/api",
            "widget",
            ModelStore(Widget),
            {
                "before_post": closed,
                "before_index": skip_index,
                "after": seen,
                "hooks": {"post": {"before": shout}},
            },
        ).index().post()
        return app

    def test_hook_failure(self):
        resp = self.client.post("/api/widget", json={"name": "forbidden"})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.json(), {"status": 400, "message": "Closed for new widgets", "errors": {}})

    def test_model_hook_changes_payload(self):
        resp = self.client.post("/api/widget", json={"name": "lamp"})
        self.assertEqual(resp.status_code, 201)
        self.assertEqual(resp.json()["name"], "LAMP")
        self.assertEqual(resp.headers["x-seen"], "post")

    def test_skip_resource(self):
        resp = self.client.get("/api/widget?skip_all=1")
        self.assertEqual(resp.status_code, 204)
        self.assertEqual(resp.content, b"")

    def test_unregistered_verbs(self):
        self.assertEqual(self.client.delete(f"/api/widget/{uuid4()}").status_code, 404)
        self.assertEqual(self.client.get(f"/api/widget/{uuid4()}").status_code, 404)


class ShortCircuitTests(ResourceApiTestCase):
    def build_app(self):
        self.removed = []

        def keep_rows(ctx):
            ctx.skip_delete = True

        def record_removal(ctx, entity):
            self.removed.append(entity.id)

        def seen(ctx):
            ctx.response_headers["X-Seen"] = ctx.verb

        app = FastAPI()
        Resource(
            app,
            "/api",
            "widget",
            ModelStore(Widget),
            {
                "path": "unconfigured",
                "before_delete": keep_rows,
                "after": seen,
                "hooks": {"delete": {"before": record_removal}},
            },
        ).virtual().get().delete()
        return app

    def test_skip_delete_keeps_row(self):
        (widget_id,) = self.seed(Widget(name="Gadget"))
        resp = self.client.delete(f"/api/widget/{widget_id}")
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {})
        self.assertEqual(self.removed, [])
        self.assertEqual(self.client.get(f"/api/widget/{widget_id}").status_code, 200)

    def test_virtual_without_query_is_not_found(self):
        resp = self.client.get("/api/widget/virtual/unconfigured")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.json(), {"status": 404, "errors": ["Resource not found"]})

    def test_after_hooks_run_on_not_found(self):
        resp = self.client.get(f"/api/widget/{uuid4()}")
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.headers["x-seen"], "get")


class PipelineIndexTests(ResourceApiTestCase):
    def build_app(self):
        app = FastAPI()
        Resource(app, "/api", "widget", ModelStore(Widget), {"pipeline": [{"$match": {"is_active": True}}]}).index()
        Resource(app, "/api", "gadget", ModelStore(Widget), {"pipeline": [{"$sort": {"price": -1}}]}).index()
        return app

    def setUp(self):
        super().setUp()
        self.seed(*[Widget(name=f"w{i:02d}", price=i) for i in range(23)])

    def test_window_moves_ahead_of_simple_pipeline(self):
        resp = self.client.get("/api/widget", params={"limit": 5, "skip": 10, "sort": "price"})
        self.assertEqual(resp.status_code, 206)
        self.assertEqual([item["price"] for item in resp.json()], [10, 11, 12, 13, 14])
        self.assertEqual(resp.headers["content-range"], "10-14/23")

    def test_sorting_pipeline_cuts_page_after_its_sort(self):
        resp = self.client.get("/api/gadget", params={"limit": 3, "skip": 10})
        self.assertEqual(resp.status_code, 206)
        self.assertEqual([item["price"] for item in resp.json()], [12, 11, 10])
        self.assertEqual(resp.headers["content-range"], "10-12/23")


class RegistryTests(unittest.TestCase):
    def test_application_registry_is_frozen(self):
        from resourcekit.main import app

        registry = registry_for(app)
        self.assertTrue(registry.frozen)
        self.assertIsNotNone(registry.lookup("/api/widget/{widget_id}", "PATCH"))
        self.assertIsNotNone(registry.lookup("/api/widget/virtual/summary", "GET"))
        with self.assertRaises(RuntimeError):
            Resource(app, "/api", "owner", ModelStore(Owner)).index()


if __name__ == "__main__":
    unittest.main()
