import json
import unittest

from fastapi import HTTPException
from starlette.responses import PlainTextResponse

from resourcekit.schemas.resource import Outcome
from resourcekit.services.errors import HookFailure
from resourcekit.services.hooks import RequestContext, method_options, noop_model_hook, run_chain
from resourcekit.services.resource import RouteRegistry, Verb, VerbPipeline


def _recorder(log, name):
    def hook(ctx):
        log.append(name)

    return hook


class MethodOptionsTests(unittest.TestCase):
    def test_global_hooks_run_before_verb_hooks(self):
        log = []
        opts = method_options(
            "get",
            {
                "before": [_recorder(log, "global-1"), _recorder(log, "global-2")],
                "before_get": _recorder(log, "get"),
                "before_post": _recorder(log, "post"),
                "after": _recorder(log, "after"),
            },
        )
        run_chain(opts.before, RequestContext(verb="get"))
        self.assertEqual(log, ["global-1", "global-2", "get"])
        self.assertEqual(len(opts.after), 1)

    def test_model_hooks_default_to_noop(self):
        opts = method_options("put", {"hooks": {"put": {"after": print}}})
        self.assertIs(opts.model_before, noop_model_hook)
        self.assertIs(opts.model_after, print)

    def test_chain_stops_once_resource_is_skipped(self):
        log = []

        def skip(ctx):
            ctx.skip_resource = True

        run_chain([skip, _recorder(log, "never")], RequestContext(verb="index"))
        self.assertEqual(log, [])


class VerbPipelineTests(unittest.TestCase):
    def _pipeline(self, core, options=None, verb=Verb.GET):
        return VerbPipeline(verb, core, method_options(verb.value, options))

    def test_runs_before_core_after_in_order(self):
        log = []

        def core(ctx, opts):
            log.append("core")
            return Outcome(status=200, item={"ok": True})

        pipeline = self._pipeline(core, {"before": _recorder(log, "before"), "after": _recorder(log, "after")})
        response = pipeline.run(RequestContext(verb="get"))
        self.assertEqual(log, ["before", "core", "after"])
        self.assertEqual(response.status_code, 200)
        self.assertEqual(json.loads(response.body), {"ok": True})

    def test_after_chain_runs_when_core_finds_nothing(self):
        log = []

        def core(ctx, opts):
            log.append("core")
            return Outcome(status=404)

        pipeline = self._pipeline(core, {"before": _recorder(log, "before"), "after": _recorder(log, "after")})
        response = pipeline.run(RequestContext(verb="get"))
        self.assertEqual(log, ["before", "core", "after"])
        self.assertEqual(response.status_code, 404)
        self.assertEqual(json.loads(response.body), {"status": 404, "errors": ["Resource not found"]})

    def test_hook_failure_becomes_status(self):
        def deny(ctx):
            raise HookFailure("Not allowed", status=403)

        def core(ctx, opts):
            raise AssertionError("core must not run")

        response = self._pipeline(core, {"before": deny}).run(RequestContext(verb="get"))
        self.assertEqual(response.status_code, 403)
        self.assertEqual(json.loads(response.body), {"status": 403, "message": "Not allowed", "errors": {}})

    def test_http_exception_in_hook(self):
        def deny(ctx):
            raise HTTPException(status_code=401, detail="Login required")

        response = self._pipeline(lambda ctx, opts: Outcome(status=200), {"before": deny}).run(RequestContext(verb="get"))
        self.assertEqual(response.status_code, 401)
        self.assertEqual(json.loads(response.body)["message"], "Login required")

    def test_unexpected_error_is_logged_as_500(self):
        def broken(ctx):
            raise ValueError("bad hook")

        pipeline = self._pipeline(lambda ctx, opts: Outcome(status=200), {"after": broken})
        with self.assertLogs("resourcekit.hooks", level="ERROR"):
            response = pipeline.run(RequestContext(verb="get"))
        self.assertEqual(response.status_code, 500)
        self.assertEqual(json.loads(response.body)["status"], 500)

    def test_skip_resource_passes_through(self):
        def skip(ctx):
            ctx.skip_resource = True
            ctx.response = PlainTextResponse("handled elsewhere")

        def core(ctx, opts):
            raise AssertionError("core must not run")

        response = self._pipeline(core, {"before": skip}).run(RequestContext(verb="get"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.body, b"handled elsewhere")

    def test_no_response_without_ready_response_is_empty(self):
        def quiet(ctx):
            ctx.no_response = True

        response = self._pipeline(lambda ctx, opts: Outcome(status=200, item={}), {"after": quiet}).run(RequestContext(verb="get"))
        self.assertEqual(response.status_code, 204)
        self.assertEqual(response.body, b"")

    def test_response_headers_are_applied(self):
        def core(ctx, opts):
            ctx.response_headers["Content-Range"] = "0-0/1"
            return Outcome(status=200, item=[1])

        response = self._pipeline(core, verb=Verb.INDEX).run(RequestContext(verb="index"))
        self.assertEqual(response.headers["content-range"], "0-0/1")


class RouteRegistryTests(unittest.TestCase):
    def test_add_lookup_and_freeze(self):
        registry = RouteRegistry()
        pipeline = VerbPipeline(Verb.INDEX, lambda ctx, opts: Outcome(status=200), method_options("index"))
        registry.add("/api/widget", "get", pipeline)
        self.assertIs(registry.lookup("/api/widget", "GET"), pipeline)
        self.assertIsNone(registry.lookup("/api/widget", "POST"))
        self.assertEqual(registry.routes(), [("/api/widget", "GET")])

        with self.assertRaises(RuntimeError):
            registry.add("/api/widget", "GET", pipeline)
        registry.freeze()
        self.assertTrue(registry.frozen)
        with self.assertRaises(RuntimeError):
            registry.add("/api/owner", "GET", pipeline)


if __name__ == "__main__":
    unittest.main()
