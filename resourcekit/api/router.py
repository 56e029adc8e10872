from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from fastapi import Body, Depends, FastAPI, Request
from sqlalchemy.orm import Session

from resourcekit.db.session import get_db
from resourcekit.db.store import ModelStore
from resourcekit.schemas.responses import ERROR_RESPONSES, PATCH_RESPONSES
from resourcekit.services.hooks import RequestContext, method_options
from resourcekit.services.resource import ResourceCore, Verb, VerbPipeline, registry_for
from resourcekit.services.value_coercion import FilterOptions

_LOG = logging.getLogger("resourcekit.http")


def build_context(verb: Verb, request: Request, db: Session, body: Any = None, id_param: Optional[str] = None) -> RequestContext:
    return RequestContext(
        verb=verb.value,
        request=request,
        db=db,
        params=list(request.query_params.multi_items()),
        headers={key.lower(): value for key, value in request.headers.items()},
        body=body,
        resource_id=request.path_params.get(id_param) if id_param else None,
    )


def _read_endpoint(pipeline: VerbPipeline, id_param: Optional[str]) -> Callable:
    def endpoint(request: Request, db: Session = Depends(get_db)):
        return pipeline.run(build_context(pipeline.verb, request, db, id_param=id_param))

    return endpoint


def _write_endpoint(pipeline: VerbPipeline, id_param: Optional[str]) -> Callable:
    def endpoint(request: Request, db: Session = Depends(get_db), body: Any = Body(None)):
        return pipeline.run(build_context(pipeline.verb, request, db, body=body, id_param=id_param))

    return endpoint


class Resource:
    """REST routes for one model, registered on a FastAPI app.

    ``Resource(app, "/api", "widget", ModelStore(Widget)).rest()`` serves
    ``/api/widget`` and ``/api/widget/{widget_id}``. Every verb method returns
    the resource so calls chain.
    """

    def __init__(
        self,
        app: FastAPI,
        route: str,
        model_name: str,
        store: ModelStore,
        options: Optional[dict[str, Any]] = None,
    ):
        self.app = app
        self.name = model_name.lower()
        self.store = store
        self.options = dict(options or {})
        self.route = f"{route.rstrip('/')}/{self.name}"
        self.id_param = f"{self.name}_id"
        self.item_route = f"{self.route}/{{{self.id_param}}}"
        self.registry = registry_for(app)
        self.methods: list[str] = []
        self.core = ResourceCore(
            name=self.name,
            store=store,
            filter_options=FilterOptions.from_options(self.options),
        )

    def _register(self, verb: Verb, path: str, options: Optional[dict[str, Any]]) -> "Resource":
        pipeline = VerbPipeline(verb, self.core.operation(verb), method_options(verb.value, {**self.options, **(options or {})}))
        self.registry.add(path, verb.method, pipeline)

        id_param = self.id_param if path == self.item_route else None
        if verb in (Verb.POST, Verb.PUT, Verb.PATCH):
            endpoint = _write_endpoint(pipeline, id_param)
        else:
            endpoint = _read_endpoint(pipeline, id_param)
        self.app.add_api_route(
            path,
            endpoint,
            methods=[verb.method],
            name=f"{self.name}_{verb.value}",
            tags=[self.name],
            responses=PATCH_RESPONSES if verb is Verb.PATCH else ERROR_RESPONSES,
        )
        self.methods.append(verb.value)
        _LOG.debug("Registered %s %s", verb.method, path)
        return self

    def index(self, options: Optional[dict[str, Any]] = None) -> "Resource":
        return self._register(Verb.INDEX, self.route, options)

    def get(self, options: Optional[dict[str, Any]] = None) -> "Resource":
        return self._register(Verb.GET, self.item_route, options)

    def virtual(self, options: Optional[dict[str, Any]] = None) -> "Resource":
        path = {**self.options, **(options or {})}.get("path")
        if not path:
            raise ValueError(f"Virtual route of {self.name} needs a path")
        return self._register(Verb.VIRTUAL, f"{self.route}/virtual/{str(path).strip('/')}", options)

    def post(self, options: Optional[dict[str, Any]] = None) -> "Resource":
        return self._register(Verb.POST, self.route, options)

    def put(self, options: Optional[dict[str, Any]] = None) -> "Resource":
        return self._register(Verb.PUT, self.item_route, options)

    def patch(self, options: Optional[dict[str, Any]] = None) -> "Resource":
        return self._register(Verb.PATCH, self.item_route, options)

    def delete(self, options: Optional[dict[str, Any]] = None) -> "Resource":
        return self._register(Verb.DELETE, self.item_route, options)

    def rest(self, options: Optional[dict[str, Any]] = None) -> "Resource":
        """Register every verb; ``virtual`` only when a ``path`` is configured."""
        if {**self.options, **(options or {})}.get("path"):
            self.virtual(options)
        return self.index(options).get(options).post(options).put(options).patch(options).delete(options)
