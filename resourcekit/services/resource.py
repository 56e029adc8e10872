from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.expression import Select
from starlette.responses import JSONResponse, Response

from resourcekit.db.store import ModelStore
from resourcekit.schemas.resource import ErrorInfo, ModelQuery, Outcome
from resourcekit.services.errors import (
    HookFailure,
    MalformedPatch,
    PatchFailed,
    PopulateError,
    PreconditionFailed,
    ResourceError,
)
from resourcekit.services.hooks import MethodOptions, RequestContext, chain_failure_outcome, run_chain
from resourcekit.services.json_patch import apply_patch
from resourcekit.services.pagination import build_index_query, count_documents, fetch_page, resolve_page_window, window_pipeline
from resourcekit.services.query_filter import param_query, parse_populate, parse_select, parse_sort, translate
from resourcekit.services.response_mapper import map_outcome
from resourcekit.services.value_coercion import FilterOptions


class Verb(str, Enum):
    INDEX = "index"
    GET = "get"
    VIRTUAL = "virtual"
    POST = "post"
    PUT = "put"
    PATCH = "patch"
    DELETE = "delete"

    @property
    def method(self) -> str:
        return _HTTP_METHODS[self]

    @property
    def logger(self) -> logging.Logger:
        return logging.getLogger(f"resourcekit.{self.value}")


_HTTP_METHODS = {
    Verb.INDEX: "GET",
    Verb.GET: "GET",
    Verb.VIRTUAL: "GET",
    Verb.POST: "POST",
    Verb.PUT: "PUT",
    Verb.PATCH: "PATCH",
    Verb.DELETE: "DELETE",
}


def merge_filters(*filters: Optional[dict[str, Any]]) -> dict[str, Any]:
    parts = [item for item in filters if item]
    if not parts:
        return {}
    if len(parts) == 1:
        return parts[0]
    return {"$and": parts}


def _failure(verb: Verb, exc: Exception, ctx: RequestContext, status: int = 400) -> Outcome:
    if isinstance(exc, ResourceError):
        verb.logger.debug("%s failed: %s", verb.value, exc.message)
        return Outcome(status=status, error=exc.info())
    verb.logger.warning("%s failed in the database: %s", verb.value, exc)
    if ctx.db is not None:
        ctx.db.rollback()
    message = str(getattr(exc, "orig", None) or exc)
    return Outcome(status=status, error=ErrorInfo(message=message, name=exc.__class__.__name__))


CoreOperation = Callable[[RequestContext, MethodOptions], Outcome]


class VerbPipeline:
    """Runs one verb: before chain, core operation, after chain, response mapping."""

    def __init__(self, verb: Verb, core: CoreOperation, options: MethodOptions):
        self.verb = verb
        self.core = core
        self.options = options

    def run(self, ctx: RequestContext) -> Response:
        if ctx.request is not None:
            ctx.request.state.resource_verb = self.verb.value
        try:
            if not ctx.skip_resource:
                run_chain(self.options.before, ctx)
            if ctx.skip_resource:
                return self.respond(ctx)
            ctx.outcome = self.core(ctx, self.options)
            run_chain(self.options.after, ctx)
        except Exception as exc:
            ctx.outcome = chain_failure_outcome(exc, ctx)
        return self.respond(ctx)

    def respond(self, ctx: RequestContext) -> Response:
        log = logging.getLogger("resourcekit.respond")
        if ctx.no_response or ctx.response is not None or ctx.outcome is None:
            log.debug("Skipping response mapping for %s", self.verb.value)
            response = ctx.response if ctx.response is not None else Response(status_code=204)
        else:
            status, body = map_outcome(self.verb.value, ctx.outcome)
            response = JSONResponse(body, status_code=status)
        for name, value in ctx.response_headers.items():
            response.headers[name] = value
        return response


class RouteRegistry:
    """Compiled pipelines by ``(path, method)``; filled at startup, read-only once frozen."""

    def __init__(self):
        self._routes: dict[tuple[str, str], VerbPipeline] = {}
        self._frozen = False

    @property
    def frozen(self) -> bool:
        return self._frozen

    def add(self, path: str, method: str, pipeline: VerbPipeline) -> None:
        key = (path, method.upper())
        if self._frozen:
            raise RuntimeError(f"Route registry is frozen; cannot add {key[1]} {path}")
        if key in self._routes:
            raise RuntimeError(f"Route {key[1]} {path} is already registered")
        self._routes[key] = pipeline

    def lookup(self, path: str, method: str) -> Optional[VerbPipeline]:
        return self._routes.get((path, method.upper()))

    def routes(self) -> list[tuple[str, str]]:
        return list(self._routes)

    def freeze(self) -> None:
        self._frozen = True


def registry_for(app: Any) -> RouteRegistry:
    registry = getattr(app.state, "resource_registry", None)
    if registry is None:
        registry = RouteRegistry()
        app.state.resource_registry = registry
    return registry


@dataclass(frozen=True)
class ResourceCore:
    """The core operation of every verb for one model."""

    name: str
    store: ModelStore
    filter_options: FilterOptions = FilterOptions()

    def _query(self, ctx: RequestContext, filter: dict[str, Any]) -> ModelQuery:
        return ModelQuery(
            filter=filter,
            select=parse_select(param_query(ctx.params, "select")),
            sort=parse_sort(param_query(ctx.params, "sort")),
            populate=parse_populate(param_query(ctx.params, "populate")),
        )

    def _load(self, ctx: RequestContext) -> Any:
        return self.store.get(ctx.db, ctx.resource_id, ctx.model_filter)

    def index(self, ctx: RequestContext, opts: MethodOptions) -> Outcome:
        log = Verb.INDEX.logger
        populate = param_query(ctx.params, "populate")
        try:
            translated = translate(ctx.params, self.store.fields, self.filter_options)
            query = self._query(ctx, merge_filters(translated, ctx.model_filter))
            count_scope = ctx.count_filter if ctx.count_filter is not None else ctx.model_filter
            pipeline = ctx.pipeline if ctx.pipeline is not None else opts.options.get("pipeline")

            total = count_documents(ctx.db, self.store, replace(query, filter=merge_filters(translated, count_scope)), pipeline)
            window, ranged = resolve_page_window(
                {"limit": ctx.param("limit"), "skip": ctx.param("skip")},
                ctx.headers,
                total,
                url=ctx.url,
            )
            ctx.status_code = ranged.status
            ctx.response_headers.update(ranged.headers)
            query = replace(query, limit=window.limit, skip=window.skip)
            if pipeline and not query.has_special_options:
                pipeline, query = window_pipeline(pipeline, query)

            opts.model_before(ctx, query.filter)
            items = fetch_page(ctx.db, self.store, build_index_query(query, pipeline))
        except HookFailure:
            raise
        except PopulateError as exc:
            log.debug("Populate failed: %s", exc.message)
            message = f'Cannot populate "{populate}" as it is not a reference in this resource'
            return Outcome(status=400, error=ErrorInfo(message=message, name=exc.name, errors=exc.errors))
        except (ResourceError, SQLAlchemyError) as exc:
            return _failure(Verb.INDEX, exc, ctx)

        opts.model_after(ctx, items)
        return Outcome(status=ctx.status_code, item=items)

    def get(self, ctx: RequestContext, opts: MethodOptions) -> Outcome:
        log = Verb.GET.logger
        search: dict[str, Any] = {self.store.primary_key: ctx.resource_id}
        opts.model_before(ctx, search)
        identifier = search.pop(self.store.primary_key, ctx.resource_id)
        select = parse_select(param_query(ctx.params, "select"), expand_nested=True)
        populate = parse_populate(param_query(ctx.params, "populate"))
        try:
            entity = self.store.get(ctx.db, identifier, merge_filters(search, ctx.model_filter), populate=populate)
            if entity is None:
                log.debug("No %s found with %s_id: %s", self.name, self.name, identifier)
                return Outcome(status=404)
            item = self.store.to_document(entity, select=select, populate=populate)
        except HookFailure:
            raise
        except (ResourceError, SQLAlchemyError) as exc:
            return _failure(Verb.GET, exc, ctx)

        opts.model_after(ctx, item)
        return Outcome(status=200, item=item)

    def virtual(self, ctx: RequestContext, opts: MethodOptions) -> Outcome:
        log = Verb.VIRTUAL.logger
        opts.model_before(ctx, ctx.virtual_query)
        query = ctx.virtual_query
        if query is None:
            log.debug("No virtual query configured for %s", self.name)
            return Outcome(status=404)
        try:
            if isinstance(query, Select):
                item = self.store.documents(ctx.db, query)
            elif isinstance(query, list):
                item = self.store.aggregate(ctx.db, query)
            else:
                item = query(ctx.db)
        except HookFailure:
            raise
        except (ResourceError, SQLAlchemyError) as exc:
            return _failure(Verb.VIRTUAL, exc, ctx)
        if item is None:
            return Outcome(status=404)

        opts.model_after(ctx, item)
        return Outcome(status=200, item=item)

    def post(self, ctx: RequestContext, opts: MethodOptions) -> Outcome:
        if not isinstance(ctx.body, dict):
            return Outcome(status=400, error=ErrorInfo(message="Request body must be a JSON object", name="ValidationError"))
        opts.model_before(ctx, ctx.body)
        try:
            entity = self.store.save(ctx.db, self.store.create(ctx.body))
            item = self.store.to_document(entity)
        except HookFailure:
            raise
        except (ResourceError, SQLAlchemyError) as exc:
            return _failure(Verb.POST, exc, ctx)

        opts.model_after(ctx, item)
        return Outcome(status=201, item=item)

    def put(self, ctx: RequestContext, opts: MethodOptions) -> Outcome:
        log = Verb.PUT.logger
        if not isinstance(ctx.body, dict):
            return Outcome(status=400, error=ErrorInfo(message="Request body must be a JSON object", name="ValidationError"))
        update = {key: value for key, value in ctx.body.items() if key != self.store.version_key}
        try:
            entity = self._load(ctx)
            if entity is None:
                log.debug("No %s found with %s_id: %s", self.name, self.name, ctx.resource_id)
                return Outcome(status=404)
            self.store.assign(entity, update)
            opts.model_before(ctx, entity)
            entity = self.store.save(ctx.db, entity)
            item = self.store.to_document(entity)
        except HookFailure:
            ctx.db.rollback()
            raise
        except (ResourceError, SQLAlchemyError) as exc:
            return _failure(Verb.PUT, exc, ctx)

        opts.model_after(ctx, item)
        return Outcome(status=200, item=item)

    def patch(self, ctx: RequestContext, opts: MethodOptions) -> Outcome:
        log = Verb.PATCH.logger
        try:
            entity = self._load(ctx)
        except SQLAlchemyError as exc:
            return _failure(Verb.PATCH, exc, ctx)
        if entity is None:
            log.debug("No %s found with %s_id: %s", self.name, self.name, ctx.resource_id)
            return Outcome(status=404)

        document = self.store.to_document(entity)
        try:
            patched = apply_patch(document, ctx.body)
        except PreconditionFailed as exc:
            log.debug("Test operation failed: %r", exc.operation)
            return Outcome(status=412, item=document, patch=exc.operation, error=ErrorInfo(message=exc.message, name=exc.name))
        except MalformedPatch as exc:
            log.debug("Malformed patch: %s", exc.kind.value)
            return Outcome(status=400, item=document, error=exc.info())
        except PatchFailed as exc:
            log.warning("Patch could not be applied: %s", exc.message)
            return Outcome(status=500, item=document, error=exc.info())

        changes = {key: patched.get(key) for key in set(document) | set(patched) if patched.get(key) != document.get(key)}
        try:
            self.store.assign(entity, changes)
            opts.model_before(ctx, entity)
            entity = self.store.save(ctx.db, entity)
            item = self.store.to_document(entity)
        except HookFailure:
            ctx.db.rollback()
            raise
        except (ResourceError, SQLAlchemyError) as exc:
            return _failure(Verb.PATCH, exc, ctx)

        opts.model_after(ctx, item)
        return Outcome(status=200, item=item)

    def delete(self, ctx: RequestContext, opts: MethodOptions) -> Outcome:
        log = Verb.DELETE.logger
        try:
            entity = self._load(ctx)
            if entity is None:
                log.debug("No %s found with %s_id: %s", self.name, self.name, ctx.resource_id)
                return Outcome(status=404)
            item = self.store.to_document(entity)
            if ctx.skip_delete:
                return Outcome(status=204, item=item, deleted=True)
            opts.model_before(ctx, entity)
            self.store.remove(ctx.db, entity)
        except HookFailure:
            raise
        except (ResourceError, SQLAlchemyError) as exc:
            return _failure(Verb.DELETE, exc, ctx)

        log.debug("Deleted %s %s", self.name, item.get(self.store.primary_key))
        opts.model_after(ctx, item)
        return Outcome(status=204, item=item, deleted=True)

    def operation(self, verb: Verb) -> CoreOperation:
        return getattr(self, verb.value)
