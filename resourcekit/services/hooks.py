from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Sequence

from fastapi import HTTPException
from starlette.requests import Request
from starlette.responses import Response

from resourcekit.schemas.resource import Outcome
from resourcekit.services.errors import HookFailure

_LOG = logging.getLogger("resourcekit.hooks")


@dataclass
class RequestContext:
    """Mutable state of one request, threaded through every hook and the core operation."""

    verb: str
    request: Optional[Request] = None
    db: Any = None
    params: list[tuple[str, Any]] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    resource_id: Any = None

    skip_resource: bool = False
    skip_delete: bool = False
    no_response: bool = False

    model_filter: dict[str, Any] = field(default_factory=dict)
    count_filter: Optional[dict[str, Any]] = None
    pipeline: Optional[list[dict[str, Any]]] = None
    virtual_query: Any = None

    status_code: int = 200
    response_headers: dict[str, str] = field(default_factory=dict)
    response: Optional[Response] = None
    outcome: Optional[Outcome] = None
    state: dict[str, Any] = field(default_factory=dict)

    @property
    def url(self) -> str:
        return str(self.request.url) if self.request is not None else ""

    def param(self, name: str, default: Any = None) -> Any:
        for key, value in reversed(self.params):
            if key == name:
                return value
        return default

    def set_param(self, name: str, value: Any) -> None:
        self.params = [(key, item) for key, item in self.params if key != name]
        if value is not None:
            self.params.append((name, value))


Hook = Callable[[RequestContext], None]
ModelHook = Callable[[RequestContext, Any], None]


def noop_model_hook(ctx: RequestContext, item: Any) -> None:
    return None


def _as_chain(value: Any) -> tuple[Hook, ...]:
    if value is None:
        return ()
    if callable(value):
        return (value,)
    return tuple(value)


@dataclass(frozen=True)
class MethodOptions:
    """Hook chains of one verb, resolved once when the route is registered."""

    verb: str
    before: tuple[Hook, ...] = ()
    after: tuple[Hook, ...] = ()
    model_before: ModelHook = noop_model_hook
    model_after: ModelHook = noop_model_hook
    options: dict[str, Any] = field(default_factory=dict)


def method_options(verb: str, options: Optional[dict[str, Any]] = None) -> MethodOptions:
    """Resolve global and verb-specific hooks for ``verb``.

    Global ``before``/``after`` hooks run first, then ``before_<verb>`` and
    ``after_<verb>``. ``hooks[verb]`` supplies the model hooks that run inside
    the core operation with the item being worked on.
    """
    options = dict(options or {})
    model_hooks = (options.get("hooks") or {}).get(verb) or {}
    return MethodOptions(
        verb=verb,
        before=_as_chain(options.get("before")) + _as_chain(options.get(f"before_{verb}")),
        after=_as_chain(options.get("after")) + _as_chain(options.get(f"after_{verb}")),
        model_before=model_hooks.get("before") or noop_model_hook,
        model_after=model_hooks.get("after") or noop_model_hook,
        options=options,
    )


def run_chain(chain: Sequence[Hook], ctx: RequestContext) -> None:
    for hook in chain:
        if ctx.skip_resource:
            return
        hook(ctx)


def chain_failure_outcome(exc: Exception, ctx: RequestContext) -> Outcome:
    """Outcome for a request whose hooks or core operation raised; nothing escapes the request."""
    if isinstance(exc, HookFailure):
        _LOG.info("Hook failed for %s: %s", ctx.verb, exc.message)
        return Outcome(status=exc.status, error=exc.info())
    if isinstance(exc, HTTPException):
        _LOG.info("Hook rejected %s with %s", ctx.verb, exc.status_code)
        detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
        return Outcome(status=exc.status_code, error=HookFailure(detail, status=exc.status_code).info())
    _LOG.exception("Unexpected error while handling %s", ctx.verb)
    return Outcome(status=500, error=HookFailure(str(exc) or exc.__class__.__name__, status=500).info())
