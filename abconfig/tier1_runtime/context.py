"""
abconfig.tier1_runtime.context
────────────────────────────────
Per-request evaluation context: the requester, their session, the config
surface, the header buffer and the render-script registry that header and
footer hooks read from.

The context is passed explicitly to the evaluators and the interpreter.
A ContextVar copy is kept as well so middleware and log calls can reach
the active request without threading it through the host framework.
"""
from __future__ import annotations

import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any, Callable

from abconfig.tier0_core.logging import bind_context
from abconfig.tier1_runtime.host import ConfigStore, DictSession, HeaderBuffer, Requester, SessionStore


# ── Render-script registry ───────────────────────────────────────────────────

class RenderScriptRegistry:
    """Pending script bodies keyed ``js_header_<shortname>`` / ``js_footer_<shortname>``."""

    def __init__(self) -> None:
        self._scripts: dict[str, str] = {}

    def set_script(self, key: str, body: str) -> None:
        # Script already queued for this key takes priority
        if key not in self._scripts:
            self._scripts[key] = body

    def get_all_scripts(self) -> dict[str, str]:
        return dict(self._scripts)

    def remove_script(self, key: str) -> None:
        self._scripts.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)


def _default_error_log(message: str) -> None:
    from abconfig.tier0_core.logging import get_logger
    get_logger("abconfig.error_log").error("abconfig.error_log", message=message)


# ── Domain model ─────────────────────────────────────────────────────────────

@dataclass
class RequestContext:
    """Everything one evaluation reads from or writes to."""
    requester: Requester = field(default_factory=Requester)
    session: SessionStore = field(default_factory=DictSession)
    config: ConfigStore = field(default_factory=ConfigStore)
    headers: HeaderBuffer = field(default_factory=HeaderBuffer)
    scripts: RenderScriptRegistry = field(default_factory=RenderScriptRegistry)
    error_log: Callable[[str], None] = _default_error_log
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: dict[str, Any] = field(default_factory=dict)


# ── ContextVar storage ────────────────────────────────────────────────────────

_ctx: ContextVar[RequestContext | None] = ContextVar(
    "abconfig_request_context",
    default=None,
)


def get_context() -> RequestContext | None:
    """Return the active request context, if one was set."""
    return _ctx.get()


def set_context(ctx: RequestContext) -> None:
    """Set the request context for the current thread/async scope."""
    _ctx.set(ctx)
    # All log calls in this scope get these fields
    bind_context(
        request_id=ctx.request_id,
        user_id=ctx.requester.user_id,
    )


def new_context(
    requester: Requester | None = None,
    session: SessionStore | None = None,
    config: ConfigStore | None = None,
    **metadata: Any,
) -> RequestContext:
    """Create and activate a new request context. Returns the new context."""
    ctx = RequestContext(
        requester=requester or Requester(),
        session=session if session is not None else DictSession(),
        config=config or ConfigStore(),
        metadata=metadata,
    )
    set_context(ctx)
    return ctx


__all__ = [
    "RenderScriptRegistry", "RequestContext", "get_context", "set_context", "new_context",
]
