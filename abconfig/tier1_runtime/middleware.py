"""
abconfig.tier1_runtime.middleware
───────────────────────────────────
WSGI middleware that builds a RequestContext for every request, runs the
boot, config and login hooks before the app sees the request, and appends
headers emitted by experiments when the app starts its response.

The context is left in ``environ["abconfig.context"]`` so the app's
templates can call the header/footer render hooks.

Supports: Flask / Django / any WSGI app.
"""
from __future__ import annotations

import time
import uuid
from collections.abc import MutableMapping
from typing import TYPE_CHECKING, Any, Callable
from urllib.parse import parse_qs

from abconfig.tier0_core.logging import clear_context, get_logger
from abconfig.tier1_runtime.context import RequestContext, set_context
from abconfig.tier1_runtime.host import ConfigStore, DictSession, Requester, SessionStore

if TYPE_CHECKING:
    from abconfig.tier3_platform.evaluators import ExperimentEvaluator

ENVIRON_KEY = "abconfig.context"

UserResolver = Callable[[dict], "tuple[int | None, bool]"]
SessionResolver = Callable[[dict], "SessionStore | MutableMapping[str, Any]"]


def _query_params(environ: dict) -> dict[str, str]:
    parsed = parse_qs(environ.get("QUERY_STRING", ""), keep_blank_values=True)
    return {key: values[-1] for key, values in parsed.items()}


class AbconfigWSGIMiddleware:
    """
    Usage (Flask)::

        from abconfig import AbconfigWSGIMiddleware
        app.wsgi_app = AbconfigWSGIMiddleware(
            app.wsgi_app,
            resolve_user=lambda environ: (current_user_id(environ), is_site_admin(environ)),
            resolve_session=lambda environ: environ["beaker.session"],
            config_factory=lambda: ConfigStore(static=STATIC_CONFIG),
        )
    """

    def __init__(
        self,
        app: Callable,
        evaluator: ExperimentEvaluator | None = None,
        resolve_user: UserResolver | None = None,
        resolve_session: SessionResolver | None = None,
        config_factory: Callable[[], ConfigStore] | None = None,
    ) -> None:
        self.app = app
        self._evaluator = evaluator
        self.resolve_user = resolve_user
        self.resolve_session = resolve_session
        self.config_factory = config_factory or ConfigStore

    @property
    def evaluator(self) -> ExperimentEvaluator:
        if self._evaluator is None:
            from abconfig.tier3_platform.evaluators import get_evaluator
            self._evaluator = get_evaluator()
        return self._evaluator

    def build_context(self, environ: dict) -> RequestContext:
        user_id, is_admin = self.resolve_user(environ) if self.resolve_user else (None, False)
        requester = Requester(
            remote_address=environ.get("REMOTE_ADDR"),
            user_agent=environ.get("HTTP_USER_AGENT"),
            user_id=user_id,
            is_admin=is_admin,
            params=_query_params(environ),
        )

        session: Any = self.resolve_session(environ) if self.resolve_session else None
        if session is None:
            session = DictSession()
        elif not isinstance(session, SessionStore):
            session = DictSession(session)

        return RequestContext(
            requester=requester,
            session=session,
            config=self.config_factory(),
            request_id=environ.get("HTTP_X_REQUEST_ID") or str(uuid.uuid4()),
        )

    def __call__(self, environ: dict, start_response: Callable) -> Any:
        ctx = self.build_context(environ)
        set_context(ctx)
        environ[ENVIRON_KEY] = ctx

        evaluator = self.evaluator
        evaluator.before_session_start(ctx)
        evaluator.after_config(ctx)
        if ctx.requester.user_id is not None:
            evaluator.after_require_login(ctx)

        def _start_response(status: str, headers: list, exc_info: Any = None) -> Any:
            return start_response(status, list(headers) + ctx.headers.mark_sent(), exc_info)

        start = time.perf_counter()
        try:
            return self.app(environ, _start_response)
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            get_logger(__name__).info(
                "request_completed",
                request_id=ctx.request_id,
                duration_ms=round(duration_ms, 2),
                path=environ.get("PATH_INFO", ""),
                method=environ.get("REQUEST_METHOD", ""),
                experiment_headers=len(ctx.headers.headers),
            )
            clear_context()


__all__ = ["AbconfigWSGIMiddleware", "ENVIRON_KEY"]
