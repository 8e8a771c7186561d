"""
abconfig.tier3_platform.evaluators
────────────────────────────────────
Scope evaluators, one per point in the request lifecycle:

    before_session_start  device experiments (stable hash, no admin immunity)
    after_config          forced condsets, request experiments (re-rolled
                          every request) and replay of decided session ones
    after_require_login   session experiments (rolled once per session)
    before_http_headers   pending header scripts
    before_footer         pending footer scripts

beforesession and afterconfig experiments are never bucketed: their
condsets fire only when forced in the matching hook.

Each evaluator filters conditions through the shared eligibility rules,
picks at most one condition per experiment and hands its commands to the
interpreter.

The two early hooks run while the host may still be booting and swallow
any error; the others propagate.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Callable

from abconfig.tier0_core.config import AbconfigSettings, get_settings
from abconfig.tier0_core.logging import get_logger
from abconfig.tier0_core.metrics import selections_total
from abconfig.tier1_runtime.context import RequestContext
from abconfig.tier1_runtime.host import Requester
from abconfig.tier3_platform.bucketing import device_number, draw_uniform, select_stable, select_uniform
from abconfig.tier3_platform.commands import JS_FOOTER, JS_HEADER, CommandInterpreter, script_key
from abconfig.tier3_platform.eligibility import (
    DEVICE_POLICY,
    REQUEST_POLICY,
    SESSION_POLICY,
    eligible_conditions,
    experiment_applies,
)
from abconfig.tier3_platform.experiments import ExperimentManager
from abconfig.tier3_platform.models import Condition, Experiment, Scope

log = get_logger(__name__)

# Scripts of these scopes are re-queued on every request that fires them
_CONSUMED_SCOPES = (Scope.REQUEST, Scope.BEFORESESSION, Scope.AFTERCONFIG)


class ExperimentEvaluator:
    def __init__(
        self,
        manager: ExperimentManager | None = None,
        settings: AbconfigSettings | None = None,
        draw: Callable[[], int] = draw_uniform,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.manager = manager or ExperimentManager()
        self.settings = settings or get_settings()
        self.draw = draw
        self.environ = environ if environ is not None else os.environ

    # ── Selection ────────────────────────────────────────────────────────────

    def select_request(self, experiment: Experiment, requester: Requester, num: int | None = None) -> Condition | None:
        """Uniform draw over eligible conditions; None if the admin is immune or nothing wins."""
        if not experiment_applies(experiment, requester, REQUEST_POLICY):
            return None
        conditions = eligible_conditions(experiment.conditions, requester, REQUEST_POLICY)
        winner = select_uniform(conditions, self.draw() if num is None else num)
        self._record(Scope.REQUEST, experiment, winner)
        return winner

    def select_device(self, experiment: Experiment, requester: Requester) -> Condition | None:
        """Stable-hash pick: same address, user agent and offset always give the same answer."""
        if not requester.remote_address or not requester.user_agent:
            return None
        conditions = eligible_conditions(experiment.conditions, requester, DEVICE_POLICY)
        num = device_number(requester.remote_address, requester.user_agent, experiment.numeric_offset)
        winner = select_stable(conditions, num)
        self._record(Scope.DEVICE, experiment, winner)
        return winner

    def session_key(self, shortname: str) -> str:
        return self.settings.session_key_prefix + shortname

    def _record(self, scope: Scope, experiment: Experiment, winner: Condition | None) -> None:
        outcome = winner.condset if winner else "none"
        selections_total(scope=scope.value, experiment=experiment.shortname, outcome=outcome).inc()
        log.debug("abconfig.selection", scope=scope.value, experiment=experiment.shortname, condset=outcome)

    def _admin_disabled(self, requester: Requester) -> bool:
        """Admins may switch the engine off for themselves with ?abconfig=off."""
        # Any false value counts (0, no, off, false), not just "off"
        return requester.is_admin and not requester.flag(self.settings.disable_param)

    # ── before_session_start: device scope ───────────────────────────────────

    def before_session_start(self, ctx: RequestContext) -> None:
        try:
            self._before_session_start(ctx)
        except Exception:
            log.debug("abconfig.hook.failed", hook="before_session_start", exc_info=True)

    def _before_session_start(self, ctx: RequestContext) -> None:
        requester = ctx.requester
        # Device experiments need an address and a user agent, so never run on the CLI
        if not requester.remote_address or not requester.user_agent:
            return
        # No user yet, so the off switch works for everyone here
        if not requester.flag(self.settings.disable_param):
            return

        interpreter = CommandInterpreter(ctx)
        forced = set()
        for shortname, experiment in self.manager.get_override_experiments(device=True).items():
            if self._fire_forced(interpreter, experiment, requester.param(shortname)):
                forced.add(shortname)

        for shortname, experiment in self.manager.get_active_device().items():
            if shortname in forced:
                continue
            winner = self.select_device(experiment, requester)
            if winner is not None:
                interpreter.execute(winner.commands, shortname)

    # ── after_config: forced condsets, request scope, session replay ────────

    def after_config(self, ctx: RequestContext) -> None:
        try:
            self._after_config(ctx)
        except Exception:
            log.debug("abconfig.hook.failed", hook="after_config", exc_info=True)

    def _after_config(self, ctx: RequestContext) -> None:
        requester = ctx.requester
        if self._admin_disabled(requester):
            return

        interpreter = CommandInterpreter(ctx)
        forced = set()
        for shortname, experiment in self.manager.get_override_experiments(device=False).items():
            if requester.cli:
                condset = self.environ.get(self.settings.cli_env_prefix + shortname.upper())
            elif requester.is_admin:
                condset = requester.param(shortname)
            else:
                # Only admins can fire experiments from URL params
                break
            if self._fire_forced(interpreter, experiment, condset):
                forced.add(shortname)

        for shortname, experiment in self.manager.get_active_request().items():
            if shortname in forced:
                continue
            winner = self.select_request(experiment, requester)
            if winner is not None:
                interpreter.execute(winner.commands, shortname)

        for shortname, experiment in self.manager.get_active_session().items():
            condset = ctx.session.get(self.session_key(shortname))
            if not condset or shortname in forced:
                continue
            condition = experiment.condition(condset)
            if condition is None:
                log.info("abconfig.session.stale", experiment=shortname, condset=condset)
                continue
            interpreter.execute(condition.commands, shortname)

    def _fire_forced(self, interpreter: CommandInterpreter, experiment: Experiment, condset: str | None) -> bool:
        """Run a named condset directly, skipping selection. False if it does not exist."""
        if not condset:
            return False
        condition = experiment.condition(condset)
        if condition is None:
            return False
        log.info("abconfig.forced", experiment=experiment.shortname, condset=condset)
        interpreter.execute(condition.commands, experiment.shortname)
        return True

    # ── after_require_login: session scope ───────────────────────────────────

    def after_require_login(self, ctx: RequestContext) -> None:
        requester = ctx.requester
        if self._admin_disabled(requester):
            return

        interpreter = CommandInterpreter(ctx)
        for shortname, experiment in self.manager.get_active_session().items():
            if not experiment_applies(experiment, requester, SESSION_POLICY):
                continue
            key = self.session_key(shortname)
            # Decided once per session, "" included
            if ctx.session.has(key):
                continue

            conditions = eligible_conditions(experiment.conditions, requester, SESSION_POLICY)
            winner = select_uniform(conditions, self.draw())
            self._record(Scope.SESSION, experiment, winner)
            if winner is not None:
                interpreter.execute(winner.commands, shortname)
                ctx.session.set(key, winner.condset)
            else:
                ctx.session.set(key, "")

    # ── Render hooks ─────────────────────────────────────────────────────────

    def before_http_headers(self, ctx: RequestContext) -> str:
        return self.render_scripts(ctx, JS_HEADER)

    def before_footer(self, ctx: RequestContext) -> str:
        return self.render_scripts(ctx, JS_FOOTER)

    def render_scripts(self, ctx: RequestContext, direction: str) -> str:
        """Markup for pending scripts; per-request and disabled entries are consumed."""
        if self._admin_disabled(ctx.requester):
            return ""

        pending = ctx.scripts.get_all_scripts()
        markup = []
        for shortname, experiment in self.manager.get_experiments().items():
            key = script_key(direction, shortname)
            if key in pending:
                markup.append(f"<script type='text/javascript'>{pending[key]}</script>")
            if experiment.scope in _CONSUMED_SCOPES or not experiment.enabled:
                ctx.scripts.remove_script(key)
        return "".join(markup)


# ── Provider factory ───────────────────────────────────────────────────────

_evaluator: ExperimentEvaluator | None = None


def get_evaluator() -> ExperimentEvaluator:
    global _evaluator
    if _evaluator is None:
        _evaluator = ExperimentEvaluator()
    return _evaluator


def _reset_evaluator() -> None:
    global _evaluator
    _evaluator = None


__all__ = ["ExperimentEvaluator", "get_evaluator"]
