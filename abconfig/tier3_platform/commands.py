"""
abconfig.tier3_platform.commands
──────────────────────────────────
The command mini-language attached to condition sets, and the interpreter
that applies it to a request.

A command is one comma-delimited string, verb first::

    CFG,<name>,<value>
    forced_plugin_setting,<plugin>,<name>,<value>
    http_header,<name>,<value>
    error_log,<message>
    js_header,<script>
    js_footer,<script>

Each verb splits into a fixed number of fields, so the last field keeps any
commas it contains. Condition sets persist their commands as a JSON array
of these strings, byte for byte.
"""
from __future__ import annotations

import json
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Callable, Union

from abconfig.tier0_core.errors import CommandError, MalformedCommandError
from abconfig.tier0_core.logging import experiment_context, get_logger
from abconfig.tier0_core.metrics import commands_total
from abconfig.tier1_runtime.context import RequestContext

log = get_logger(__name__)


# ── Command variants ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Cfg:
    name: str
    value: str


@dataclass(frozen=True)
class ForcedPluginSetting:
    plugin: str
    name: str
    value: str


@dataclass(frozen=True)
class HttpHeader:
    name: str
    value: str


@dataclass(frozen=True)
class ErrorLog:
    message: str


@dataclass(frozen=True)
class JsHeader:
    body: str


@dataclass(frozen=True)
class JsFooter:
    body: str


@dataclass(frozen=True)
class Unknown:
    raw: str


Command = Union[Cfg, ForcedPluginSetting, HttpHeader, ErrorLog, JsHeader, JsFooter, Unknown]

# verb → (field count including the verb, constructor)
_VERBS: dict[str, tuple[int, Callable[..., Command]]] = {
    "CFG": (3, Cfg),
    "forced_plugin_setting": (4, ForcedPluginSetting),
    "http_header": (3, HttpHeader),
    "error_log": (2, ErrorLog),
    "js_header": (2, JsHeader),
    "js_footer": (2, JsFooter),
}

JS_HEADER = "js_header"
JS_FOOTER = "js_footer"


def script_key(direction: str, shortname: str) -> str:
    """Registry key for a pending script, e.g. ``js_footer_exp1``."""
    return f"{direction}_{shortname}"


# ── Parsing ──────────────────────────────────────────────────────────────────

def verb_of(raw: str) -> str:
    return raw.split(",", 1)[0]


def parse_command(raw: str) -> Command:
    """
    Parse one command string. Unknown verbs come back as ``Unknown``.
    Raises MalformedCommandError when a known verb is missing fields.
    """
    verb = verb_of(raw)
    arity = _VERBS.get(verb)
    if arity is None:
        return Unknown(raw)
    fields, build = arity
    parts = raw.split(",", fields - 1)
    if len(parts) < fields:
        raise MalformedCommandError(
            user_message=f"{verb} expects {fields - 1} argument(s), got {len(parts) - 1}",
            verb=verb,
        )
    return build(*parts[1:])


def decode_commands(encoded: str | Sequence[str] | None) -> list[str]:
    """Stored JSON array → list of command strings."""
    if not encoded:
        return []
    if isinstance(encoded, str):
        decoded = json.loads(encoded)
        if not decoded:
            return []
        return [str(c) for c in decoded]
    return list(encoded)


def normalize_commands(commands: str | Sequence[str] | None) -> list[str]:
    """
    Operator input → list of command strings. A text blob holds one command
    per line; each line is trimmed and blank lines are dropped.
    """
    if not commands:
        return []
    lines = commands.splitlines() if isinstance(commands, str) else commands
    return [line.strip() for line in lines if line.strip()]


def encode_commands(commands: Sequence[str]) -> str:
    return json.dumps(list(commands))


# ── Interpreter ──────────────────────────────────────────────────────────────

class CommandInterpreter:
    """
    Applies commands to one request context.

    A command that cannot be applied (target fixed by static config, wrong
    field count, headers already sent) is logged and skipped; the rest of
    the sequence still runs.
    """

    def __init__(self, ctx: RequestContext) -> None:
        self.ctx = ctx
        self._handlers: dict[type, Callable[[Command, str], None]] = {
            Cfg: self._apply_cfg,
            ForcedPluginSetting: self._apply_forced_plugin_setting,
            HttpHeader: self._apply_http_header,
            ErrorLog: self._apply_error_log,
            JsHeader: self._apply_js_header,
            JsFooter: self._apply_js_footer,
        }

    def execute(self, commands: str | Sequence[str] | None, shortname: str) -> list[Command]:
        """Run a command sequence for an experiment; returns the commands applied."""
        applied: list[Command] = []
        with experiment_context(shortname):
            for raw in decode_commands(commands):
                self._execute_one(raw, shortname, applied)
        return applied

    def _execute_one(self, raw: str, shortname: str, applied: list[Command]) -> None:
        verb = verb_of(raw)
        try:
            command = parse_command(raw)
            handler = self._handlers.get(type(command))
            if handler is None:
                log.debug("abconfig.command.unknown", command=raw)
                return
            handler(command, shortname)
        except CommandError as exc:
            log.warning(
                "abconfig.command.rejected",
                command=raw,
                verb=verb,
                code=exc.code,
                reason=exc.user_message,
            )
            commands_total(verb=verb, outcome="rejected").inc()
            return
        applied.append(command)
        commands_total(verb=verb, outcome="applied").inc()

    def _apply_cfg(self, command: Cfg, shortname: str) -> None:
        self.ctx.config.set_config(command.name, command.value)

    def _apply_forced_plugin_setting(self, command: ForcedPluginSetting, shortname: str) -> None:
        self.ctx.config.force_plugin_setting(command.plugin, command.name, command.value)

    def _apply_http_header(self, command: HttpHeader, shortname: str) -> None:
        self.ctx.headers.emit(command.name, command.value)

    def _apply_error_log(self, command: ErrorLog, shortname: str) -> None:
        self.ctx.error_log(command.message)

    def _apply_js_header(self, command: JsHeader, shortname: str) -> None:
        self.ctx.scripts.set_script(script_key(JS_HEADER, shortname), command.body)

    def _apply_js_footer(self, command: JsFooter, shortname: str) -> None:
        self.ctx.scripts.set_script(script_key(JS_FOOTER, shortname), command.body)


def execute_commands(
    ctx: RequestContext, commands: str | Sequence[str] | None, shortname: str
) -> list[Command]:
    return CommandInterpreter(ctx).execute(commands, shortname)


__all__ = [
    "Cfg", "ForcedPluginSetting", "HttpHeader", "ErrorLog", "JsHeader", "JsFooter",
    "Unknown", "Command", "parse_command", "decode_commands", "normalize_commands",
    "encode_commands", "script_key", "CommandInterpreter", "execute_commands",
    "JS_HEADER", "JS_FOOTER",
]
