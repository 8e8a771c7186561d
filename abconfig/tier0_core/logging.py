"""
abconfig.tier0_core.logging
────────────────────────────
Structured logs for the engine. Every record carries the request id and,
while an experiment's commands run, its shortname. Sensitive keys are
redacted, and so are values of commands that set sensitive settings
(``CFG,smtppass,...``).

Minimal stack: structlog (stdout JSON or console)
Configure via: ABCONFIG_LOG_LEVEL, ABCONFIG_LOG_FORMAT=json|console
"""
from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

from abconfig.tier0_core.config import get_settings


# ── Redaction ─────────────────────────────────────────────────────────────────

_REDACT_KEYS = frozenset({
    "password", "passwd", "secret", "token", "api_key", "apikey",
    "authorization", "cookie", "session_id", "credential",
})

# Fragments of setting names whose values never reach the logs
_SENSITIVE_SETTING_PARTS = ("pass", "secret", "token", "key")

_COMMAND_KEYS = frozenset({"command", "raw"})

_REDACTED = "[REDACTED]"


def _scrub_command(raw: str) -> str:
    """``CFG,smtppass,hunter2`` → ``CFG,smtppass,[REDACTED]``."""
    parts = raw.split(",")
    if parts[0] == "CFG" and len(parts) >= 3:
        name_index = 1
    elif parts[0] == "forced_plugin_setting" and len(parts) >= 4:
        name_index = 2
    else:
        return raw
    name = parts[name_index].lower()
    if any(part in name for part in _SENSITIVE_SETTING_PARTS):
        return ",".join(parts[: name_index + 1] + [_REDACTED])
    return raw


def _redact_processor(
    logger: Any, method: str, event_dict: dict
) -> dict:
    """Strip sensitive fields from log records before output."""
    for key in list(event_dict.keys()):
        lowered = key.lower()
        if lowered in _REDACT_KEYS:
            event_dict[key] = _REDACTED
        elif lowered in _COMMAND_KEYS and isinstance(event_dict[key], str):
            event_dict[key] = _scrub_command(event_dict[key])
    return event_dict


# ── Configuration ─────────────────────────────────────────────────────────────

_configured = False
_handler: logging.Handler | None = None


def configure_logging() -> None:
    """
    Wire structlog and the stdlib root logger from settings. Safe to call
    again after settings change; the previous handler is replaced.
    """
    global _configured, _handler
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        _redact_processor,
    ]

    if settings.log_format.lower() == "console":
        renderer: Any = structlog.dev.ConsoleRenderer()
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=shared_processors + [
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    ))

    root_logger = logging.getLogger()
    if _handler is not None:
        root_logger.removeHandler(_handler)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)
    _handler = handler
    _configured = True


# ── Public API ────────────────────────────────────────────────────────────────

def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Return a structured logger bound to the given name.

    Usage:
        log = get_logger(__name__)
        log.info("abconfig.selection", experiment="exp1", condset="A")
    """
    if not _configured:
        configure_logging()
    return structlog.get_logger(name or __name__)


def bind_context(**kwargs: Any) -> None:
    """Bind fields to every later log call in the current thread/async scope."""
    structlog.contextvars.bind_contextvars(**kwargs)


def clear_context() -> None:
    """Clear all context-bound log fields. Call at end of request."""
    structlog.contextvars.clear_contextvars()


@contextmanager
def experiment_context(shortname: str) -> Iterator[None]:
    """Tag log calls made while an experiment's commands run."""
    with structlog.contextvars.bound_contextvars(experiment=shortname):
        yield
