"""
abconfig.tier0_core.errors
───────────────────────────
Error taxonomy for the experiment engine. Every error carries a stable
machine-readable code, an operator-safe message and internal detail.

Repository failures (missing or duplicate records) are reported to callers
as boolean results; the classes here are what the stores and the command
interpreter raise internally before that translation happens.

Optional capture:  ABCONFIG_ERROR_BACKEND=sentry|none
"""
from __future__ import annotations

import os
from typing import Any


# ── Base error ────────────────────────────────────────────────────────────────

class AbconfigError(Exception):
    """
    Base class for all abconfig errors. Every error has:
    - code: stable machine-readable string (snake_case)
    - user_message: safe to show to an operator
    - detail: internal context
    """

    code: str = "abconfig_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "An unexpected error occurred.",
        detail: str | None = None,
        **metadata: Any,
    ) -> None:
        self.code = code or self.__class__.code
        self.user_message = user_message
        self.detail = detail or user_message
        self.metadata = metadata
        super().__init__(self.detail)
        _capture(self)

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.user_message,
            }
        }


# ── Repository errors ─────────────────────────────────────────────────────────

class NotFoundError(AbconfigError):
    """Experiment or condition set does not exist."""
    code = "not_found"


class ConflictError(AbconfigError):
    """Experiment shortname or condition set name already taken."""
    code = "already_exists"


class ValidationError(AbconfigError):
    """Operator input failed validation."""
    code = "validation_error"

    def __init__(
        self,
        code: str | None = None,
        user_message: str = "Validation failed.",
        fields: dict | None = None,
        **metadata: Any,
    ) -> None:
        self.fields = fields or {}
        super().__init__(code, user_message, **metadata)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.fields:
            d["error"]["fields"] = self.fields
        return d


class ConfigurationError(AbconfigError):
    """Misconfiguration detected at startup."""
    code = "configuration_error"


# ── Command errors (non-fatal, one command is skipped) ────────────────────────

class CommandError(AbconfigError):
    """A single command could not be applied."""
    code = "command_error"


class ConfigAlreadySetError(CommandError):
    """Target setting is fixed by static configuration."""
    code = "config_already_set"


class MalformedCommandError(CommandError):
    """Known verb with the wrong number of arguments."""
    code = "malformed_command"


class HeadersSentError(CommandError):
    """Outbound headers were already sent for this request."""
    code = "headers_sent"


# ── Error capture backend ─────────────────────────────────────────────────────

def _capture(error: AbconfigError) -> None:
    """Send error to the configured backend. Called by AbconfigError.__init__."""
    backend = os.getenv("ABCONFIG_ERROR_BACKEND", "none").lower()
    if backend == "sentry" and not isinstance(error, CommandError):
        _capture_sentry(error)


def _capture_sentry(error: AbconfigError) -> None:
    import sentry_sdk

    sentry_sdk.capture_message(
        str(error),
        level="warning",
        extras={"code": error.code, **error.metadata},
    )


def configure_sentry(dsn: str, **kwargs: Any) -> None:
    """Initialize Sentry - call once at application startup."""
    import sentry_sdk
    sentry_sdk.init(dsn=dsn, **kwargs)
    os.environ["ABCONFIG_ERROR_BACKEND"] = "sentry"


__all__ = [
    "AbconfigError", "NotFoundError", "ConflictError", "ValidationError",
    "ConfigurationError", "CommandError", "ConfigAlreadySetError",
    "MalformedCommandError", "HeadersSentError", "configure_sentry",
]
