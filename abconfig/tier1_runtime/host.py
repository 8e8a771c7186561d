"""
abconfig.tier1_runtime.host
─────────────────────────────
The host application's side of an evaluation: who is asking, where the
session lives, the mutable config surface commands write to, and the
outbound header buffer.

All of these are per-request objects. The host builds them (or lets the
WSGI middleware build them) and hands them to the engine inside a
RequestContext.
"""
from __future__ import annotations

from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from abconfig.tier0_core.errors import ConfigAlreadySetError, HeadersSentError

ALLOW_SUFFIX = "_allow_abconfig"

_FALSE_VALUES = frozenset({"0", "false", "no", "off", ""})


# ── Requester ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Requester:
    """The current visitor. CLI runs have no address or user agent."""
    remote_address: str | None = None
    user_agent: str | None = None
    user_id: int | None = None
    is_admin: bool = False
    params: Mapping[str, str] = field(default_factory=dict)
    cli: bool = False

    def param(self, name: str) -> str | None:
        value = self.params.get(name)
        return value if value else None

    def flag(self, name: str, default: bool = True) -> bool:
        """Read a boolean URL parameter, e.g. ``?abconfig=0``."""
        value = self.params.get(name)
        if value is None:
            return default
        return value.strip().lower() not in _FALSE_VALUES


# ── Session store ─────────────────────────────────────────────────────────────

@runtime_checkable
class SessionStore(Protocol):
    def has(self, key: str) -> bool: ...

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class DictSession:
    """SessionStore over any mutable mapping (framework session objects included)."""

    def __init__(self, data: MutableMapping[str, Any] | None = None) -> None:
        self.data: MutableMapping[str, Any] = data if data is not None else {}

    def has(self, key: str) -> bool:
        return key in self.data

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.data[key] = value


# ── Config store ──────────────────────────────────────────────────────────────

class ConfigStore:
    """
    Global config as seen by one request.

    ``static`` holds the keys fixed by the host's static configuration file.
    Commands may not change those unless the paired ``<name>_allow_abconfig``
    key is present. A value written by a command becomes fixed as well, so
    the first experiment to set a key in a request wins.
    """

    def __init__(
        self,
        static: Mapping[str, Any] | None = None,
        values: Mapping[str, Any] | None = None,
        forced_plugin_settings: Mapping[str, Mapping[str, Any]] | None = None,
    ) -> None:
        self.static: dict[str, Any] = dict(static or {})
        self.values: dict[str, Any] = {**(values or {}), **self.static}
        self.forced_plugin_settings: dict[str, dict[str, Any]] = {
            plugin: dict(settings)
            for plugin, settings in (forced_plugin_settings or {}).items()
        }

    def get(self, name: str, default: Any = None) -> Any:
        return self.values.get(name, default)

    def set_config(self, name: str, value: str) -> None:
        allow = (name + ALLOW_SUFFIX) in self.values
        if not allow and name in self.static:
            raise ConfigAlreadySetError(
                user_message=f"Can't override {name} because it is already set in static config",
                setting=name,
            )
        self.values[name] = value
        self.static[name] = value

    def get_plugin_setting(self, plugin: str, name: str, default: Any = None) -> Any:
        return self.forced_plugin_settings.get(plugin, {}).get(name, default)

    def force_plugin_setting(self, plugin: str, name: str, value: str) -> None:
        settings = self.forced_plugin_settings.get(plugin)
        if settings is not None and name in settings and (name + ALLOW_SUFFIX) not in settings:
            raise ConfigAlreadySetError(
                user_message=(
                    f"Can't override forced_plugin_settings[{plugin!r}][{name!r}] "
                    "because it is already set in static config"
                ),
                plugin=plugin,
                setting=name,
            )
        self.forced_plugin_settings.setdefault(plugin, {})[name] = value


# ── Outbound headers ──────────────────────────────────────────────────────────

class HeaderBuffer:
    """Collects raw headers until the host flushes them with the response."""

    def __init__(self) -> None:
        self.headers: list[tuple[str, str]] = []
        self.sent = False

    def emit(self, name: str, value: str) -> None:
        if self.sent:
            raise HeadersSentError(
                user_message=f"Can't send header {name}: headers already sent",
                header=name,
            )
        self.headers.append((name, value))

    def mark_sent(self) -> list[tuple[str, str]]:
        self.sent = True
        return list(self.headers)


__all__ = [
    "Requester", "SessionStore", "DictSession", "ConfigStore", "HeaderBuffer",
    "ALLOW_SUFFIX",
]
