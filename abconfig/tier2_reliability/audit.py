"""
abconfig.tier2_reliability.audit
───────────────────────────────────
Append-only config-change log. When an operator saves a condition set that
conditionally sets a config value, one record is written per setting so
the change is traceable next to ordinary config edits.

Records are written at authoring time, never at evaluation time.

Backend: structured log (stdout) or DB table (append-only).
Configure via: ABCONFIG_AUDIT_BACKEND=log|db
"""
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field

from abconfig.tier0_core.config import get_settings


@dataclass
class ConfigChangeRecord:
    """Immutable config-change record. Never update or delete these."""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: float = field(default_factory=time.time)
    name: str = ""              # setting name, e.g. "theme"
    oldvalue: str = ""
    value: str = ""
    plugin: str = ""            # e.g. "core-experiment:50", "mod_forum-experiment:20"
    experiment: str = ""        # experiment shortname


def log_config_change(
    name: str,
    value: str,
    plugin: str,
    experiment: str = "",
    oldvalue: str = "",
) -> ConfigChangeRecord:
    """
    Write a config-change record.

    Usage:
        log_config_change("theme", "classic", "core-experiment:50", experiment="exp1")
    """
    record = ConfigChangeRecord(
        name=name,
        oldvalue=oldvalue,
        value=value,
        plugin=plugin,
        experiment=experiment,
    )

    backend = get_settings().audit_backend
    if backend == "log":
        _write_log(record)
    elif backend == "db":
        _write_db(record)

    return record


def _write_log(record: ConfigChangeRecord) -> None:
    from abconfig.tier0_core.logging import get_logger
    log = get_logger("abconfig.audit")
    log.info(
        "abconfig.config_change",
        audit_id=record.id,
        name=record.name,
        oldvalue=record.oldvalue,
        value=record.value,
        plugin=record.plugin,
        experiment=record.experiment,
        timestamp=record.timestamp,
    )


def _write_db(record: ConfigChangeRecord) -> None:
    """Write to the append-only config log table."""
    from abconfig.tier0_core.data import ConfigLogRow, get_session

    with get_session() as session:
        session.add(ConfigLogRow(
            id=record.id,
            timestamp=record.timestamp,
            name=record.name,
            oldvalue=record.oldvalue,
            value=record.value,
            plugin=record.plugin,
            experiment=record.experiment,
        ))


__all__ = ["ConfigChangeRecord", "log_config_change"]
