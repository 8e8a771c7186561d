"""
abconfig.tier3_platform.store
───────────────────────────────
Record stores for experiments and condition sets.

Stores enforce the two uniqueness rules (shortname; experiment + condset)
by raising ConflictError, and cascade experiment deletes to conditions.
They know nothing about caching; the ExperimentManager handles that.

Backed by: in-process dicts (tests, single worker) or SQLAlchemy.
Select via: ABCONFIG_STORE_BACKEND=memory|sql
"""
from __future__ import annotations

import copy
import itertools
import json
from typing import Protocol, runtime_checkable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from abconfig.tier0_core.config import get_settings
from abconfig.tier0_core.errors import ConfigurationError, ConflictError, NotFoundError
from abconfig.tier3_platform.commands import decode_commands, encode_commands
from abconfig.tier3_platform.models import Condition, Dataset, Experiment


# ── Protocol ───────────────────────────────────────────────────────────────

@runtime_checkable
class RecordStore(Protocol):
    def get_experiment(self, eid: int) -> Experiment | None: ...

    def find_experiment(self, shortname: str) -> Experiment | None: ...

    def insert_experiment(
        self, name: str, shortname: str, scope: str,
        enabled: bool, admin_enabled: bool, numeric_offset: int,
    ) -> int: ...

    def update_experiment(
        self, eid: int, name: str, shortname: str, scope: str,
        enabled: bool, admin_enabled: bool, numeric_offset: int,
    ) -> None: ...

    def delete_experiment(self, eid: int) -> None: ...

    def find_condition(self, eid: int, condset: str) -> Condition | None: ...

    def insert_condition(
        self, eid: int, condset: str, ip_allow_list: str,
        commands: list[str], weight: int, user_ids: list[int],
    ) -> int: ...

    def update_condition(
        self, cid: int, eid: int, condset: str, ip_allow_list: str,
        commands: list[str], weight: int, user_ids: list[int],
    ) -> None: ...

    def delete_condition(self, eid: int, condset: str) -> None: ...

    def delete_conditions(self, eid: int) -> None: ...

    def list_conditions(self, eid: int) -> list[Condition]: ...

    def load_all(self) -> Dataset: ...


# ── In-memory store ────────────────────────────────────────────────────────

class MemoryRecordStore:
    """Dict-backed store. Returns copies so callers can't mutate stored records."""

    def __init__(self) -> None:
        self._experiments: dict[int, Experiment] = {}
        self._conditions: dict[int, Condition] = {}
        self._experiment_ids = itertools.count(1)
        self._condition_ids = itertools.count(1)

    def _with_conditions(self, experiment: Experiment) -> Experiment:
        result = copy.deepcopy(experiment)
        result.conditions = self.list_conditions(experiment.id)
        return result

    def get_experiment(self, eid: int) -> Experiment | None:
        experiment = self._experiments.get(eid)
        return self._with_conditions(experiment) if experiment else None

    def find_experiment(self, shortname: str) -> Experiment | None:
        for experiment in self._experiments.values():
            if experiment.shortname == shortname:
                return self._with_conditions(experiment)
        return None

    def _check_shortname(self, shortname: str, eid: int | None = None) -> None:
        for experiment in self._experiments.values():
            if experiment.shortname == shortname and experiment.id != eid:
                raise ConflictError(
                    user_message=f"Experiment {shortname!r} already exists",
                    shortname=shortname,
                )

    def insert_experiment(self, name, shortname, scope, enabled, admin_enabled, numeric_offset) -> int:
        self._check_shortname(shortname)
        eid = next(self._experiment_ids)
        self._experiments[eid] = Experiment(
            id=eid, name=name, shortname=shortname, scope=scope,
            enabled=enabled, admin_enabled=admin_enabled, numeric_offset=numeric_offset,
        )
        return eid

    def update_experiment(self, eid, name, shortname, scope, enabled, admin_enabled, numeric_offset) -> None:
        if eid not in self._experiments:
            raise NotFoundError(user_message=f"Experiment {eid} not found", experiment_id=eid)
        self._check_shortname(shortname, eid)
        self._experiments[eid] = Experiment(
            id=eid, name=name, shortname=shortname, scope=scope,
            enabled=enabled, admin_enabled=admin_enabled, numeric_offset=numeric_offset,
        )

    def delete_experiment(self, eid: int) -> None:
        self.delete_conditions(eid)
        self._experiments.pop(eid, None)

    def find_condition(self, eid: int, condset: str) -> Condition | None:
        for condition in self._conditions.values():
            if condition.experiment_id == eid and condition.condset == condset:
                return copy.deepcopy(condition)
        return None

    def _check_condset(self, eid: int, condset: str, cid: int | None = None) -> None:
        existing = self.find_condition(eid, condset)
        if existing is not None and existing.id != cid:
            raise ConflictError(
                user_message=f"Condition set {condset!r} already exists",
                experiment_id=eid,
                condset=condset,
            )

    def insert_condition(self, eid, condset, ip_allow_list, commands, weight, user_ids) -> int:
        self._check_condset(eid, condset)
        cid = next(self._condition_ids)
        self._conditions[cid] = Condition(
            id=cid, experiment_id=eid, condset=condset, ip_allow_list=ip_allow_list,
            commands=list(commands), weight=weight, user_ids=list(user_ids),
        )
        return cid

    def update_condition(self, cid, eid, condset, ip_allow_list, commands, weight, user_ids) -> None:
        if cid not in self._conditions:
            raise NotFoundError(user_message=f"Condition {cid} not found", condition_id=cid)
        self._check_condset(eid, condset, cid)
        self._conditions[cid] = Condition(
            id=cid, experiment_id=eid, condset=condset, ip_allow_list=ip_allow_list,
            commands=list(commands), weight=weight, user_ids=list(user_ids),
        )

    def delete_condition(self, eid: int, condset: str) -> None:
        for cid, condition in list(self._conditions.items()):
            if condition.experiment_id == eid and condition.condset == condset:
                del self._conditions[cid]

    def delete_conditions(self, eid: int) -> None:
        for cid, condition in list(self._conditions.items()):
            if condition.experiment_id == eid:
                del self._conditions[cid]

    def list_conditions(self, eid: int) -> list[Condition]:
        return [
            copy.deepcopy(c)
            for _, c in sorted(self._conditions.items())
            if c.experiment_id == eid
        ]

    def load_all(self) -> Dataset:
        return {
            e.shortname: self._with_conditions(e)
            for _, e in sorted(self._experiments.items())
        }


# ── SQLAlchemy store ───────────────────────────────────────────────────────

class SqlRecordStore:
    """Store over the abconfig_experiment / abconfig_condition tables."""

    def __init__(self) -> None:
        from abconfig.tier0_core import data
        self._data = data
        data.get_engine()

    @staticmethod
    def _condition(row) -> Condition:
        return Condition(
            id=row.id,
            experiment_id=row.experiment_id,
            condset=row.condset,
            ip_allow_list=row.ipwhitelist or "",
            commands=decode_commands(row.commands),
            weight=row.value,
            user_ids=[int(u) for u in json.loads(row.users or "[]")],
        )

    def _experiment(self, row) -> Experiment:
        return Experiment(
            id=row.id,
            name=row.name,
            shortname=row.shortname,
            scope=row.scope,
            enabled=bool(row.enabled),
            admin_enabled=bool(row.adminenabled),
            numeric_offset=row.numoffset,
            conditions=[self._condition(c) for c in row.conditions],
        )

    def get_experiment(self, eid: int) -> Experiment | None:
        with self._data.get_session() as session:
            row = session.get(self._data.ExperimentRow, eid)
            return self._experiment(row) if row else None

    def find_experiment(self, shortname: str) -> Experiment | None:
        ExperimentRow = self._data.ExperimentRow
        with self._data.get_session() as session:
            row = session.scalar(select(ExperimentRow).where(ExperimentRow.shortname == shortname))
            return self._experiment(row) if row else None

    def insert_experiment(self, name, shortname, scope, enabled, admin_enabled, numeric_offset) -> int:
        row = self._data.ExperimentRow(
            name=name, shortname=shortname, scope=scope,
            enabled=enabled, adminenabled=admin_enabled, numoffset=numeric_offset,
        )
        try:
            with self._data.get_session() as session:
                session.add(row)
                session.flush()
                return row.id
        except IntegrityError as exc:
            raise ConflictError(
                user_message=f"Experiment {shortname!r} already exists", shortname=shortname
            ) from exc

    def update_experiment(self, eid, name, shortname, scope, enabled, admin_enabled, numeric_offset) -> None:
        try:
            with self._data.get_session() as session:
                row = session.get(self._data.ExperimentRow, eid)
                if row is None:
                    raise NotFoundError(user_message=f"Experiment {eid} not found", experiment_id=eid)
                row.name = name
                row.shortname = shortname
                row.scope = scope
                row.enabled = enabled
                row.adminenabled = admin_enabled
                row.numoffset = numeric_offset
        except IntegrityError as exc:
            raise ConflictError(
                user_message=f"Experiment {shortname!r} already exists", shortname=shortname
            ) from exc

    def delete_experiment(self, eid: int) -> None:
        with self._data.get_session() as session:
            row = session.get(self._data.ExperimentRow, eid)
            if row is not None:
                session.delete(row)

    def find_condition(self, eid: int, condset: str) -> Condition | None:
        ConditionRow = self._data.ConditionRow
        with self._data.get_session() as session:
            row = session.scalar(
                select(ConditionRow).where(
                    ConditionRow.experiment_id == eid, ConditionRow.condset == condset
                )
            )
            return self._condition(row) if row else None

    def insert_condition(self, eid, condset, ip_allow_list, commands, weight, user_ids) -> int:
        row = self._data.ConditionRow(
            experiment_id=eid, condset=condset, ipwhitelist=ip_allow_list,
            commands=encode_commands(commands), value=weight, users=json.dumps(list(user_ids)),
        )
        try:
            with self._data.get_session() as session:
                session.add(row)
                session.flush()
                return row.id
        except IntegrityError as exc:
            raise ConflictError(
                user_message=f"Condition set {condset!r} already exists",
                experiment_id=eid,
                condset=condset,
            ) from exc

    def update_condition(self, cid, eid, condset, ip_allow_list, commands, weight, user_ids) -> None:
        try:
            with self._data.get_session() as session:
                row = session.get(self._data.ConditionRow, cid)
                if row is None:
                    raise NotFoundError(user_message=f"Condition {cid} not found", condition_id=cid)
                row.experiment_id = eid
                row.condset = condset
                row.ipwhitelist = ip_allow_list
                row.commands = encode_commands(commands)
                row.value = weight
                row.users = json.dumps(list(user_ids))
        except IntegrityError as exc:
            raise ConflictError(
                user_message=f"Condition set {condset!r} already exists",
                experiment_id=eid,
                condset=condset,
            ) from exc

    def delete_condition(self, eid: int, condset: str) -> None:
        ConditionRow = self._data.ConditionRow
        with self._data.get_session() as session:
            session.execute(
                delete(ConditionRow).where(
                    ConditionRow.experiment_id == eid, ConditionRow.condset == condset
                )
            )

    def delete_conditions(self, eid: int) -> None:
        ConditionRow = self._data.ConditionRow
        with self._data.get_session() as session:
            session.execute(delete(ConditionRow).where(ConditionRow.experiment_id == eid))

    def list_conditions(self, eid: int) -> list[Condition]:
        ConditionRow = self._data.ConditionRow
        with self._data.get_session() as session:
            rows = session.scalars(
                select(ConditionRow).where(ConditionRow.experiment_id == eid).order_by(ConditionRow.id)
            )
            return [self._condition(r) for r in rows]

    def load_all(self) -> Dataset:
        ExperimentRow = self._data.ExperimentRow
        with self._data.get_session() as session:
            rows = session.scalars(select(ExperimentRow).order_by(ExperimentRow.id))
            return {row.shortname: self._experiment(row) for row in rows}


# ── Provider factory ───────────────────────────────────────────────────────

_store: RecordStore | None = None


def get_store() -> RecordStore:
    global _store
    if _store is not None:
        return _store

    backend = get_settings().store_backend
    if backend == "memory":
        _store = MemoryRecordStore()
    elif backend == "sql":
        _store = SqlRecordStore()
    else:
        raise ConfigurationError(
            user_message=f"Unknown ABCONFIG_STORE_BACKEND: {backend!r}. Supported: memory, sql"
        )
    return _store


def _reset_store() -> None:
    global _store
    _store = None


__all__ = ["RecordStore", "MemoryRecordStore", "SqlRecordStore", "get_store"]
