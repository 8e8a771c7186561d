"""
abconfig.tier3_platform.experiments
─────────────────────────────────────
Experiment manager: the operator-facing repository (add / update / delete
experiments and condition sets) and the read side the evaluators use
(active experiments per scope, served from the cache).

Every write invalidates the cached dataset, whether or not it succeeded.
Missing or duplicate records are reported as a False return.
"""
from __future__ import annotations

import random
from collections.abc import Sequence

from abconfig.tier0_core.config import AbconfigSettings, get_settings
from abconfig.tier0_core.errors import ConflictError, MalformedCommandError, NotFoundError
from abconfig.tier0_core.logging import get_logger
from abconfig.tier1_runtime.validate import ConditionInput, ExperimentInput, validate_input
from abconfig.tier2_reliability.audit import log_config_change
from abconfig.tier2_reliability.cache import Cache, get_cache
from abconfig.tier3_platform.commands import Cfg, ForcedPluginSetting, normalize_commands, parse_command
from abconfig.tier3_platform.models import Condition, Dataset, Experiment, Scope
from abconfig.tier3_platform.store import RecordStore, get_store

log = get_logger(__name__)

_PRE_SESSION_SCOPES = (Scope.DEVICE, Scope.BEFORESESSION)


class ExperimentManager:
    def __init__(
        self,
        store: RecordStore | None = None,
        cache: Cache | None = None,
        settings: AbconfigSettings | None = None,
    ) -> None:
        self.store = store or get_store()
        self.cache = cache or get_cache()
        self.settings = settings or get_settings()

    # ── Experiments ──────────────────────────────────────────────────────────

    def get_experiment(self, eid: int) -> Experiment | None:
        return self.store.get_experiment(eid)

    def experiment_exists(self, shortname: str) -> bool:
        return self.store.find_experiment(shortname) is not None

    def add_experiment(self, name: str, shortname: str, scope: str) -> int | bool:
        """New experiments start disabled, with a random device offset."""
        try:
            data = validate_input(ExperimentInput, {
                "name": name,
                "shortname": shortname,
                "scope": scope,
                "numeric_offset": random.randint(0, 99),
            })
            if self.experiment_exists(shortname):
                return False
            eid = self.store.insert_experiment(
                data.name, data.shortname, data.scope,
                enabled=False, admin_enabled=False, numeric_offset=data.numeric_offset,
            )
            log.info("abconfig.experiment.added", experiment=shortname, scope=scope, experiment_id=eid)
            return eid
        except ConflictError:
            return False
        finally:
            self.invalidate()

    def update_experiment(
        self,
        prev_shortname: str,
        name: str,
        shortname: str,
        scope: str,
        enabled: bool,
        admin_enabled: bool,
        numeric_offset: int,
    ) -> bool:
        """Full replace of the experiment identified by ``prev_shortname``."""
        try:
            data = validate_input(ExperimentInput, {
                "name": name,
                "shortname": shortname,
                "scope": scope,
                "enabled": enabled,
                "admin_enabled": admin_enabled,
                "numeric_offset": numeric_offset,
            })
            existing = self.store.find_experiment(prev_shortname)
            if existing is None:
                return False
            self.store.update_experiment(
                existing.id, data.name, data.shortname, data.scope,
                data.enabled, data.admin_enabled, data.numeric_offset,
            )
            log.info("abconfig.experiment.updated", experiment=shortname, previous=prev_shortname)
            return True
        except (ConflictError, NotFoundError):
            return False
        finally:
            self.invalidate()

    def delete_experiment(self, shortname: str) -> bool:
        """Delete an experiment and all of its condition sets."""
        try:
            existing = self.store.find_experiment(shortname)
            if existing is None:
                return False
            self.store.delete_experiment(existing.id)
            log.info("abconfig.experiment.deleted", experiment=shortname)
            return True
        finally:
            self.invalidate()

    # ── Conditions ───────────────────────────────────────────────────────────

    def condition_exists(self, eid: int, condset: str) -> bool:
        return self.store.find_condition(eid, condset) is not None

    def add_condition(
        self,
        eid: int,
        condset: str,
        ip_allow_list: str,
        commands: str | Sequence[str],
        weight: int,
        users: Sequence[int] | None = None,
    ) -> int | bool:
        try:
            data = validate_input(ConditionInput, {
                "condset": condset,
                "ip_allow_list": ip_allow_list or "",
                "commands": normalize_commands(commands),
                "weight": weight,
                "user_ids": list(users or []),
            })
            if self.store.get_experiment(eid) is None:
                return False
            if self.condition_exists(eid, condset):
                return False
            cid = self.store.insert_condition(
                eid, data.condset, data.ip_allow_list, data.commands, data.weight, data.user_ids,
            )
            self._log_commands(eid, data.commands, data.weight)
            return cid
        except ConflictError:
            return False
        finally:
            self.invalidate()

    def update_condition(
        self,
        eid: int,
        prev_condset: str,
        condset: str,
        ip_allow_list: str,
        commands: str | Sequence[str],
        weight: int,
        users: Sequence[int] | None = None,
    ) -> bool:
        try:
            data = validate_input(ConditionInput, {
                "condset": condset,
                "ip_allow_list": ip_allow_list or "",
                "commands": normalize_commands(commands),
                "weight": weight,
                "user_ids": list(users or []),
            })
            existing = self.store.find_condition(eid, prev_condset)
            if existing is None:
                return False
            self.store.update_condition(
                existing.id, eid, data.condset, data.ip_allow_list,
                data.commands, data.weight, data.user_ids,
            )
            self._log_commands(eid, data.commands, data.weight)
            return True
        except (ConflictError, NotFoundError):
            return False
        finally:
            self.invalidate()

    def delete_condition(self, eid: int, condset: str) -> bool:
        try:
            if not self.condition_exists(eid, condset):
                return False
            self.store.delete_condition(eid, condset)
            return True
        finally:
            self.invalidate()

    def delete_all_conditions(self, eid: int) -> None:
        try:
            self.store.delete_conditions(eid)
        finally:
            self.invalidate()

    def get_conditions_for_experiment(self, eid: int) -> list[Condition]:
        return self.store.list_conditions(eid)

    def _log_commands(self, eid: int, commands: Sequence[str], weight: int) -> None:
        """One config-change record per setting a condition set may change."""
        experiment = self.store.get_experiment(eid)
        shortname = experiment.shortname if experiment else ""
        for raw in commands:
            try:
                command = parse_command(raw)
            except MalformedCommandError:
                continue
            if isinstance(command, Cfg):
                log_config_change(
                    command.name, command.value, f"core-experiment:{weight}", experiment=shortname,
                )
            elif isinstance(command, ForcedPluginSetting):
                log_config_change(
                    command.name, command.value, f"{command.plugin}-experiment:{weight}",
                    experiment=shortname,
                )

    # ── Dataset (read side) ──────────────────────────────────────────────────

    def invalidate(self) -> None:
        self.cache.delete(self.settings.cache_key)

    def get_experiments(self) -> Dataset:
        """All experiments with their conditions, from cache (loaded on miss)."""
        experiments = self.cache.get_or_set(
            self.settings.cache_key, self.store.load_all, self.settings.cache_ttl
        )
        return experiments or {}

    def get_active(self, scope: str) -> Dataset:
        return {
            shortname: experiment
            for shortname, experiment in self.get_experiments().items()
            if experiment.enabled and experiment.scope == scope
        }

    def get_active_request(self) -> Dataset:
        return self.get_active(Scope.REQUEST)

    def get_active_session(self) -> Dataset:
        return self.get_active(Scope.SESSION)

    def get_active_device(self) -> Dataset:
        return self.get_active(Scope.DEVICE)

    def get_active_experiments(self) -> Dataset:
        return {
            shortname: experiment
            for shortname, experiment in self.get_experiments().items()
            if experiment.enabled
        }

    def get_override_experiments(self, device: bool) -> Dataset:
        """
        Experiments a forced condset may be fired for, enabled or not:
        device and beforesession experiments before the session starts,
        the rest (afterconfig included) after config.
        """
        return {
            shortname: experiment
            for shortname, experiment in self.get_experiments().items()
            if (experiment.scope in _PRE_SESSION_SCOPES) == device
        }


__all__ = ["ExperimentManager"]
