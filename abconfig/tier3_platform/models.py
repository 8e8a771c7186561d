"""
abconfig.tier3_platform.models
────────────────────────────────
Experiments and their condition sets, as served to the evaluators.

The evaluators read a dataset: an ordered mapping of shortname → Experiment,
each experiment carrying its conditions in stored order. That order matters,
since bucketing walks conditions first to last.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class Scope(str, Enum):
    REQUEST = "request"
    SESSION = "session"
    DEVICE = "device"
    # Early scopes are never bucketed; a condset only fires when forced
    BEFORESESSION = "beforesession"
    AFTERCONFIG = "afterconfig"


@dataclass
class Condition:
    id: int
    experiment_id: int
    condset: str
    ip_allow_list: str = ""
    commands: list[str] = field(default_factory=list)
    weight: int = 0
    user_ids: list[int] = field(default_factory=list)


@dataclass
class Experiment:
    id: int
    name: str
    shortname: str
    scope: str
    enabled: bool = False
    admin_enabled: bool = False
    numeric_offset: int = 0
    conditions: list[Condition] = field(default_factory=list)

    def condition(self, condset: str) -> Condition | None:
        for condition in self.conditions:
            if condition.condset == condset:
                return condition
        return None


Dataset = dict[str, Experiment]


__all__ = ["Scope", "Condition", "Experiment", "Dataset"]
