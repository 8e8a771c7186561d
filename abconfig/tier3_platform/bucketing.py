"""
abconfig.tier3_platform.bucketing
───────────────────────────────────
Weighted condition selection. Walks conditions in stored order, keeping a
running total of weights, and returns the first one whose slice contains
the number drawn for this requester.

Two ways to get the number:
- uniform random in [1, 100] for request and session experiments;
  slices are (prev, prev + weight]
- a stable hash of (address, user agent) rotated by the experiment's
  offset, in [0, 100), for device experiments; slices are [prev, prev + weight)

Weights need not sum to 100. Whatever is left over is the chance that no
condition fires.
"""
from __future__ import annotations

import hashlib
import random
from collections.abc import Iterable
from typing import Protocol, TypeVar


class Weighted(Protocol):
    weight: int


W = TypeVar("W", bound=Weighted)


def draw_uniform(rng: random.Random | None = None) -> int:
    """Uniform draw in [1, 100]."""
    return (rng or random).randint(1, 100)


def select_uniform(conditions: Iterable[W], num: int) -> W | None:
    prev_total = 0
    for condition in conditions:
        if prev_total < num <= prev_total + condition.weight:
            return condition
        prev_total += condition.weight
    return None


def device_base_number(remote_address: str, user_agent: str) -> int:
    """md5(address + user agent), leading 32 bits, mod 100."""
    digest = hashlib.md5((remote_address + user_agent).encode("utf-8")).hexdigest()
    return int(digest[:8], 16) % 100


def device_number(remote_address: str, user_agent: str, numeric_offset: int | None = 0) -> int:
    """Per-experiment device number in [0, 100); the offset decorrelates experiments."""
    return (device_base_number(remote_address, user_agent) + (numeric_offset or 0)) % 100


def select_stable(conditions: Iterable[W], num: int) -> W | None:
    prev_total = 0
    for condition in conditions:
        if prev_total <= num < prev_total + condition.weight:
            return condition
        prev_total += condition.weight
    return None


__all__ = [
    "draw_uniform", "select_uniform", "device_base_number", "device_number", "select_stable",
]
