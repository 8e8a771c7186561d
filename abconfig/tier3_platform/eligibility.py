"""
abconfig.tier3_platform.eligibility
─────────────────────────────────────
Who a condition set may apply to.

- IP allow-list: addresses on a condition's list are exempted from it
  (never targeted). Applies to every scope.
- User list: a non-empty list restricts the condition to those user ids.
  Applies where a user is known (request and session scope).
- Admin immunity: admins skip an experiment entirely unless it is
  admin-enabled. Applies to request and session scope only.

All evaluators go through the same functions with a scope policy.
"""
from __future__ import annotations

import ipaddress
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import TYPE_CHECKING

from abconfig.tier1_runtime.host import Requester

if TYPE_CHECKING:
    from abconfig.tier3_platform.models import Condition, Experiment


@dataclass(frozen=True)
class EligibilityPolicy:
    admin_immunity: bool
    user_targeting: bool


REQUEST_POLICY = EligibilityPolicy(admin_immunity=True, user_targeting=True)
SESSION_POLICY = EligibilityPolicy(admin_immunity=True, user_targeting=True)
DEVICE_POLICY = EligibilityPolicy(admin_immunity=False, user_targeting=False)


# ── Address lists ────────────────────────────────────────────────────────────

def _entries(ip_list: str) -> Iterator[str]:
    for line in ip_list.splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        for entry in line.split(","):
            entry = entry.strip()
            if entry:
                yield entry


def _in_range(address: ipaddress.IPv4Address | ipaddress.IPv6Address, entry: str) -> bool:
    start_text, end_text = (part.strip() for part in entry.split("-", 1))
    start = ipaddress.ip_address(start_text)
    if "." not in end_text and ":" not in end_text:
        # 10.1.2.3-40 → last octet range
        end_text = start_text.rsplit(".", 1)[0] + "." + end_text
    end = ipaddress.ip_address(end_text)
    if not (address.version == start.version == end.version):
        return False
    return start <= address <= end


def _entry_matches(
    address: ipaddress.IPv4Address | ipaddress.IPv6Address, text: str, entry: str
) -> bool:
    try:
        if "/" in entry:
            return address in ipaddress.ip_network(entry, strict=False)
        if "-" in entry:
            return _in_range(address, entry)
        return address == ipaddress.ip_address(entry)
    except ValueError:
        pass
    # Dotted prefix: "10.1." or "10.1" matches 10.1.x.x but not 10.10.x.x
    groups = entry.rstrip(".").split(".")
    if not all(g.isdigit() for g in groups):
        return False
    return text.split(".")[: len(groups)] == groups


def address_in_list(address: str | None, ip_list: str | None) -> bool:
    """True if ``address`` is covered by any entry of ``ip_list``."""
    if not address or not ip_list:
        return False
    try:
        parsed = ipaddress.ip_address(address.strip())
    except ValueError:
        return False
    return any(_entry_matches(parsed, address.strip(), entry) for entry in _entries(ip_list))


# ── Experiment / condition checks ────────────────────────────────────────────

def experiment_applies(experiment: Experiment, requester: Requester, policy: EligibilityPolicy) -> bool:
    if policy.admin_immunity and requester.is_admin and not experiment.admin_enabled:
        return False
    return True


def condition_eligible(condition: Condition, requester: Requester, policy: EligibilityPolicy) -> bool:
    if policy.user_targeting and condition.user_ids and requester.user_id not in condition.user_ids:
        return False
    return not address_in_list(requester.remote_address, condition.ip_allow_list)


def eligible_conditions(
    conditions: Iterable[Condition], requester: Requester, policy: EligibilityPolicy
) -> list[Condition]:
    """Eligible conditions, stored order preserved."""
    return [c for c in conditions if condition_eligible(c, requester, policy)]


__all__ = [
    "EligibilityPolicy", "REQUEST_POLICY", "SESSION_POLICY", "DEVICE_POLICY",
    "address_in_list", "experiment_applies", "condition_eligible", "eligible_conditions",
]
