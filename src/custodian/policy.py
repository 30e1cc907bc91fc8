"""
Sponsorship policies and abuse controls.

A policy says who may be sponsored, for which scope, for which call
selectors and how many times. ``check_and_reserve`` is the only write path
into the usage counters and rolling rate windows: it evaluates every rule
and, when all pass, increments both inside one store transaction so two
concurrent requests for the same beneficiary cannot both take the last slot.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Optional

from .signing import normalize_address, normalize_selector
from .storage import KeyValueStore

logger = logging.getLogger(__name__)


POLICIES = "policies"
USAGE = "usage"
RATE_WINDOWS = "rate_windows"

DEFAULT_RATE_WINDOW_SECONDS = 3600
DEFAULT_HOURLY_CAP = 20
DEFAULT_MAX_GAS_PER_OP = 500_000


class PolicyErrorCode(str, Enum):
    POLICY_NOT_FOUND = "POLICY_NOT_FOUND"
    POLICY_EXPIRED = "POLICY_EXPIRED"
    SCOPE_MISMATCH = "SCOPE_MISMATCH"
    SELECTOR_DISALLOWED = "SELECTOR_DISALLOWED"
    RATE_LIMIT = "RATE_LIMIT"
    HOURLY_LIMIT = "HOURLY_LIMIT"


@dataclass
class SponsorPolicy:
    """Sponsorship rules for one beneficiary within one scope."""

    scope_id: str
    beneficiary: str
    max_ops_per_scope: int
    expires_at: int
    allowed_selectors: list[str] = field(default_factory=list)
    allowed_targets: list[str] = field(default_factory=list)
    max_gas_per_op: int = DEFAULT_MAX_GAS_PER_OP

    def __post_init__(self):
        if self.max_ops_per_scope < 0:
            raise ValueError("max_ops_per_scope must be >= 0")
        self.beneficiary = normalize_address(self.beneficiary)
        self.allowed_selectors = [normalize_selector(s) for s in self.allowed_selectors]
        self.allowed_targets = [normalize_address(t) for t in self.allowed_targets]

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> SponsorPolicy:
        return cls(**d)


@dataclass
class ReservationResult:
    """Outcome of a reservation attempt."""

    allowed: bool
    reason: str
    code: Optional[PolicyErrorCode] = None
    ops_used: int = 0

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "code": self.code.value if self.code else None,
            "ops_used": self.ops_used,
        }


def _beneficiary_key(beneficiary: str) -> str:
    return normalize_address(beneficiary).lower()


def _usage_key(scope_id: str, beneficiary: str) -> str:
    return f"{scope_id}:{_beneficiary_key(beneficiary)}"


class PolicyStore:
    """Policy registry plus per-scope usage counters and hourly rate windows."""

    def __init__(
        self,
        store: KeyValueStore,
        hourly_cap: int = DEFAULT_HOURLY_CAP,
        window_seconds: int = DEFAULT_RATE_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.hourly_cap = hourly_cap
        self.window_seconds = window_seconds
        self.clock = clock

    def register_policy(self, policy: SponsorPolicy) -> None:
        """Store or overwrite the beneficiary's policy and zero its usage."""
        key = _beneficiary_key(policy.beneficiary)
        with self.store.transaction():
            self.store.put(POLICIES, key, policy.to_dict())
            self.store.put(USAGE, _usage_key(policy.scope_id, key), {"count": 0})
        logger.info(
            "Sponsor policy registered: scope=%s beneficiary=%s max_ops=%d",
            policy.scope_id,
            policy.beneficiary,
            policy.max_ops_per_scope,
        )

    def get_policy(self, beneficiary: str) -> Optional[SponsorPolicy]:
        raw = self.store.get(POLICIES, _beneficiary_key(beneficiary))
        return SponsorPolicy.from_dict(raw) if raw else None

    def ops_used(self, scope_id: str, beneficiary: str) -> int:
        raw = self.store.get(USAGE, _usage_key(scope_id, beneficiary))
        return int(raw["count"]) if raw else 0

    def recent_issuances(self, beneficiary: str) -> list[float]:
        raw = self.store.get(RATE_WINDOWS, _beneficiary_key(beneficiary))
        stamps = raw["stamps"] if raw else []
        now = self.clock()
        return [t for t in stamps if now - t < self.window_seconds]

    def check_and_reserve(
        self,
        scope_id: str,
        beneficiary: str,
        call_selector: str = "0x",
    ) -> ReservationResult:
        """Evaluate every rule in order and reserve one operation on success."""
        key = _beneficiary_key(beneficiary)
        selector = call_selector.strip().lower()

        with self.store.transaction():
            now = self.clock()
            raw_policy = self.store.get(POLICIES, key)
            if raw_policy is None:
                return self._deny(
                    PolicyErrorCode.POLICY_NOT_FOUND,
                    f"No sponsorship policy for {beneficiary}",
                )
            policy = SponsorPolicy.from_dict(raw_policy)

            if policy.is_expired(now):
                return self._deny(
                    PolicyErrorCode.POLICY_EXPIRED,
                    f"Policy expired at {time.strftime('%Y-%m-%dT%H:%M:%SZ', time.gmtime(policy.expires_at))}",
                )

            if policy.scope_id != scope_id:
                return self._deny(
                    PolicyErrorCode.SCOPE_MISMATCH,
                    f"Policy is for scope {policy.scope_id}, got {scope_id}",
                )

            if policy.allowed_selectors and selector not in policy.allowed_selectors:
                return self._deny(
                    PolicyErrorCode.SELECTOR_DISALLOWED,
                    f"Selector {selector} not in allowlist",
                )

            usage_key = _usage_key(scope_id, key)
            usage = self.store.get(USAGE, usage_key) or {"count": 0}
            used = int(usage["count"])
            if used >= policy.max_ops_per_scope:
                return self._deny(
                    PolicyErrorCode.RATE_LIMIT,
                    f"Exceeded {policy.max_ops_per_scope} ops for scope {scope_id}",
                    ops_used=used,
                )

            window = self.store.get(RATE_WINDOWS, key) or {"stamps": []}
            stamps = [t for t in window["stamps"] if now - t < self.window_seconds]
            if len(stamps) >= self.hourly_cap:
                return self._deny(
                    PolicyErrorCode.HOURLY_LIMIT,
                    f"Sender exceeded {self.hourly_cap} ops per {self.window_seconds}s",
                    ops_used=used,
                )

            stamps.append(now)
            self.store.put(USAGE, usage_key, {"count": used + 1})
            self.store.put(RATE_WINDOWS, key, {"stamps": stamps})

        return ReservationResult(allowed=True, reason="Reserved", ops_used=used + 1)

    def _deny(self, code: PolicyErrorCode, reason: str, ops_used: int = 0) -> ReservationResult:
        logger.info("Sponsorship denied (%s): %s", code.value, reason)
        return ReservationResult(allowed=False, reason=reason, code=code, ops_used=ops_used)
