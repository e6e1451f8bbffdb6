"""
bastion-orchestrator — rate limiter and resource quotas

File: src/bastion_orchestrator/security/rate_limiter.py
Last updated: 2026-10-19

Purpose
- Per-principal, per-limit-type counters inside fixed time windows, scaled by the
  principal's subscription tier.

Functional requirements
- The first consumption in a window sets ``window_expiry = now + window``; later
  consumptions never move it.
- Consumption is denied when ``count + amount > limit * tier_multiplier``; a denied
  consumption leaves the counter untouched.
- Check-and-increment is atomic per key (lock in memory, ``BEGIN IMMEDIATE`` in SQLite).
- Every allowed consumption appends one usage log entry when a sink is configured.
- Per-principal custom limits replace the base limit and window; the tier still scales
  the limit.

Non-functional requirements
- No shared state across principals; counters are keyed by principal id.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from bastion_orchestrator.constants import TIER_MULTIPLIERS
from bastion_orchestrator.domain.ids import generate_usage_id
from bastion_orchestrator.domain.models import (
    WILDCARD_RESOURCE_ID,
    LimitType,
    Principal,
    RateLimitCounter,
    RateLimitPolicy,
    ResourceQuota,
    UsageLogEntry,
    UsageMetrics,
    utc_now,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping


class CounterStore(Protocol):
    def get(
        self, principal_id: str, limit_type: LimitType, resource_id: str = WILDCARD_RESOURCE_ID
    ) -> RateLimitCounter | None: ...

    def check_and_consume(
        self,
        principal_id: str,
        limit_type: LimitType,
        resource_id: str,
        *,
        amount: int,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> tuple[bool, RateLimitCounter]: ...

    def reset(self, principal_id: str, limit_type: LimitType | None = None) -> int: ...

    def get_custom_limit(
        self, principal_id: str, limit_type: LimitType
    ) -> RateLimitPolicy | None: ...

    def set_custom_limit(
        self, principal_id: str, limit_type: LimitType, policy: RateLimitPolicy
    ) -> None: ...


class UsageLogSink(Protocol):
    def add(self, entry: UsageLogEntry) -> UsageLogEntry: ...


DEFAULT_RATE_LIMITS: Final[Mapping[LimitType, RateLimitPolicy]] = {
    LimitType.API_CALLS: RateLimitPolicy(limit=1000, window_seconds=3600),
    LimitType.TOOL_USAGE: RateLimitPolicy(limit=100, window_seconds=3600),
    LimitType.COMPUTE_RESOURCES: RateLimitPolicy(limit=300, window_seconds=3600),
    LimitType.STORAGE: RateLimitPolicy(limit=104_857_600, window_seconds=86_400),
    LimitType.NETWORK: RateLimitPolicy(limit=52_428_800, window_seconds=3600),
    LimitType.TOKEN_USAGE: RateLimitPolicy(limit=100_000, window_seconds=86_400),
}

# Base quota units before tier scaling.
_BASE_COMPUTE_SECONDS: Final[int] = 300
_BASE_MEMORY_MB: Final[int] = 512
_BASE_STORAGE_BYTES: Final[int] = 104_857_600
_BASE_API_CALLS: Final[int] = 1000
_BASE_TOKEN_USAGE: Final[int] = 100_000
_BASE_NETWORK_MB: Final[int] = 50


@dataclass(frozen=True, slots=True)
class QuotaReport:
    """Tier-scaled quota plus current in-window usage for one principal."""

    quota: ResourceQuota
    usage: dict[str, int]

    def to_dict(self) -> dict[str, object]:
        return {"quota": self.quota.to_dict(), "usage": dict(sorted(self.usage.items()))}


class InMemoryCounterStore:
    """Process-local counter store; one lock serializes every check-and-increment."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, LimitType, str], RateLimitCounter] = {}
        self._custom: dict[tuple[str, LimitType], RateLimitPolicy] = {}

    def get(
        self, principal_id: str, limit_type: LimitType, resource_id: str = WILDCARD_RESOURCE_ID
    ) -> RateLimitCounter | None:
        with self._lock:
            return self._counters.get((principal_id, LimitType(limit_type), resource_id))

    def check_and_consume(
        self,
        principal_id: str,
        limit_type: LimitType,
        resource_id: str,
        *,
        amount: int,
        limit: int,
        window_seconds: int,
        now: datetime,
    ) -> tuple[bool, RateLimitCounter]:
        key = (principal_id, LimitType(limit_type), resource_id)
        with self._lock:
            current = self._counters.get(key)
            if current is None or current.is_expired(now):
                current = RateLimitCounter(
                    principal_id=principal_id,
                    limit_type=key[1],
                    resource_id=resource_id,
                    count=0,
                    window_expiry=now + timedelta(seconds=window_seconds),
                )
            if current.count + amount > limit:
                return False, current
            updated = RateLimitCounter(
                principal_id=principal_id,
                limit_type=key[1],
                resource_id=resource_id,
                count=current.count + amount,
                window_expiry=current.window_expiry,
            )
            self._counters[key] = updated
            return True, updated

    def reset(self, principal_id: str, limit_type: LimitType | None = None) -> int:
        with self._lock:
            doomed = [
                key
                for key in self._counters
                if key[0] == principal_id and (limit_type is None or key[1] == limit_type)
            ]
            for key in doomed:
                del self._counters[key]
        return len(doomed)

    def get_custom_limit(self, principal_id: str, limit_type: LimitType) -> RateLimitPolicy | None:
        with self._lock:
            return self._custom.get((principal_id, LimitType(limit_type)))

    def set_custom_limit(
        self, principal_id: str, limit_type: LimitType, policy: RateLimitPolicy
    ) -> None:
        with self._lock:
            self._custom[(principal_id, LimitType(limit_type))] = policy


class RateLimiter:
    """Fixed-window rate limiter scaled by subscription tier."""

    def __init__(
        self,
        store: CounterStore,
        *,
        policies: Mapping[LimitType, RateLimitPolicy] | None = None,
        tier_multipliers: Mapping[str, int] | None = None,
        usage_log: UsageLogSink | None = None,
        clock: Callable[[], datetime] = utc_now,
        logger: Any | None = None,
    ) -> None:
        merged = dict(DEFAULT_RATE_LIMITS)
        merged.update(policies or {})
        self._policies = merged
        self._multipliers = dict(TIER_MULTIPLIERS if tier_multipliers is None else tier_multipliers)
        self._store = store
        self._usage_log = usage_log
        self._clock = clock
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        rate_limits: Mapping[str, Any],
        store: CounterStore,
        *,
        usage_log: UsageLogSink | None = None,
        logger: Any | None = None,
    ) -> RateLimiter:
        """Build a limiter from the ``rate_limits`` config section."""

        limits = rate_limits.get("limits", {})
        policies = {
            LimitType(name): RateLimitPolicy(
                limit=entry["limit"], window_seconds=entry["window_seconds"]
            )
            for name, entry in limits.items()
        }
        return cls(
            store,
            policies=policies,
            tier_multipliers=rate_limits.get("tier_multipliers"),
            usage_log=usage_log,
            logger=logger,
        )

    def multiplier_for(self, principal: Principal) -> int:
        return self._multipliers.get(principal.tier.value, 1)

    def policy_for(self, principal_id: str, limit_type: LimitType) -> RateLimitPolicy:
        kind = LimitType(limit_type)
        custom = self._store.get_custom_limit(principal_id, kind)
        return custom if custom is not None else self._policies[kind]

    def limit_for(self, principal: Principal, limit_type: LimitType) -> int:
        return self.policy_for(principal.id, limit_type).limit * self.multiplier_for(principal)

    def is_allowed(
        self,
        principal: Principal,
        limit_type: LimitType,
        resource_id: str | None = None,
        amount: int = 1,
    ) -> bool:
        """Read-only check; the answer may be stale by the time ``consume`` runs."""

        current = self._current_count(principal.id, LimitType(limit_type), resource_id)
        return current + amount <= self.limit_for(principal, limit_type)

    def consume(
        self,
        principal: Principal,
        limit_type: LimitType,
        resource_id: str | None = None,
        amount: int = 1,
    ) -> bool:
        """Atomically check and take ``amount`` units; store errors propagate."""

        if amount <= 0:
            raise ValueError("amount must be > 0")
        kind = LimitType(limit_type)
        key_resource = resource_id or WILDCARD_RESOURCE_ID
        policy = self.policy_for(principal.id, kind)
        limit = policy.limit * self.multiplier_for(principal)
        now = self._clock()

        allowed, counter = self._store.check_and_consume(
            principal.id,
            kind,
            key_resource,
            amount=amount,
            limit=limit,
            window_seconds=policy.window_seconds,
            now=now,
        )
        if not allowed:
            self._logger.warning(
                "rate_limit_exceeded",
                principal_id=principal.id,
                limit_type=kind.value,
                resource_id=key_resource,
                current=counter.count,
                limit=limit,
            )
            return False

        self._logger.debug(
            "rate_limit_consumed",
            principal_id=principal.id,
            limit_type=kind.value,
            resource_id=key_resource,
            current=counter.count,
            limit=limit,
        )
        if self._usage_log is not None:
            self._record_usage(principal.id, kind, key_resource, amount, now)
        return True

    def get_usage_metrics(
        self, principal: Principal, limit_type: LimitType, resource_id: str | None = None
    ) -> UsageMetrics:
        kind = LimitType(limit_type)
        limit = self.limit_for(principal, kind)
        counter = self._active_counter(principal.id, kind, resource_id)
        current = 0 if counter is None else counter.count
        return UsageMetrics(
            current=current,
            limit=limit,
            remaining=max(0, limit - current),
            reset_at=None if counter is None else counter.window_expiry,
        )

    def get_user_quota(self, principal: Principal) -> QuotaReport:
        multiplier = self.multiplier_for(principal)
        quota = ResourceQuota(
            principal_id=principal.id,
            compute_time_seconds=_BASE_COMPUTE_SECONDS * multiplier,
            memory_mb=_BASE_MEMORY_MB * multiplier,
            storage_bytes=_BASE_STORAGE_BYTES * multiplier,
            api_calls=_BASE_API_CALLS * multiplier,
            token_usage=_BASE_TOKEN_USAGE * multiplier,
            network_mb=_BASE_NETWORK_MB * multiplier,
        )
        usage = {
            "api_calls": self._current_count(principal.id, LimitType.API_CALLS, None),
            "compute_time_seconds": self._current_count(
                principal.id, LimitType.COMPUTE_RESOURCES, None
            ),
            "storage_bytes": self._current_count(principal.id, LimitType.STORAGE, None),
            "token_usage": self._current_count(principal.id, LimitType.TOKEN_USAGE, None),
            "network_mb": self._current_count(principal.id, LimitType.NETWORK, None),
        }
        return QuotaReport(quota=quota, usage=usage)

    def reset_usage(self, principal_id: str, limit_type: LimitType | None = None) -> int:
        removed = self._store.reset(
            principal_id, None if limit_type is None else LimitType(limit_type)
        )
        self._logger.info(
            "rate_limit_reset",
            principal_id=principal_id,
            limit_type=None if limit_type is None else LimitType(limit_type).value,
            removed=removed,
        )
        return removed

    def set_custom_limit(
        self, principal_id: str, limit_type: LimitType, limit: int, window_seconds: int
    ) -> RateLimitPolicy:
        policy = RateLimitPolicy(limit=limit, window_seconds=window_seconds)
        self._store.set_custom_limit(principal_id, LimitType(limit_type), policy)
        self._logger.info(
            "rate_limit_custom_set",
            principal_id=principal_id,
            limit_type=LimitType(limit_type).value,
            limit=limit,
            window_seconds=window_seconds,
        )
        return policy

    def _active_counter(
        self, principal_id: str, limit_type: LimitType, resource_id: str | None
    ) -> RateLimitCounter | None:
        counter = self._store.get(principal_id, limit_type, resource_id or WILDCARD_RESOURCE_ID)
        if counter is None or counter.is_expired(self._clock()):
            return None
        return counter

    def _current_count(
        self, principal_id: str, limit_type: LimitType, resource_id: str | None
    ) -> int:
        counter = self._active_counter(principal_id, limit_type, resource_id)
        return 0 if counter is None else counter.count

    def _record_usage(
        self,
        principal_id: str,
        limit_type: LimitType,
        resource_id: str,
        amount: int,
        now: datetime,
    ) -> None:
        assert self._usage_log is not None
        entry = UsageLogEntry(
            id=generate_usage_id(),
            principal_id=principal_id,
            limit_type=limit_type,
            resource_id=resource_id,
            amount=amount,
            timestamp=now,
        )
        try:
            self._usage_log.add(entry)
        except Exception as exc:  # noqa: BLE001 - the consumption already committed
            self._logger.warning(
                "usage_log_write_failed",
                principal_id=principal_id,
                limit_type=limit_type.value,
                error=str(exc),
            )


__all__ = [
    "DEFAULT_RATE_LIMITS",
    "CounterStore",
    "InMemoryCounterStore",
    "QuotaReport",
    "RateLimiter",
    "UsageLogSink",
]
