"""Key Pool Engine.

A pool holds pre-provisioned replacement values for one secret key. Exactly
one pool key is ACTIVE at a time and mirrors the secret's current value;
``rotate_next`` promotes the earliest QUEUED key and hands the old one a
grace period through the rotation engine's commit primitive.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from keyrotor.domain.clock import Clock
from keyrotor.domain.events import EventBus, PoolKeyActivated, PoolLow
from keyrotor.domain.interfaces import PoolKeyStore
from keyrotor.domain.models import PoolKey, PoolKeyStatus, PoolStatus, validate_key
from keyrotor.domain.rotation import CommitOutcome, RotationEngine
from keyrotor.settings import Settings

logger = logging.getLogger(__name__)

Validator = Callable[[str], bool]


class KeyPool:
    def __init__(
        self,
        secret_key: str,
        pool_keys: PoolKeyStore,
        engine: RotationEngine,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        validator: Optional[Validator] = None,
    ):
        self.secret_key = validate_key(secret_key)
        self.pool_keys = pool_keys
        self.engine = engine
        self.events = events or engine.events
        self.settings = settings or engine.settings
        self.clock = clock or engine.clock
        self.validator = validator

    def with_validator(self, validator: Validator) -> "KeyPool":
        """Reject queued keys that fail ``validator`` when they come up for activation."""
        self.validator = validator
        return self

    # -- queries ------------------------------------------------------------

    def count(self) -> int:
        return self.pool_keys.count(self.secret_key)

    def remaining(self) -> int:
        return self.pool_keys.count(self.secret_key, PoolKeyStatus.QUEUED)

    def has_active_key(self) -> bool:
        return self.active_key() is not None

    def active_key(self) -> Optional[PoolKey]:
        return self.pool_keys.active(self.secret_key)

    def value(self) -> Optional[str]:
        active = self.active_key()
        return active.value if active else None

    def queued(self) -> List[PoolKey]:
        return self.pool_keys.queued(self.secret_key)

    def status(self) -> PoolStatus:
        counts = self.pool_keys.status_counts(self.secret_key)
        return PoolStatus(
            secret_key=self.secret_key,
            total=sum(counts.values()),
            queued=counts[PoolKeyStatus.QUEUED],
            active=counts[PoolKeyStatus.ACTIVE],
            used=counts[PoolKeyStatus.USED],
            expired=counts[PoolKeyStatus.EXPIRED],
        )

    # -- mutations ----------------------------------------------------------

    def add(self, values: Iterable[str], expires_at: Optional[datetime] = None) -> int:
        """Queue ``values`` in order. The first one goes live if nothing is active."""
        values = [v for v in values if v]
        if not values:
            return 0

        activated = None
        with self.pool_keys.transaction():
            added = self.pool_keys.append(self.secret_key, values, expires_at=expires_at)
            if self.pool_keys.active(self.secret_key, for_update=True) is None:
                activated = self._activate_first()

        logger.info(f"Added {len(added)} key(s) to pool {self.secret_key}")
        if activated:
            self.events.publish(PoolKeyActivated(self.secret_key, activated))
        return len(added)

    def activate_next(self) -> Optional[PoolKey]:
        """Activate the earliest queued key when the pool has no active key."""
        with self.pool_keys.transaction():
            if self.pool_keys.active(self.secret_key, for_update=True) is not None:
                return None
            activated = self._activate_first()
        if activated:
            self.events.publish(PoolKeyActivated(self.secret_key, activated))
        return activated

    def rotate_next(self, grace_period_minutes: Optional[int] = None) -> Optional[PoolKey]:
        """Promote the next valid queued key; the old active key enters its grace period.

        Runs as one transaction. Candidates that fail the validator or whose
        pool TTL has passed are marked EXPIRED and skipped. Returns None when
        no usable key is left.
        """
        grace = self.settings.grace_period_minutes if grace_period_minutes is None else grace_period_minutes
        if grace < 0:
            raise ValueError("grace_period_minutes must be >= 0")
        now = self.clock()
        outcome: Optional[CommitOutcome] = None

        with self.pool_keys.transaction():
            current = self.pool_keys.active(self.secret_key, for_update=True)
            candidate = self._next_valid(now)
            if candidate is None:
                logger.warning(f"Pool {self.secret_key} is exhausted")
                return None

            if current:
                current.mark_used()
                self.pool_keys.save(current)
            candidate.activate(now)
            self.pool_keys.save(candidate)

            if self.engine.secrets.find(self.secret_key) is None:
                self.engine.set_value(self.secret_key, candidate.value)
            else:
                outcome = self.engine.apply_commit(
                    self.secret_key,
                    candidate.value,
                    grace,
                    provider_cleanup=False,
                    previous_value=current.value if current else None,
                    discard_displaced=True,
                )

        if outcome is not None:
            self.engine.complete_commit(outcome)

        logger.info(f"Pool {self.secret_key} rotated to position {candidate.position}")
        self.events.publish(PoolKeyActivated(self.secret_key, candidate))
        self._check_pool_level()
        return candidate

    def clear(self) -> int:
        """Delete every pool key for this secret key. The secret itself is untouched."""
        deleted = self.pool_keys.delete(self.secret_key)
        logger.info(f"Cleared {deleted} key(s) from pool {self.secret_key}")
        return deleted

    def prune(self) -> int:
        """Delete USED and EXPIRED keys."""
        deleted = self.pool_keys.delete(
            self.secret_key, statuses=(PoolKeyStatus.USED, PoolKeyStatus.EXPIRED)
        )
        logger.info(f"Pruned {deleted} key(s) from pool {self.secret_key}")
        return deleted

    # -- internals ----------------------------------------------------------

    def _activate_first(self) -> Optional[PoolKey]:
        candidate = self.pool_keys.next_queued(self.secret_key, for_update=True)
        if candidate is None:
            return None
        candidate.activate(self.clock())
        self.pool_keys.save(candidate)
        # Nothing to protect yet, so no grace period.
        self.engine.set_value(self.secret_key, candidate.value)
        return candidate

    def _next_valid(self, now: datetime) -> Optional[PoolKey]:
        # Each pass consumes one queued key, so an all-invalid pool terminates.
        while True:
            candidate = self.pool_keys.next_queued(self.secret_key, for_update=True)
            if candidate is None:
                return None
            if candidate.is_expired(now):
                reason = "past its expiry"
            elif not self._is_valid(candidate.value):
                reason = "rejected by validator"
            else:
                return candidate
            candidate.mark_expired()
            self.pool_keys.save(candidate)
            logger.warning(f"Skipped pool key {self.secret_key}#{candidate.position}: {reason}")

    def _is_valid(self, value: str) -> bool:
        if self.validator is None:
            return True
        try:
            return bool(self.validator(value))
        except Exception as e:
            logger.warning(f"Pool validator raised for {self.secret_key}: {e}")
            return False

    def _check_pool_level(self) -> None:
        remaining = self.remaining()
        threshold = self.settings.pool_notify_below
        if remaining <= threshold:
            logger.warning(f"Pool {self.secret_key} is low: {remaining} key(s) left (threshold {threshold})")
            self.events.publish(PoolLow(self.secret_key, remaining, threshold))
