"""Grace period cleanup.

Two paths retire a previous value once its grace window closes: the deferred
``CleanupTask`` scheduled at rotation time, and the reaper sweep that catches
whatever the scheduler lost. Both claim the value under the secret's row lock
before touching the provider, so either order (or both at once) is safe.
"""
import logging
from typing import Optional

from keyrotor.domain.interfaces import CleanupTask
from keyrotor.domain.rotation import RotationEngine

logger = logging.getLogger(__name__)


class GracePeriodCleanup:
    """Executes one deferred cleanup task."""

    SOURCE = "queue"

    def __init__(self, engine: RotationEngine):
        self.engine = engine

    def run(self, task: CleanupTask) -> bool:
        """Retire ``task.value`` if it is still the secret's previous value.

        Returns False (and does nothing) when the secret is gone or a later
        rotation already replaced the value this task was scheduled for.
        """
        secret, claimed = self.engine.claim_previous_value(task.key, expected=task.value)
        if secret is None:
            logger.info(f"Cleanup skipped: secret {task.key} no longer exists")
            return False
        if claimed is None:
            logger.debug(f"Cleanup skipped for {task.key}: previous value superseded")
            return False

        if task.provider_cleanup:
            self.engine.discard_from_provider(
                secret, claimed, source=self.SOURCE, triggered_by="scheduled"
            )
        logger.info(f"Cleared grace period for {task.key}")
        return True


class GracePeriodReaper:
    """Batch sweep over every secret whose grace period has expired."""

    SOURCE = "reaper"

    def __init__(self, engine: RotationEngine):
        self.engine = engine

    def sweep(self, key: Optional[str] = None) -> int:
        now = self.engine.clock()
        cleared = 0
        for candidate in self.engine.secrets.find_expired(now, key=key):
            # Re-checked under the lock; a cleanup task may have got there first.
            secret, claimed = self.engine.claim_previous_value(
                candidate.key, expected=candidate.previous_value, expired_before=now
            )
            if secret is None or claimed is None:
                continue
            if self._provider_cleanup(secret.key):
                self.engine.discard_from_provider(
                    secret, claimed, source=self.SOURCE, triggered_by="scheduled"
                )
            cleared += 1

        if cleared:
            logger.info(f"Reaper cleared {cleared} expired grace period(s)")
        return cleared

    def _provider_cleanup(self, key: str) -> bool:
        registry = self.engine.registry
        name = registry.name_for_key(key)
        return registry.provider_cleanup(name) if name else True
