"""Secret Rotation Engine.

Owns every write to secrets and rotation logs. A rotation generates and
validates a candidate outside any transaction, then commits the new value and
opens the grace window for the old one in a single row-locked update.
Previous values are retired by claiming them under the row lock first and
calling the provider afterwards, so two cleanup paths racing on one row
discard a given value at most once.
"""
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable, Optional, Tuple

from uuid6 import uuid7

from keyrotor.domain.clock import Clock, utcnow
from keyrotor.domain.events import (
    EventBus,
    SecretRotated,
    SecretRotating,
    SecretRotationFailed,
)
from keyrotor.domain.interfaces import (
    CleanupTask,
    RotationLogStore,
    Scheduler,
    SecretStore,
)
from keyrotor.domain.models import (
    RotationLogEntry,
    RotationMetadata,
    RotationStatus,
    Secret,
    validate_key,
)
from keyrotor.domain.recipes import DiscardableRecipe, Recipe, RecipeRegistry, SecretRotator
from keyrotor.errors import (
    VALIDATION_FAILED_REASON,
    KeyrotorError,
    ProviderDiscardError,
    RecipeGenerationError,
    RecipeValidationError,
    RollbackError,
)
from keyrotor.settings import Settings, get_settings

if TYPE_CHECKING:
    from keyrotor.domain.cleanup import GracePeriodReaper

logger = logging.getLogger(__name__)

_CURRENT = object()


@dataclass
class CommitOutcome:
    """Result of the in-transaction half of a commit."""
    secret: Secret
    previous_value: Optional[str]
    expires_at: Optional[datetime]
    displaced_value: Optional[str]
    provider_cleanup: bool
    discard_displaced: bool


class RotationEngine:
    """Orchestrates generate -> validate -> commit -> schedule cleanup."""

    def __init__(
        self,
        secrets: SecretStore,
        logs: RotationLogStore,
        scheduler: Scheduler,
        registry: Optional[RecipeRegistry] = None,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        source: str = "api",
        triggered_by: str = "api",
    ):
        self.secrets = secrets
        self.logs = logs
        self.scheduler = scheduler
        self.registry = registry or RecipeRegistry()
        self.events = events or EventBus()
        self.settings = settings or get_settings()
        self.clock = clock
        self.source = source
        self.triggered_by = triggered_by

    # -- rotation -----------------------------------------------------------

    def rotate_using_recipe(
        self,
        key: str,
        recipe: Recipe,
        grace_period_minutes: Optional[int] = None,
        provider_cleanup: Optional[bool] = None,
    ) -> RotationLogEntry:
        """Rotate ``key`` with a freshly generated value.

        Generation errors and validation rejection leave the secret's value
        untouched and are returned as a FAILED log entry, never raised.
        """
        validate_key(key)
        grace = self._grace(grace_period_minutes)
        if provider_cleanup is None:
            provider_cleanup = self._provider_cleanup_for(key)

        correlation_id = str(uuid7())
        started = time.perf_counter()

        secret = self.secrets.first_or_create(key, default_value="")
        self.events.publish(SecretRotating(secret))

        # Providers may cap live credentials; retire the pending one before minting.
        # The rotation row is appended afterwards so it stays the latest entry.
        secret = self.release_previous_value(secret, provider_cleanup)
        log = self.logs.append(RotationLogEntry(
            secret_id=secret.id,  # type: ignore[arg-type]
            status=RotationStatus.PENDING,
            rotated_at=self.clock(),
            metadata=self._metadata(correlation_id, started, recipe.name),
        ))

        try:
            new_value = recipe.generate()
        except Exception as e:
            error = RecipeGenerationError(str(e) or type(e).__name__)
            return self._fail(secret, log, correlation_id, started, recipe, error)

        try:
            is_valid = bool(recipe.validate(new_value))
        except Exception as e:
            error = RecipeValidationError(str(e) or VALIDATION_FAILED_REASON)
            return self._fail(secret, log, correlation_id, started, recipe, error)

        if not is_valid:
            return self._fail(secret, log, correlation_id, started, recipe, RecipeValidationError())

        outcome = self.commit_value(key, new_value, grace, provider_cleanup=provider_cleanup)

        log.advance(RotationStatus.SUCCESS, self.clock())
        log.metadata = self._metadata(correlation_id, started, recipe.name)
        self.logs.save(log)

        logger.info(
            f"Rotated secret {key} (recipe={recipe.name}, grace={grace}m, "
            f"correlation_id={correlation_id})"
        )
        self.events.publish(SecretRotated(outcome.secret, log))
        return log

    def rotate(
        self,
        secret: Secret,
        rotator: SecretRotator,
        new_value: str,
        grace_period_minutes: Optional[int] = None,
    ) -> RotationLogEntry:
        """Caller-driven rotation: ``rotator`` changes the provider, we commit ``new_value``."""
        grace = self._grace(grace_period_minutes)
        correlation_id = str(uuid7())
        started = time.perf_counter()
        secret = self.secrets.first_or_create(secret.key, default_value="")
        secret = self.release_previous_value(secret, self._provider_cleanup_for(secret.key))
        log = self.logs.append(RotationLogEntry(
            secret_id=secret.id,  # type: ignore[arg-type]
            status=RotationStatus.PENDING,
            rotated_at=self.clock(),
            metadata=self._metadata(correlation_id, started, type(rotator).__name__),
        ))
        try:
            rotator.rotate()
        except Exception as e:
            log.mark_failed(self.clock(), str(e) or type(e).__name__)
            log.metadata = self._metadata(correlation_id, started, type(rotator).__name__)
            self.logs.save(log)
            logger.error(f"External rotation of {secret.key} failed: {e}")
            return log

        self.commit_value(secret.key, new_value, grace)
        log.advance(RotationStatus.SUCCESS, self.clock())
        log.metadata = self._metadata(correlation_id, started, type(rotator).__name__)
        return self.logs.save(log)

    def set_value(self, key: str, value: str) -> Secret:
        """Write the current value directly; grace-period fields are left alone."""
        validate_key(key)
        with self.secrets.transaction():
            secret = self.secrets.find_for_update(key) or Secret(key=key)
            secret.value = value
            return self.secrets.save(secret)

    # -- commit primitive ---------------------------------------------------

    def apply_commit(
        self,
        key: str,
        new_value: str,
        grace_period_minutes: int,
        provider_cleanup: bool = True,
        previous_value=_CURRENT,
        discard_displaced: Optional[bool] = None,
    ) -> CommitOutcome:
        """Set the new value and open the grace window, under the row lock.

        ``previous_value`` defaults to the secret's current value; pass an
        explicit value (or None) when the caller knows what is being retired.
        A previous value still pending from an earlier rotation is displaced
        here and handed back for provider discard after the transaction.
        """
        now = self.clock()
        with self.secrets.transaction():
            secret = self.secrets.find_for_update(key) or Secret(key=key)
            displaced = secret.previous_value
            secret.clear_grace_period()

            old = (secret.value or None) if previous_value is _CURRENT else previous_value
            secret.value = new_value
            expires_at = None
            if old:
                expires_at = now + timedelta(minutes=grace_period_minutes)
                secret.start_grace_period(old, expires_at)
            secret = self.secrets.save(secret)

        return CommitOutcome(
            secret=secret,
            previous_value=old or None,
            expires_at=expires_at,
            displaced_value=displaced,
            provider_cleanup=provider_cleanup,
            discard_displaced=provider_cleanup if discard_displaced is None else discard_displaced,
        )

    def complete_commit(self, outcome: CommitOutcome) -> CommitOutcome:
        """Post-commit side effects: discard the displaced value, schedule cleanup."""
        if outcome.displaced_value is not None and outcome.discard_displaced:
            self.discard_from_provider(outcome.secret, outcome.displaced_value)

        if outcome.previous_value and outcome.expires_at is not None:
            task = CleanupTask(
                key=outcome.secret.key,
                value=outcome.previous_value,
                provider_cleanup=outcome.provider_cleanup,
            )
            try:
                self.scheduler.schedule(task, outcome.expires_at)
            except Exception as e:
                # The reaper sweep picks the expired grace period up instead.
                logger.error(f"Failed to schedule grace period cleanup for {task.key}: {e}", exc_info=True)
        return outcome

    def commit_value(
        self,
        key: str,
        new_value: str,
        grace_period_minutes: Optional[int] = None,
        provider_cleanup: bool = True,
        previous_value=_CURRENT,
        discard_displaced: Optional[bool] = None,
    ) -> CommitOutcome:
        outcome = self.apply_commit(
            key,
            new_value,
            self._grace(grace_period_minutes),
            provider_cleanup=provider_cleanup,
            previous_value=previous_value,
            discard_displaced=discard_displaced,
        )
        return self.complete_commit(outcome)

    # -- retiring previous values -------------------------------------------

    def claim_previous_value(
        self, key: str, expected: Optional[str] = None, expired_before: Optional[datetime] = None
    ) -> Tuple[Optional[Secret], Optional[str]]:
        """Clear the grace-period fields under the row lock and return the old value.

        Returns ``(secret, None)`` when there is nothing to claim, when the
        pending value is not ``expected`` (a later rotation superseded it) or
        when it has not expired before ``expired_before``.
        """
        with self.secrets.transaction():
            secret = self.secrets.find_for_update(key)
            if secret is None or secret.previous_value is None:
                return secret, None
            if expected is not None and secret.previous_value != expected:
                return secret, None
            if expired_before is not None and (
                secret.previous_value_expires_at is None
                or secret.previous_value_expires_at >= expired_before
            ):
                return secret, None
            claimed = secret.previous_value
            secret.clear_grace_period()
            secret = self.secrets.save(secret)
        return secret, claimed

    def release_previous_value(
        self,
        secret: Secret,
        provider_cleanup: bool = True,
        source: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> Secret:
        """Retire a pending previous value now: discard (optional) and clear."""
        if secret.previous_value is None:
            return secret
        current, claimed = self.claim_previous_value(secret.key)
        if claimed is not None and provider_cleanup and current is not None:
            self.discard_from_provider(current, claimed, source=source, triggered_by=triggered_by)
        return current or secret

    def discard_from_provider(
        self,
        secret: Secret,
        value: str,
        source: Optional[str] = None,
        triggered_by: Optional[str] = None,
    ) -> Optional[bool]:
        """Ask the key's recipe to delete ``value`` at the provider.

        Returns None when no discardable recipe is registered for the key,
        otherwise whether the discard succeeded. Failures are logged as a
        DISCARD_FAILED row and never raised.
        """
        recipe = self.registry.resolve_for_key(secret.key)
        if not isinstance(recipe, DiscardableRecipe):
            return None

        started = time.perf_counter()
        correlation_id = str(uuid7())
        try:
            recipe.discard(value)
        except Exception as e:
            error = ProviderDiscardError(str(e) or type(e).__name__)
            logger.warning(f"Discard of previous value for {secret.key} failed: {error}")
            self._log_discard(secret, RotationStatus.DISCARD_FAILED, correlation_id, started,
                              recipe, source, triggered_by, error)
            return False

        self._log_discard(secret, RotationStatus.DISCARD_SUCCESS, correlation_id, started,
                          recipe, source, triggered_by)
        return True

    # -- rollback & verification --------------------------------------------

    def rollback_value(self, secret: Secret) -> Optional[RotationLogEntry]:
        """Restore the previous value locally. None when there is nothing to restore."""
        started = time.perf_counter()
        with self.secrets.transaction():
            restored = self._restore_previous(secret)
            if restored is None:
                return None
            now = self.clock()
            log = self.logs.append(RotationLogEntry(
                secret_id=restored.id,  # type: ignore[arg-type]
                status=RotationStatus.ROLLED_BACK,
                rotated_at=now,
                rolled_back_at=now,
                metadata=self._metadata(str(uuid7()), started, None, operation="rollback"),
            ))
        logger.info(f"Rolled back secret {secret.key} to its previous value")
        return log

    def rollback(self, secret: Secret, rotator: SecretRotator) -> bool:
        """Roll back at the provider, then locally.

        The latest successful rotation row is marked ROLLED_BACK, or FAILED
        with a ``Rollback failed:`` reason when the provider call raises.
        """
        current = self.secrets.find(secret.key)
        if current is None or current.previous_value is None:
            return False

        started = time.perf_counter()
        latest = self.logs.latest(
            current.id,  # type: ignore[arg-type]
            statuses=(RotationStatus.SUCCESS, RotationStatus.VERIFIED),
        )

        try:
            rotator.rollback()
        except Exception as e:
            error = RollbackError(str(e) or type(e).__name__)
            logger.error(f"Rollback of {secret.key} failed: {e}")
            if latest:
                latest.mark_failed(self.clock(), str(error))
                self.logs.save(latest)
            else:
                self._append_outcome(current, RotationStatus.FAILED, started, str(error), error)
            return False

        with self.secrets.transaction():
            restored = self._restore_previous(current)
            if restored is None:
                return False
            if latest:
                latest.mark_rolled_back(self.clock())
                self.logs.save(latest)
            else:
                self._append_outcome(restored, RotationStatus.ROLLED_BACK, started)
        return True

    def verify(
        self,
        secret: Secret,
        verifier: Callable[[str], bool],
        rotator: Optional[SecretRotator] = None,
    ) -> bool:
        """Check the current value; on failure roll back if a rotator is supplied."""
        current = self.secrets.find(secret.key) or secret
        try:
            is_valid = bool(verifier(current.value))
        except Exception as e:
            logger.warning(f"Verifier raised for {secret.key}: {e}")
            is_valid = False

        if is_valid:
            if current.id is not None:
                latest = self.logs.latest(current.id, statuses=(RotationStatus.SUCCESS,))
                if latest:
                    latest.mark_verified(self.clock())
                    self.logs.save(latest)
            return True

        if rotator is not None and current.previous_value is not None:
            self.rollback(current, rotator)
        return False

    # -- reaper primitives --------------------------------------------------

    def clear_expired_grace_periods(self) -> int:
        return self._reaper().sweep()

    def clear_expired_grace_period(self, key: str) -> int:
        return self._reaper().sweep(key=key)

    # -- internals ----------------------------------------------------------

    def _reaper(self) -> "GracePeriodReaper":
        from keyrotor.domain.cleanup import GracePeriodReaper
        return GracePeriodReaper(self)

    def _restore_previous(self, secret: Secret) -> Optional[Secret]:
        with self.secrets.transaction():
            current = self.secrets.find_for_update(secret.key)
            if current is None or current.previous_value is None:
                return None
            current.value = current.previous_value
            current.clear_grace_period()
            current = self.secrets.save(current)
        secret.value = current.value
        secret.clear_grace_period()
        return current

    def _fail(
        self,
        secret: Secret,
        log: RotationLogEntry,
        correlation_id: str,
        started: float,
        recipe: Recipe,
        error: KeyrotorError,
    ) -> RotationLogEntry:
        reason = str(error)
        log.mark_failed(self.clock(), reason)
        log.metadata = self._metadata(correlation_id, started, recipe.name, error=error)
        self.logs.save(log)
        logger.warning(f"Rotation of {secret.key} failed ({error.code}): {reason}")
        self.events.publish(SecretRotationFailed(secret, reason, log))
        return log

    def _append_outcome(
        self,
        secret: Secret,
        status: RotationStatus,
        started: float,
        error_message: Optional[str] = None,
        error: Optional[KeyrotorError] = None,
    ) -> RotationLogEntry:
        now = self.clock()
        return self.logs.append(RotationLogEntry(
            secret_id=secret.id,  # type: ignore[arg-type]
            status=status,
            rotated_at=now,
            rolled_back_at=now if status is RotationStatus.ROLLED_BACK else None,
            error_message=error_message,
            metadata=self._metadata(str(uuid7()), started, None, operation="rollback", error=error),
        ))

    def _log_discard(
        self,
        secret: Secret,
        status: RotationStatus,
        correlation_id: str,
        started: float,
        recipe: Recipe,
        source: Optional[str],
        triggered_by: Optional[str],
        error: Optional[KeyrotorError] = None,
    ) -> RotationLogEntry:
        return self.logs.append(RotationLogEntry(
            secret_id=secret.id,  # type: ignore[arg-type]
            status=status,
            rotated_at=self.clock(),
            error_message=str(error) if error else None,
            metadata=self._metadata(
                correlation_id, started, recipe.name, operation="discard",
                source=source, triggered_by=triggered_by, error=error,
            ),
        ))

    def _metadata(
        self,
        correlation_id: str,
        started: float,
        recipe: Optional[str],
        operation: str = "rotate",
        source: Optional[str] = None,
        triggered_by: Optional[str] = None,
        error: Optional[KeyrotorError] = None,
    ) -> dict:
        return RotationMetadata(
            correlation_id=correlation_id,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
            source=source or self.source,
            triggered_by=triggered_by or self.triggered_by,
            recipe=recipe,
            operation=operation,
            error_code=error.code if error else None,
        ).model_dump()

    def _grace(self, minutes: Optional[int]) -> int:
        if minutes is None:
            return self.settings.grace_period_minutes
        if minutes < 0:
            raise ValueError("grace_period_minutes must be >= 0")
        return minutes

    def _provider_cleanup_for(self, key: str) -> bool:
        name = self.registry.name_for_key(key)
        return self.registry.provider_cleanup(name) if name else True
