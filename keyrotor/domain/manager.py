"""Secret Manager.

Single entry point applications use to read secrets, rotate them and inspect
their audit trail. Thin facade over the stores and engines.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from cachetools import TTLCache
from pydantic import BaseModel

from keyrotor.domain.events import PoolKeyActivated, SecretRotated
from keyrotor.domain.interfaces import PoolKeyStore, RotationLogStore, SecretStore
from keyrotor.domain.log_query import LogQueryService
from keyrotor.domain.models import RotationLogEntry, RotationStatus, Secret, validate_key
from keyrotor.domain.pool import KeyPool
from keyrotor.domain.recipes import InitializableRecipe, Recipe
from keyrotor.domain.rotation import RotationEngine
from keyrotor.errors import RecipeGenerationError, SecretNotFoundError, UnknownRecipeError

logger = logging.getLogger(__name__)


class SecretStatus(BaseModel):
    key: str
    state: str
    last_rotation: str
    rotated_at: Optional[datetime] = None


class SecretManager:
    def __init__(
        self,
        secrets: SecretStore,
        logs: RotationLogStore,
        pool_keys: PoolKeyStore,
        engine: RotationEngine,
        queries: Optional[LogQueryService] = None,
        cache: Optional[TTLCache] = None,
    ):
        self.secrets = secrets
        self.logs = logs
        self.pool_keys = pool_keys
        self.engine = engine
        self.queries = queries or LogQueryService(
            logs, secrets, settings=engine.settings, clock=engine.clock
        )
        settings = engine.settings
        if cache is None and settings.cache_enabled:
            cache = TTLCache(maxsize=settings.cache_max_size, ttl=settings.cache_ttl_seconds)
        self.cache = cache
        if cache is not None:
            # Pool rotations write through the engine, not this facade.
            engine.events.subscribe(SecretRotated, lambda e: self.forget(e.secret.key))
            engine.events.subscribe(PoolKeyActivated, lambda e: self.forget(e.secret_key))

    @property
    def registry(self):
        return self.engine.registry

    # -- values -------------------------------------------------------------

    def get(self, key: str) -> Optional[str]:
        secret = self.find(key)
        return secret.value if secret else None

    def set(self, key: str, value: str) -> Secret:
        self.forget(key)
        return self.engine.set_value(key, value)

    def has(self, key: str) -> bool:
        return self.find(key) is not None

    def delete(self, key: str) -> bool:
        self.forget(key)
        deleted = self.secrets.delete(key)
        if deleted:
            logger.info(f"Deleted secret {key}")
        return deleted

    def keys(self) -> List[str]:
        return self.secrets.keys()

    def find(self, key: str) -> Optional[Secret]:
        if self.cache is None:
            return self.secrets.find(key)
        secret = self.cache.get(key)
        if secret is None:
            secret = self.secrets.find(key)
            if secret is not None:
                self.cache[key] = secret
        return secret

    def require(self, key: str) -> Secret:
        secret = self.find(key)
        if secret is None:
            raise SecretNotFoundError(key)
        return secret

    def forget(self, key: str) -> bool:
        """Drop one cached secret. True if it was cached."""
        if self.cache is None:
            return False
        return self.cache.pop(key, None) is not None

    def flush_cache(self) -> None:
        if self.cache is not None:
            self.cache.clear()

    # -- grace period -------------------------------------------------------

    def valid_values(self, key: str) -> List[str]:
        secret = self.find(key)
        if secret is None:
            return []
        return secret.valid_values(self.engine.clock())

    def is_in_grace_period(self, key: str) -> bool:
        secret = self.find(key)
        return bool(secret and secret.has_active_grace_period(self.engine.clock()))

    def grace_period_expires_at(self, key: str) -> Optional[datetime]:
        secret = self.find(key)
        return secret.previous_value_expires_at if secret else None

    def previous_value(self, key: str) -> Optional[str]:
        """Previous value, only while its grace window is still open."""
        secret = self.find(key)
        if secret is None or not secret.has_active_grace_period(self.engine.clock()):
            return None
        return secret.previous_value

    def clear_expired(self, key: Optional[str] = None) -> int:
        if key is not None:
            self.forget(key)
            return self.engine.clear_expired_grace_period(key)
        self.flush_cache()
        return self.engine.clear_expired_grace_periods()

    # -- rotation -----------------------------------------------------------

    def rotate(
        self,
        key: str,
        recipe: Recipe,
        grace_period_minutes: Optional[int] = None,
        provider_cleanup: Optional[bool] = None,
    ) -> RotationLogEntry:
        # Pre-cleanup changes the row even when the rotation itself fails.
        self.forget(key)
        return self.engine.rotate_using_recipe(
            key, recipe, grace_period_minutes=grace_period_minutes, provider_cleanup=provider_cleanup
        )

    def rotate_with(
        self,
        key: str,
        recipe_name: Optional[str] = None,
        grace_period_minutes: Optional[int] = None,
    ) -> RotationLogEntry:
        """Rotate using a registered recipe (by name, or derived from the key)."""
        name = recipe_name or self.registry.name_for_key(key)
        if not name:
            raise UnknownRecipeError(key)
        recipe = self.registry.require(name)
        self.forget(key)
        return self.engine.rotate_using_recipe(
            key,
            recipe,
            grace_period_minutes=grace_period_minutes,
            provider_cleanup=self.registry.provider_cleanup(name),
        )

    def rollback(self, key: str) -> Optional[RotationLogEntry]:
        """Local rollback to the previous value. None when there is none."""
        secret = self.require(key)
        self.forget(key)
        return self.engine.rollback_value(secret)

    def initialize(
        self,
        key: str,
        recipe_name: Optional[str] = None,
        value: Optional[str] = None,
    ) -> Secret:
        """Bootstrap the first value of ``key``.

        Uses the recipe's ``init()`` when it supports it, otherwise ``value``.
        """
        validate_key(key)
        name = recipe_name or self.registry.name_for_key(key)
        recipe = self.registry.resolve(name) if name else None
        if recipe_name and recipe is None:
            raise UnknownRecipeError(recipe_name)

        if isinstance(recipe, InitializableRecipe):
            try:
                value = recipe.init()
            except Exception as e:
                raise RecipeGenerationError(str(e) or type(e).__name__) from e

        if not value:
            raise ValueError("No value provided")
        self.forget(key)
        secret = self.engine.set_value(key, value)
        logger.info(f"Initialized secret {key}")
        return secret

    # -- audit --------------------------------------------------------------

    def last_log(self, key: str) -> Optional[RotationLogEntry]:
        secret = self.secrets.find(key)
        if secret is None or secret.id is None:
            return None
        return self.logs.latest(secret.id)

    def logs_for(self, key: str) -> List[RotationLogEntry]:
        secret = self.secrets.find(key)
        if secret is None or secret.id is None:
            return []
        return self.logs.for_secret(secret.id)

    def logs_by_status(self, status: RotationStatus) -> List[RotationLogEntry]:
        return self.queries.by_status(status)

    def recent_failures(self, hours: int = 24) -> List[RotationLogEntry]:
        return self.queries.recent_failures(hours)

    def logs_between(self, start: datetime, end: datetime) -> List[RotationLogEntry]:
        return self.queries.between(start, end)

    def log_stats(self, key: Optional[str] = None) -> Dict[str, Any]:
        return self.queries.stats(key)

    def prune_logs(self, days: Optional[int] = None, dry_run: bool = False) -> int:
        return self.queries.prune(days=days, dry_run=dry_run)

    # -- pools & overview ---------------------------------------------------

    def pool(self, key: str) -> KeyPool:
        return KeyPool(key, self.pool_keys, self.engine)

    def status(self) -> List[SecretStatus]:
        now = self.engine.clock()
        rows = []
        for key in self.secrets.keys():
            secret = self.secrets.find(key)
            last = self.logs.latest(secret.id) if secret and secret.id is not None else None
            in_grace = bool(secret and secret.has_active_grace_period(now))
            rows.append(SecretStatus(
                key=key,
                state="Grace Period" if in_grace else "Active",
                last_rotation=last.status.label if last else "Never",
                rotated_at=last.rotated_at if last else None,
            ))
        return rows
