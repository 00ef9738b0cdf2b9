"""Domain interfaces for persistence stores and deferred execution."""
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from keyrotor.domain.models import (
    PoolKey,
    PoolKeyStatus,
    RotationLogEntry,
    RotationStatus,
    Secret,
)


class SecretStore(ABC):
    """Persistence for secrets. Values in and out are plaintext."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager: pass
    @abstractmethod
    def find(self, key: str) -> Optional[Secret]: pass
    @abstractmethod
    def find_for_update(self, key: str) -> Optional[Secret]: pass
    @abstractmethod
    def first_or_create(self, key: str, default_value: str = "") -> Secret: pass
    @abstractmethod
    def save(self, secret: Secret) -> Secret: pass
    @abstractmethod
    def delete(self, key: str) -> bool: pass
    @abstractmethod
    def keys(self) -> List[str]: pass
    @abstractmethod
    def find_expired(self, now: datetime, key: Optional[str] = None) -> List[Secret]: pass


class RotationLogStore(ABC):
    """Append-only audit trail. Rows are only rewritten to advance status."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager: pass
    @abstractmethod
    def append(self, entry: RotationLogEntry) -> RotationLogEntry: pass
    @abstractmethod
    def save(self, entry: RotationLogEntry) -> RotationLogEntry: pass
    @abstractmethod
    def latest(
        self, secret_id: int, statuses: Optional[Sequence[RotationStatus]] = None
    ) -> Optional[RotationLogEntry]: pass
    @abstractmethod
    def for_secret(self, secret_id: int) -> List[RotationLogEntry]: pass
    @abstractmethod
    def by_status(self, status: RotationStatus) -> List[RotationLogEntry]: pass
    @abstractmethod
    def failed_since(self, since: datetime) -> List[RotationLogEntry]: pass
    @abstractmethod
    def between(self, start: datetime, end: datetime) -> List[RotationLogEntry]: pass
    @abstractmethod
    def status_counts(self, secret_id: Optional[int] = None) -> Dict[int, int]: pass
    @abstractmethod
    def count_before(self, cutoff: datetime) -> int: pass
    @abstractmethod
    def delete_before(self, cutoff: datetime) -> int: pass


class PoolKeyStore(ABC):
    """Pre-provisioned replacement values, consumed FIFO by position."""

    @abstractmethod
    def transaction(self) -> AbstractContextManager: pass
    @abstractmethod
    def append(
        self, secret_key: str, values: Iterable[str], expires_at: Optional[datetime] = None
    ) -> List[PoolKey]: pass
    @abstractmethod
    def active(self, secret_key: str, for_update: bool = False) -> Optional[PoolKey]: pass
    @abstractmethod
    def next_queued(self, secret_key: str, for_update: bool = False) -> Optional[PoolKey]: pass
    @abstractmethod
    def queued(self, secret_key: str) -> List[PoolKey]: pass
    @abstractmethod
    def save(self, pool_key: PoolKey) -> PoolKey: pass
    @abstractmethod
    def count(self, secret_key: str, status: Optional[PoolKeyStatus] = None) -> int: pass
    @abstractmethod
    def status_counts(self, secret_key: str) -> Dict[PoolKeyStatus, int]: pass
    @abstractmethod
    def delete(
        self, secret_key: str, statuses: Optional[Sequence[PoolKeyStatus]] = None
    ) -> int: pass


class CleanupTask(BaseModel):
    """Payload of the deferred grace-period cleanup."""
    key: str = Field(..., min_length=1)
    value: str
    provider_cleanup: bool = True


class Scheduler(ABC):
    """Deferred execution facility. At-least-once delivery is enough."""

    @abstractmethod
    def schedule(self, task: CleanupTask, run_at: datetime) -> None: pass
