"""Rotation Domain Models.

Entities are plain dataclasses holding decrypted values. Encryption happens
only at the storage boundary (see ``keyrotor.domain.codec``).
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field

from keyrotor.errors import (
    GracePeriodInvariantError,
    InvalidSecretKeyError,
    InvalidTransitionError,
)

KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*$")
MAX_KEY_LENGTH = 255


def validate_key(key: str) -> str:
    """Reject malformed secret keys (hierarchical, dot-separated)."""
    if not isinstance(key, str) or not key:
        raise InvalidSecretKeyError("Secret key must be a non-empty string")
    if len(key) > MAX_KEY_LENGTH:
        raise InvalidSecretKeyError(f"Secret key exceeds {MAX_KEY_LENGTH} characters")
    if not KEY_PATTERN.match(key):
        raise InvalidSecretKeyError(f"Invalid secret key: {key!r}")
    return key


class RotationStatus(IntEnum):
    """Status of a rotation log entry. Values are persisted as small integers."""
    PENDING = 0
    SUCCESS = 1
    FAILED = 2
    VERIFIED = 3
    ROLLED_BACK = 4
    DISCARD_SUCCESS = 5
    DISCARD_FAILED = 6

    @property
    def label(self) -> str:
        return _ROTATION_LABELS[self]

    @property
    def is_success(self) -> bool:
        # VERIFIED refines SUCCESS; it is not a separate success path.
        return self in (RotationStatus.SUCCESS, RotationStatus.VERIFIED)

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS.get(self)


_ROTATION_LABELS = {
    RotationStatus.PENDING: "Pending",
    RotationStatus.SUCCESS: "Success",
    RotationStatus.FAILED: "Failed",
    RotationStatus.VERIFIED: "Verified",
    RotationStatus.ROLLED_BACK: "Rolled Back",
    RotationStatus.DISCARD_SUCCESS: "Discard Success",
    RotationStatus.DISCARD_FAILED: "Discard Failed",
}

ALLOWED_TRANSITIONS: Dict[RotationStatus, FrozenSet[RotationStatus]] = {
    RotationStatus.PENDING: frozenset({RotationStatus.SUCCESS, RotationStatus.FAILED}),
    RotationStatus.SUCCESS: frozenset({
        RotationStatus.VERIFIED,
        RotationStatus.ROLLED_BACK,
        RotationStatus.FAILED,
    }),
    RotationStatus.VERIFIED: frozenset({RotationStatus.ROLLED_BACK, RotationStatus.FAILED}),
}


class PoolKeyStatus(IntEnum):
    QUEUED = 0
    ACTIVE = 1
    USED = 2
    EXPIRED = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @property
    def is_available(self) -> bool:
        return self is PoolKeyStatus.QUEUED


class RotationMetadata(BaseModel):
    """Structured metadata stored with every rotation log row."""
    correlation_id: str
    duration_ms: float = Field(ge=0)
    source: str
    triggered_by: str
    recipe: Optional[str] = None
    operation: str = "rotate"
    error_code: Optional[str] = None


@dataclass
class Secret:
    key: str
    value: str = ""
    previous_value: Optional[str] = None
    previous_value_expires_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def has_previous_value(self) -> bool:
        return self.previous_value is not None

    def has_active_grace_period(self, now: datetime) -> bool:
        return (
            self.previous_value is not None
            and self.previous_value_expires_at is not None
            and self.previous_value_expires_at > now
        )

    def valid_values(self, now: datetime) -> List[str]:
        """Current value plus the previous one while its grace window is open."""
        values = [self.value]
        if self.has_active_grace_period(now):
            values.append(self.previous_value)  # type: ignore[arg-type]
        return values

    def start_grace_period(self, previous_value: str, expires_at: datetime) -> None:
        self.previous_value = previous_value
        self.previous_value_expires_at = expires_at

    def clear_grace_period(self) -> None:
        self.previous_value = None
        self.previous_value_expires_at = None

    def check_invariant(self) -> None:
        if (self.previous_value is None) != (self.previous_value_expires_at is None):
            raise GracePeriodInvariantError(
                f"Secret [{self.key}] must carry previous_value and its expiry together"
            )


@dataclass
class RotationLogEntry:
    secret_id: int
    status: RotationStatus
    rotated_at: datetime
    error_message: Optional[str] = None
    verified_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None

    @property
    def is_success(self) -> bool:
        return self.status.is_success

    def advance(self, status: RotationStatus, now: datetime, error_message: Optional[str] = None) -> None:
        """Move this entry forward through the rotation state machine."""
        if status not in ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(
                f"Cannot move rotation log {self.id} from {self.status.label} to {status.label}"
            )
        self.status = status
        if status is RotationStatus.VERIFIED:
            self.verified_at = now
        elif status is RotationStatus.ROLLED_BACK:
            self.rolled_back_at = now
        if error_message is not None or status is RotationStatus.ROLLED_BACK:
            self.error_message = error_message

    def mark_verified(self, now: datetime) -> None:
        self.advance(RotationStatus.VERIFIED, now)

    def mark_rolled_back(self, now: datetime, reason: Optional[str] = None) -> None:
        self.advance(RotationStatus.ROLLED_BACK, now, reason)

    def mark_failed(self, now: datetime, reason: str) -> None:
        self.advance(RotationStatus.FAILED, now, reason)


@dataclass
class PoolKey:
    secret_key: str
    value: str
    position: int
    status: PoolKeyStatus = PoolKeyStatus.QUEUED
    activated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def is_queued(self) -> bool:
        return self.status is PoolKeyStatus.QUEUED

    @property
    def is_active(self) -> bool:
        return self.status is PoolKeyStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        """Pool TTL check; unrelated to the secret's grace period."""
        return self.expires_at is not None and self.expires_at <= now

    def activate(self, now: datetime) -> None:
        self.status = PoolKeyStatus.ACTIVE
        self.activated_at = now

    def mark_used(self) -> None:
        self.status = PoolKeyStatus.USED

    def mark_expired(self) -> None:
        self.status = PoolKeyStatus.EXPIRED


class PoolStatus(BaseModel):
    secret_key: str
    total: int = 0
    queued: int = 0
    active: int = 0
    used: int = 0
    expired: int = 0
