"""SQLAlchemy-backed stores for secrets, rotation logs and key pools.

Values are sealed by the ValueCodec on the way in and opened on the way out;
nothing above this module sees ciphertext.
"""
import logging
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.orm import Session

from keyrotor.adapters.postgres.models import (
    PoolCursorRow,
    PoolKeyRow,
    RotationLogRow,
    SecretRow,
)
from keyrotor.adapters.postgres.session import transaction
from keyrotor.domain.codec import ValueCodec, pool_context, secret_context
from keyrotor.domain.interfaces import PoolKeyStore, RotationLogStore, SecretStore
from keyrotor.domain.models import (
    PoolKey,
    PoolKeyStatus,
    RotationLogEntry,
    RotationStatus,
    Secret,
)

logger = logging.getLogger(__name__)


class PostgresSecretStore(SecretStore):
    """Secret rows with sealed current and previous values."""

    def __init__(self, db: Session, codec: ValueCodec):
        self._db = db
        self._codec = codec

    def transaction(self) -> AbstractContextManager:
        return transaction(self._db)

    def find(self, key: str) -> Optional[Secret]:
        row = self._db.query(SecretRow).filter(SecretRow.key == key).first()
        return self._to_entity(row) if row else None

    def find_for_update(self, key: str) -> Optional[Secret]:
        row = (
            self._db.query(SecretRow)
            .filter(SecretRow.key == key)
            .with_for_update()
            .populate_existing()
            .first()
        )
        return self._to_entity(row) if row else None

    def first_or_create(self, key: str, default_value: str = "") -> Secret:
        with self.transaction():
            existing = self.find_for_update(key)
            if existing:
                return existing
            return self.save(Secret(key=key, value=default_value))

    def save(self, secret: Secret) -> Secret:
        secret.check_invariant()
        context = secret_context(secret.key)
        with self.transaction():
            row = None
            if secret.id is not None:
                row = self._db.get(SecretRow, secret.id)
            if row is None:
                row = self._db.query(SecretRow).filter(SecretRow.key == secret.key).first()
            if row is None:
                row = SecretRow(key=secret.key)
                self._db.add(row)
            row.value = self._codec.encode(secret.value, context)
            row.previous_value = self._codec.encode_optional(secret.previous_value, context)
            row.previous_value_expires_at = secret.previous_value_expires_at
            self._db.flush()
        secret.id = row.id
        secret.created_at = row.created_at
        secret.updated_at = row.updated_at
        return secret

    def delete(self, key: str) -> bool:
        with self.transaction():
            row = self._db.query(SecretRow).filter(SecretRow.key == key).first()
            if not row:
                return False
            self._db.delete(row)
            self._db.flush()
        return True

    def keys(self) -> List[str]:
        return [k for (k,) in self._db.query(SecretRow.key).order_by(SecretRow.key).all()]

    def find_expired(self, now: datetime, key: Optional[str] = None) -> List[Secret]:
        query = self._db.query(SecretRow).filter(
            SecretRow.previous_value.isnot(None),
            SecretRow.previous_value_expires_at.isnot(None),
            SecretRow.previous_value_expires_at < now,
        )
        if key is not None:
            query = query.filter(SecretRow.key == key)
        return [self._to_entity(row) for row in query.order_by(SecretRow.key).all()]

    def _to_entity(self, row: SecretRow) -> Secret:
        context = secret_context(row.key)
        return Secret(
            id=row.id,
            key=row.key,
            value=self._codec.decode(row.value, context),
            previous_value=self._codec.decode_optional(row.previous_value, context),
            previous_value_expires_at=row.previous_value_expires_at,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class PostgresRotationLogStore(RotationLogStore):
    """Append-only rotation audit trail."""

    def __init__(self, db: Session):
        self._db = db

    def transaction(self) -> AbstractContextManager:
        return transaction(self._db)

    def append(self, entry: RotationLogEntry) -> RotationLogEntry:
        if entry.id is not None:
            raise ValueError(f"Rotation log {entry.id} is already persisted")
        with self.transaction():
            row = RotationLogRow()
            self._apply(row, entry)
            row.secret_id = entry.secret_id
            self._db.add(row)
            self._db.flush()
        entry.id = row.id
        return entry

    def save(self, entry: RotationLogEntry) -> RotationLogEntry:
        with self.transaction():
            row = self._db.get(RotationLogRow, entry.id)
            if row is None:
                raise ValueError(f"Rotation log {entry.id} does not exist")
            self._apply(row, entry)
            self._db.flush()
        return entry

    def latest(
        self, secret_id: int, statuses: Optional[Sequence[RotationStatus]] = None
    ) -> Optional[RotationLogEntry]:
        query = self._db.query(RotationLogRow).filter(RotationLogRow.secret_id == secret_id)
        if statuses:
            query = query.filter(RotationLogRow.status.in_([int(s) for s in statuses]))
        row = query.order_by(RotationLogRow.rotated_at.desc(), RotationLogRow.id.desc()).first()
        return self._to_entity(row) if row else None

    def for_secret(self, secret_id: int) -> List[RotationLogEntry]:
        rows = (
            self._db.query(RotationLogRow)
            .filter(RotationLogRow.secret_id == secret_id)
            .order_by(RotationLogRow.rotated_at.desc(), RotationLogRow.id.desc())
            .all()
        )
        return [self._to_entity(r) for r in rows]

    def by_status(self, status: RotationStatus) -> List[RotationLogEntry]:
        rows = (
            self._db.query(RotationLogRow)
            .filter(RotationLogRow.status == int(status))
            .order_by(RotationLogRow.rotated_at.desc(), RotationLogRow.id.desc())
            .all()
        )
        return [self._to_entity(r) for r in rows]

    def failed_since(self, since: datetime) -> List[RotationLogEntry]:
        rows = (
            self._db.query(RotationLogRow)
            .filter(
                RotationLogRow.status == int(RotationStatus.FAILED),
                RotationLogRow.rotated_at >= since,
            )
            .order_by(RotationLogRow.rotated_at.desc(), RotationLogRow.id.desc())
            .all()
        )
        return [self._to_entity(r) for r in rows]

    def between(self, start: datetime, end: datetime) -> List[RotationLogEntry]:
        rows = (
            self._db.query(RotationLogRow)
            .filter(RotationLogRow.rotated_at.between(start, end))
            .order_by(RotationLogRow.rotated_at.desc(), RotationLogRow.id.desc())
            .all()
        )
        return [self._to_entity(r) for r in rows]

    def status_counts(self, secret_id: Optional[int] = None) -> Dict[int, int]:
        query = self._db.query(RotationLogRow.status, func.count(RotationLogRow.id))
        if secret_id is not None:
            query = query.filter(RotationLogRow.secret_id == secret_id)
        return {int(status): count for status, count in query.group_by(RotationLogRow.status).all()}

    def count_before(self, cutoff: datetime) -> int:
        return self._db.query(RotationLogRow).filter(RotationLogRow.rotated_at < cutoff).count()

    def delete_before(self, cutoff: datetime) -> int:
        with self.transaction():
            deleted = (
                self._db.query(RotationLogRow)
                .filter(RotationLogRow.rotated_at < cutoff)
                .delete(synchronize_session=False)
            )
        return deleted

    @staticmethod
    def _apply(row: RotationLogRow, entry: RotationLogEntry) -> None:
        row.status = int(entry.status)
        row.error_message = entry.error_message
        row.rotated_at = entry.rotated_at
        row.verified_at = entry.verified_at
        row.rolled_back_at = entry.rolled_back_at
        row.metadata_ = dict(entry.metadata or {})

    @staticmethod
    def _to_entity(row: RotationLogRow) -> RotationLogEntry:
        return RotationLogEntry(
            id=row.id,
            secret_id=row.secret_id,
            status=RotationStatus(row.status),
            rotated_at=row.rotated_at,
            error_message=row.error_message,
            verified_at=row.verified_at,
            rolled_back_at=row.rolled_back_at,
            metadata=dict(row.metadata_ or {}),
        )


class PostgresPoolKeyStore(PoolKeyStore):
    """Key pool rows with sealed values."""

    def __init__(self, db: Session, codec: ValueCodec):
        self._db = db
        self._codec = codec

    def transaction(self) -> AbstractContextManager:
        return transaction(self._db)

    def append(
        self, secret_key: str, values: Iterable[str], expires_at: Optional[datetime] = None
    ) -> List[PoolKey]:
        context = pool_context(secret_key)
        added: List[PoolKey] = []
        with self.transaction():
            cursor = self._cursor(secret_key)
            for value in values:
                row = PoolKeyRow(
                    secret_key=secret_key,
                    value=self._codec.encode(value, context),
                    position=cursor.next_position,
                    status=int(PoolKeyStatus.QUEUED),
                    expires_at=expires_at,
                )
                cursor.next_position += 1
                self._db.add(row)
                self._db.flush()
                added.append(self._to_entity(row, plaintext=value))
        return added

    def active(self, secret_key: str, for_update: bool = False) -> Optional[PoolKey]:
        query = self._db.query(PoolKeyRow).filter(
            PoolKeyRow.secret_key == secret_key,
            PoolKeyRow.status == int(PoolKeyStatus.ACTIVE),
        )
        if for_update:
            query = query.with_for_update()
        row = query.first()
        return self._to_entity(row) if row else None

    def next_queued(self, secret_key: str, for_update: bool = False) -> Optional[PoolKey]:
        query = self._queued_query(secret_key)
        if for_update:
            query = query.with_for_update()
        row = query.first()
        return self._to_entity(row) if row else None

    def queued(self, secret_key: str) -> List[PoolKey]:
        return [self._to_entity(r) for r in self._queued_query(secret_key).all()]

    def save(self, pool_key: PoolKey) -> PoolKey:
        with self.transaction():
            row = self._db.get(PoolKeyRow, pool_key.id)
            if row is None:
                raise ValueError(f"Pool key {pool_key.id} does not exist")
            row.status = int(pool_key.status)
            row.activated_at = pool_key.activated_at
            row.expires_at = pool_key.expires_at
            self._db.flush()
        return pool_key

    def count(self, secret_key: str, status: Optional[PoolKeyStatus] = None) -> int:
        query = self._db.query(PoolKeyRow).filter(PoolKeyRow.secret_key == secret_key)
        if status is not None:
            query = query.filter(PoolKeyRow.status == int(status))
        return query.count()

    def status_counts(self, secret_key: str) -> Dict[PoolKeyStatus, int]:
        rows = (
            self._db.query(PoolKeyRow.status, func.count(PoolKeyRow.id))
            .filter(PoolKeyRow.secret_key == secret_key)
            .group_by(PoolKeyRow.status)
            .all()
        )
        counts = {status: 0 for status in PoolKeyStatus}
        for status, count in rows:
            counts[PoolKeyStatus(status)] = count
        return counts

    def delete(self, secret_key: str, statuses: Optional[Sequence[PoolKeyStatus]] = None) -> int:
        with self.transaction():
            query = self._db.query(PoolKeyRow).filter(PoolKeyRow.secret_key == secret_key)
            if statuses:
                query = query.filter(PoolKeyRow.status.in_([int(s) for s in statuses]))
            deleted = query.delete(synchronize_session=False)
        return deleted

    def _queued_query(self, secret_key: str):
        return (
            self._db.query(PoolKeyRow)
            .filter(
                PoolKeyRow.secret_key == secret_key,
                PoolKeyRow.status == int(PoolKeyStatus.QUEUED),
            )
            .order_by(PoolKeyRow.position)
        )

    def _cursor(self, secret_key: str) -> PoolCursorRow:
        cursor = (
            self._db.query(PoolCursorRow)
            .filter(PoolCursorRow.secret_key == secret_key)
            .with_for_update()
            .first()
        )
        if cursor is None:
            # Seed from existing rows (pools created before the cursor table)
            highest = (
                self._db.query(func.max(PoolKeyRow.position))
                .filter(PoolKeyRow.secret_key == secret_key)
                .scalar()
            )
            cursor = PoolCursorRow(
                secret_key=secret_key,
                next_position=0 if highest is None else highest + 1,
            )
            self._db.add(cursor)
            self._db.flush()
        return cursor

    def _to_entity(self, row: PoolKeyRow, plaintext: Optional[str] = None) -> PoolKey:
        return PoolKey(
            id=row.id,
            secret_key=row.secret_key,
            value=plaintext if plaintext is not None else self._codec.decode(row.value, pool_context(row.secret_key)),
            position=row.position,
            status=PoolKeyStatus(row.status),
            activated_at=row.activated_at,
            expires_at=row.expires_at,
            created_at=row.created_at,
        )
