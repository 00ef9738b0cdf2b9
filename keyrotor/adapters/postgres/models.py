"""SQLAlchemy Models for secrets, rotation logs and key pools."""
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    text,
)
from sqlalchemy.orm import DeclarativeBase, relationship

from keyrotor.domain.clock import utcnow


class Base(DeclarativeBase):
    pass


class SecretRow(Base):
    """Current and grace-period values of a secret (sealed)."""
    __tablename__ = "secrets"
    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(255), nullable=False, unique=True)
    value = Column(Text, nullable=False)
    previous_value = Column(Text, nullable=True)
    previous_value_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    rotation_logs = relationship(
        "RotationLogRow",
        back_populates="secret",
        cascade="all, delete-orphan",
    )

    __table_args__ = (Index("idx_secrets_previous_expiry", "previous_value_expires_at"),)


class RotationLogRow(Base):
    """Audit row per rotation, discard or rollback attempt."""
    __tablename__ = "rotation_logs"
    id = Column(Integer, primary_key=True, autoincrement=True)
    secret_id = Column(Integer, ForeignKey("secrets.id", ondelete="CASCADE"), nullable=False)
    status = Column(SmallInteger, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    rotated_at = Column(DateTime, nullable=False)
    verified_at = Column(DateTime, nullable=True)
    rolled_back_at = Column(DateTime, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    secret = relationship("SecretRow", back_populates="rotation_logs")

    __table_args__ = (
        Index("idx_rotation_logs_secret_status", "secret_id", "status"),
        Index("idx_rotation_logs_rotated_at", "rotated_at"),
    )


class PoolKeyRow(Base):
    """Pre-provisioned replacement value (sealed). Not a foreign key to secrets."""
    __tablename__ = "key_pools"
    id = Column(Integer, primary_key=True, autoincrement=True)
    secret_key = Column(String(255), nullable=False, index=True)
    value = Column(Text, nullable=False)
    position = Column(Integer, nullable=False, default=0)
    status = Column(SmallInteger, nullable=False, default=0)
    activated_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_key_pools_secret_status", "secret_key", "status"),
        Index("idx_key_pools_secret_position", "secret_key", "position"),
        # At most one ACTIVE (status=1) key per pool
        Index(
            "uq_key_pools_single_active",
            "secret_key",
            unique=True,
            postgresql_where=text("status = 1"),
            sqlite_where=text("status = 1"),
        ),
    )


class PoolCursorRow(Base):
    """High-water mark for pool positions; survives clear/prune."""
    __tablename__ = "key_pool_cursors"
    secret_key = Column(String(255), primary_key=True)
    next_position = Column(Integer, nullable=False, default=0)
