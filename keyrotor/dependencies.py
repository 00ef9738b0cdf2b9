"""Dependency wiring: builds stores and engines around one database session."""
import logging
from functools import lru_cache
from typing import Optional

from sqlalchemy.orm import Session, sessionmaker

from keyrotor.adapters.memory_store.scheduler import MemoryScheduler
from keyrotor.adapters.postgres.session import build_session_factory
from keyrotor.adapters.postgres.stores import (
    PostgresPoolKeyStore,
    PostgresRotationLogStore,
    PostgresSecretStore,
)
from keyrotor.domain.clock import Clock, utcnow
from keyrotor.domain.codec import ValueCodec, get_kek_provider
from keyrotor.domain.events import EventBus
from keyrotor.domain.interfaces import Scheduler
from keyrotor.domain.manager import SecretManager
from keyrotor.domain.recipes import RecipeRegistry
from keyrotor.domain.rotation import RotationEngine
from keyrotor.listeners import RotationLogListener
from keyrotor.settings import Settings, get_settings

logger = logging.getLogger(__name__)

_scheduler: Optional[MemoryScheduler] = None


@lru_cache
def get_session_factory() -> sessionmaker:
    return build_session_factory(get_settings())


@lru_cache
def get_registry() -> RecipeRegistry:
    return RecipeRegistry.from_config(get_settings().recipes)


def get_scheduler() -> Scheduler:
    """Process-wide in-memory scheduler. Tasks lost on exit are picked up by the reaper."""
    global _scheduler
    if _scheduler is None:
        _scheduler = MemoryScheduler()
    return _scheduler


def get_codec(settings: Optional[Settings] = None) -> ValueCodec:
    return ValueCodec(get_kek_provider(settings or get_settings()))


def build_events(settings: Settings) -> EventBus:
    events = EventBus()
    RotationLogListener(settings).register(events)
    return events


def build_rotation_engine(
    db: Session,
    settings: Optional[Settings] = None,
    scheduler: Optional[Scheduler] = None,
    registry: Optional[RecipeRegistry] = None,
    events: Optional[EventBus] = None,
    codec: Optional[ValueCodec] = None,
    clock: Clock = utcnow,
    source: str = "api",
) -> RotationEngine:
    settings = settings or get_settings()
    codec = codec or get_codec(settings)
    return RotationEngine(
        secrets=PostgresSecretStore(db, codec),
        logs=PostgresRotationLogStore(db),
        scheduler=scheduler or get_scheduler(),
        registry=registry if registry is not None else get_registry(),
        events=events or build_events(settings),
        settings=settings,
        clock=clock,
        source=source,
        triggered_by=source,
    )


def build_manager(
    db: Session,
    settings: Optional[Settings] = None,
    scheduler: Optional[Scheduler] = None,
    registry: Optional[RecipeRegistry] = None,
    events: Optional[EventBus] = None,
    codec: Optional[ValueCodec] = None,
    clock: Clock = utcnow,
    source: str = "api",
) -> SecretManager:
    settings = settings or get_settings()
    codec = codec or get_codec(settings)
    engine = build_rotation_engine(
        db,
        settings=settings,
        scheduler=scheduler,
        registry=registry,
        events=events,
        codec=codec,
        clock=clock,
        source=source,
    )
    return SecretManager(
        secrets=engine.secrets,
        logs=engine.logs,
        pool_keys=PostgresPoolKeyStore(db, codec),
        engine=engine,
    )
