from datetime import datetime, timedelta
from typing import List, Optional

import pytest
from sqlalchemy.orm import sessionmaker

from keyrotor.adapters.memory_store.scheduler import MemoryScheduler
from keyrotor.adapters.postgres.models import Base
from keyrotor.adapters.postgres.session import build_engine
from keyrotor.adapters.postgres.stores import (
    PostgresPoolKeyStore,
    PostgresRotationLogStore,
    PostgresSecretStore,
)
from keyrotor.domain.codec import LocalKekProvider, ValueCodec
from keyrotor.domain.events import EventBus
from keyrotor.domain.manager import SecretManager
from keyrotor.domain.recipes import DiscardableRecipe, InitializableRecipe, Recipe, RecipeRegistry
from keyrotor.domain.rotation import RotationEngine
from keyrotor.settings import Settings

TEST_MASTER_KEY = "0f" * 32


class FakeClock:
    """Controllable naive-UTC clock."""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StubRecipe(Recipe):
    """Returns queued values and records every call."""

    def __init__(self, values=None, valid: bool = True, error: Optional[Exception] = None):
        self.values: List[str] = list(values or ["new-value"])
        self.valid = valid
        self.error = error
        self.generated: List[str] = []
        self.validated: List[str] = []

    def generate(self) -> str:
        if self.error:
            raise self.error
        value = self.values.pop(0) if len(self.values) > 1 else self.values[0]
        self.generated.append(value)
        return value

    def validate(self, value: str) -> bool:
        self.validated.append(value)
        return self.valid


class DiscardingRecipe(StubRecipe, DiscardableRecipe):
    def __init__(self, *args, discard_error: Optional[Exception] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.discard_error = discard_error
        self.discarded: List[str] = []

    def discard(self, value: str) -> None:
        self.discarded.append(value)
        if self.discard_error:
            raise self.discard_error


class BootstrapRecipe(StubRecipe, InitializableRecipe):
    def __init__(self, initial: Optional[str] = "bootstrapped", **kwargs):
        super().__init__(**kwargs)
        self.initial = initial

    def init(self) -> Optional[str]:
        return self.initial


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite:///:memory:",
        master_key=TEST_MASTER_KEY,
        grace_period_minutes=60,
        pool_notify_below=2,
    )


@pytest.fixture
def db_engine():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def codec():
    return ValueCodec(LocalKekProvider(TEST_MASTER_KEY, "v1"))


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return MemoryScheduler()


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def discarding_recipe():
    return DiscardingRecipe(["generated"])


@pytest.fixture
def registry(discarding_recipe):
    return RecipeRegistry().register("provider", discarding_recipe)


@pytest.fixture
def secret_store(db_session, codec):
    return PostgresSecretStore(db_session, codec)


@pytest.fixture
def log_store(db_session):
    return PostgresRotationLogStore(db_session)


@pytest.fixture
def pool_store(db_session, codec):
    return PostgresPoolKeyStore(db_session, codec)


@pytest.fixture
def engine(secret_store, log_store, scheduler, registry, events, settings, clock):
    return RotationEngine(
        secret_store,
        log_store,
        scheduler,
        registry=registry,
        events=events,
        settings=settings,
        clock=clock,
        source="test",
        triggered_by="pytest",
    )


@pytest.fixture
def manager(secret_store, log_store, pool_store, engine):
    return SecretManager(secret_store, log_store, pool_store, engine)


@pytest.fixture
def stub_recipe():
    return StubRecipe


@pytest.fixture
def discarding_recipe_cls():
    return DiscardingRecipe


@pytest.fixture
def bootstrap_recipe_cls():
    return BootstrapRecipe
