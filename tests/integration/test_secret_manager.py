"""SecretManager facade and audit log queries."""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from cachetools import TTLCache

from keyrotor.domain.manager import SecretManager
from keyrotor.domain.models import RotationLogEntry, RotationStatus
from keyrotor.errors import RecipeGenerationError, SecretNotFoundError, UnknownRecipeError


def test_get_set_has_delete(manager):
    assert manager.get("db.password") is None
    assert not manager.has("db.password")

    manager.set("db.password", "hunter2")

    assert manager.get("db.password") == "hunter2"
    assert manager.has("db.password")
    assert manager.keys() == ["db.password"]
    assert manager.delete("db.password") is True
    assert manager.delete("db.password") is False


def test_delete_cascades_rotation_logs(manager, log_store, stub_recipe):
    manager.set("db.password", "v1")
    log = manager.rotate("db.password", stub_recipe(["v2"]))

    manager.delete("db.password")

    assert log_store.for_secret(log.secret_id) == []


def test_values_are_sealed_at_rest(manager, db_session):
    from keyrotor.adapters.postgres.models import SecretRow

    manager.set("db.password", "hunter2")
    row = db_session.query(SecretRow).filter(SecretRow.key == "db.password").first()
    assert "hunter2" not in row.value


def test_grace_period_accessors(manager, stub_recipe, clock):
    manager.set("db.password", "v1")
    manager.rotate("db.password", stub_recipe(["v2"]), grace_period_minutes=10)

    assert manager.valid_values("db.password") == ["v2", "v1"]
    assert manager.is_in_grace_period("db.password")
    assert manager.previous_value("db.password") == "v1"
    assert manager.grace_period_expires_at("db.password") == clock.now + timedelta(minutes=10)

    clock.advance(minutes=11)
    assert manager.valid_values("db.password") == ["v2"]
    assert not manager.is_in_grace_period("db.password")
    assert manager.previous_value("db.password") is None

    assert manager.clear_expired() == 1
    assert manager.grace_period_expires_at("db.password") is None


def test_rotate_with_registered_recipe(manager, discarding_recipe):
    manager.set("provider.api", "v1")

    log = manager.rotate_with("provider.api")

    assert log.status is RotationStatus.SUCCESS
    assert manager.get("provider.api") == "generated"
    assert discarding_recipe.generated == ["generated"]


def test_rotate_with_unknown_recipe(manager):
    manager.set("other.api", "v1")
    with pytest.raises(UnknownRecipeError):
        manager.rotate_with("other.api")
    with pytest.raises(UnknownRecipeError):
        manager.rotate_with("standalone")


def test_rollback_by_key(manager, stub_recipe):
    manager.set("db.password", "v1")
    manager.rotate("db.password", stub_recipe(["v2"]))

    log = manager.rollback("db.password")

    assert log.status is RotationStatus.ROLLED_BACK
    assert manager.get("db.password") == "v1"


def test_rollback_unknown_key(manager):
    with pytest.raises(SecretNotFoundError):
        manager.rollback("missing.key")


def test_initialize_with_bootstrap_recipe(manager, registry, bootstrap_recipe_cls):
    registry.register("boot", bootstrap_recipe_cls("first-value"))

    secret = manager.initialize("boot.secret")

    assert secret.value == "first-value"


def test_initialize_with_plain_value(manager):
    assert manager.initialize("plain.secret", value="typed").value == "typed"


def test_initialize_without_value(manager):
    with pytest.raises(ValueError):
        manager.initialize("plain.secret")


def test_initialize_wraps_init_errors(manager, registry, bootstrap_recipe_cls):
    recipe = bootstrap_recipe_cls()
    recipe.init = MagicMock(side_effect=RuntimeError("no credentials"))
    registry.register("boot", recipe)

    with pytest.raises(RecipeGenerationError, match="no credentials"):
        manager.initialize("boot.secret")


def test_status_rows(manager, stub_recipe):
    manager.set("a.key", "v1")
    manager.set("b.key", "v1")
    manager.rotate("b.key", stub_recipe(["v2"]))

    rows = {row.key: row for row in manager.status()}

    assert rows["a.key"].state == "Active"
    assert rows["a.key"].last_rotation == "Never"
    assert rows["b.key"].state == "Grace Period"
    assert rows["b.key"].last_rotation == "Success"


def test_last_log_and_history(manager, stub_recipe):
    manager.set("db.password", "v1")
    manager.rotate("db.password", stub_recipe(["v2"]))
    manager.rotate("db.password", stub_recipe(["bad"], valid=False))

    assert manager.last_log("db.password").status is RotationStatus.FAILED
    assert len(manager.logs_for("db.password")) == 2
    assert manager.last_log("missing.key") is None


class TestLogQueries:
    def _append(self, log_store, secret_id, status, rotated_at):
        return log_store.append(RotationLogEntry(secret_id=secret_id, status=status, rotated_at=rotated_at))

    def test_by_status_and_recent_failures(self, manager, log_store, clock):
        secret = manager.set("db.password", "v1")
        self._append(log_store, secret.id, RotationStatus.FAILED, clock.now - timedelta(hours=30))
        recent = self._append(log_store, secret.id, RotationStatus.FAILED, clock.now - timedelta(hours=1))
        self._append(log_store, secret.id, RotationStatus.SUCCESS, clock.now)

        assert len(manager.logs_by_status(RotationStatus.FAILED)) == 2
        assert [e.id for e in manager.recent_failures()] == [recent.id]
        assert len(manager.recent_failures(hours=48)) == 2

    def test_between(self, manager, log_store, clock):
        secret = manager.set("db.password", "v1")
        self._append(log_store, secret.id, RotationStatus.SUCCESS, clock.now - timedelta(days=3))
        inside = self._append(log_store, secret.id, RotationStatus.SUCCESS, clock.now - timedelta(days=1))

        found = manager.logs_between(clock.now - timedelta(days=2), clock.now)
        assert [e.id for e in found] == [inside.id]

    def test_stats(self, manager, stub_recipe):
        manager.set("a.key", "v1")
        manager.set("b.key", "v1")
        manager.rotate("a.key", stub_recipe(["v2"]))
        manager.rotate("a.key", stub_recipe(["bad"], valid=False))
        manager.rotate("b.key", stub_recipe(["v2"]))

        assert manager.log_stats() == {"total": 3, "by_status": {1: 2, 2: 1}}
        assert manager.log_stats("a.key") == {"total": 2, "by_status": {1: 1, 2: 1}}
        assert manager.log_stats("missing.key") == {"total": 0, "by_status": {}}

    def test_prune(self, manager, log_store, clock):
        secret = manager.set("db.password", "v1")
        self._append(log_store, secret.id, RotationStatus.SUCCESS, clock.now - timedelta(days=100))
        self._append(log_store, secret.id, RotationStatus.SUCCESS, clock.now - timedelta(days=91))
        self._append(log_store, secret.id, RotationStatus.SUCCESS, clock.now - timedelta(days=10))

        assert manager.prune_logs(dry_run=True) == 2
        assert len(manager.logs_for("db.password")) == 3
        assert manager.prune_logs() == 2
        assert len(manager.logs_for("db.password")) == 1
        assert manager.prune_logs(days=5) == 1

    def test_prune_rejects_zero_days(self, manager):
        with pytest.raises(ValueError):
            manager.prune_logs(days=0)


class TestLastLogAfterPreCleanup:
    def test_rotation_outcome_is_latest_entry(self, manager, discarding_recipe):
        manager.set("provider.api", "v1")
        manager.rotate_with("provider.api")
        discarding_recipe.values = ["v3"]

        manager.rotate_with("provider.api")

        assert discarding_recipe.discarded == ["v1"]
        assert manager.last_log("provider.api").status is RotationStatus.SUCCESS
        assert [e.status for e in manager.logs_for("provider.api")] == [
            RotationStatus.SUCCESS,
            RotationStatus.DISCARD_SUCCESS,
            RotationStatus.SUCCESS,
        ]
        [row] = manager.status()
        assert row.last_rotation == "Success"

    def test_failed_rotation_after_pre_cleanup(self, manager, discarding_recipe):
        manager.set("provider.api", "v1")
        manager.rotate_with("provider.api")
        discarding_recipe.valid = False

        manager.rotate_with("provider.api")

        assert manager.last_log("provider.api").status is RotationStatus.FAILED
        [row] = manager.status()
        assert row.last_rotation == "Failed"


class TestReadCache:
    @pytest.fixture
    def ticks(self):
        return [0.0]

    @pytest.fixture
    def cached(self, secret_store, log_store, pool_store, engine, ticks):
        cache = TTLCache(maxsize=16, ttl=60, timer=lambda: ticks[0])
        return SecretManager(secret_store, log_store, pool_store, engine, cache=cache)

    def _write_behind(self, secret_store, key, value):
        secret = secret_store.find(key)
        secret.value = value
        secret_store.save(secret)

    def test_disabled_by_default(self, manager):
        assert manager.cache is None
        assert manager.forget("db.password") is False

    def test_reads_are_cached_until_forgotten(self, cached, secret_store):
        cached.set("db.password", "v1")
        assert cached.get("db.password") == "v1"

        self._write_behind(secret_store, "db.password", "v2")

        assert cached.get("db.password") == "v1"
        assert cached.forget("db.password") is True
        assert cached.get("db.password") == "v2"

    def test_entries_expire_after_ttl(self, cached, secret_store, ticks):
        cached.set("db.password", "v1")
        cached.get("db.password")
        self._write_behind(secret_store, "db.password", "v2")

        ticks[0] += 61

        assert cached.get("db.password") == "v2"

    def test_missing_keys_are_not_cached(self, cached):
        assert cached.get("db.password") is None
        cached.set("db.password", "v1")
        assert cached.get("db.password") == "v1"

    def test_writes_through_the_facade_invalidate(self, cached, stub_recipe):
        cached.set("db.password", "v1")
        assert cached.get("db.password") == "v1"

        cached.rotate("db.password", stub_recipe(["v2"]))
        assert cached.get("db.password") == "v2"
        assert cached.previous_value("db.password") == "v1"

        cached.rollback("db.password")
        assert cached.get("db.password") == "v1"

        cached.delete("db.password")
        assert cached.get("db.password") is None

    def test_pool_rotation_invalidates(self, cached):
        pool = cached.pool("stripe.key")
        pool.add(["k1", "k2"])
        assert cached.get("stripe.key") == "k1"

        pool.rotate_next()

        assert cached.get("stripe.key") == "k2"
