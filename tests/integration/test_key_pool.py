"""Key pool engine."""
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from keyrotor.adapters.postgres.models import PoolKeyRow
from keyrotor.domain.events import PoolKeyActivated, PoolLow
from keyrotor.domain.interfaces import CleanupTask
from keyrotor.domain.models import PoolKeyStatus
from keyrotor.domain.pool import KeyPool


@pytest.fixture
def pool(pool_store, engine):
    return KeyPool("stripe.key", pool_store, engine)


def _statuses(pool):
    return {k.value: k.status for k in _all_keys(pool)}


def _all_keys(pool):
    store = pool.pool_keys
    rows = store._db.query(PoolKeyRow).filter(PoolKeyRow.secret_key == pool.secret_key).order_by(PoolKeyRow.position)
    return [store._to_entity(r) for r in rows]


class TestAdd:
    def test_add_activates_first_key_without_grace(self, pool, secret_store):
        assert pool.add(["k1", "k2", "k3"]) == 3

        assert pool.value() == "k1"
        assert pool.remaining() == 2
        secret = secret_store.find("stripe.key")
        assert secret.value == "k1"
        assert secret.previous_value is None

    def test_positions_strictly_increase_across_batches(self, pool):
        pool.add(["k1", "k2"])
        pool.add(["k3"])
        positions = [k.position for k in _all_keys(pool)]
        assert positions == sorted(positions)
        assert len(set(positions)) == 3

    def test_positions_not_reused_after_clear(self, pool):
        pool.add(["k1", "k2"])
        pool.clear()
        pool.add(["k3"])
        assert [k.position for k in _all_keys(pool)] == [2]

    def test_add_with_active_key_keeps_it(self, pool):
        pool.add(["k1"])
        pool.add(["k2"])
        assert pool.value() == "k1"

    def test_add_ignores_empty_values(self, pool):
        assert pool.add(["", "k1", ""]) == 1


class TestRotateNext:
    def test_rotate_promotes_next_key_with_grace(self, pool, secret_store, scheduler, clock):
        pool.add(["k1", "k2", "k3"])

        activated = pool.rotate_next(30)

        assert activated.value == "k2"
        assert _statuses(pool) == {
            "k1": PoolKeyStatus.USED,
            "k2": PoolKeyStatus.ACTIVE,
            "k3": PoolKeyStatus.QUEUED,
        }
        secret = secret_store.find("stripe.key")
        assert secret.value == "k2"
        assert secret.previous_value == "k1"
        assert secret.previous_value_expires_at == clock.now + timedelta(minutes=30)

        [pending] = scheduler.pending
        assert pending.task == CleanupTask(key="stripe.key", value="k1", provider_cleanup=False)

    def test_fifo_with_skip_invalid(self, pool):
        pool.add(["k1", "k2", "k3"])
        pool.with_validator(lambda value: value != "k2")

        activated = pool.rotate_next()

        assert activated.value == "k3"
        assert _statuses(pool)["k2"] is PoolKeyStatus.EXPIRED

    def test_all_invalid_pool_terminates(self, pool, secret_store):
        pool.add(["k1", "k2", "k3", "k4"])
        pool.with_validator(lambda value: False)

        assert pool.rotate_next() is None

        statuses = _statuses(pool)
        assert statuses["k1"] is PoolKeyStatus.ACTIVE
        assert all(statuses[k] is PoolKeyStatus.EXPIRED for k in ("k2", "k3", "k4"))
        assert secret_store.find("stripe.key").value == "k1"

    def test_validator_exception_treated_as_invalid(self, pool):
        pool.add(["k1", "k2", "k3"])

        def flaky(value):
            if value == "k2":
                raise ConnectionError("timeout")
            return True

        assert pool.with_validator(flaky).rotate_next().value == "k3"

    def test_expired_queued_keys_are_skipped(self, pool, clock):
        pool.add(["k1"])
        pool.add(["k2"], expires_at=clock.now - timedelta(minutes=1))
        pool.add(["k3"])

        assert pool.rotate_next().value == "k3"
        assert _statuses(pool)["k2"] is PoolKeyStatus.EXPIRED

    def test_exhausted_pool_returns_none(self, pool):
        pool.add(["k1"])
        assert pool.rotate_next() is None
        assert pool.value() == "k1"

    def test_rotate_without_secret_row_creates_it_without_grace(self, pool_store, engine, secret_store):
        pool_store.append("fresh.key", ["k1", "k2"])
        pool = KeyPool("fresh.key", pool_store, engine)

        assert pool.rotate_next().value == "k1"

        secret = secret_store.find("fresh.key")
        assert secret.value == "k1"
        assert secret.previous_value is None

    def test_pending_previous_value_discarded_when_displaced(self, pool_store, engine, secret_store, discarding_recipe):
        pool = KeyPool("provider.key", pool_store, engine)
        pool.add(["k1", "k2", "k3"])
        pool.rotate_next()

        pool.rotate_next()

        assert discarding_recipe.discarded == ["k1"]
        secret = secret_store.find("provider.key")
        assert secret.value == "k3"
        assert secret.previous_value == "k2"

    def test_at_most_one_active_key(self, pool):
        pool.add(["k1", "k2", "k3", "k4"])
        for _ in range(3):
            pool.rotate_next()
            assert pool.status().active == 1

    def test_database_rejects_second_active_key(self, pool, pool_store, db_session):
        pool.add(["k1", "k2"])
        queued = pool_store.next_queued("stripe.key")
        row = db_session.get(PoolKeyRow, queued.id)
        row.status = int(PoolKeyStatus.ACTIVE)
        with pytest.raises(IntegrityError):
            db_session.flush()


class TestEvents:
    def test_pool_low_fires_once_with_remaining(self, pool, events):
        low, activated = [], []
        events.subscribe(PoolLow, low.append)
        events.subscribe(PoolKeyActivated, activated.append)

        pool.add(["k1", "k2", "k3"])
        pool.rotate_next()

        assert len(low) == 1
        assert low[0].remaining == 1
        assert low[0].threshold == 2
        assert [e.pool_key.value for e in activated] == ["k1", "k2"]

    def test_pool_low_fires_on_every_rotation_at_or_below_threshold(self, pool, events):
        low = []
        events.subscribe(PoolLow, low.append)
        pool.add(["k1", "k2", "k3", "k4"])

        pool.rotate_next()
        pool.rotate_next()
        pool.rotate_next()

        assert [e.remaining for e in low] == [2, 1, 0]

    def test_no_pool_low_above_threshold(self, pool, events):
        low = []
        events.subscribe(PoolLow, low.append)
        pool.add(["k1", "k2", "k3", "k4", "k5"])
        pool.rotate_next()
        assert low == []


class TestMaintenance:
    def test_prune_removes_used_and_expired_only(self, pool):
        pool.add(["k1", "k2", "k3", "k4"])
        pool.with_validator(lambda value: value != "k2")
        pool.rotate_next()

        assert pool.prune() == 2
        assert sorted(k.value for k in _all_keys(pool)) == ["k3", "k4"]

    def test_clear_leaves_secret_untouched(self, pool, secret_store):
        pool.add(["k1", "k2"])
        assert pool.clear() == 2
        assert pool.count() == 0
        assert not pool.has_active_key()
        assert secret_store.find("stripe.key").value == "k1"

    def test_status_summary(self, pool):
        pool.add(["k1", "k2", "k3"])
        pool.rotate_next()

        status = pool.status()
        assert status.secret_key == "stripe.key"
        assert (status.total, status.queued, status.active, status.used, status.expired) == (3, 1, 1, 1, 0)
        assert [k.value for k in pool.queued()] == ["k3"]

    def test_activate_next_only_when_nothing_active(self, pool_store, engine, secret_store):
        pool_store.append("manual.key", ["k1", "k2"])
        pool = KeyPool("manual.key", pool_store, engine)

        assert pool.activate_next().value == "k1"
        assert pool.activate_next() is None
        assert secret_store.find("manual.key").value == "k1"
