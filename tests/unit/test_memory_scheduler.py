from datetime import datetime, timedelta

from keyrotor.adapters.memory_store.scheduler import MemoryScheduler
from keyrotor.domain.interfaces import CleanupTask

NOW = datetime(2026, 1, 1, 12, 0, 0)


def test_only_due_tasks_are_popped():
    scheduler = MemoryScheduler()
    early = CleanupTask(key="a.key", value="v1")
    late = CleanupTask(key="b.key", value="v2", provider_cleanup=False)
    scheduler.schedule(early, NOW)
    scheduler.schedule(late, NOW + timedelta(hours=1))

    assert scheduler.pop_due(NOW) == [early]
    assert [t.task for t in scheduler.pending] == [late]


def test_run_due_hands_tasks_to_handler():
    scheduler = MemoryScheduler()
    scheduler.schedule(CleanupTask(key="a.key", value="v1"), NOW)
    handled = []

    assert scheduler.run_due(NOW, handled.append) == 1
    assert handled[0].key == "a.key"
    assert scheduler.run_due(NOW, handled.append) == 0
