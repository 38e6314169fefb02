import json
import threading
from pathlib import Path

import pytest

from plansync.models import Plan, ProgressIndex, Task, TaskRef, TaskStatus
from plansync.state import LockTimeout, ProgressStore, ProgressStoreError, SaveResult


def _seed(store: ProgressStore, *task_ids: str) -> None:
    def _fill(index: ProgressIndex) -> None:
        plan = Plan(plan_id="p1")
        for task_id in task_ids:
            plan.tasks[task_id] = Task(task_id=task_id)
        index.plans["p1"] = plan

    store.with_lock(_fill)


def test_load_missing_index_is_empty(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "state" / "progress.json")

    index = store.load()

    assert index.plans == {}
    assert index.version == 0
    assert store.current_version() == 0


def test_with_lock_persists_and_bumps_version(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "progress.json")
    _seed(store, "TASK-1")

    def _start(index: ProgressIndex) -> str:
        index.task(TaskRef("p1", "TASK-1")).transition(TaskStatus.IN_PROGRESS)
        return "done"

    result = store.with_lock(_start)

    assert result == "done"
    on_disk = json.loads(store.index_path.read_text(encoding="utf-8"))
    assert on_disk["version"] == 2
    assert on_disk["lastUpdated"]
    assert on_disk["plans"]["p1"]["status"] == "InProgress"
    assert on_disk["plans"]["p1"]["tasks"]["TASK-1"]["status"] == "InProgress"
    assert on_disk["phases"] == {"1": {"status": "Ready"}}
    assert not store.lock_path.exists()


def test_with_lock_releases_lock_when_fn_raises(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "progress.json")

    def _boom(index: ProgressIndex) -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        store.with_lock(_boom)

    assert not store.lock_path.exists()
    assert not store.index_path.exists()


def test_lock_timeout_after_bounded_retries(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "progress.json", lock_retries=2, lock_backoff_seconds=0.0)
    store.lock_path.write_text("4242 2024-01-01T00:00:00+00:00", encoding="utf-8")

    with pytest.raises(LockTimeout):
        store.with_lock(lambda index: None)

    assert store.lock_holder() == "4242 2024-01-01T00:00:00+00:00"
    assert store.break_lock() is True
    assert store.lock_holder() is None
    assert store.break_lock() is False
    store.with_lock(lambda index: None)
    assert store.current_version() == 1


def test_try_save_rejects_stale_version(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "progress.json")
    _seed(store, "TASK-1")
    snapshot = store.load()

    assert store.try_save(snapshot, expected_version=snapshot.version) is SaveResult.OK
    assert store.current_version() == 2
    assert store.try_save(snapshot, expected_version=1) is SaveResult.CONFLICT
    assert store.current_version() == 2


def test_invalid_json_raises_store_error(tmp_path: Path) -> None:
    store = ProgressStore(tmp_path / "progress.json")
    store.index_path.write_text("{not json", encoding="utf-8")

    with pytest.raises(ProgressStoreError):
        store.load()


def test_concurrent_with_lock_updates_are_not_lost(tmp_path: Path) -> None:
    task_ids = [f"TASK-{number}" for number in range(1, 9)]
    path = tmp_path / "progress.json"
    _seed(ProgressStore(path), *task_ids)

    def _worker(task_id: str) -> None:
        store = ProgressStore(path, lock_retries=500, lock_backoff_seconds=0.005)

        def _complete(index: ProgressIndex) -> None:
            index.task(TaskRef("p1", task_id)).advance_to(TaskStatus.COMPLETED)

        store.with_lock(_complete)

    threads = [threading.Thread(target=_worker, args=(task_id,)) for task_id in task_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    index = ProgressStore(path).load()
    assert {task.status for _, task in index.iter_tasks()} == {TaskStatus.COMPLETED}
    assert index.version == 1 + len(task_ids)
