from plansync.models import Plan, ProgressIndex, Task, TaskRef, TaskStatus
from plansync.scheduling import Batch, DependencyResolver, ParallelGrouper


def _index(*tasks: Task) -> ProgressIndex:
    plan = Plan(plan_id="p1", tasks={task.task_id: task for task in tasks})
    index = ProgressIndex(plans={"p1": plan})
    index.recompute()
    return index


def _refs(*task_ids: str) -> list[TaskRef]:
    return [TaskRef("p1", task_id) for task_id in task_ids]


def _batch_of(batches: list[Batch], key: str) -> int:
    for position, batch in enumerate(batches):
        if key in batch.keys():
            return position
    raise AssertionError(f"{key} not batched")


def test_independent_parallel_tasks_share_a_batch() -> None:
    index = _index(
        Task("TASK-6", parallelizable=True, deliverables=["src/six.py"]),
        Task("TASK-7", parallelizable=True, deliverables=["src/seven.py"]),
    )
    eligible = DependencyResolver().resolve(index)

    batches = ParallelGrouper().group(eligible, index)

    assert len(batches) == 1
    assert batches[0].parallel is True
    assert batches[0].keys() == ["p1:TASK-6", "p1:TASK-7"]


def test_tasks_with_a_dependency_edge_never_share_a_batch() -> None:
    index = _index(
        Task("TASK-1"),
        Task("TASK-2", deps=["TASK-1"]),
        Task("TASK-3"),
        Task("TASK-5", deps=["TASK-4"]),
        Task("TASK-4", deps=["TASK-3"]),
    )

    batches = ParallelGrouper().group(_refs("TASK-1", "TASK-2", "TASK-3", "TASK-5"), index)

    assert _batch_of(batches, "p1:TASK-1") < _batch_of(batches, "p1:TASK-2")
    # TASK-5 reaches TASK-3 through TASK-4, which is not finished yet.
    assert _batch_of(batches, "p1:TASK-3") < _batch_of(batches, "p1:TASK-5")
    for batch in batches:
        for ref in batch.tasks:
            for dep in index.task(ref).dependency_refs():
                assert dep.resolve(ref.plan_id) not in batch.tasks


def test_completed_intermediate_does_not_separate_tasks() -> None:
    index = _index(
        Task("TASK-1"),
        Task("TASK-2", status=TaskStatus.COMPLETED, deps=["TASK-1"]),
        Task("TASK-3", deps=["TASK-2"]),
    )

    batches = ParallelGrouper().group(_refs("TASK-1", "TASK-3"), index)

    assert [batch.keys() for batch in batches] == [["p1:TASK-1", "p1:TASK-3"]]


def test_non_parallelizable_tasks_run_alone_first() -> None:
    index = _index(
        Task("TASK-1", parallelizable=True),
        Task("TASK-2", parallelizable=False),
        Task("TASK-3", parallelizable=True),
    )

    batches = ParallelGrouper().group(_refs("TASK-1", "TASK-2", "TASK-3"), index)

    assert [batch.keys() for batch in batches] == [["p1:TASK-2"], ["p1:TASK-1", "p1:TASK-3"]]
    assert batches[0].parallel is False


def test_overlapping_deliverables_and_batch_size_split_batches() -> None:
    index = _index(
        Task("TASK-1", deliverables=["src/app.py"]),
        Task("TASK-2", deliverables=["SRC/App.py/"]),
        Task("TASK-3", deliverables=["src/other.py"]),
        Task("TASK-4", deliverables=["docs/readme.md"]),
    )
    refs = _refs("TASK-1", "TASK-2", "TASK-3", "TASK-4")

    batches = ParallelGrouper().group(refs, index)
    assert [batch.keys() for batch in batches] == [
        ["p1:TASK-1", "p1:TASK-3", "p1:TASK-4"],
        ["p1:TASK-2"],
    ]

    limited = ParallelGrouper(max_batch_size=2).group(refs, index)
    assert all(len(batch) <= 2 for batch in limited)
    assert sorted(key for batch in limited for key in batch.keys()) == [ref.key for ref in refs]
