import pytest

from plansync.models import (
    DependencyRef,
    DependencySyntaxError,
    Finding,
    InvalidTransition,
    PhaseStatus,
    Plan,
    PlanStatus,
    ProgressIndex,
    Severity,
    Task,
    TaskRef,
    TaskStatus,
)


def _plan(plan_id: str, phase: int, **statuses: TaskStatus) -> Plan:
    plan = Plan(plan_id=plan_id, phase=phase)
    for name, status in statuses.items():
        task_id = name.replace("_", "-")
        plan.tasks[task_id] = Task(task_id=task_id, status=status)
    return plan


def test_task_status_moves_forward_only() -> None:
    task = Task(task_id="TASK-1")

    with pytest.raises(InvalidTransition):
        task.transition(TaskStatus.COMPLETED)

    task.transition(TaskStatus.IN_PROGRESS)
    task.transition(TaskStatus.COMPLETED_WITH_ISSUES)

    assert task.status is TaskStatus.COMPLETED_WITH_ISSUES
    assert task.updated_at is not None
    with pytest.raises(InvalidTransition):
        task.transition(TaskStatus.FAILED)


def test_advance_to_walks_through_in_progress_and_never_back() -> None:
    task = Task(task_id="TASK-1")

    assert task.advance_to(TaskStatus.COMPLETED) is True
    assert task.status is TaskStatus.COMPLETED
    assert task.advance_to(TaskStatus.NOT_STARTED) is False
    assert task.advance_to(TaskStatus.IN_PROGRESS) is False
    assert task.status is TaskStatus.COMPLETED


def test_dependency_ref_parsing() -> None:
    assert DependencyRef.parse("TASK-1") == DependencyRef(task_id="TASK-1")
    assert DependencyRef.parse(" other-plan:TASK-9 ") == DependencyRef(
        task_id="TASK-9", plan_id="other-plan"
    )
    assert DependencyRef.parse("TASK-2").resolve("p1") == TaskRef("p1", "TASK-2")
    assert str(DependencyRef.parse("p2:TASK-3")) == "p2:TASK-3"

    for raw in ("", "p1:", ":TASK-1", "TASK 1", "a:b:c"):
        with pytest.raises(DependencySyntaxError):
            DependencyRef.parse(raw)


def test_finding_key_ignores_case_and_spacing() -> None:
    first = Finding(Severity.MAJOR, "Missing  error handling")
    second = Finding(Severity.MINOR, "missing error handling")
    tagged = Finding(Severity.MAJOR, "whatever", finding_id="F-1")

    assert first.key == second.key
    assert tagged.key == "F-1"
    assert Finding.from_dict({"severity": "blocker", "description": "x"}).severity is (
        Severity.CRITICAL
    )
    assert Finding.from_dict({"severity": "nope", "description": "x"}) is None


def test_plan_status_follows_tasks() -> None:
    plan = _plan("p1", 1, TASK_1=TaskStatus.NOT_STARTED, TASK_2=TaskStatus.NOT_STARTED)
    assert plan.recompute_status() is PlanStatus.READY

    plan.tasks["TASK-1"].advance_to(TaskStatus.COMPLETED)
    assert plan.recompute_status() is PlanStatus.IN_PROGRESS

    plan.tasks["TASK-2"].advance_to(TaskStatus.COMPLETED_WITH_ISSUES)
    assert plan.recompute_status() is PlanStatus.COMPLETED
    assert plan.recompute_status(issues_count_as_done=False) is PlanStatus.IN_PROGRESS

    assert Plan(plan_id="empty").recompute_status() is PlanStatus.PLANNING


def test_phases_are_derived_from_plan_statuses() -> None:
    index = ProgressIndex(
        plans={
            "a": _plan("a", 1, TASK_1=TaskStatus.COMPLETED),
            "b": _plan("b", 2, TASK_1=TaskStatus.NOT_STARTED),
            "c": _plan("c", 3, TASK_1=TaskStatus.NOT_STARTED),
        }
    )
    index.recompute()

    assert index.phase_status(1) is PhaseStatus.COMPLETED
    assert index.phase_status(2) is PhaseStatus.READY
    assert index.phase_status(3) is PhaseStatus.BLOCKED
    assert index.phase_status(99) is PhaseStatus.BLOCKED


def test_progress_index_roundtrip() -> None:
    plan = _plan("p1", 2, TASK_1=TaskStatus.FAILED)
    task = plan.tasks["TASK-1"]
    task.deps = ["other:TASK-3"]
    task.deliverables = ["src/a.py"]
    task.iterations = 3
    task.findings = [Finding(Severity.CRITICAL, "Tests fail", regression=True)]
    index = ProgressIndex(plans={"p1": plan}, version=7)
    index.recompute()

    payload = index.to_dict()
    restored = ProgressIndex.from_dict(payload)

    assert payload["version"] == 7
    assert payload["phases"] == {"2": {"status": "Ready"}}
    assert payload["plans"]["p1"]["tasks"]["TASK-1"]["status"] == "Failed"
    assert restored.to_dict() == payload
