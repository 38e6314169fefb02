from pathlib import Path

import pytest

from plansync.models import DependencyRef, ProgressIndex, TaskStatus
from plansync.plans import (
    PlanFormatError,
    PlanNotFoundError,
    PlanReader,
    parse_plan,
    register_plan,
)

PLAN_TEXT = """# Plan: p1
Phase: 2

Some intro text that is not a task.

## TASK-1: Build the parser
- **Status**: Not Started
- **Parallelizable**: yes
- **Deliverables**: `src/parser.py`, `tests/test_parser.py`
- **Dependencies**: none

### Completion Criteria
- [x] parses headings
- [ ] parses fields

## TASK-2: Wire the CLI
- Status: in-progress
- Parallelizable: no
- Deliverables: src/cli.py
- Dependencies: TASK-1, other-plan:TASK-9

## TASK-3: Broken dependencies
- **Status**: NotStarted
- **Dependencies**: TASK 1, ???

## Notes
- [ ] this checkbox belongs to no task
"""


def test_parse_plan_reads_structured_fields() -> None:
    plan = parse_plan("p1", PLAN_TEXT)

    assert plan.phase == 2
    assert list(plan.tasks) == ["TASK-1", "TASK-2", "TASK-3"]

    first = plan.tasks["TASK-1"]
    assert first.title == "Build the parser"
    assert first.status is TaskStatus.NOT_STARTED
    assert first.parallelizable is True
    assert first.deliverables == ["src/parser.py", "tests/test_parser.py"]
    assert first.dependencies == []
    assert (first.criteria_checked, first.criteria_total) == (1, 2)
    assert first.criteria == ["parses headings", "parses fields"]

    second = plan.tasks["TASK-2"]
    assert second.status is TaskStatus.IN_PROGRESS
    assert second.parallelizable is False
    assert second.dependencies == [
        DependencyRef(task_id="TASK-1"),
        DependencyRef(task_id="TASK-9", plan_id="other-plan"),
    ]
    assert second.criteria_total == 0


def test_malformed_dependency_marks_only_that_task_non_schedulable(
    caplog: pytest.LogCaptureFixture,
) -> None:
    with caplog.at_level("WARNING"):
        plan = parse_plan("p1", PLAN_TEXT)

    assert plan.tasks["TASK-3"].schedulable is False
    assert plan.tasks["TASK-1"].schedulable is True
    assert plan.tasks["TASK-2"].schedulable is True
    assert any("TASK-3" in warning for warning in plan.warnings)
    assert "TASK-3" in caplog.text


def test_plan_reader_loads_files_and_reports_missing(tmp_path: Path) -> None:
    plans_dir = tmp_path / "plans"
    plans_dir.mkdir()
    (plans_dir / "p1.md").write_text(PLAN_TEXT, encoding="utf-8")
    (plans_dir / "empty.md").write_text("# Nothing here\n", encoding="utf-8")
    reader = PlanReader(plans_dir)

    assert reader.available_plans() == ["empty", "p1"]
    assert reader.read_plan("p1").source == plans_dir / "p1.md"
    with pytest.raises(PlanNotFoundError):
        reader.read_plan("missing")
    with pytest.raises(PlanFormatError):
        reader.read_plan("empty")
    assert PlanReader(tmp_path / "nope").available_plans() == []


def test_register_plan_merges_forward_only() -> None:
    index = ProgressIndex()
    register_plan(index, parse_plan("p1", PLAN_TEXT))

    plan = index.plans["p1"]
    assert plan.phase == 2
    assert plan.tasks["TASK-2"].deps == ["TASK-1", "other-plan:TASK-9"]
    assert plan.tasks["TASK-2"].status is TaskStatus.IN_PROGRESS

    plan.tasks["TASK-1"].advance_to(TaskStatus.COMPLETED)
    updated = PLAN_TEXT.replace("src/cli.py", "src/cli.py, docs/cli.md").replace(
        "- Status: in-progress", "- Status: Completed"
    )
    updated += "\n## TASK-4: New work\n- Status: NotStarted\n- Dependencies: TASK-2\n"
    register_plan(index, parse_plan("p1", updated))

    assert plan.tasks["TASK-1"].status is TaskStatus.COMPLETED
    assert plan.tasks["TASK-2"].status is TaskStatus.COMPLETED
    assert plan.tasks["TASK-2"].deliverables == ["src/cli.py", "docs/cli.md"]
    assert plan.tasks["TASK-4"].deps == ["TASK-2"]
    assert plan.tasks["TASK-4"].status is TaskStatus.NOT_STARTED
