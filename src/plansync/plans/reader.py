from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from plansync.models import (
    DependencyRef,
    DependencySyntaxError,
    Plan,
    ProgressIndex,
    Task,
    TaskStatus,
)

logger = logging.getLogger(__name__)

TASK_HEADING_PATTERN = re.compile(
    r"^#{2,4}\s+(?P<task_id>[A-Za-z][A-Za-z0-9_.-]*-\d+)\b\s*:?\s*(?P<title>.*?)\s*$"
)
ANY_HEADING_PATTERN = re.compile(r"^(?P<level>#{1,6})\s+")
FIELD_PATTERN = re.compile(
    r"^\s*(?:[-*]\s+)?\**\s*(?P<name>status|parallelizable|deliverables|dependencies)"
    r"\s*\**\s*:\s*\**\s*(?P<value>.*?)\s*$",
    re.IGNORECASE,
)
PHASE_PATTERN = re.compile(r"^\s*\**phase\**\s*:\s*\**\s*(?P<value>\d+)", re.IGNORECASE)
CHECKBOX_PATTERN = re.compile(r"^\s*[-*]\s+\[(?P<mark>[ xX])\]")

_TRUE_WORDS = {"yes", "true", "y", "1", "parallel"}
_NONE_WORDS = {"", "none", "n/a", "-", "no"}


class PlanNotFoundError(FileNotFoundError):
    """Raised when a plan file does not exist."""


class PlanFormatError(ValueError):
    """Raised when a plan file has no readable task sections."""


@dataclass(slots=True)
class TaskDefinition:
    task_id: str
    title: str = ""
    status: TaskStatus = TaskStatus.NOT_STARTED
    parallelizable: bool = False
    deliverables: list[str] = field(default_factory=list)
    dependencies: list[DependencyRef] = field(default_factory=list)
    criteria: list[str] = field(default_factory=list)
    criteria_checked: int = 0
    criteria_total: int = 0
    schedulable: bool = True
    problems: list[str] = field(default_factory=list)

    def to_task(self) -> Task:
        return Task(
            task_id=self.task_id,
            status=self.status,
            parallelizable=self.parallelizable,
            deps=[str(dep) for dep in self.dependencies],
            deliverables=list(self.deliverables),
            criteria_checked=self.criteria_checked,
            criteria_total=self.criteria_total,
            schedulable=self.schedulable,
        )


@dataclass(slots=True)
class PlanDefinition:
    plan_id: str
    phase: int = 1
    tasks: dict[str, TaskDefinition] = field(default_factory=dict)
    source: Path | None = None

    @property
    def warnings(self) -> list[str]:
        return [
            f"{self.plan_id}:{task.task_id}: {problem}"
            for task in self.tasks.values()
            for problem in task.problems
        ]


def normalize_task_status(raw: str) -> TaskStatus | None:
    token = re.sub(r"[^a-z]", "", raw.lower())
    mapping = {
        "notstarted": TaskStatus.NOT_STARTED,
        "todo": TaskStatus.NOT_STARTED,
        "pending": TaskStatus.NOT_STARTED,
        "inprogress": TaskStatus.IN_PROGRESS,
        "started": TaskStatus.IN_PROGRESS,
        "completed": TaskStatus.COMPLETED,
        "complete": TaskStatus.COMPLETED,
        "done": TaskStatus.COMPLETED,
        "completedwithissues": TaskStatus.COMPLETED_WITH_ISSUES,
        "failed": TaskStatus.FAILED,
    }
    return mapping.get(token)


def _split_list(raw: str) -> list[str]:
    items: list[str] = []
    for part in raw.split(","):
        item = part.strip().strip("`").strip()
        if item:
            items.append(item)
    return items


def parse_dependencies(raw: str) -> list[DependencyRef]:
    if raw.strip().lower() in _NONE_WORDS:
        return []
    return [DependencyRef.parse(item) for item in _split_list(raw)]


def _parse_task_section(task_id: str, lines: list[str]) -> TaskDefinition:
    task = TaskDefinition(task_id=task_id)
    for line in lines:
        checkbox = CHECKBOX_PATTERN.match(line)
        if checkbox:
            task.criteria_total += 1
            task.criteria.append(line[checkbox.end() :].strip())
            if checkbox.group("mark").lower() == "x":
                task.criteria_checked += 1
            continue

        match = FIELD_PATTERN.match(line)
        if not match:
            continue
        name = match.group("name").lower()
        value = match.group("value").strip("*").strip()
        if name == "status":
            status = normalize_task_status(value)
            if status is None:
                task.problems.append(f"unrecognized status {value!r}, assuming NotStarted")
            else:
                task.status = status
        elif name == "parallelizable":
            task.parallelizable = value.strip().lower() in _TRUE_WORDS
        elif name == "deliverables":
            task.deliverables = _split_list(value)
        elif name == "dependencies":
            try:
                task.dependencies = parse_dependencies(value)
            except DependencySyntaxError as exc:
                task.schedulable = False
                task.problems.append(str(exc))
    return task


def parse_plan(plan_id: str, text: str, *, source: Path | None = None) -> PlanDefinition:
    plan = PlanDefinition(plan_id=plan_id, source=source)
    current_id: str | None = None
    current_title = ""
    current_level = 0
    buffer: list[str] = []

    def _flush() -> None:
        if current_id is None:
            return
        if current_id in plan.tasks:
            logger.warning("Duplicate task %s in plan %s; keeping the first", current_id, plan_id)
            return
        task = _parse_task_section(current_id, buffer)
        task.title = current_title
        plan.tasks[current_id] = task

    for line in text.splitlines():
        heading = TASK_HEADING_PATTERN.match(line)
        if heading:
            _flush()
            current_id = heading.group("task_id")
            current_title = heading.group("title")
            current_level = len(line) - len(line.lstrip("#"))
            buffer = []
            continue
        other = ANY_HEADING_PATTERN.match(line)
        if other and current_id is not None and len(other.group("level")) <= current_level:
            _flush()
            current_id = None
            buffer = []
            continue
        if current_id is not None:
            buffer.append(line)
            continue
        phase = PHASE_PATTERN.match(line)
        if phase:
            plan.phase = int(phase.group("value"))
    _flush()

    for warning in plan.warnings:
        logger.warning("Plan %s: %s", plan_id, warning)
    return plan


class PlanReader:
    """Loads individual plan files on demand from a plans directory."""

    def __init__(self, plans_dir: Path) -> None:
        self.plans_dir = plans_dir

    def plan_path(self, plan_id: str) -> Path:
        return self.plans_dir / f"{plan_id}.md"

    def available_plans(self) -> list[str]:
        if not self.plans_dir.is_dir():
            return []
        return sorted(path.stem for path in self.plans_dir.glob("*.md"))

    def read_plan(self, plan_id: str) -> PlanDefinition:
        path = self.plan_path(plan_id)
        if not path.is_file():
            raise PlanNotFoundError(f"Plan file not found for {plan_id}: {path}")
        plan = parse_plan(plan_id, path.read_text(encoding="utf-8"), source=path)
        if not plan.tasks:
            raise PlanFormatError(f"Plan {plan_id} has no task sections: {path}")
        logger.debug("Read plan %s with %d task(s)", plan_id, len(plan.tasks))
        return plan


def register_plan(index: ProgressIndex, definition: PlanDefinition) -> Plan:
    """Insert or merge a plan definition into the index.

    Task statuses from the plan file are applied only when they move a task
    forward; fields used for scheduling are always refreshed.
    """
    plan = index.plans.get(definition.plan_id)
    if plan is None:
        plan = Plan(plan_id=definition.plan_id, phase=definition.phase)
        index.plans[definition.plan_id] = plan
    plan.phase = definition.phase

    for task_id, task_definition in definition.tasks.items():
        existing = plan.tasks.get(task_id)
        if existing is None:
            plan.tasks[task_id] = task_definition.to_task()
            continue
        existing.parallelizable = task_definition.parallelizable
        existing.deps = [str(dep) for dep in task_definition.dependencies]
        existing.deliverables = list(task_definition.deliverables)
        existing.criteria_checked = task_definition.criteria_checked
        existing.criteria_total = task_definition.criteria_total
        existing.schedulable = task_definition.schedulable
        if existing.advance_to(task_definition.status):
            logger.info(
                "Synced %s:%s forward to %s from plan file",
                definition.plan_id,
                task_id,
                existing.status.value,
            )
    return plan
