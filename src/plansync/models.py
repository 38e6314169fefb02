from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

TASK_ID_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_.-]*$")
PLAN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TaskStatus(str, Enum):
    NOT_STARTED = "NotStarted"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"
    COMPLETED_WITH_ISSUES = "CompletedWithIssues"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL_TASK_STATUSES

    @property
    def rank(self) -> int:
        if self is TaskStatus.NOT_STARTED:
            return 0
        if self is TaskStatus.IN_PROGRESS:
            return 1
        return 2


_TERMINAL_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.COMPLETED_WITH_ISSUES, TaskStatus.FAILED}
)


class PlanStatus(str, Enum):
    PLANNING = "Planning"
    READY = "Ready"
    IN_PROGRESS = "InProgress"
    COMPLETED = "Completed"


class PhaseStatus(str, Enum):
    COMPLETED = "Completed"
    READY = "Ready"
    BLOCKED = "Blocked"


class Severity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    SUGGESTION = "suggestion"

    @classmethod
    def parse(cls, raw: object) -> Severity | None:
        text = str(raw or "").strip().lower()
        if text == "blocker":
            return cls.CRITICAL
        for member in cls:
            if member.value == text:
                return member
        return None


class Verdict(str, Enum):
    APPROVED = "Approved"
    CHANGES_REQUESTED = "ChangesRequested"


class ReviewStrictness(str, Enum):
    FULL = "full"
    CARRIED_AND_REGRESSIONS = "carried_and_regressions"
    CRITICAL_RESOLUTION = "critical_resolution"


class InvalidTransition(ValueError):
    """Raised when a task status would move backwards or skip a state."""


class DependencySyntaxError(ValueError):
    """Raised when a dependency reference cannot be parsed."""


@dataclass(frozen=True, slots=True)
class TaskRef:
    plan_id: str
    task_id: str

    @property
    def key(self) -> str:
        return f"{self.plan_id}:{self.task_id}"

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True, slots=True)
class DependencyRef:
    """Pointer to another task; ``plan_id`` is None for same-plan references."""

    task_id: str
    plan_id: str | None = None

    @classmethod
    def parse(cls, raw: str) -> DependencyRef:
        text = raw.strip()
        if not text:
            raise DependencySyntaxError("Empty dependency reference.")
        if ":" in text:
            plan_id, _, task_id = text.partition(":")
            plan_id, task_id = plan_id.strip(), task_id.strip()
            if not PLAN_ID_PATTERN.match(plan_id) or not TASK_ID_PATTERN.match(task_id):
                raise DependencySyntaxError(f"Malformed cross-plan dependency: {raw!r}")
            return cls(task_id=task_id, plan_id=plan_id)
        if not TASK_ID_PATTERN.match(text):
            raise DependencySyntaxError(f"Malformed dependency: {raw!r}")
        return cls(task_id=text)

    def resolve(self, owner_plan_id: str) -> TaskRef:
        return TaskRef(self.plan_id or owner_plan_id, self.task_id)

    def __str__(self) -> str:
        if self.plan_id:
            return f"{self.plan_id}:{self.task_id}"
        return self.task_id


@dataclass(slots=True)
class Finding:
    severity: Severity
    description: str
    finding_id: str | None = None
    regression: bool = False

    @property
    def key(self) -> str:
        if self.finding_id:
            return self.finding_id
        return " ".join(self.description.lower().split())

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "severity": self.severity.value,
            "description": self.description,
        }
        if self.finding_id:
            payload["id"] = self.finding_id
        if self.regression:
            payload["regression"] = True
        return payload

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Finding | None:
        severity = Severity.parse(payload.get("severity"))
        description = str(payload.get("description") or payload.get("message") or "").strip()
        if severity is None or not description:
            return None
        raw_id = payload.get("id")
        return cls(
            severity=severity,
            description=description,
            finding_id=str(raw_id) if raw_id else None,
            regression=bool(payload.get("regression", False)),
        )


@dataclass(slots=True)
class Task:
    task_id: str
    status: TaskStatus = TaskStatus.NOT_STARTED
    parallelizable: bool = True
    deps: list[str] = field(default_factory=list)
    deliverables: list[str] = field(default_factory=list)
    criteria_checked: int = 0
    criteria_total: int = 0
    schedulable: bool = True
    iterations: int = 0
    findings: list[Finding] = field(default_factory=list)
    updated_at: str | None = None

    def transition(self, status: TaskStatus) -> None:
        if self.status.terminal:
            raise InvalidTransition(
                f"Task {self.task_id} is already terminal ({self.status.value})."
            )
        if status.rank != self.status.rank + 1:
            raise InvalidTransition(
                f"Task {self.task_id} cannot move from {self.status.value} to {status.value}."
            )
        self.status = status
        self.updated_at = _utcnow_iso()

    def advance_to(self, status: TaskStatus) -> bool:
        """Move forward to ``status`` through intermediate states; never backwards."""
        if status.rank <= self.status.rank:
            return False
        if self.status is TaskStatus.NOT_STARTED and status.terminal:
            self.transition(TaskStatus.IN_PROGRESS)
        self.transition(status)
        return True

    def dependency_refs(self) -> list[DependencyRef]:
        return [DependencyRef.parse(raw) for raw in self.deps]

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "parallelizable": self.parallelizable,
            "deps": list(self.deps),
            "deliverables": list(self.deliverables),
            "criteria": {"checked": self.criteria_checked, "total": self.criteria_total},
            "schedulable": self.schedulable,
        }
        if self.iterations:
            payload["iterations"] = self.iterations
        if self.findings:
            payload["findings"] = [finding.to_dict() for finding in self.findings]
        if self.updated_at:
            payload["updatedAt"] = self.updated_at
        return payload

    @classmethod
    def from_dict(cls, task_id: str, payload: dict[str, Any]) -> Task:
        criteria = payload.get("criteria")
        if not isinstance(criteria, dict):
            criteria = {}
        raw_findings = payload.get("findings", [])
        findings: list[Finding] = []
        if isinstance(raw_findings, list):
            for item in raw_findings:
                if isinstance(item, dict):
                    finding = Finding.from_dict(item)
                    if finding is not None:
                        findings.append(finding)
        return cls(
            task_id=task_id,
            status=TaskStatus(payload.get("status", TaskStatus.NOT_STARTED.value)),
            parallelizable=bool(payload.get("parallelizable", True)),
            deps=[str(dep) for dep in payload.get("deps", []) or []],
            deliverables=[str(item) for item in payload.get("deliverables", []) or []],
            criteria_checked=int(criteria.get("checked", 0)),
            criteria_total=int(criteria.get("total", 0)),
            schedulable=bool(payload.get("schedulable", True)),
            iterations=int(payload.get("iterations", 0)),
            findings=findings,
            updated_at=payload.get("updatedAt"),
        )


@dataclass(slots=True)
class Plan:
    plan_id: str
    phase: int = 1
    status: PlanStatus = PlanStatus.PLANNING
    tasks: dict[str, Task] = field(default_factory=dict)

    def recompute_status(self, *, issues_count_as_done: bool = True) -> PlanStatus:
        if not self.tasks:
            if self.status is not PlanStatus.COMPLETED:
                self.status = PlanStatus.PLANNING
            return self.status
        done = {TaskStatus.COMPLETED}
        if issues_count_as_done:
            done.add(TaskStatus.COMPLETED_WITH_ISSUES)
        statuses = [task.status for task in self.tasks.values()]
        if all(status in done for status in statuses):
            self.status = PlanStatus.COMPLETED
        elif all(status is TaskStatus.NOT_STARTED for status in statuses):
            self.status = PlanStatus.READY
        else:
            self.status = PlanStatus.IN_PROGRESS
        return self.status

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "status": self.status.value,
            "tasks": {task_id: task.to_dict() for task_id, task in self.tasks.items()},
        }

    @classmethod
    def from_dict(cls, plan_id: str, payload: dict[str, Any]) -> Plan:
        raw_tasks = payload.get("tasks", {})
        tasks: dict[str, Task] = {}
        if isinstance(raw_tasks, dict):
            for task_id, task_payload in raw_tasks.items():
                if isinstance(task_payload, dict):
                    tasks[str(task_id)] = Task.from_dict(str(task_id), task_payload)
        return cls(
            plan_id=plan_id,
            phase=int(payload.get("phase", 1)),
            status=PlanStatus(payload.get("status", PlanStatus.PLANNING.value)),
            tasks=tasks,
        )


@dataclass(slots=True)
class Phase:
    index: int
    status: PhaseStatus = PhaseStatus.BLOCKED


@dataclass(slots=True)
class ProgressIndex:
    plans: dict[str, Plan] = field(default_factory=dict)
    phases: dict[int, Phase] = field(default_factory=dict)
    last_updated: str | None = None
    version: int = 0

    def task(self, ref: TaskRef) -> Task | None:
        plan = self.plans.get(ref.plan_id)
        if plan is None:
            return None
        return plan.tasks.get(ref.task_id)

    def iter_tasks(self):
        for plan_id in sorted(self.plans):
            plan = self.plans[plan_id]
            for task_id, task in plan.tasks.items():
                yield TaskRef(plan_id, task_id), task

    def recompute(self, *, issues_count_as_done: bool = True) -> None:
        """Refresh derived plan statuses and the phase view."""
        for plan in self.plans.values():
            plan.recompute_status(issues_count_as_done=issues_count_as_done)

        indices = sorted({plan.phase for plan in self.plans.values()})
        phases: dict[int, Phase] = {}
        earlier_complete = True
        for index in indices:
            members = [plan for plan in self.plans.values() if plan.phase == index]
            if all(plan.status is PlanStatus.COMPLETED for plan in members):
                status = PhaseStatus.COMPLETED
            elif earlier_complete:
                status = PhaseStatus.READY
            else:
                status = PhaseStatus.BLOCKED
            phases[index] = Phase(index=index, status=status)
            earlier_complete = earlier_complete and status is PhaseStatus.COMPLETED
        self.phases = phases

    def phase_status(self, index: int) -> PhaseStatus:
        phase = self.phases.get(index)
        return phase.status if phase is not None else PhaseStatus.BLOCKED

    def touch(self) -> None:
        self.last_updated = _utcnow_iso()

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "lastUpdated": self.last_updated,
            "phases": {
                str(index): {"status": phase.status.value}
                for index, phase in sorted(self.phases.items())
            },
            "plans": {plan_id: plan.to_dict() for plan_id, plan in sorted(self.plans.items())},
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ProgressIndex:
        raw_plans = payload.get("plans", {})
        plans: dict[str, Plan] = {}
        if isinstance(raw_plans, dict):
            for plan_id, plan_payload in raw_plans.items():
                if isinstance(plan_payload, dict):
                    plans[str(plan_id)] = Plan.from_dict(str(plan_id), plan_payload)
        raw_phases = payload.get("phases", {})
        phases: dict[int, Phase] = {}
        if isinstance(raw_phases, dict):
            for raw_index, phase_payload in raw_phases.items():
                try:
                    index = int(raw_index)
                    status = PhaseStatus(dict(phase_payload).get("status", "Blocked"))
                except (TypeError, ValueError):
                    continue
                phases[index] = Phase(index=index, status=status)
        return cls(
            plans=plans,
            phases=phases,
            last_updated=payload.get("lastUpdated"),
            version=int(payload.get("version", 0)),
        )
