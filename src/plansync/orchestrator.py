from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from plansync.models import Finding, ProgressIndex, Severity, TaskRef, TaskStatus
from plansync.plans.reader import PlanDefinition, PlanFormatError, PlanNotFoundError, PlanReader
from plansync.review import ReviewCycleController, ReviewCycleResult
from plansync.scheduling.grouper import Batch, ParallelGrouper
from plansync.scheduling.resolver import DependencyResolver, ref_sort_key
from plansync.state.progress import LockTimeout, ProgressStore
from plansync.workers.base import WorkRequest

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TaskResult:
    ref: TaskRef
    status: TaskStatus
    iterations: int = 0
    findings: list[Finding] = field(default_factory=list)


@dataclass(slots=True)
class OrchestrationReport:
    completed: list[str] = field(default_factory=list)
    completed_with_issues: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    task_states: dict[str, str] = field(default_factory=dict)
    steps: int = 0
    budget_exhausted: bool = False

    def warn(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)

    def record(self, result: TaskResult) -> None:
        buckets = {
            TaskStatus.COMPLETED: self.completed,
            TaskStatus.COMPLETED_WITH_ISSUES: self.completed_with_issues,
            TaskStatus.FAILED: self.failed,
        }
        buckets[result.status].append(result.ref.key)

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": self.steps,
            "budget_exhausted": self.budget_exhausted,
            "completed": list(self.completed),
            "completed_with_issues": list(self.completed_with_issues),
            "failed": list(self.failed),
            "blocked": dict(self.blocked),
            "warnings": list(self.warnings),
            "task_states": dict(self.task_states),
        }


class Orchestrator:
    """Runs eligible tasks batch by batch until nothing is left to dispatch.

    The progress index is only written twice per batch: once to claim the
    batch (``InProgress``) and once per finished task to commit its terminal
    status. Nothing touches the store while a batch is executing.
    """

    def __init__(
        self,
        store: ProgressStore,
        plan_reader: PlanReader,
        controller: ReviewCycleController,
        *,
        resolver: DependencyResolver | None = None,
        grouper: ParallelGrouper | None = None,
        max_parallel_tasks: int = 4,
        max_steps: int = 50,
    ) -> None:
        self.store = store
        self.plan_reader = plan_reader
        self.controller = controller
        self.resolver = resolver or DependencyResolver()
        self.grouper = grouper or ParallelGrouper()
        self.max_parallel_tasks = max(1, int(max_parallel_tasks))
        self.max_steps = max(1, int(max_steps))
        self._plans: dict[str, PlanDefinition] = {}
        self._skipped_plans: dict[str, str] = {}
        self._skipped_tasks: dict[str, str] = {}

    def _load_plan(self, plan_id: str, report: OrchestrationReport) -> PlanDefinition | None:
        if plan_id in self._skipped_plans:
            return None
        cached = self._plans.get(plan_id)
        if cached is not None:
            return cached
        try:
            definition = self.plan_reader.read_plan(plan_id)
        except (PlanNotFoundError, PlanFormatError) as exc:
            logger.warning("Skipping plan %s: %s", plan_id, exc)
            self._skipped_plans[plan_id] = str(exc)
            report.warn(f"{plan_id}: {exc}")
            return None
        for warning in definition.warnings:
            report.warn(warning)
        self._plans[plan_id] = definition
        return definition

    def _requests_for(self, batch: Batch, report: OrchestrationReport) -> list[WorkRequest]:
        requests: list[WorkRequest] = []
        for ref in batch.tasks:
            definition = self._load_plan(ref.plan_id, report)
            if definition is None:
                continue
            task_definition = definition.tasks.get(ref.task_id)
            if task_definition is None:
                reason = f"task is missing from plan file {self.plan_reader.plan_path(ref.plan_id)}"
            elif not task_definition.schedulable:
                reason = "plan file marks the task non-schedulable"
            else:
                requests.append(
                    WorkRequest(
                        ref=ref,
                        title=task_definition.title,
                        deliverables=list(task_definition.deliverables),
                        criteria=list(task_definition.criteria),
                    )
                )
                continue
            logger.warning("Skipping %s: %s", ref.key, reason)
            self._skipped_tasks[ref.key] = reason
            report.warn(f"{ref.key}: {reason}")
        return requests

    async def _claim(self, requests: list[WorkRequest]) -> list[WorkRequest]:
        def _mark(index: ProgressIndex) -> list[WorkRequest]:
            claimed: list[WorkRequest] = []
            for request in requests:
                task = index.task(request.ref)
                if task is None or task.status is not TaskStatus.NOT_STARTED:
                    logger.info("Task %s was claimed elsewhere; skipping", request.ref.key)
                    continue
                task.transition(TaskStatus.IN_PROGRESS)
                claimed.append(request)
            return claimed

        return await asyncio.to_thread(self.store.with_lock, _mark)

    async def _run_task(self, request: WorkRequest, pool: asyncio.Semaphore) -> TaskResult:
        async with pool:
            logger.info("Dispatching %s", request.ref.key)
            try:
                cycle: ReviewCycleResult = await self.controller.run(request)
            except Exception as exc:
                logger.exception("Review cycle crashed for %s", request.ref.key)
                return TaskResult(
                    ref=request.ref,
                    status=TaskStatus.FAILED,
                    findings=[
                        Finding(
                            Severity.CRITICAL,
                            f"Review cycle raised {type(exc).__name__}: {exc}",
                        )
                    ],
                )
        return TaskResult(
            ref=request.ref,
            status=cycle.status,
            iterations=cycle.iterations,
            findings=list(cycle.findings),
        )

    async def _commit(self, result: TaskResult) -> bool:
        def _apply(index: ProgressIndex) -> bool:
            task = index.task(result.ref)
            if task is None or task.status is not TaskStatus.IN_PROGRESS:
                logger.warning("Not committing %s: task is no longer InProgress", result.ref.key)
                return False
            task.transition(result.status)
            task.iterations = result.iterations
            task.findings = [] if result.status is TaskStatus.COMPLETED else list(result.findings)
            return True

        committed = await asyncio.to_thread(self.store.with_lock, _apply)
        if committed:
            logger.info("Task %s -> %s", result.ref.key, result.status.value)
        return committed

    async def _run_batch(self, batch: Batch, report: OrchestrationReport) -> None:
        requests = self._requests_for(batch, report)
        if not requests:
            return
        try:
            claimed = await self._claim(requests)
        except LockTimeout as exc:
            report.warn(f"Could not claim batch {', '.join(batch.keys())}: {exc}")
            return
        if not claimed:
            return

        pool = asyncio.Semaphore(self.max_parallel_tasks)
        results = await asyncio.gather(*(self._run_task(request, pool) for request in claimed))

        for result in results:
            try:
                committed = await self._commit(result)
            except LockTimeout as exc:
                message = f"{result.ref.key}: {result.status.value} not committed ({exc})"
                logger.error("Commit failed for %s", message)
                report.warn(message)
                self._skipped_tasks[result.ref.key] = "terminal status could not be committed"
                continue
            if committed:
                report.record(result)

    def _is_dispatchable(self, ref: TaskRef) -> bool:
        return ref.plan_id not in self._skipped_plans and ref.key not in self._skipped_tasks

    def _finalize(self, report: OrchestrationReport) -> OrchestrationReport:
        index = self.store.load()
        analysis = self.resolver.analyze(index)
        for warning in analysis.warnings:
            report.warn(warning)
        for ref, task in sorted(index.iter_tasks(), key=lambda item: ref_sort_key(item[0])):
            report.task_states[ref.key] = task.status.value
            if task.status.terminal:
                continue
            if ref.plan_id in self._skipped_plans:
                reason = f"plan unavailable: {self._skipped_plans[ref.plan_id]}"
            elif ref.key in self._skipped_tasks:
                reason = self._skipped_tasks[ref.key]
            elif ref.key in analysis.excluded:
                reason = analysis.excluded[ref.key]
            elif task.status is TaskStatus.IN_PROGRESS:
                reason = "task is InProgress outside this run"
            elif ref in analysis.eligible:
                reason = "step budget exhausted"
            else:
                reason = "waiting on dependencies or phase"
            report.blocked[ref.key] = reason
        return report

    async def run(self) -> OrchestrationReport:
        report = OrchestrationReport()
        while True:
            index = self.store.load()
            analysis = self.resolver.analyze(index)
            for warning in analysis.warnings:
                report.warn(warning)
            eligible = [ref for ref in analysis.eligible if self._is_dispatchable(ref)]
            if not eligible:
                break
            if report.steps >= self.max_steps:
                report.budget_exhausted = True
                report.warn(f"Step budget of {self.max_steps} exhausted")
                logger.warning("Stopping after %d steps with tasks still eligible", report.steps)
                break

            report.steps += 1
            batches = self.grouper.group(eligible, index)
            logger.info(
                "Step %d: %d eligible task(s) in %d batch(es)",
                report.steps,
                len(eligible),
                len(batches),
            )
            for batch in batches:
                await self._run_batch(batch, report)
        return self._finalize(report)
