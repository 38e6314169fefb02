from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from plansync.models import Finding, ReviewStrictness, Severity, TaskStatus, Verdict
from plansync.workers.base import ExecutionWorker, WorkerOutcome, WorkRequest

logger = logging.getLogger(__name__)

MAX_REVIEW_ITERATIONS = 3


STRICTNESS_BY_ITERATION: dict[int, ReviewStrictness] = {
    1: ReviewStrictness.FULL,
    2: ReviewStrictness.CARRIED_AND_REGRESSIONS,
    3: ReviewStrictness.CRITICAL_RESOLUTION,
}


@dataclass(slots=True)
class ReviewHistory:
    """Finding keys seen across earlier iterations of one review cycle."""

    previous_keys: set[str] = field(default_factory=set)
    critical_keys: set[str] = field(default_factory=set)

    def record(self, findings: list[Finding]) -> None:
        self.previous_keys = {finding.key for finding in findings}
        self.critical_keys.update(
            finding.key for finding in findings if finding.severity is Severity.CRITICAL
        )


FindingFilter = Callable[[list[Finding], "ReviewHistory"], list[Finding]]


def _all_findings(findings: list[Finding], history: ReviewHistory) -> list[Finding]:
    return list(findings)


def _carried_and_regressions(findings: list[Finding], history: ReviewHistory) -> list[Finding]:
    return [f for f in findings if f.key in history.previous_keys or f.regression]


def _unresolved_critical(findings: list[Finding], history: ReviewHistory) -> list[Finding]:
    return [f for f in findings if f.key in history.critical_keys]


FINDING_FILTERS: dict[ReviewStrictness, FindingFilter] = {
    ReviewStrictness.FULL: _all_findings,
    ReviewStrictness.CARRIED_AND_REGRESSIONS: _carried_and_regressions,
    ReviewStrictness.CRITICAL_RESOLUTION: _unresolved_critical,
}


@dataclass(slots=True)
class ReviewOutcome:
    """One review iteration.

    ``findings`` are the ones counted under the iteration strictness and decide the
    verdict; ``reported`` keeps everything the reviewer returned.
    """

    verdict: Verdict
    findings: list[Finding]
    iteration: int
    reported: list[Finding] = field(default_factory=list)


@dataclass(slots=True)
class ReviewCycleResult:
    status: TaskStatus
    iterations: int = 0
    fix_attempts: int = 0
    findings: list[Finding] = field(default_factory=list)
    reviews: list[ReviewOutcome] = field(default_factory=list)


def apply_strictness(
    iteration: int, outcome: WorkerOutcome, history: ReviewHistory
) -> ReviewOutcome:
    strictness = STRICTNESS_BY_ITERATION[iteration]
    counted = FINDING_FILTERS[strictness](outcome.findings, history)
    if outcome.verdict is Verdict.APPROVED:
        verdict = Verdict.APPROVED
    elif strictness is ReviewStrictness.FULL:
        verdict = Verdict.CHANGES_REQUESTED
    else:
        verdict = Verdict.CHANGES_REQUESTED if counted else Verdict.APPROVED
    return ReviewOutcome(
        verdict=verdict,
        findings=counted,
        iteration=iteration,
        reported=list(outcome.findings),
    )


class ReviewCycleController:
    """Drives one task through implement, verify and review until a terminal status.

    Verify failures are retried up to ``max_fix_attempts`` fixes per cycle,
    a budget separate from the review iterations. Review iterations stop at
    ``MAX_REVIEW_ITERATIONS``.
    """

    def __init__(
        self,
        implementer: ExecutionWorker,
        verifier: ExecutionWorker,
        reviewer: ExecutionWorker,
        *,
        max_fix_attempts: int = 2,
    ) -> None:
        self.implementer = implementer
        self.verifier = verifier
        self.reviewer = reviewer
        self.max_fix_attempts = max(0, int(max_fix_attempts))

    @staticmethod
    def _step_failure(step: str, request: WorkRequest, exc: Exception) -> WorkerOutcome:
        logger.warning("%s step failed for %s: %s", step, request.ref.key, exc, exc_info=True)
        return WorkerOutcome.failure(f"{step} step raised {type(exc).__name__}: {exc}")

    async def _call(
        self, worker: ExecutionWorker, request: WorkRequest, step: str
    ) -> WorkerOutcome:
        try:
            return await worker.execute(request)
        except Exception as exc:
            return self._step_failure(step, request, exc)

    async def _implement_and_verify(
        self,
        request: WorkRequest,
        result: ReviewCycleResult,
        *,
        fix: bool,
        findings: list[Finding],
    ) -> list[Finding] | None:
        """Return None once verification passes, else the findings that exhausted the budget."""
        attempt = 1
        while True:
            step_request = replace(request, fix=fix, attempt=attempt, findings=list(findings))
            implemented = await self._call(self.implementer, step_request, "implement")
            if implemented.success:
                verified = await self._call(
                    self.verifier, replace(step_request, fix=False), "verify"
                )
                if verified.success:
                    return None
                findings = verified.findings or [
                    Finding(Severity.CRITICAL, "Verification failed without findings.")
                ]
            else:
                findings = implemented.findings or [
                    Finding(Severity.CRITICAL, "Implementation failed without findings.")
                ]

            if result.fix_attempts >= self.max_fix_attempts:
                logger.info("Fix budget exhausted for %s", request.ref.key)
                return findings
            result.fix_attempts += 1
            attempt += 1
            fix = True

    async def run(self, request: WorkRequest) -> ReviewCycleResult:
        result = ReviewCycleResult(status=TaskStatus.IN_PROGRESS)
        history = ReviewHistory()

        unresolved = await self._implement_and_verify(request, result, fix=False, findings=[])
        if unresolved is not None:
            result.status = TaskStatus.FAILED
            result.findings = unresolved
            return result

        for iteration in range(1, MAX_REVIEW_ITERATIONS + 1):
            result.iterations = iteration
            review_request = replace(
                request,
                iteration=iteration,
                strictness=STRICTNESS_BY_ITERATION[iteration],
                findings=list(result.findings),
            )
            try:
                raw = await self.reviewer.execute(review_request)
            except Exception as exc:
                # A review that never ran is not subject to the strictness filters.
                result.status = TaskStatus.FAILED
                result.findings = self._step_failure("review", request, exc).findings
                return result
            if raw.verdict is None:
                raw.verdict = Verdict.APPROVED if raw.success else Verdict.CHANGES_REQUESTED
            review = apply_strictness(iteration, raw, history)
            result.reviews.append(review)
            logger.info(
                "Review %d/%d for %s: %s (%d finding(s))",
                iteration,
                MAX_REVIEW_ITERATIONS,
                request.ref.key,
                review.verdict.value,
                len(review.findings),
            )
            result.findings = list(review.findings)
            if review.verdict is Verdict.APPROVED:
                result.status = TaskStatus.COMPLETED
                return result
            if iteration == MAX_REVIEW_ITERATIONS:
                result.status = TaskStatus.COMPLETED_WITH_ISSUES
                result.findings = list(review.reported)
                return result

            history.record(review.findings)
            unresolved = await self._implement_and_verify(
                request, result, fix=True, findings=review.findings
            )
            if unresolved is not None:
                result.status = TaskStatus.FAILED
                result.findings = unresolved
                return result

        return result
