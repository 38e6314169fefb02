from __future__ import annotations

import logging

from plansync.backends.base import AgentBackend, BackendExecutionError
from plansync.models import ReviewStrictness, Verdict
from plansync.workers.base import WorkerOutcome, WorkRequest, parse_agent_output

logger = logging.getLogger(__name__)

OUTCOME_FORMAT = (
    "Finish with one JSON line: "
    '{"success": true|false, "findings": [{"severity": "critical|major|minor|suggestion", '
    '"description": "..."}]}'
)

STRICTNESS_GUIDANCE = {
    ReviewStrictness.FULL: (
        "Evaluate every finding category: correctness, completeness against the criteria, "
        "maintainability, security, tests."
    ),
    ReviewStrictness.CARRIED_AND_REGRESSIONS: (
        "Only re-check the findings listed in the context and report regressions introduced "
        'by the fix. Mark regressions with "regression": true.'
    ),
    ReviewStrictness.CRITICAL_RESOLUTION: (
        "Only check whether the critical findings listed in the context are resolved. "
        "Do not raise new findings."
    ),
}


class AgentWorker:
    """Execution worker backed by an agent CLI."""

    role: str = "worker"
    system_prompt: str = "You are a software engineering agent."

    def __init__(self, backend: AgentBackend, *, model: str | None = None) -> None:
        self.backend = backend
        self.model = model

    def instruction(self, request: WorkRequest) -> str:
        raise NotImplementedError

    def interpret(self, outcome: WorkerOutcome, request: WorkRequest) -> WorkerOutcome:
        return outcome

    async def execute(self, request: WorkRequest) -> WorkerOutcome:
        context = request.context()
        if self.model:
            context["model"] = self.model
        chunks: list[str] = []
        try:
            async for chunk in self.backend.execute(
                system_prompt=self.system_prompt,
                user_prompt=self.instruction(request),
                context=context,
            ):
                chunks.append(chunk)
        except BackendExecutionError as exc:
            exc.step = exc.step or self.role
            exc.task_key = exc.task_key or request.ref.key
            raise
        content = "".join(chunks).strip()
        outcome = self.interpret(parse_agent_output(content), request)
        logger.debug(
            "%s finished %s: success=%s findings=%d",
            self.role,
            request.ref.key,
            outcome.success,
            len(outcome.findings),
        )
        return outcome


class ImplementerWorker(AgentWorker):
    role = "implementer"
    system_prompt = """
You are the Implementer.
Produce exactly the deliverables named for the task and satisfy its completion criteria.
Match repository conventions and keep the change focused.
""".strip()

    def instruction(self, request: WorkRequest) -> str:
        if request.fix:
            return (
                f"Fix task {request.ref.key} (attempt {request.attempt}). "
                "Address every finding listed in the context without widening scope.\n\n"
                + OUTCOME_FORMAT
            )
        return (
            f"Implement task {request.ref.key}. Deliverables: "
            f"{', '.join(request.deliverables) or 'see plan'}.\n\n" + OUTCOME_FORMAT
        )


class VerifierWorker(AgentWorker):
    role = "verifier"
    system_prompt = """
You are the Verifier.
Check the deliverables against the completion criteria by building and running tests.
Report clear pass/fail outcomes; never modify the deliverables.
""".strip()

    def instruction(self, request: WorkRequest) -> str:
        return (
            f"Verify task {request.ref.key} against its completion criteria.\n\n" + OUTCOME_FORMAT
        )


class ReviewerWorker(AgentWorker):
    role = "reviewer"
    system_prompt = """
You are the Reviewer.
Review the task deliverables and classify findings as CRITICAL, MAJOR, MINOR, or SUGGESTION.
""".strip()

    def instruction(self, request: WorkRequest) -> str:
        strictness = request.strictness or ReviewStrictness.FULL
        return (
            f"Review task {request.ref.key}, iteration {request.iteration}. "
            f"{STRICTNESS_GUIDANCE[strictness]}\n\n"
            'Finish with one JSON line: {"verdict": "Approved|ChangesRequested", '
            '"findings": [{"severity": "...", "description": "..."}]}'
        )

    def interpret(self, outcome: WorkerOutcome, request: WorkRequest) -> WorkerOutcome:
        if outcome.verdict is None:
            outcome.verdict = Verdict.CHANGES_REQUESTED if outcome.findings else Verdict.APPROVED
        outcome.success = outcome.verdict is Verdict.APPROVED
        return outcome
