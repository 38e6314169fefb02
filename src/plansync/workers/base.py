from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from plansync.models import Finding, ReviewStrictness, Severity, TaskRef, Verdict

SEVERITY_LINE_PATTERN = re.compile(
    r"^\s*[-*]?\s*\**(?P<severity>CRITICAL|BLOCKER|MAJOR|MINOR|SUGGESTION)\**"
    r"\s*[:\-]\s*(?P<text>.+)$",
    re.IGNORECASE,
)
VERDICT_PATTERN = re.compile(r"\b(APPROVED|CHANGES[ _-]REQUESTED)\b", re.IGNORECASE)


@dataclass(slots=True)
class WorkRequest:
    ref: TaskRef
    title: str = ""
    deliverables: list[str] = field(default_factory=list)
    criteria: list[str] = field(default_factory=list)
    fix: bool = False
    attempt: int = 1
    iteration: int = 0
    strictness: ReviewStrictness | None = None
    findings: list[Finding] = field(default_factory=list)

    def context(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "plan": self.ref.plan_id,
            "task": self.ref.task_id,
            "deliverables": list(self.deliverables),
            "completion_criteria": list(self.criteria),
            "attempt": self.attempt,
        }
        if self.title:
            payload["title"] = self.title
        if self.iteration:
            payload["review_iteration"] = self.iteration
        if self.strictness is not None:
            payload["review_strictness"] = self.strictness.value
        if self.findings:
            payload["findings"] = [finding.to_dict() for finding in self.findings]
        return payload


@dataclass(slots=True)
class WorkerOutcome:
    success: bool
    findings: list[Finding] = field(default_factory=list)
    verdict: Verdict | None = None
    content: str = ""

    @classmethod
    def failure(cls, description: str, severity: Severity = Severity.CRITICAL) -> WorkerOutcome:
        return cls(success=False, findings=[Finding(severity=severity, description=description)])


class ExecutionWorker(Protocol):
    async def execute(self, request: WorkRequest) -> WorkerOutcome:
        """Carry out one step for a task and report the outcome."""


def _extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


def _parse_verdict(raw: object) -> Verdict | None:
    token = re.sub(r"[^a-z]", "", str(raw or "").lower())
    if token == "approved":
        return Verdict.APPROVED
    if token == "changesrequested":
        return Verdict.CHANGES_REQUESTED
    return None


def parse_agent_output(content: str) -> WorkerOutcome:
    """Read a structured outcome out of free-form agent output.

    JSON lines carrying ``success``, ``verdict`` or ``findings`` win; plain
    ``SEVERITY: text`` lines are the fallback.
    """
    findings: list[Finding] = []
    success: bool | None = None
    verdict: Verdict | None = None
    structured = False

    for payload in _extract_json_objects(content):
        if "success" in payload:
            success = bool(payload["success"])
            structured = True
        parsed_verdict = _parse_verdict(payload.get("verdict"))
        if parsed_verdict is not None:
            verdict = parsed_verdict
            structured = True
        items = payload.get("findings")
        if isinstance(items, list):
            structured = True
            for item in items:
                if isinstance(item, dict):
                    finding = Finding.from_dict(item)
                    if finding is not None:
                        findings.append(finding)

    if not structured:
        for line in content.splitlines():
            match = SEVERITY_LINE_PATTERN.match(line)
            if not match:
                continue
            severity = Severity.parse(match.group("severity"))
            if severity is not None:
                findings.append(Finding(severity=severity, description=match.group("text").strip()))
        verdict_match = VERDICT_PATTERN.search(content)
        if verdict_match:
            verdict = _parse_verdict(verdict_match.group(1))

    if success is None:
        blocking = any(f.severity in {Severity.CRITICAL, Severity.MAJOR} for f in findings)
        success = bool(content.strip()) and not blocking
    return WorkerOutcome(success=success, findings=findings, verdict=verdict, content=content)
