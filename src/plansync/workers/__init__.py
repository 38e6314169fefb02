from plansync.workers.agents import AgentWorker, ImplementerWorker, ReviewerWorker, VerifierWorker
from plansync.workers.base import ExecutionWorker, WorkerOutcome, WorkRequest, parse_agent_output
from plansync.workers.command import CommandVerifier

__all__ = [
    "AgentWorker",
    "CommandVerifier",
    "ExecutionWorker",
    "ImplementerWorker",
    "ReviewerWorker",
    "VerifierWorker",
    "WorkRequest",
    "WorkerOutcome",
    "parse_agent_output",
]
