from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["codex", "claude"]


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    plans_dir: str = "plans"
    index_path: str = ".plansync/progress.json"
    verify_command: str = ""


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class AgentsConfig:
    implementer_model: str = ""
    verifier_model: str = ""
    reviewer_model: str = ""


@dataclass(slots=True)
class OrchestratorConfig:
    max_parallel_tasks: int = 4
    max_steps: int = 50
    max_fix_attempts: int = 2
    issues_satisfy_phase: bool = True


@dataclass(slots=True)
class LockConfig:
    retries: int = 50
    backoff_seconds: float = 0.1


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class PlansyncConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    orchestrator: OrchestratorConfig = field(default_factory=OrchestratorConfig)
    lock: LockConfig = field(default_factory=LockConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PlansyncConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PlansyncConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            orchestrator=OrchestratorConfig(**data.get("orchestrator", {})),
            lock=LockConfig(**data.get("lock", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "project": {
                "name": self.project.name,
                "plans_dir": self.project.plans_dir,
                "index_path": self.project.index_path,
                "verify_command": self.project.verify_command,
            },
            "backend": {
                "primary": self.backend.primary,
                "fallback": self.backend.fallback,
                "max_retries": self.backend.max_retries,
                "retry_backoff_seconds": self.backend.retry_backoff_seconds,
                "timeout_seconds": self.backend.timeout_seconds,
            },
            "agents": {
                "implementer_model": self.agents.implementer_model,
                "verifier_model": self.agents.verifier_model,
                "reviewer_model": self.agents.reviewer_model,
            },
            "orchestrator": {
                "max_parallel_tasks": self.orchestrator.max_parallel_tasks,
                "max_steps": self.orchestrator.max_steps,
                "max_fix_attempts": self.orchestrator.max_fix_attempts,
                "issues_satisfy_phase": self.orchestrator.issues_satisfy_phase,
            },
            "lock": {
                "retries": self.lock.retries,
                "backoff_seconds": self.lock.backoff_seconds,
            },
            "logging": {
                "level": self.logging.level,
            },
        }

    def resolve_path(self, root: Path, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = root / path
        return path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if "." in rendered else f"{rendered}.0"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: PlansyncConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "backend", "agents", "orchestrator", "lock", "logging"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PlansyncConfig:
    if not path.exists():
        return PlansyncConfig.default()
    return PlansyncConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PlansyncConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
