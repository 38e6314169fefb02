import tomllib
from pathlib import Path

import pytest

from plansync import __version__
from plansync.config import PlansyncConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "plansync.toml"
    config = PlansyncConfig.default()
    config.project.name = "plansync-test"
    config.project.verify_command = "pytest -q {deliverables}"
    config.backend.primary = "codex"
    config.backend.max_retries = 3
    config.agents.reviewer_model = "claude-sonnet-4-5"
    config.orchestrator.max_parallel_tasks = 2
    config.orchestrator.issues_satisfy_phase = False
    config.lock.backoff_seconds = 0.25
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config
    assert loaded.orchestrator.max_steps == 50
    assert loaded.orchestrator.issues_satisfy_phase is False
    assert loaded.lock.backoff_seconds == 0.25
    assert loaded.backend.timeout_seconds == 900.0


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    config = load_config(tmp_path / "absent.toml")

    assert config == PlansyncConfig.default()
    assert config.project.index_path == ".plansync/progress.json"
    assert config.lock.retries == 50


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(PlansyncConfig.default())

    for section in ("project", "backend", "agents", "orchestrator", "lock", "logging"):
        assert f"[{section}]" in rendered
    assert "max_fix_attempts = 2" in rendered
    assert "backoff_seconds = 0.1" in rendered
    assert "timeout_seconds = 900.0" in rendered
    assert tomllib.loads(rendered)["orchestrator"]["issues_satisfy_phase"] is True


def test_unknown_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "plansync.toml"
    config_path.write_text("[orchestrator]\nmax_workers = 3\n", encoding="utf-8")

    with pytest.raises(TypeError):
        load_config(config_path)


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
