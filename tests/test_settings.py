from pathlib import Path

import pytest
from pydantic import ValidationError

from phase_orchestrator import (
    DEFAULT_MODELS_BY_TIER,
    OrchestratorConfig,
    PhaseState,
    PhaseStatus,
    ResearchMode,
    RuntimeModelSelection,
    RuntimeSettings,
    get_version,
)
from phase_orchestrator.models import ExecutionState, Phase


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("ORCHESTRATOR_CHECKPOINT_BACKEND", "ORCHESTRATOR_MAX_RETRIES", "ORCHESTRATOR_MODEL_FRONTIER"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.checkpoint_backend == "sqlite"
    assert settings.max_retries == 0
    assert settings.model_frontier == DEFAULT_MODELS_BY_TIER["frontier"]
    assert settings.checkpoint_db_path(Path("/repo")) == Path("/repo/state_store/checkpoints.sqlite")
    assert settings.checkpoint_dir_path(Path("/repo")) == Path("/repo/state_store/checkpoints")


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_CHECKPOINT_BACKEND", " FileSystem ")
    monkeypatch.setenv("ORCHESTRATOR_CHECKPOINT_DIR", "/var/lib/orchestrator")
    monkeypatch.setenv("ORCHESTRATOR_MODEL_EFFICIENT", "  gpt-4.1-mini ")
    monkeypatch.setenv("ORCHESTRATOR_TEMPERATURE", "0.7")
    monkeypatch.setenv("ORCHESTRATOR_MAX_RETRIES", "2")
    settings = RuntimeSettings.from_env()
    assert settings.checkpoint_backend == "filesystem"
    assert settings.checkpoint_dir_path(Path("/repo")) == Path("/var/lib/orchestrator")
    assert settings.model_efficient == "gpt-4.1-mini"
    assert settings.temperature == 0.7
    assert settings.max_retries == 2
    assert settings.model_selection.resolve(ResearchMode.BALANCED) == "gpt-4.1-mini"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("ORCHESTRATOR_CHECKPOINT_BACKEND", "redis"),
        ("ORCHESTRATOR_MAX_RETRIES", "abc"),
        ("ORCHESTRATOR_MAX_RETRIES", "11"),
        ("ORCHESTRATOR_REQUEST_TIMEOUT", "0"),
        ("ORCHESTRATOR_TEMPERATURE", "hot"),
        ("ORCHESTRATOR_MODEL_ECONOMY", "   "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError, match=name):
        RuntimeSettings.from_env()


def test_model_selection_maps_modes_to_tiers(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ORCHESTRATOR_MODEL_FRONTIER", "deep-model")
    monkeypatch.delenv("ORCHESTRATOR_MODEL_ECONOMY", raising=False)
    selection = RuntimeSettings.from_env().model_selection
    assert selection.resolve(ResearchMode.COMPREHENSIVE) == "deep-model"
    assert selection.resolve("quick") == DEFAULT_MODELS_BY_TIER["economy"]
    with pytest.raises(ValueError):
        selection.resolve("exhaustive")
    with pytest.raises(ValueError):
        RuntimeModelSelection(by_tier={"frontier": "a", "efficient": "b"})


def test_orchestrator_config_validation() -> None:
    config = OrchestratorConfig.model_validate(
        {
            "projectId": "p",
            "projectName": "Planner",
            "projectPath": "/work/p",
            "researchMode": "comprehensive",
            "phases": ["market_research", "general"],
        }
    )
    assert config.mode == ResearchMode.COMPREHENSIVE
    assert config.phases == [Phase.MARKET_RESEARCH, Phase.GENERAL]
    with pytest.raises(ValidationError):
        OrchestratorConfig(project_id="p", project_name=" ", project_path="/x", phases=[Phase.GENERAL])
    with pytest.raises(ValidationError):
        OrchestratorConfig(project_id="p", project_name="n", project_path="/x", phases=[])


def test_phase_state_transitions_and_progress_clamp() -> None:
    phase = PhaseState(phase=Phase.GENERAL)
    with pytest.raises(ValueError):
        phase.transition(PhaseStatus.COMPLETED)
    phase.transition(PhaseStatus.IN_PROGRESS)
    phase.progress = 140
    assert phase.progress == 100
    phase.transition(PhaseStatus.SKIPPED)
    with pytest.raises(ValueError):
        phase.transition(PhaseStatus.IN_PROGRESS)


def test_execution_state_index_bounds() -> None:
    config = OrchestratorConfig(project_id="p", project_name="n", project_path="/x", phases=[Phase.GENERAL])
    state = ExecutionState.from_config(config)
    assert state.current_phase_index == -1
    assert state.current_phase is None
    with pytest.raises(ValidationError):
        state.current_phase_index = 1


def test_get_version_returns_string() -> None:
    assert isinstance(get_version(), str)
