from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from .model_selection import DEFAULT_MODELS_BY_TIER, RuntimeModelSelection

CHECKPOINT_BACKENDS: frozenset[str] = frozenset({"sqlite", "filesystem"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    checkpoint_backend: str = "sqlite"
    checkpoint_db: str = "state_store/checkpoints.sqlite"
    checkpoint_dir: str = "state_store/checkpoints"
    model_frontier: str = DEFAULT_MODELS_BY_TIER["frontier"]
    model_efficient: str = DEFAULT_MODELS_BY_TIER["efficient"]
    model_economy: str = DEFAULT_MODELS_BY_TIER["economy"]
    temperature: float = 0.2
    request_timeout: int = 120
    max_retries: int = 0

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            checkpoint_backend=os.getenv("ORCHESTRATOR_CHECKPOINT_BACKEND", "sqlite"),
            checkpoint_db=os.getenv("ORCHESTRATOR_CHECKPOINT_DB", "state_store/checkpoints.sqlite"),
            checkpoint_dir=os.getenv("ORCHESTRATOR_CHECKPOINT_DIR", "state_store/checkpoints"),
            model_frontier=os.getenv("ORCHESTRATOR_MODEL_FRONTIER", DEFAULT_MODELS_BY_TIER["frontier"]),
            model_efficient=os.getenv("ORCHESTRATOR_MODEL_EFFICIENT", DEFAULT_MODELS_BY_TIER["efficient"]),
            model_economy=os.getenv("ORCHESTRATOR_MODEL_ECONOMY", DEFAULT_MODELS_BY_TIER["economy"]),
            temperature=_get_env_float("ORCHESTRATOR_TEMPERATURE", default=0.2, minimum=0.0, maximum=2.0),
            request_timeout=_get_env_int("ORCHESTRATOR_REQUEST_TIMEOUT", default=120, minimum=1, maximum=3_600),
            max_retries=_get_env_int("ORCHESTRATOR_MAX_RETRIES", default=0, minimum=0, maximum=10),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        backend = self.checkpoint_backend.strip().lower()
        if backend not in CHECKPOINT_BACKENDS:
            raise ValueError(
                "ORCHESTRATOR_CHECKPOINT_BACKEND must be one of: " + ", ".join(sorted(CHECKPOINT_BACKENDS))
            )
        if not self.checkpoint_db.strip():
            raise ValueError("ORCHESTRATOR_CHECKPOINT_DB must be non-empty")
        if not self.checkpoint_dir.strip():
            raise ValueError("ORCHESTRATOR_CHECKPOINT_DIR must be non-empty")

        model_frontier = self.model_frontier.strip()
        if not model_frontier:
            raise ValueError("ORCHESTRATOR_MODEL_FRONTIER must be non-empty")
        model_efficient = self.model_efficient.strip()
        if not model_efficient:
            raise ValueError("ORCHESTRATOR_MODEL_EFFICIENT must be non-empty")
        model_economy = self.model_economy.strip()
        if not model_economy:
            raise ValueError("ORCHESTRATOR_MODEL_ECONOMY must be non-empty")

        return RuntimeSettings(
            checkpoint_backend=backend,
            checkpoint_db=self.checkpoint_db,
            checkpoint_dir=self.checkpoint_dir,
            model_frontier=model_frontier,
            model_efficient=model_efficient,
            model_economy=model_economy,
            temperature=self.temperature,
            request_timeout=self.request_timeout,
            max_retries=self.max_retries,
        )

    @property
    def model_selection(self) -> RuntimeModelSelection:
        return RuntimeModelSelection(
            by_tier={
                "frontier": self.model_frontier,
                "efficient": self.model_efficient,
                "economy": self.model_economy,
            }
        )

    def checkpoint_db_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_db)
        return path if path.is_absolute() else repo_root / path

    def checkpoint_dir_path(self, repo_root: Path) -> Path:
        path = Path(self.checkpoint_dir)
        return path if path.is_absolute() else repo_root / path


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ValueError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float, maximum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
    if not minimum <= parsed <= maximum:
        raise ValueError(f"{name} must be within [{minimum}, {maximum}], got: {parsed}")
    return parsed
