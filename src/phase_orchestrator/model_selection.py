from __future__ import annotations

from dataclasses import dataclass

from .models import ResearchMode


VALID_TIERS: frozenset[str] = frozenset({"frontier", "efficient", "economy"})

DEFAULT_MODELS_BY_TIER: dict[str, str] = {
    "frontier": "gpt-4o",
    "efficient": "gpt-4o-mini",
    "economy": "gpt-4o-mini",
}

MODE_TIERS: dict[ResearchMode, str] = {
    ResearchMode.QUICK: "economy",
    ResearchMode.BALANCED: "efficient",
    ResearchMode.COMPREHENSIVE: "frontier",
}


@dataclass(frozen=True)
class RuntimeModelSelection:
    """Maps model tier names to concrete model identifiers.

    A research mode picks a tier (``MODE_TIERS``); this dataclass holds the
    concrete model name for each tier so ``resolve`` can translate a mode
    into the model that generates phase content.
    """

    by_tier: dict[str, str]

    def __post_init__(self) -> None:
        """Validate that all required tiers are present and no tier maps to an empty model name."""
        missing = VALID_TIERS - set(self.by_tier)
        if missing:
            raise ValueError(
                f"RuntimeModelSelection missing required tiers: {', '.join(sorted(missing))}. "
                f"All of {sorted(VALID_TIERS)} must be configured."
            )
        for tier, model_name in self.by_tier.items():
            if not model_name or not model_name.strip():
                raise ValueError(f"RuntimeModelSelection tier '{tier}' has empty model name")

    def resolve(self, mode: ResearchMode | str) -> str:
        """Resolve a research mode to a concrete model name.

        Raises:
            ValueError: If ``mode`` is not a known research mode.
        """
        try:
            research_mode = ResearchMode(mode)
        except ValueError as exc:
            available = ", ".join(m.value for m in ResearchMode)
            raise ValueError(f"Unknown research mode '{mode}'. Valid modes: {available}") from exc
        return self.by_tier[MODE_TIERS[research_mode]]
