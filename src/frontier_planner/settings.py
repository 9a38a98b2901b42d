from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

VALID_ORACLE_MODES: frozenset[str] = frozenset({"openai", "deferred"})


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_store_root: str = "state_store"
    project_id: str = ""
    oracle_mode: str = "openai"
    model_name: str = "gpt-4o-mini"
    temperature_percent: int = 20
    oracle_timeout: int = 120
    oracle_max_retries: int = 3
    save_retry_limit: int = 3
    max_new_tasks: int = 5
    default_learning_style: str = "mixed"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_store_root=os.getenv("PLANNER_STATE_STORE_ROOT", "state_store"),
            project_id=os.getenv("PLANNER_PROJECT_ID", ""),
            oracle_mode=os.getenv("PLANNER_ORACLE", "openai"),
            model_name=os.getenv("PLANNER_MODEL", "gpt-4o-mini"),
            temperature_percent=_get_env_int("PLANNER_TEMPERATURE_PERCENT", default=20, minimum=0, maximum=200),
            oracle_timeout=_get_env_int("PLANNER_ORACLE_TIMEOUT", default=120, minimum=1),
            oracle_max_retries=_get_env_int("PLANNER_ORACLE_MAX_RETRIES", default=3, minimum=0, maximum=20),
            save_retry_limit=_get_env_int("PLANNER_SAVE_RETRY_LIMIT", default=3, minimum=0, maximum=50),
            max_new_tasks=_get_env_int("PLANNER_MAX_NEW_TASKS", default=5, minimum=1, maximum=20),
            default_learning_style=os.getenv("PLANNER_DEFAULT_LEARNING_STYLE", "mixed"),
        ).normalized()

    @property
    def temperature(self) -> float:
        return self.temperature_percent / 100.0

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        state_store_root = self.state_store_root.strip()
        if not state_store_root:
            raise ValueError("PLANNER_STATE_STORE_ROOT must be non-empty")

        oracle_mode = self.oracle_mode.strip().lower()
        if oracle_mode not in VALID_ORACLE_MODES:
            raise ValueError(f"PLANNER_ORACLE must be one of: {', '.join(sorted(VALID_ORACLE_MODES))}")

        model_name = self.model_name.strip()
        if oracle_mode == "openai" and not model_name:
            raise ValueError("PLANNER_MODEL must be non-empty")

        learning_style = self.default_learning_style.strip().lower()
        if not learning_style:
            raise ValueError("PLANNER_DEFAULT_LEARNING_STYLE must be non-empty")

        if self.max_new_tasks < 1:
            raise ValueError(f"PLANNER_MAX_NEW_TASKS must be >= 1, got: {self.max_new_tasks}")

        return RuntimeSettings(
            state_store_root=state_store_root,
            project_id=self.project_id.strip(),
            oracle_mode=oracle_mode,
            model_name=model_name,
            temperature_percent=self.temperature_percent,
            oracle_timeout=self.oracle_timeout,
            oracle_max_retries=self.oracle_max_retries,
            save_retry_limit=self.save_retry_limit,
            max_new_tasks=self.max_new_tasks,
            default_learning_style=learning_style,
        )

    def state_store_path(self, repo_root: Path) -> Path:
        path = Path(self.state_store_root)
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
