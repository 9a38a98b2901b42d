from __future__ import annotations


class PlannerError(RuntimeError):
    """Base class for failures surfaced as operation error results."""

    error_kind = "planner_error"


class ConfigurationMissing(PlannerError):
    """No project configuration or roadmap document is available."""

    error_kind = "configuration_missing"


class NoActiveProject(ConfigurationMissing):
    """No project has been selected."""

    error_kind = "no_active_project"


class ContextRequired(PlannerError):
    """The project lacks the free-text context needed to build a roadmap."""

    error_kind = "context_required"

    def __init__(self, missing: list[str]) -> None:
        super().__init__(
            "Additional context required before generating a roadmap: "
            + ", ".join(missing)
        )
        self.missing = list(missing)


class PersistenceFailure(PlannerError):
    """A document write did not reach durable storage."""

    error_kind = "persistence_failure"


class ConcurrentUpdateConflict(PlannerError):
    """The document revision moved between load and save."""

    error_kind = "concurrent_update_conflict"
