from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from .utils import capitalize_first, parse_time_to_minutes, slugify_name

GENERAL_PATH = "general"
DEFAULT_TASK_PRIORITY = 200
BREAKTHROUGH_OPPORTUNITY = "breakthrough_amplification"


def utc_now() -> datetime:
    return datetime.now(UTC)


class EvolutionStrategy(str, Enum):
    GENERATE_NEW_TASKS = "generate_new_tasks"
    INCREASE_VARIETY = "increase_variety"
    ADDRESS_CONCERNS = "address_concerns"
    EXPAND_FRONTIER = "expand_frontier"
    OPTIMIZE_EXISTING = "optimize_existing"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"
    NEUTRAL = "neutral"


class StallIndicator(str, Enum):
    NO_AVAILABLE_TASKS = "no_available_tasks"
    NO_RECENT_PROGRESS = "no_recent_progress"
    LOW_ENGAGEMENT = "low_engagement"


@dataclass(frozen=True)
class ValidationIssue:
    severity: str
    location: str
    message: str


# ---------------------------------------------------------------------------
# Project configuration
# ---------------------------------------------------------------------------


class LearningPath(BaseModel):
    path_name: str
    interests: list[str] = Field(default_factory=list)


class ProjectConfig(BaseModel):
    """Learner profile and goal for one project."""

    project_id: str
    goal: str
    knowledge_level: int = Field(default=1, ge=1, le=10)
    interests: list[str] = Field(default_factory=list)
    focus_areas: list[str] = Field(default_factory=list)
    context: str = ""
    domain: str = ""
    learning_paths: list[LearningPath] = Field(default_factory=list)
    active_path: str = GENERAL_PATH
    revision: int = 0

    @field_validator("goal")
    @classmethod
    def _goal_non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("goal must be non-empty")
        return value.strip()

    def has_path(self, path_name: str) -> bool:
        return path_name == GENERAL_PATH or any(p.path_name == path_name for p in self.learning_paths)

    def interests_for_path(self, path_name: str) -> list[str]:
        if path_name != GENERAL_PATH:
            for path in self.learning_paths:
                if path.path_name == path_name and path.interests:
                    return list(path.interests)
        return list(self.interests)


# ---------------------------------------------------------------------------
# Roadmap aggregate
# ---------------------------------------------------------------------------


class SubBranch(BaseModel):
    id: str
    title: str
    description: str = ""


class Branch(BaseModel):
    id: str
    title: str
    description: str = ""
    expected_duration: str = "0-3 months"
    sub_branches: list[SubBranch] = Field(
        default_factory=list,
        validation_alias=AliasChoices("sub_branches", "subBranches"),
    )


class Task(BaseModel):
    """A schedulable frontier node."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    description: str = ""
    difficulty: int = Field(default=1, ge=1, le=5)
    duration_minutes: int = Field(
        default=30,
        ge=0,
        validation_alias=AliasChoices("duration_minutes", "duration"),
    )
    branch_id: str = Field(validation_alias=AliasChoices("branch_id", "branch"))
    prerequisites: list[str] = Field(default_factory=list)
    completed: bool = False
    completed_at: datetime | None = None
    priority: int = DEFAULT_TASK_PRIORITY
    generated: bool = False
    opportunity_type: str | None = None
    learning_outcome: str | None = None

    @field_validator("duration_minutes", mode="before")
    @classmethod
    def _parse_duration(cls, value: Any) -> int:
        return parse_time_to_minutes(value)

    @property
    def text(self) -> str:
        return f"{self.title} {self.description}".lower()

    def mark_completed(self, when: datetime | None = None) -> bool:
        """Flag the task as done. Returns False when it already was."""
        if self.completed:
            return False
        self.completed = True
        self.completed_at = when or utc_now()
        return True


class GenerationSession(BaseModel):
    """Append-only audit record of one batch task ingestion."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=utc_now)
    session_id: str = Field(default_factory=lambda: f"sess_{uuid.uuid4().hex[:8]}")
    task_count: int
    branches_touched: list[str]
    generation_context: str = "collaborative_handoff"


class PrerequisiteIndex:
    """Resolves prerequisite references by task id or by task title."""

    def __init__(self, tasks: list[Task]) -> None:
        self.by_id: dict[str, Task] = {}
        self.by_title: dict[str, list[Task]] = {}
        for task in tasks:
            self.by_id.setdefault(task.id, task)
            self.by_title.setdefault(task.title, []).append(task)

    def resolves(self, reference: str) -> bool:
        return reference in self.by_id or reference in self.by_title

    def is_satisfied(self, reference: str) -> bool:
        by_id = self.by_id.get(reference)
        if by_id is not None and by_id.completed:
            return True
        return any(task.completed for task in self.by_title.get(reference, ()))

    def prerequisites_met(self, task: Task) -> bool:
        return all(self.is_satisfied(ref) for ref in task.prerequisites)


class RoadmapDocument(BaseModel):
    """Branches and tasks for one (project, learning path) pair."""

    path_name: str = GENERAL_PATH
    goal: str
    knowledge_level: int = Field(default=1, ge=1, le=10)
    branches: list[Branch] = Field(default_factory=list)
    tasks: list[Task] = Field(default_factory=list)
    learning_style: str = "mixed"
    focus_areas: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    last_updated_at: datetime = Field(default_factory=utc_now)
    generation_sessions: list[GenerationSession] = Field(default_factory=list)
    revision: int = 0

    def prerequisite_index(self) -> PrerequisiteIndex:
        return PrerequisiteIndex(self.tasks)

    def find_task(self, task_id: str) -> Task | None:
        return next((task for task in self.tasks if task.id == task_id), None)

    def find_branch(self, name: str) -> Branch | None:
        lowered = name.strip().lower()
        slug = slugify_name(name)
        for branch in self.branches:
            if branch.id in (name, slug) or branch.title.lower() == lowered:
                return branch
        return None

    def ensure_branch(self, name: str, *, description: str | None = None) -> Branch:
        """Return the branch called ``name``, creating it when absent."""
        existing = self.find_branch(name)
        if existing is not None:
            return existing
        taken = {branch.id for branch in self.branches}
        base = slugify_name(name) or "general"
        branch_id = base
        suffix = 2
        while branch_id in taken:
            branch_id = f"{base}_{suffix}"
            suffix += 1
        branch = Branch(
            id=branch_id,
            title=capitalize_first(name.strip()),
            description=description or f"Auto-added domain for {name.strip()}",
            expected_duration="0-3 months",
        )
        self.branches.append(branch)
        return branch

    def completed_tasks(self) -> list[Task]:
        return [task for task in self.tasks if task.completed]

    def completed_titles(self) -> set[str]:
        return {task.title for task in self.tasks if task.completed}

    def allocate_task_id(self, prefix: str = "node", *, reserved: set[str] | None = None) -> str:
        """Next sequential ``<prefix>_<n>`` id that is unused in this document."""
        taken = {task.id for task in self.tasks} | (reserved or set())
        counter = len(self.tasks) + len(reserved or ()) + 1
        while f"{prefix}_{counter}" in taken:
            counter += 1
        return f"{prefix}_{counter}"

    def prune_dangling_prerequisites(self) -> list[tuple[str, str]]:
        """Drop prerequisite references that resolve to no task. Returns (task_id, reference) pairs."""
        index = self.prerequisite_index()
        dropped: list[tuple[str, str]] = []
        for task in self.tasks:
            kept = [ref for ref in task.prerequisites if index.resolves(ref)]
            if len(kept) != len(task.prerequisites):
                dropped.extend((task.id, ref) for ref in task.prerequisites if ref not in kept)
                task.prerequisites = kept
        return dropped

    def record_session(self, task_count: int, branches: list[str], *, context: str) -> GenerationSession:
        session = GenerationSession(
            task_count=task_count,
            branches_touched=list(branches),
            generation_context=context,
        )
        self.generation_sessions.append(session)
        return session

    def touch(self) -> None:
        self.last_updated_at = utc_now()

    def validate_integrity(self) -> list[ValidationIssue]:
        issues: list[ValidationIssue] = []
        if not self.branches:
            issues.append(ValidationIssue("ERROR", "branches", "Roadmap must include at least one branch"))

        branch_ids: set[str] = set()
        for b_idx, branch in enumerate(self.branches):
            if branch.id in branch_ids:
                issues.append(ValidationIssue("ERROR", f"branches[{b_idx}]", f"Duplicate branch id {branch.id}"))
            branch_ids.add(branch.id)
            sub_ids = [sub.id for sub in branch.sub_branches]
            if len(set(sub_ids)) != len(sub_ids):
                issues.append(ValidationIssue("ERROR", f"branches[{b_idx}]", "Duplicate sub-branch ids"))

        task_ids: set[str] = set()
        index = self.prerequisite_index()
        for t_idx, task in enumerate(self.tasks):
            location = f"tasks[{t_idx}]"
            if task.id in task_ids:
                issues.append(ValidationIssue("ERROR", location, f"Duplicate task id {task.id}"))
            task_ids.add(task.id)
            if task.branch_id not in branch_ids:
                issues.append(ValidationIssue("ERROR", location, f"Unknown branch {task.branch_id}"))
            for ref in task.prerequisites:
                if not index.resolves(ref):
                    issues.append(ValidationIssue("WARNING", location, f"Prerequisite {ref} does not resolve"))
        return issues


# ---------------------------------------------------------------------------
# Learning history
# ---------------------------------------------------------------------------


class CompletionRecord(BaseModel):
    task_id: str
    title: str
    completed_at: datetime = Field(default_factory=utc_now)
    energy_after: int | None = Field(default=None, ge=1, le=5)
    difficulty_rating: int | None = Field(default=None, ge=1, le=5)
    learned: str = ""


class LearningHistory(BaseModel):
    path_name: str = GENERAL_PATH
    completions: list[CompletionRecord] = Field(default_factory=list)
    revision: int = 0


# ---------------------------------------------------------------------------
# Oracle payload schemas
# ---------------------------------------------------------------------------


class TaskCandidate(BaseModel):
    """One proposed task as returned by the oracle or handed back for ingestion."""

    title: str
    description: str = ""
    difficulty: int | None = None
    duration: int | float | str | None = None
    prerequisites: list[str] = Field(default_factory=list)
    opportunity_type: str | None = Field(
        default=None,
        validation_alias=AliasChoices("opportunity_type", "opportunityType"),
    )

    @field_validator("title")
    @classmethod
    def _title_non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("title must be non-empty")
        return value.strip()

    @field_validator("difficulty", mode="before")
    @classmethod
    def _coerce_difficulty(cls, value: Any) -> int | None:
        if value is None or isinstance(value, bool):
            return None
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return None

    @property
    def duration_minutes(self) -> int | None:
        if self.duration is None:
            return None
        return parse_time_to_minutes(self.duration)


class BranchTasks(BaseModel):
    branch_name: str
    tasks: list[TaskCandidate]


class PromptDescriptor(BaseModel):
    """Everything a caller needs to complete a deferred generation out-of-band."""

    request_id: str
    kind: str
    goal: str
    branch_id: str
    branch_title: str
    knowledge_level: int
    requested_batch: int = 5
    payload: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class StrategyDiagnosis(BaseModel):
    completed_tasks: int
    total_tasks: int
    available_tasks: int
    stall_indicators: list[StallIndicator]
    sentiment: Sentiment
    feedback_keywords: list[str] = Field(default_factory=list)
    feedback: str = ""
    strategy: EvolutionStrategy


class RoadmapBuildResult(BaseModel):
    status: Literal["built"] = "built"
    path_name: str
    branches: list[Branch]
    tasks: list[Task]
    pending: list[PromptDescriptor] = Field(default_factory=list)
    summary: str


class DeferredGenerationRequest(BaseModel):
    status: Literal["deferred"] = "deferred"
    path_name: str
    branches: list[Branch]
    requests: list[PromptDescriptor]
    summary: str


class TaskSelectionResult(BaseModel):
    status: Literal["selected"] = "selected"
    task: Task
    score: int
    summary: str


class NoneAvailable(BaseModel):
    status: Literal["none_available"] = "none_available"
    reason: str
    summary: str


class EvolutionResult(BaseModel):
    status: Literal["evolved"] = "evolved"
    diagnosis: StrategyDiagnosis
    new_tasks: list[Task]
    summary: str


class IngestResult(BaseModel):
    status: Literal["ingested"] = "ingested"
    appended_count: int
    total_tasks: int
    session: GenerationSession
    summary: str


class CompletionResult(BaseModel):
    status: Literal["completed"] = "completed"
    task: Task
    newly_completed: bool
    summary: str


class GenerationHistoryResult(BaseModel):
    status: Literal["history"] = "history"
    sessions: list[GenerationSession]
    summary: str


class OperationError(BaseModel):
    status: Literal["error"] = "error"
    error_kind: str
    message: str
    missing: list[str] = Field(default_factory=list)
    summary: str
