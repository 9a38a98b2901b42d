from importlib.metadata import version

from .bands import BANDS, KnowledgeBand, band_for_level, estimate_duration
from .decomposer import GoalDecomposer, heuristic_sub_branches
from .errors import (
    ConcurrentUpdateConflict,
    ConfigurationMissing,
    ContextRequired,
    NoActiveProject,
    PersistenceFailure,
    PlannerError,
)
from .evolution import EvolutionOutcome, StrategyEvolutionEngine, classify_sentiment
from .frontier import DeferredTasks, FrontierGenerator, ReadyTasks, clamp_candidate
from .models import (
    Branch,
    BranchTasks,
    CompletionRecord,
    CompletionResult,
    DeferredGenerationRequest,
    EvolutionResult,
    EvolutionStrategy,
    GenerationHistoryResult,
    GenerationSession,
    IngestResult,
    LearningHistory,
    NoneAvailable,
    OperationError,
    ProjectConfig,
    PromptDescriptor,
    RoadmapBuildResult,
    RoadmapDocument,
    Sentiment,
    StallIndicator,
    StrategyDiagnosis,
    SubBranch,
    Task,
    TaskCandidate,
    TaskSelectionResult,
)
from .oracle import Deferred, DeferringOracle, GenerativeOracle, Structured, Unparseable
from .planner import RoadmapPlanner
from .selector import ScoreBreakdown, TaskSelector
from .state_store import DocumentStore, FileProjectContext, SaveResult
from .utils import slugify_name, to_canonical_json


def get_version() -> str:
    try:
        return version("frontier-planner")
    except Exception:  # noqa: BLE001 - running from a source checkout.
        return "0.0.0"


__all__ = [
    "BANDS",
    "Branch",
    "BranchTasks",
    "CompletionRecord",
    "CompletionResult",
    "ConcurrentUpdateConflict",
    "ConfigurationMissing",
    "ContextRequired",
    "Deferred",
    "DeferredGenerationRequest",
    "DeferredTasks",
    "DeferringOracle",
    "DocumentStore",
    "EvolutionOutcome",
    "EvolutionResult",
    "EvolutionStrategy",
    "FileProjectContext",
    "FrontierGenerator",
    "GenerationHistoryResult",
    "GenerationSession",
    "GenerativeOracle",
    "GoalDecomposer",
    "IngestResult",
    "KnowledgeBand",
    "LearningHistory",
    "NoActiveProject",
    "NoneAvailable",
    "OperationError",
    "PersistenceFailure",
    "PlannerError",
    "ProjectConfig",
    "PromptDescriptor",
    "ReadyTasks",
    "RoadmapBuildResult",
    "RoadmapDocument",
    "RoadmapPlanner",
    "SaveResult",
    "ScoreBreakdown",
    "Sentiment",
    "StallIndicator",
    "StrategyDiagnosis",
    "StrategyEvolutionEngine",
    "Structured",
    "SubBranch",
    "Task",
    "TaskCandidate",
    "TaskSelectionResult",
    "TaskSelector",
    "Unparseable",
    "band_for_level",
    "clamp_candidate",
    "classify_sentiment",
    "estimate_duration",
    "get_version",
    "heuristic_sub_branches",
    "slugify_name",
    "to_canonical_json",
]
