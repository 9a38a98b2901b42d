from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, TypedDict, TypeVar

from langgraph.graph import END, START, StateGraph
from pydantic import BaseModel

from .bands import band_for_level
from .decomposer import GoalDecomposer
from .errors import (
    ConcurrentUpdateConflict,
    ConfigurationMissing,
    ContextRequired,
    PersistenceFailure,
    PlannerError,
)
from .evolution import StrategyEvolutionEngine
from .frontier import DeferredTasks, FrontierGenerator, FrontierResult, ReadyTasks, clamp_candidate
from .llm import build_oracle
from .models import (
    DEFAULT_TASK_PRIORITY,
    GENERAL_PATH,
    Branch,
    BranchTasks,
    CompletionRecord,
    CompletionResult,
    DeferredGenerationRequest,
    EvolutionResult,
    GenerationHistoryResult,
    IngestResult,
    LearningHistory,
    LearningPath,
    NoneAvailable,
    OperationError,
    ProjectConfig,
    PromptDescriptor,
    RoadmapBuildResult,
    RoadmapDocument,
    Task,
    TaskSelectionResult,
    utc_now,
)
from .oracle import GenerativeOracle
from .selector import TaskSelector, describe_selection, validate_energy
from .settings import RuntimeSettings
from .state_store import (
    CONFIG_DOCUMENT,
    HISTORY_DOCUMENT,
    ROADMAP_DOCUMENT,
    DocumentStore,
    FileProjectContext,
    project_scope,
    sanitize_project_id,
)
from .utils import parse_time_to_minutes

logger = logging.getLogger(__name__)

ResultT = TypeVar("ResultT")

INGEST_CONTEXT = "collaborative_handoff"


class BuildState(TypedDict, total=False):
    project_id: str
    project_config: ProjectConfig
    path_name: str
    learning_style: str
    focus_areas: list[str]
    interests: list[str]
    existing: RoadmapDocument | None
    completed_titles: set[str]
    branches: list[Branch]
    frontier: list[FrontierResult]
    ready_tasks: list[Task]
    pending: list[PromptDescriptor]
    roadmap: RoadmapDocument
    outcome: RoadmapBuildResult | DeferredGenerationRequest


class RoadmapPlanner:
    """Public operations over one project's roadmaps.

    Every operation reads its documents at the start and writes them at the end.
    Writes are compare-and-swap on the document revision and are retried with fresh
    state up to ``save_retry_limit`` times; operations on the same (project, path)
    issued through one planner are also serialized by an in-process lock. Failures
    come back as :class:`OperationError` results rather than exceptions.
    """

    def __init__(
        self,
        *,
        store: DocumentStore,
        project_context: FileProjectContext,
        oracle: GenerativeOracle,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.store = store
        self.project_context = project_context
        self.settings = settings or RuntimeSettings()
        self.decomposer = GoalDecomposer(oracle)
        self.generator = FrontierGenerator(oracle)
        self.evolution = StrategyEvolutionEngine(max_new_tasks=self.settings.max_new_tasks)
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self.graph = self._build_graph().compile()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        repo_root: Path | None = None,
        oracle: GenerativeOracle | None = None,
    ) -> "RoadmapPlanner":
        root = repo_root if repo_root is not None else Path.cwd()
        store = DocumentStore(settings.state_store_path(root))
        return cls(
            store=store,
            project_context=FileProjectContext(store, default_project_id=settings.project_id),
            oracle=oracle if oracle is not None else build_oracle(settings, repo_root=root),
            settings=settings,
        )

    # ------------------------------------------------------------------
    # Shared plumbing
    # ------------------------------------------------------------------

    async def _guard(self, operation: str, action: Callable[[], Awaitable[ResultT]]) -> ResultT | OperationError:
        try:
            return await action()
        except (PlannerError, ValueError) as exc:
            kind = getattr(exc, "error_kind", "invalid_request")
            logger.warning("%s failed (%s): %s", operation, kind, exc)
            return OperationError(
                error_kind=kind,
                message=str(exc),
                missing=list(getattr(exc, "missing", [])),
                summary=f"{operation} failed: {exc}",
            )

    def _lock_for(self, project_id: str, path_name: str) -> asyncio.Lock:
        return self._locks.setdefault((project_id, path_name), asyncio.Lock())

    def _retrying(self, operation: str, attempt: Callable[[], ResultT]) -> ResultT:
        attempts = self.settings.save_retry_limit + 1
        for number in range(1, attempts + 1):
            try:
                return attempt()
            except ConcurrentUpdateConflict:
                if number == attempts:
                    raise
                logger.warning("%s hit a concurrent update (attempt %d/%d); retrying", operation, number, attempts)
        raise AssertionError("unreachable")

    def _commit(self, scope: str, name: str, model: BaseModel) -> None:
        result = self.store.save_model(scope, name, model)
        if result.status == "conflict":
            raise ConcurrentUpdateConflict(f"{name} in {scope} changed concurrently ({result.message})")
        if not result.ok:
            raise PersistenceFailure(f"Could not save {name} in {scope}: {result.message}")
        model.revision = result.revision

    def _load_config(self, project_id: str) -> ProjectConfig:
        config = self.store.load_model(project_scope(project_id), CONFIG_DOCUMENT, ProjectConfig)
        if config is None:
            raise ConfigurationMissing(f"No configuration found for project '{project_id}'")
        return config

    def _load_roadmap(self, project_id: str, path_name: str) -> RoadmapDocument | None:
        return self.store.load_model(project_scope(project_id, path_name), ROADMAP_DOCUMENT, RoadmapDocument)

    def _require_roadmap(self, project_id: str, path_name: str) -> RoadmapDocument:
        roadmap = self._load_roadmap(project_id, path_name)
        if roadmap is None:
            raise ConfigurationMissing(f"No roadmap for learning path '{path_name}'; build one first")
        return roadmap

    def _load_history(self, project_id: str, path_name: str) -> LearningHistory:
        history = self.store.load_model(project_scope(project_id, path_name), HISTORY_DOCUMENT, LearningHistory)
        return history or LearningHistory(path_name=path_name)

    def _active(self) -> tuple[str, ProjectConfig]:
        project_id = self.project_context.require_active_project()
        return project_id, self._load_config(project_id)

    # ------------------------------------------------------------------
    # Project setup
    # ------------------------------------------------------------------

    async def create_project(
        self,
        project_id: str,
        *,
        goal: str,
        knowledge_level: int = 1,
        interests: list[str] | None = None,
        focus_areas: list[str] | None = None,
        context: str = "",
        domain: str = "",
        learning_paths: list[str] | None = None,
    ) -> ProjectConfig | OperationError:
        async def action() -> ProjectConfig:
            slug = sanitize_project_id(project_id)
            existing = self.store.load_model(project_scope(slug), CONFIG_DOCUMENT, ProjectConfig)
            config = ProjectConfig(
                project_id=slug,
                goal=goal,
                knowledge_level=knowledge_level,
                interests=list(interests or []),
                focus_areas=list(focus_areas or []),
                context=context,
                domain=domain,
                learning_paths=[LearningPath(path_name=name) for name in (learning_paths or []) if name != GENERAL_PATH],
                revision=existing.revision if existing else 0,
            )
            self._commit(project_scope(slug), CONFIG_DOCUMENT, config)
            self.project_context.activate(slug)
            logger.info("Project %s configured (level %d)", slug, config.knowledge_level)
            return config

        return await self._guard("create_project", action)

    # ------------------------------------------------------------------
    # buildRoadmap
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(BuildState)
        graph.add_node("prepare", self._prepare_node)
        graph.add_node("decompose", self._decompose_node)
        graph.add_node("generate", self._generate_node)
        graph.add_node("persist", self._persist_node)

        graph.add_edge(START, "prepare")
        graph.add_edge("prepare", "decompose")
        graph.add_edge("decompose", "generate")
        graph.add_edge("generate", "persist")
        graph.add_edge("persist", END)
        return graph

    def _prepare_node(self, state: BuildState) -> dict[str, Any]:
        config = state["project_config"]
        if not config.context.strip():
            raise ContextRequired(["context"])
        existing = self._load_roadmap(state["project_id"], state["path_name"])
        learning_style = state.get("learning_style") or (
            existing.learning_style if existing else self.settings.default_learning_style
        )
        return {
            "existing": existing,
            "learning_style": learning_style,
            "focus_areas": state.get("focus_areas") or list(config.focus_areas),
            "interests": config.interests_for_path(state["path_name"]),
            "completed_titles": existing.completed_titles() if existing else set(),
        }

    async def _decompose_node(self, state: BuildState) -> dict[str, Any]:
        config = state["project_config"]
        branches = await self.decomposer.decompose(config.goal, state["focus_areas"], config.knowledge_level)
        return {"branches": branches}

    async def _generate_node(self, state: BuildState) -> dict[str, Any]:
        config = state["project_config"]
        branches = state["branches"]
        results = await asyncio.gather(
            *(
                self.generator.generate(
                    branch,
                    interests=state["interests"],
                    learning_style=state["learning_style"],
                    knowledge_level=config.knowledge_level,
                    completed_titles=state["completed_titles"],
                    context=config.context,
                    goal=config.goal,
                )
                for branch in branches
            ),
            return_exceptions=True,
        )
        frontier: list[FrontierResult] = []
        ready: list[Task] = []
        pending: list[PromptDescriptor] = []
        for branch, result in zip(branches, results):
            if isinstance(result, BaseException):
                logger.warning("Task generation failed for %s: %s", branch.id, result)
                result = ReadyTasks(branch_id=branch.id)
            frontier.append(result)
            if isinstance(result, DeferredTasks):
                pending.append(result.descriptor)
            else:
                ready.extend(result.tasks)
        return {"frontier": frontier, "ready_tasks": ready, "pending": pending}

    def _persist_node(self, state: BuildState) -> dict[str, Any]:
        project_id = state["project_id"]
        path_name = state["path_name"]
        scope = project_scope(project_id, path_name)

        def attempt() -> RoadmapDocument:
            latest = self._load_roadmap(project_id, path_name)
            roadmap = self._rebuilt_document(
                latest,
                config=state["project_config"],
                path_name=path_name,
                learning_style=state["learning_style"],
                focus_areas=state["focus_areas"],
                branches=state["branches"],
                new_tasks=state["ready_tasks"],
            )
            self._commit(scope, ROADMAP_DOCUMENT, roadmap)
            return roadmap

        roadmap = self._retrying("build_roadmap", attempt)
        self._retrying("build_roadmap", lambda: self._set_active_path(project_id, path_name))

        pending = state["pending"]
        new_count = sum(1 for task in roadmap.tasks if not task.completed)
        if pending and new_count == 0:
            outcome: RoadmapBuildResult | DeferredGenerationRequest = DeferredGenerationRequest(
                path_name=path_name,
                branches=roadmap.branches,
                requests=pending,
                summary=(
                    f"Roadmap structure ready for '{path_name}' with {len(roadmap.branches)} branch(es); "
                    f"task generation deferred for {len(pending)} branch(es). Submit generated tasks with ingest."
                ),
            )
        else:
            summary = f"Built roadmap for '{path_name}': {len(roadmap.branches)} branch(es), {new_count} open task(s)"
            if pending:
                summary += f"; {len(pending)} branch(es) awaiting generated tasks"
            outcome = RoadmapBuildResult(
                path_name=path_name,
                branches=roadmap.branches,
                tasks=roadmap.tasks,
                pending=pending,
                summary=summary + ".",
            )
        logger.info(outcome.summary)
        return {"roadmap": roadmap, "outcome": outcome}

    @staticmethod
    def _rebuilt_document(
        latest: RoadmapDocument | None,
        *,
        config: ProjectConfig,
        path_name: str,
        learning_style: str,
        focus_areas: list[str],
        branches: list[Branch],
        new_tasks: list[Task],
    ) -> RoadmapDocument:
        """Replace the unfinished part of ``latest`` with freshly generated branches and tasks."""
        kept = [task.model_copy(deep=True) for task in latest.tasks if task.completed] if latest else []
        merged_branches = [branch.model_copy(deep=True) for branch in branches]
        branch_ids = {branch.id for branch in merged_branches}
        for task in kept:
            if task.branch_id in branch_ids or latest is None:
                continue
            previous = latest.find_branch(task.branch_id)
            if previous is not None:
                merged_branches.append(previous.model_copy(deep=True))
                branch_ids.add(previous.id)

        roadmap = RoadmapDocument(
            path_name=path_name,
            goal=config.goal,
            knowledge_level=config.knowledge_level,
            branches=merged_branches,
            tasks=kept,
            learning_style=learning_style,
            focus_areas=list(focus_areas),
            created_at=latest.created_at if latest else utc_now(),
            generation_sessions=list(latest.generation_sessions) if latest else [],
            revision=latest.revision if latest else 0,
        )
        completed_titles = roadmap.completed_titles()
        for task in new_tasks:
            if task.title in completed_titles:
                continue
            roadmap.tasks.append(task.model_copy(update={"id": roadmap.allocate_task_id()}, deep=True))
        for task_id, ref in roadmap.prune_dangling_prerequisites():
            logger.warning("Dropped unresolved prerequisite %r from %s", ref, task_id)
        roadmap.touch()
        return roadmap

    def _set_active_path(self, project_id: str, path_name: str) -> None:
        config = self._load_config(project_id)
        if config.active_path == path_name:
            return
        config.active_path = path_name
        self._commit(project_scope(project_id), CONFIG_DOCUMENT, config)

    async def build_roadmap(
        self,
        path_name: str | None = None,
        *,
        learning_style: str | None = None,
        focus_areas: list[str] | None = None,
    ) -> RoadmapBuildResult | DeferredGenerationRequest | OperationError:
        async def action() -> RoadmapBuildResult | DeferredGenerationRequest:
            project_id, config = self._active()
            path = path_name or config.active_path
            if not config.has_path(path):
                raise ConfigurationMissing(f"Learning path '{path}' is not configured for project '{project_id}'")
            async with self._lock_for(project_id, path):
                state = await self.graph.ainvoke(
                    {
                        "project_id": project_id,
                        "project_config": config,
                        "path_name": path,
                        "learning_style": (learning_style or "").strip().lower(),
                        "focus_areas": [area for area in (focus_areas or []) if area.strip()],
                    }
                )
            return state["outcome"]

        return await self._guard("build_roadmap", action)

    # ------------------------------------------------------------------
    # selectNextTask
    # ------------------------------------------------------------------

    async def select_next_task(
        self,
        context_text: str = "",
        energy_level: int = 3,
        time_available: int | str = 30,
    ) -> TaskSelectionResult | NoneAvailable | OperationError:
        async def action() -> TaskSelectionResult | NoneAvailable:
            energy = validate_energy(energy_level)
            minutes = parse_time_to_minutes(time_available)
            project_id, config = self._active()
            roadmap = self._require_roadmap(project_id, config.active_path)
            selector = TaskSelector(goal=config.goal, domain=config.domain)
            ranked = selector.rank(roadmap, energy_level=energy, time_available=minutes, context_text=context_text)
            if not ranked:
                return NoneAvailable(
                    reason="no_admissible_tasks",
                    summary=(
                        f"No task fits {minutes} minutes right now. "
                        "Run evolve to generate new tasks or rebuild the roadmap."
                    ),
                )
            best = ranked[0]
            logger.info("Selected %s (score %d) from %d candidate(s)", best.task.id, best.score.total, len(ranked))
            return TaskSelectionResult(
                task=best.task,
                score=best.score.total,
                summary=describe_selection(best.task, energy_level=energy, time_available=minutes),
            )

        return await self._guard("select_next_task", action)

    # ------------------------------------------------------------------
    # evolveStrategy
    # ------------------------------------------------------------------

    async def evolve_strategy(self, feedback: str = "") -> EvolutionResult | OperationError:
        async def action() -> EvolutionResult:
            project_id, config = self._active()
            path = config.active_path
            scope = project_scope(project_id, path)

            def attempt() -> EvolutionResult:
                roadmap = self._require_roadmap(project_id, path)
                history = self._load_history(project_id, path)
                outcome = self.evolution.evolve(
                    roadmap,
                    history,
                    feedback,
                    interests=config.interests_for_path(path),
                    goal=config.goal,
                )
                if outcome.new_tasks:
                    self._commit(scope, ROADMAP_DOCUMENT, roadmap)
                diagnosis = outcome.diagnosis
                return EvolutionResult(
                    diagnosis=diagnosis,
                    new_tasks=outcome.new_tasks,
                    summary=(
                        f"Strategy: {diagnosis.strategy.value}; {len(outcome.new_tasks)} new task(s); "
                        f"{diagnosis.available_tasks} of {diagnosis.total_tasks} task(s) available, "
                        f"{diagnosis.completed_tasks} completed."
                    ),
                )

            async with self._lock_for(project_id, path):
                return self._retrying("evolve_strategy", attempt)

        return await self._guard("evolve_strategy", action)

    # ------------------------------------------------------------------
    # ingestGeneratedTasks
    # ------------------------------------------------------------------

    async def ingest_generated_tasks(
        self,
        branch_tasks: list[BranchTasks] | list[dict[str, Any]],
    ) -> IngestResult | OperationError:
        async def action() -> IngestResult:
            batches = [BranchTasks.model_validate(item) for item in branch_tasks]
            if not any(batch.tasks for batch in batches):
                raise ValueError("No tasks supplied for ingestion")
            project_id, config = self._active()
            path = config.active_path
            scope = project_scope(project_id, path)

            def attempt() -> IngestResult:
                roadmap = self._require_roadmap(project_id, path)
                band = band_for_level(roadmap.knowledge_level)
                completed_titles = roadmap.completed_titles()
                touched: list[str] = []
                appended = 0
                for batch in batches:
                    branch = roadmap.ensure_branch(batch.branch_name)
                    if branch.id not in touched:
                        touched.append(branch.id)
                    for candidate in batch.tasks:
                        if candidate.title in completed_titles:
                            continue
                        roadmap.tasks.append(
                            clamp_candidate(
                                candidate,
                                band=band,
                                task_id=roadmap.allocate_task_id(),
                                branch_id=branch.id,
                                priority=DEFAULT_TASK_PRIORITY,
                                generated=True,
                            )
                        )
                        appended += 1
                for task_id, ref in roadmap.prune_dangling_prerequisites():
                    logger.warning("Dropped unresolved prerequisite %r from %s", ref, task_id)
                session = roadmap.record_session(appended, touched, context=INGEST_CONTEXT)
                logger.info("Ingested %d task(s) into %s", appended, ", ".join(touched))
                roadmap.touch()
                self._commit(scope, ROADMAP_DOCUMENT, roadmap)
                return IngestResult(
                    appended_count=appended,
                    total_tasks=len(roadmap.tasks),
                    session=session,
                    summary=(
                        f"Ingested {appended} task(s) into {len(touched)} branch(es); "
                        f"roadmap now has {len(roadmap.tasks)} task(s)."
                    ),
                )

            async with self._lock_for(project_id, path):
                return self._retrying("ingest_generated_tasks", attempt)

        return await self._guard("ingest_generated_tasks", action)

    # ------------------------------------------------------------------
    # Completion and history
    # ------------------------------------------------------------------

    async def complete_task(
        self,
        task_id: str,
        *,
        energy_after: int | None = None,
        difficulty_rating: int | None = None,
        learned: str = "",
    ) -> CompletionResult | OperationError:
        async def action() -> CompletionResult:
            if energy_after is not None:
                validate_energy(energy_after)
            project_id, config = self._active()
            path = config.active_path
            scope = project_scope(project_id, path)

            def attempt() -> tuple[Task, bool]:
                roadmap = self._require_roadmap(project_id, path)
                task = roadmap.find_task(task_id)
                if task is None:
                    raise ValueError(f"Unknown task id: {task_id}")
                newly = task.mark_completed()
                if newly:
                    roadmap.touch()
                    self._commit(scope, ROADMAP_DOCUMENT, roadmap)
                return task, newly

            def record(task: Task) -> None:
                history = self._load_history(project_id, path)
                history.completions.append(
                    CompletionRecord(
                        task_id=task.id,
                        title=task.title,
                        completed_at=task.completed_at or utc_now(),
                        energy_after=energy_after,
                        difficulty_rating=difficulty_rating,
                        learned=learned,
                    )
                )
                self._commit(scope, HISTORY_DOCUMENT, history)

            async with self._lock_for(project_id, path):
                task, newly = self._retrying("complete_task", attempt)
                if newly:
                    self._retrying("complete_task", lambda: record(task))
            summary = f"Completed: {task.title}." if newly else f"{task.title} was already completed."
            return CompletionResult(task=task, newly_completed=newly, summary=summary)

        return await self._guard("complete_task", action)

    async def generation_history(self, limit: int = 10) -> GenerationHistoryResult | OperationError:
        async def action() -> GenerationHistoryResult:
            if limit < 1:
                raise ValueError(f"limit must be >= 1, got: {limit}")
            project_id, config = self._active()
            roadmap = self._require_roadmap(project_id, config.active_path)
            sessions = roadmap.generation_sessions[-limit:]
            total = sum(session.task_count for session in sessions)
            return GenerationHistoryResult(
                sessions=sessions,
                summary=f"{len(sessions)} generation session(s) covering {total} task(s).",
            )

        return await self._guard("generation_history", action)
