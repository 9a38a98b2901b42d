import asyncio

import pytest

from conftest import ScriptedOracle, scripted_roadmap_oracle
from frontier_planner.models import (
    CompletionResult,
    DeferredGenerationRequest,
    EvolutionResult,
    EvolutionStrategy,
    GenerationHistoryResult,
    IngestResult,
    LearningHistory,
    NoneAvailable,
    OperationError,
    ProjectConfig,
    RoadmapBuildResult,
    RoadmapDocument,
    TaskSelectionResult,
)
from frontier_planner.oracle import DOMAIN_GENERATION, TASK_GENERATION, Deferred, Structured, Unparseable
from frontier_planner.state_store import SaveResult, project_scope

TASKS = {
    "Python Basics": [
        {"title": "Install Python", "difficulty": 1, "duration": 10},
        {"title": "Write hello world in Python", "difficulty": 1, "duration": "15 minutes", "prerequisites": ["Install Python"]},
    ],
    "Data Handling": [
        {"title": "Read a CSV file", "difficulty": 2, "duration": 20},
    ],
}


def run(coro):
    return asyncio.run(coro)


def _init(planner, **overrides) -> ProjectConfig:
    values = {
        "goal": "Learn Python for data analysis",
        "knowledge_level": 3,
        "interests": ["sports", "finance"],
        "context": "Evenings, 30 minutes at a time",
    }
    values.update(overrides)
    config = run(planner.create_project("demo", **values))
    assert isinstance(config, ProjectConfig)
    return config


def _roadmap(planner) -> RoadmapDocument:
    return planner.store.load_model(project_scope("demo", "general"), "roadmap", RoadmapDocument)


def test_operations_without_active_project_return_errors(make_planner) -> None:
    planner = make_planner()
    result = run(planner.select_next_task("", 3, 30))
    assert isinstance(result, OperationError)
    assert result.error_kind == "no_active_project"


def test_build_requires_context(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner, context="  ")
    result = run(planner.build_roadmap())
    assert isinstance(result, OperationError)
    assert result.error_kind == "context_required"
    assert result.missing == ["context"]


def test_build_unknown_path_is_configuration_missing(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    result = run(planner.build_roadmap("astronomy"))
    assert isinstance(result, OperationError)
    assert result.error_kind == "configuration_missing"


def test_build_persists_branches_and_sequential_tasks(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    result = run(planner.build_roadmap())
    assert isinstance(result, RoadmapBuildResult)
    assert [branch.id for branch in result.branches] == ["python_basics", "data_handling"]
    assert [task.id for task in result.tasks] == ["node_1", "node_2", "node_3"]
    assert all(task.difficulty <= 2 and task.duration_minutes <= 45 for task in result.tasks)
    stored = _roadmap(planner)
    assert stored.revision == 1
    assert stored.validate_integrity() == []
    assert stored.learning_style == "mixed"


def test_rebuild_keeps_completed_work_and_history(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    run(planner.build_roadmap())
    done = run(planner.complete_task("node_1", energy_after=4))
    assert isinstance(done, CompletionResult) and done.newly_completed
    first = _roadmap(planner)

    result = run(planner.build_roadmap(learning_style="visual"))
    assert isinstance(result, RoadmapBuildResult)
    titles = [task.title for task in result.tasks]
    assert titles.count("Install Python") == 1
    assert result.tasks[0].completed
    stored = _roadmap(planner)
    assert stored.created_at == first.created_at
    assert stored.revision == first.revision + 1
    assert stored.learning_style == "visual"
    assert stored.validate_integrity() == []


def test_all_branches_deferred_returns_deferred_request(make_planner) -> None:
    oracle = ScriptedOracle({DOMAIN_GENERATION: Structured(["Python Basics", "Data Handling"])})
    planner = make_planner(oracle)
    _init(planner)
    result = run(planner.build_roadmap())
    assert isinstance(result, DeferredGenerationRequest)
    assert [request.branch_id for request in result.requests] == ["python_basics", "data_handling"]
    assert "ingest" in result.summary
    assert _roadmap(planner).tasks == []


def test_deferred_round_trip_through_ingest(make_planner) -> None:
    oracle = ScriptedOracle({DOMAIN_GENERATION: Structured(["Python Basics"])})
    planner = make_planner(oracle)
    _init(planner)
    deferred = run(planner.build_roadmap())
    assert isinstance(deferred, DeferredGenerationRequest)
    branch_name = deferred.requests[0].branch_title

    ingested = run(
        planner.ingest_generated_tasks(
            [
                {
                    "branch_name": branch_name,
                    "tasks": [
                        {"title": "Variables", "duration": "20 minutes"},
                        {"title": "Loops", "difficulty": 5, "prerequisites": ["Variables", "Unknown"]},
                    ],
                },
                {"branch_name": "Visualization", "tasks": [{"title": "Plot a chart"}]},
            ]
        )
    )
    assert isinstance(ingested, IngestResult)
    assert ingested.appended_count == 3
    assert ingested.total_tasks == 3
    assert ingested.session.branches_touched == ["python_basics", "visualization"]

    stored = _roadmap(planner)
    assert [task.id for task in stored.tasks] == ["node_1", "node_2", "node_3"]
    assert all(task.generated and task.priority == 200 for task in stored.tasks)
    assert stored.find_task("node_2").prerequisites == ["Variables"]
    assert stored.find_task("node_2").difficulty == 2
    assert stored.find_branch("visualization").title == "Visualization"
    assert stored.validate_integrity() == []

    history = run(planner.generation_history())
    assert isinstance(history, GenerationHistoryResult)
    assert [session.task_count for session in history.sessions] == [3]


def test_partial_deferral_returns_ready_tasks_and_pending(make_planner) -> None:
    def tasks(payload):
        if payload["branch_title"] == "Data Handling":
            return Deferred()
        return Structured(TASKS["Python Basics"])

    oracle = ScriptedOracle({DOMAIN_GENERATION: Structured(list(TASKS)), TASK_GENERATION: tasks})
    planner = make_planner(oracle)
    _init(planner)
    result = run(planner.build_roadmap())
    assert isinstance(result, RoadmapBuildResult)
    assert len(result.tasks) == 2
    assert [pending.branch_id for pending in result.pending] == ["data_handling"]


def test_unparseable_branch_stays_task_less(make_planner) -> None:
    oracle = ScriptedOracle(
        {DOMAIN_GENERATION: Structured(["Python Basics"]), TASK_GENERATION: Unparseable(raw="?", reason="bad")}
    )
    planner = make_planner(oracle)
    _init(planner)
    result = run(planner.build_roadmap())
    assert isinstance(result, RoadmapBuildResult)
    assert [branch.id for branch in result.branches] == ["python_basics"]
    assert result.tasks == []


def test_select_next_task_respects_prerequisites(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    run(planner.build_roadmap())
    first = run(planner.select_next_task("python install", 1, "30 minutes"))
    assert isinstance(first, TaskSelectionResult)
    assert first.task.title == "Install Python"
    assert "Install Python" in first.summary

    run(planner.complete_task(first.task.id))
    second = run(planner.select_next_task("hello world", 1, 30))
    assert second.task.title == "Write hello world in Python"


def test_select_with_no_time_returns_none_available(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    run(planner.build_roadmap())
    result = run(planner.select_next_task("", 3, 1))
    assert isinstance(result, NoneAvailable)
    assert "evolve" in result.summary


def test_select_rejects_bad_energy(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    run(planner.build_roadmap())
    result = run(planner.select_next_task("", 9, 30))
    assert isinstance(result, OperationError)
    assert result.error_kind == "invalid_request"


def test_select_without_roadmap_is_configuration_missing(make_planner) -> None:
    planner = make_planner()
    _init(planner)
    result = run(planner.select_next_task("", 3, 30))
    assert isinstance(result, OperationError)
    assert result.error_kind == "configuration_missing"


def test_evolve_on_exhausted_roadmap_generates_tasks(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle({"Python Basics": [{"title": "Only task"}]}))
    _init(planner)
    run(planner.build_roadmap())
    run(planner.complete_task("node_1", energy_after=3))
    result = run(planner.evolve_strategy("ok"))
    assert isinstance(result, EvolutionResult)
    assert result.diagnosis.strategy is EvolutionStrategy.GENERATE_NEW_TASKS
    assert result.new_tasks and all(task.generated for task in result.new_tasks)
    stored = _roadmap(planner)
    assert len(stored.tasks) == 1 + len(result.new_tasks)
    follow_up = run(planner.select_next_task("", 1, 30))
    assert isinstance(follow_up, TaskSelectionResult)
    assert follow_up.task.generated


def test_complete_task_is_idempotent_and_records_history(make_planner) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    run(planner.build_roadmap())
    first = run(planner.complete_task("node_1", energy_after=2, learned="pip works"))
    again = run(planner.complete_task("node_1"))
    assert first.newly_completed and not again.newly_completed
    history = planner.store.load_model(project_scope("demo", "general"), "learning_history", LearningHistory)
    assert [(record.task_id, record.energy_after) for record in history.completions] == [("node_1", 2)]
    missing = run(planner.complete_task("node_99"))
    assert isinstance(missing, OperationError)


def test_concurrent_update_conflict_is_retried(make_planner, monkeypatch: pytest.MonkeyPatch) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    run(planner.build_roadmap())
    original = planner.store.save_model
    calls = {"count": 0}

    def flaky(scope, name, model):
        calls["count"] += 1
        if calls["count"] == 1:
            return SaveResult(status="conflict", revision=99, message="raced")
        return original(scope, name, model)

    monkeypatch.setattr(planner.store, "save_model", flaky)
    result = run(planner.evolve_strategy("stuck on problems"))
    assert isinstance(result, EvolutionResult)
    assert calls["count"] == 2


def test_conflict_retries_are_bounded(make_planner, monkeypatch: pytest.MonkeyPatch) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS), save_retry_limit=2)
    _init(planner)
    run(planner.build_roadmap())
    attempts = []

    def always_conflict(scope, name, model):
        attempts.append(name)
        return SaveResult(status="conflict", revision=0, message="raced")

    monkeypatch.setattr(planner.store, "save_model", always_conflict)
    result = run(planner.evolve_strategy("stuck"))
    assert isinstance(result, OperationError)
    assert result.error_kind == "concurrent_update_conflict"
    assert len(attempts) == 3


def test_persistence_failure_is_surfaced(make_planner, monkeypatch: pytest.MonkeyPatch) -> None:
    planner = make_planner(scripted_roadmap_oracle(TASKS))
    _init(planner)
    monkeypatch.setattr(
        planner.store, "save_model", lambda scope, name, model: SaveResult(status="failure", message="disk full")
    )
    result = run(planner.build_roadmap())
    assert isinstance(result, OperationError)
    assert result.error_kind == "persistence_failure"
    assert "disk full" in result.message


def test_concurrent_ingests_do_not_lose_tasks(make_planner) -> None:
    oracle = ScriptedOracle({DOMAIN_GENERATION: Structured(["Python Basics"])})
    planner = make_planner(oracle)
    _init(planner)
    run(planner.build_roadmap())

    async def both():
        return await asyncio.gather(
            planner.ingest_generated_tasks([{"branch_name": "Python Basics", "tasks": [{"title": "A"}]}]),
            planner.ingest_generated_tasks([{"branch_name": "Python Basics", "tasks": [{"title": "B"}]}]),
        )

    results = run(both())
    assert all(isinstance(result, IngestResult) for result in results)
    stored = _roadmap(planner)
    assert sorted(task.title for task in stored.tasks) == ["A", "B"]
    assert sorted(task.id for task in stored.tasks) == ["node_1", "node_2"]
    assert len(stored.generation_sessions) == 2


def test_ingest_rejects_empty_payload(make_planner) -> None:
    planner = make_planner()
    _init(planner)
    result = run(planner.ingest_generated_tasks([{"branch_name": "x", "tasks": []}]))
    assert isinstance(result, OperationError)
    assert result.error_kind == "invalid_request"


def test_ingest_into_unsluggable_branch_name_gets_unique_id(make_planner) -> None:
    planner = make_planner()
    _init(planner)
    assert isinstance(run(planner.build_roadmap()), DeferredGenerationRequest)
    assert [branch.id for branch in _roadmap(planner).branches] == ["general"]

    first = run(planner.ingest_generated_tasks([{"branch_name": "???", "tasks": [{"title": "Mystery task"}]}]))
    again = run(planner.ingest_generated_tasks([{"branch_name": "???", "tasks": [{"title": "Second mystery"}]}]))
    assert isinstance(first, IngestResult) and isinstance(again, IngestResult)
    assert first.session.branches_touched == ["general_2"]
    assert again.session.branches_touched == ["general_2"]

    stored = _roadmap(planner)
    assert [branch.id for branch in stored.branches] == ["general", "general_2"]
    assert {task.branch_id for task in stored.tasks} == {"general_2"}
    assert stored.validate_integrity() == []
