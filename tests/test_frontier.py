import asyncio

import pytest

from conftest import ScriptedOracle
from frontier_planner.bands import band_for_level, estimate_duration
from frontier_planner.frontier import DeferredTasks, FrontierGenerator, ReadyTasks
from frontier_planner.models import Branch
from frontier_planner.oracle import TASK_GENERATION, Deferred, Structured, Unparseable

BRANCH = Branch(id="core_syntax", title="Core Syntax", description="Language basics")


def _generate(response, *, level: int = 1, completed: set[str] | None = None):
    oracle = ScriptedOracle({TASK_GENERATION: response})
    result = asyncio.run(
        FrontierGenerator(oracle).generate(
            BRANCH,
            interests=["games"],
            learning_style="hands-on",
            knowledge_level=level,
            completed_titles=completed or set(),
            context="evenings after work",
            goal="Learn Python",
        )
    )
    return result, oracle


def test_beginner_band_clamps_difficulty_and_duration() -> None:
    response = Structured(
        [
            {"title": "Build a web scraper", "difficulty": 5, "duration": 120},
            {"title": "Print hello", "difficulty": 3, "duration": "1 hour"},
            {"title": "Read the tutorial"},
        ]
    )
    result, _ = _generate(response, level=1)
    assert isinstance(result, ReadyTasks)
    assert len(result.tasks) == 3
    for task in result.tasks:
        assert task.difficulty == 1
        assert task.duration_minutes <= 25
        assert task.branch_id == "core_syntax"


@pytest.mark.parametrize(
    ("level", "max_difficulty", "cap"),
    [(3, 2, 45), (4, 2, 45), (5, 3, 60), (6, 3, 60), (8, 5, None)],
)
def test_band_envelopes(level: int, max_difficulty: int, cap: int | None) -> None:
    response = Structured([{"title": "Stretch task", "difficulty": 5, "duration": 500}])
    result, _ = _generate(response, level=level)
    (task,) = result.tasks
    assert task.difficulty == max_difficulty
    assert task.duration_minutes == (500 if cap is None else cap)


def test_band_guidance_is_sent_with_the_request() -> None:
    _, oracle = _generate(Structured([]), level=1)
    (kind, payload), = oracle.calls
    assert kind == TASK_GENERATION
    assert payload["max_difficulty"] == 1
    assert payload["max_duration_minutes"] == 25
    assert "difficulty 1 only" in payload["instruction"]


def test_regeneration_never_resurrects_completed_titles() -> None:
    response = Structured([{"title": "X", "difficulty": 1}, {"title": "Y", "difficulty": 1}])
    completed = {"X"}
    for _ in range(2):
        result, _ = _generate(response, completed=completed)
        assert [task.title for task in result.tasks] == ["Y"]


def test_deferred_response_returns_descriptor_with_branch() -> None:
    result, _ = _generate(Deferred(reason="deferred"), level=4)
    assert isinstance(result, DeferredTasks)
    assert result.branch_id == "core_syntax"
    assert result.descriptor.branch_id == "core_syntax"
    assert result.descriptor.goal == "Learn Python"
    assert result.descriptor.requested_batch == 5
    assert result.descriptor.knowledge_level == 4
    assert len(result.descriptor.request_id) == 12


def test_unparseable_response_yields_empty_branch() -> None:
    result, _ = _generate(Unparseable(raw="{oops", reason="invalid JSON"))
    assert result == ReadyTasks(branch_id="core_syntax")


def test_response_that_is_not_an_oracle_outcome_yields_empty_branch() -> None:
    result, _ = _generate([{"title": "Raw list instead of an outcome"}])
    assert result == ReadyTasks(branch_id="core_syntax")


def test_invalid_candidates_are_dropped_individually() -> None:
    response = Structured({"tasks": [{"title": ""}, {"description": "no title"}, {"title": "Valid"}]})
    result, _ = _generate(response)
    assert [task.title for task in result.tasks] == ["Valid"]


def test_ordering_by_priority_then_distance_from_ideal() -> None:
    response = Structured(
        [
            {"title": "Easy", "difficulty": 1},
            {"title": "Hard", "difficulty": 5},
            {"title": "Medium", "difficulty": 3},
        ]
    )
    result, _ = _generate(response, level=6)
    assert [task.title for task in result.tasks] == ["Hard", "Medium", "Easy"]
    assert [task.difficulty for task in result.tasks] == [3, 3, 1]
    assert [task.priority for task in result.tasks] == [230, 230, 210]


def test_self_prerequisite_is_removed() -> None:
    response = Structured([{"title": "Loop", "prerequisites": ["Loop", "Variables"]}])
    result, _ = _generate(response)
    assert result.tasks[0].prerequisites == ["Variables"]


def test_band_lookup() -> None:
    assert band_for_level(2).name == "beginner"
    assert band_for_level(7).ideal_difficulty(7) == 5
    assert band_for_level(5).ideal_difficulty(5) == 3
    assert estimate_duration(10) == "6-12+ months"
