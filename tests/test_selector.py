import pytest

from frontier_planner.models import Branch, RoadmapDocument, Task
from frontier_planner.selector import TaskSelector, describe_selection, time_fit_score, unblocked_tasks


def _task(task_id: str, **kwargs) -> Task:
    values = {"title": task_id, "branch_id": "main", "difficulty": 1, "duration_minutes": 10}
    values.update(kwargs)
    return Task(id=task_id, **values)


def _roadmap(*tasks: Task) -> RoadmapDocument:
    return RoadmapDocument(goal="Learn Python", branches=[Branch(id="main", title="Main")], tasks=list(tasks))


def _select(roadmap: RoadmapDocument, *, energy: int = 3, time="30", context: str = "", goal: str = "Learn Python"):
    return TaskSelector(goal=goal).select(roadmap, energy_level=energy, time_available=time, context_text=context)


@pytest.mark.parametrize("reference_field", ["id", "title"])
def test_prerequisite_resolves_by_id_or_title(reference_field: str) -> None:
    done = _task("A", title="Alpha", completed=True) if reference_field == "id" else _task("node_1", title="A", completed=True)
    blocked = _task("node_2", title="Next", prerequisites=["A"])
    assert _select(_roadmap(done, blocked)) == blocked


def test_incomplete_or_missing_prerequisite_blocks() -> None:
    pending = _task("A", title="A")
    blocked = _task("node_2", title="Next", prerequisites=["A"], priority=999)
    orphan = _task("node_3", title="Orphan", prerequisites=["Nowhere"], priority=999)
    roadmap = _roadmap(pending, blocked, orphan)
    assert unblocked_tasks(roadmap) == [pending]
    assert _select(roadmap) == pending


def test_completed_tasks_are_never_selected() -> None:
    assert _select(_roadmap(_task("node_1", completed=True))) is None


@pytest.mark.parametrize(("duration", "admissible"), [(12, True), (13, False)])
def test_hard_time_cutoff(duration: int, admissible: bool) -> None:
    task = _task("node_1", duration_minutes=duration)
    selected = _select(_roadmap(task), time=10)
    assert (selected is not None) is admissible


def test_scoring_scenario_prefers_domain_relevant_task() -> None:
    task_a = _task("node_1", title="Write a Python function", difficulty=3, duration_minutes=25, priority=200)
    task_b = _task("node_2", title="Stretch break", difficulty=1, duration_minutes=5, priority=200)
    ranked = TaskSelector(goal="Learn Python").rank(
        _roadmap(task_a, task_b), energy_level=3, time_available="30 minutes"
    )
    assert [item.task.id for item in ranked] == ["node_1", "node_2"]
    assert ranked[0].score.total == 200 + 100 + 50 + 100
    assert ranked[1].score.total == 200 + 60 + 50 + 0


def test_context_breakthrough_and_generated_bonuses() -> None:
    task = _task(
        "node_1",
        title="Sketch circuit diagrams",
        difficulty=3,
        opportunity_type="breakthrough_amplification",
        generated=True,
    )
    score = TaskSelector(goal="Learn Python").score(
        task, energy_level=3, time_available=30, context_words=["circuit"]
    )
    assert score.context == 50
    assert score.breakthrough == 100
    assert score.generated == 25
    assert score.domain == 0


def test_domain_stopwords_do_not_count() -> None:
    task = _task("node_1", title="Research learning project study")
    score = TaskSelector(goal="research learning project study").score(
        task, energy_level=1, time_available=30, context_words=[]
    )
    assert score.domain == 0


def test_ties_break_on_lowest_natural_id() -> None:
    roadmap = _roadmap(_task("node_10"), _task("node_2"), _task("node_3"))
    assert _select(roadmap).id == "node_2"


@pytest.mark.parametrize(
    ("duration", "time_available", "expected"),
    [(20, 30, 50), (30, 30, 50), (35, 30, 20), (50, 30, -20), (100, 30, -100)],
)
def test_time_fit_tiers(duration: int, time_available: int, expected: int) -> None:
    assert time_fit_score(duration, time_available) == expected


@pytest.mark.parametrize("energy", [0, 6, "3"])
def test_energy_out_of_range_is_rejected(energy) -> None:
    with pytest.raises(ValueError):
        _select(_roadmap(_task("node_1")), energy=energy)


def test_describe_selection_mentions_fit() -> None:
    text = describe_selection(_task("node_1", title="Loops", difficulty=3, duration_minutes=25), energy_level=3, time_available=30)
    assert "Loops" in text
    assert "25 min" in text
    assert "matches your energy" in text
    assert "fits your 30 minutes" in text
