from __future__ import annotations

from dataclasses import dataclass

from .models import BREAKTHROUGH_OPPORTUNITY, PrerequisiteIndex, RoadmapDocument, Task
from .utils import content_words, natural_id_key, parse_time_to_minutes

TIME_OVERRUN_TOLERANCE = 1.2
DOMAIN_STOPWORDS: frozenset[str] = frozenset({"research", "learning", "study", "project"})

ENERGY_WEIGHT = 20
FULL_FIT_BONUS = 50
NEAR_FIT_BONUS = 20
PARTIAL_FIT_PENALTY = -20
POOR_FIT_PENALTY = -100
DOMAIN_BONUS = 100
CONTEXT_BONUS = 50
BREAKTHROUGH_BONUS = 100
GENERATED_BONUS = 25


@dataclass(frozen=True)
class ScoreBreakdown:
    base: int
    energy: int
    time_fit: int
    domain: int
    context: int
    breakthrough: int
    generated: int

    @property
    def total(self) -> int:
        return self.base + self.energy + self.time_fit + self.domain + self.context + self.breakthrough + self.generated


@dataclass(frozen=True)
class ScoredTask:
    task: Task
    score: ScoreBreakdown


def validate_energy(energy_level: int) -> int:
    if isinstance(energy_level, bool) or not isinstance(energy_level, int):
        raise ValueError(f"energy_level must be an integer between 1 and 5, got: {energy_level!r}")
    if not 1 <= energy_level <= 5:
        raise ValueError(f"energy_level must be between 1 and 5, got: {energy_level}")
    return energy_level


def unblocked_tasks(roadmap: RoadmapDocument, index: PrerequisiteIndex | None = None) -> list[Task]:
    """Incomplete tasks whose prerequisites are all completed, regardless of duration."""
    index = index or roadmap.prerequisite_index()
    return [task for task in roadmap.tasks if not task.completed and index.prerequisites_met(task)]


def fits_time(task: Task, time_available: int) -> bool:
    return task.duration_minutes <= TIME_OVERRUN_TOLERANCE * time_available


def time_fit_score(duration: int, time_available: int) -> int:
    if duration <= time_available:
        return FULL_FIT_BONUS
    if time_available >= 0.8 * duration:
        return NEAR_FIT_BONUS
    if time_available >= 0.5 * duration:
        return PARTIAL_FIT_PENALTY
    return POOR_FIT_PENALTY


class TaskSelector:
    """Admission control and scoring over the task graph of one roadmap."""

    def __init__(self, *, goal: str = "", domain: str = "") -> None:
        self.domain_keywords = content_words(f"{goal} {domain}", exclude=DOMAIN_STOPWORDS)

    def score(self, task: Task, *, energy_level: int, time_available: int, context_words: list[str]) -> ScoreBreakdown:
        text = task.text
        return ScoreBreakdown(
            base=task.priority,
            energy=ENERGY_WEIGHT * (5 - abs(energy_level - task.difficulty)),
            time_fit=time_fit_score(task.duration_minutes, time_available),
            domain=DOMAIN_BONUS if any(word in text for word in self.domain_keywords) else 0,
            context=CONTEXT_BONUS if any(word in text for word in context_words) else 0,
            breakthrough=BREAKTHROUGH_BONUS if task.opportunity_type == BREAKTHROUGH_OPPORTUNITY else 0,
            generated=GENERATED_BONUS if task.generated else 0,
        )

    def rank(
        self,
        roadmap: RoadmapDocument,
        *,
        energy_level: int,
        time_available: int | str,
        context_text: str = "",
    ) -> list[ScoredTask]:
        """Score every admissible task, best first.

        Equal totals are ordered by task id with numeric suffixes compared as numbers,
        so ``node_2`` wins over ``node_10``.
        """
        energy = validate_energy(energy_level)
        minutes = parse_time_to_minutes(time_available)
        context_words = content_words(context_text)
        candidates = [task for task in unblocked_tasks(roadmap) if fits_time(task, minutes)]
        scored = [
            ScoredTask(task, self.score(task, energy_level=energy, time_available=minutes, context_words=context_words))
            for task in candidates
        ]
        scored.sort(key=lambda item: (-item.score.total, natural_id_key(item.task.id)))
        return scored

    def select(
        self,
        roadmap: RoadmapDocument,
        *,
        energy_level: int,
        time_available: int | str,
        context_text: str = "",
    ) -> Task | None:
        ranked = self.rank(roadmap, energy_level=energy_level, time_available=time_available, context_text=context_text)
        return ranked[0].task if ranked else None


def describe_selection(task: Task, *, energy_level: int, time_available: int) -> str:
    gap = abs(energy_level - task.difficulty)
    if gap == 0:
        energy_text = "matches your energy"
    elif gap == 1:
        energy_text = "close to your energy"
    else:
        energy_text = "a stretch for your current energy" if task.difficulty > energy_level else "lighter than your energy allows"
    if task.duration_minutes <= time_available:
        time_text = f"fits your {time_available} minutes"
    else:
        time_text = f"runs slightly over your {time_available} minutes"
    return (
        f"Next: {task.title} ({task.duration_minutes} min, difficulty {task.difficulty}/5); "
        f"{energy_text}, {time_text}."
    )
