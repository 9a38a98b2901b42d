from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from .models import (
    EvolutionStrategy,
    LearningHistory,
    RoadmapDocument,
    Sentiment,
    StallIndicator,
    StrategyDiagnosis,
    Task,
    utc_now,
)
from .selector import unblocked_tasks

logger = logging.getLogger(__name__)

RECENT_WINDOW = timedelta(days=7)
LOW_ENGAGEMENT_THRESHOLD = 2.5
DEFAULT_ENERGY_AFTER = 3
THIN_FRONTIER = 3
MAX_INTEREST_TASKS = 3

POSITIVE_WORDS: tuple[str, ...] = (
    "great",
    "interesting",
    "progress",
    "excellent",
    "perfect",
    "energized",
    "proud",
    "good",
    "working",
)
NEGATIVE_WORDS: tuple[str, ...] = (
    "boring",
    "stuck",
    "difficult",
    "difficulty",
    "frustrated",
    "overwhelmed",
    "bad",
    "problem",
)


@dataclass
class EvolutionOutcome:
    diagnosis: StrategyDiagnosis
    new_tasks: list[Task] = field(default_factory=list)


@dataclass(frozen=True)
class _Draft:
    title: str
    description: str
    branch: str
    difficulty: int
    duration: int
    priority: int
    prerequisites: tuple[str, ...] = ()
    learning_outcome: str | None = None


def classify_sentiment(feedback: str) -> tuple[Sentiment, list[str]]:
    """Count positive and negative keywords present in ``feedback``; ties are neutral."""
    text = feedback.lower()
    positives = [word for word in POSITIVE_WORDS if word in text]
    negatives = [word for word in NEGATIVE_WORDS if word in text]
    if len(positives) > len(negatives):
        return Sentiment.POSITIVE, positives + negatives
    if len(negatives) > len(positives):
        return Sentiment.NEGATIVE, positives + negatives
    return Sentiment.NEUTRAL, positives + negatives


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class StrategyEvolutionEngine:
    """Diagnoses stalls and appends remediation tasks to a roadmap."""

    def __init__(self, *, max_new_tasks: int = 5) -> None:
        if max_new_tasks < 1:
            raise ValueError("max_new_tasks must be >= 1")
        self.max_new_tasks = max_new_tasks

    def analyze(
        self,
        roadmap: RoadmapDocument,
        history: LearningHistory,
        feedback: str,
        *,
        now: datetime | None = None,
    ) -> StrategyDiagnosis:
        now = _aware(now or utc_now())
        available = unblocked_tasks(roadmap)
        recent = [record for record in history.completions if _aware(record.completed_at) >= now - RECENT_WINDOW]

        indicators: list[StallIndicator] = []
        if not available:
            indicators.append(StallIndicator.NO_AVAILABLE_TASKS)
        if not recent:
            indicators.append(StallIndicator.NO_RECENT_PROGRESS)
        # An empty window averages 0.
        energies = [record.energy_after or DEFAULT_ENERGY_AFTER for record in recent]
        if sum(energies) / max(len(energies), 1) < LOW_ENGAGEMENT_THRESHOLD:
            indicators.append(StallIndicator.LOW_ENGAGEMENT)

        sentiment, keywords = classify_sentiment(feedback)
        if StallIndicator.NO_AVAILABLE_TASKS in indicators:
            strategy = EvolutionStrategy.GENERATE_NEW_TASKS
        elif StallIndicator.LOW_ENGAGEMENT in indicators:
            strategy = EvolutionStrategy.INCREASE_VARIETY
        elif sentiment is Sentiment.NEGATIVE:
            strategy = EvolutionStrategy.ADDRESS_CONCERNS
        elif len(available) < THIN_FRONTIER:
            strategy = EvolutionStrategy.EXPAND_FRONTIER
        else:
            strategy = EvolutionStrategy.OPTIMIZE_EXISTING

        return StrategyDiagnosis(
            completed_tasks=len(roadmap.completed_tasks()),
            total_tasks=len(roadmap.tasks),
            available_tasks=len(available),
            stall_indicators=indicators,
            sentiment=sentiment,
            feedback_keywords=keywords,
            feedback=feedback,
            strategy=strategy,
        )

    def evolve(
        self,
        roadmap: RoadmapDocument,
        history: LearningHistory,
        feedback: str,
        *,
        interests: list[str],
        goal: str,
        now: datetime | None = None,
    ) -> EvolutionOutcome:
        """Diagnose ``roadmap`` and append at most ``max_new_tasks`` generated tasks to it."""
        diagnosis = self.analyze(roadmap, history, feedback, now=now)
        drafts = self._drafts_for(diagnosis, roadmap, interests=interests, goal=goal)[: self.max_new_tasks]

        new_tasks: list[Task] = []
        for draft in drafts:
            branch = roadmap.ensure_branch(draft.branch)
            task = Task(
                id=roadmap.allocate_task_id(),
                title=draft.title,
                description=draft.description,
                difficulty=draft.difficulty,
                duration_minutes=draft.duration,
                branch_id=branch.id,
                prerequisites=list(draft.prerequisites),
                priority=draft.priority,
                generated=True,
                learning_outcome=draft.learning_outcome,
            )
            roadmap.tasks.append(task)
            new_tasks.append(task)
        if new_tasks:
            roadmap.touch()
        logger.info("Strategy %s added %d task(s)", diagnosis.strategy.value, len(new_tasks))
        return EvolutionOutcome(diagnosis=diagnosis, new_tasks=new_tasks)

    def _drafts_for(
        self,
        diagnosis: StrategyDiagnosis,
        roadmap: RoadmapDocument,
        *,
        interests: list[str],
        goal: str,
    ) -> list[_Draft]:
        strategy = diagnosis.strategy
        if strategy is EvolutionStrategy.GENERATE_NEW_TASKS:
            return self._exploration_drafts(goal)
        if strategy is EvolutionStrategy.INCREASE_VARIETY:
            drafts = [
                _Draft(
                    title=f"Focus: {interest}",
                    description=f"Spend a session on {interest} and connect it back to {goal}.",
                    branch="Interests",
                    difficulty=2,
                    duration=30,
                    priority=300,
                    learning_outcome=f"Progress in {interest}",
                )
                for interest in interests[:MAX_INTEREST_TASKS]
                if interest.strip()
            ]
            return drafts or self._exploration_drafts(goal)
        if strategy is EvolutionStrategy.ADDRESS_CONCERNS:
            return [
                _Draft(
                    title="Address: Current Challenge",
                    description=f'Work through the challenge you described: "{diagnosis.feedback}"',
                    branch="Problem Solving",
                    difficulty=1,
                    duration=20,
                    priority=280,
                    learning_outcome="Resolution of the current learning obstacle",
                )
            ]
        if strategy is EvolutionStrategy.EXPAND_FRONTIER:
            last = self._last_completed(roadmap)
            if last is None:
                return self._exploration_drafts(goal)
            return [
                _Draft(
                    title=f"Build On: {last.title}",
                    description=f"Extend what you did in '{last.title}' one step further.",
                    branch=last.branch_id,
                    difficulty=min(5, last.difficulty + 1),
                    duration=35,
                    priority=270,
                    prerequisites=(last.id,),
                    learning_outcome=f"Understanding beyond {last.title}",
                )
            ]
        return []

    @staticmethod
    def _exploration_drafts(goal: str) -> list[_Draft]:
        return [
            _Draft(
                title=f"Explore: What's Next in {goal}",
                description=f"Survey where {goal} goes from here and note the next thing you want to learn.",
                branch="Exploration",
                difficulty=1,
                duration=15,
                priority=250,
                learning_outcome="Clarity on next learning directions",
            ),
            _Draft(
                title="Sample: Try Something Different",
                description="Pick an adjacent topic you have not touched yet and try a small exercise in it.",
                branch="Experimentation",
                difficulty=2,
                duration=25,
                priority=240,
                learning_outcome="Experience with alternative approaches",
            ),
        ]

    @staticmethod
    def _last_completed(roadmap: RoadmapDocument) -> Task | None:
        completed = roadmap.completed_tasks()
        if not completed:
            return None
        floor = datetime.min.replace(tzinfo=UTC)
        return max(
            enumerate(completed),
            key=lambda pair: (_aware(pair[1].completed_at) if pair[1].completed_at else floor, pair[0]),
        )[1]
