from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Union

from .bands import KnowledgeBand, band_for_level
from .models import DEFAULT_TASK_PRIORITY, Branch, PromptDescriptor, Task, TaskCandidate
from .oracle import TASK_GENERATION, Deferred, GenerativeOracle, Structured, Unparseable, validate_model_list
from .utils import DEFAULT_DURATION_MINUTES, request_fingerprint

logger = logging.getLogger(__name__)

REQUESTED_BATCH = 5
PRIORITY_PER_DIFFICULTY = 10


@dataclass(frozen=True)
class ReadyTasks:
    branch_id: str
    tasks: list[Task] = field(default_factory=list)


@dataclass(frozen=True)
class DeferredTasks:
    branch_id: str
    descriptor: PromptDescriptor


FrontierResult = Union[ReadyTasks, DeferredTasks]


def clamp_candidate(
    candidate: TaskCandidate,
    *,
    band: KnowledgeBand,
    task_id: str,
    branch_id: str,
    priority: int | None = None,
    generated: bool = False,
) -> Task:
    """Build a task from an untrusted candidate, forcing it into the band's envelope."""
    difficulty = band.clamp_difficulty(candidate.difficulty)
    duration = band.clamp_duration(candidate.duration_minutes or DEFAULT_DURATION_MINUTES)
    prerequisites = [ref.strip() for ref in candidate.prerequisites if ref.strip() and ref.strip() != candidate.title]
    return Task(
        id=task_id,
        title=candidate.title,
        description=candidate.description,
        difficulty=difficulty,
        duration_minutes=duration,
        branch_id=branch_id,
        prerequisites=prerequisites,
        priority=priority if priority is not None else DEFAULT_TASK_PRIORITY + difficulty * PRIORITY_PER_DIFFICULTY,
        generated=generated,
        opportunity_type=candidate.opportunity_type,
    )


def order_tasks(tasks: list[Task], *, ideal_difficulty: int) -> list[Task]:
    return sorted(tasks, key=lambda task: (-task.priority, abs(task.difficulty - ideal_difficulty)))


class FrontierGenerator:
    """Populates one branch with level-appropriate tasks.

    The knowledge band is sent to the oracle as request guidance and then enforced
    again on whatever comes back. A deferred oracle produces a :class:`DeferredTasks`
    descriptor that the caller completes through task ingestion.
    """

    def __init__(self, oracle: GenerativeOracle, *, requested_batch: int = REQUESTED_BATCH) -> None:
        self.oracle = oracle
        self.requested_batch = requested_batch

    async def generate(
        self,
        branch: Branch,
        *,
        interests: list[str],
        learning_style: str,
        knowledge_level: int,
        completed_titles: set[str],
        context: str,
        goal: str,
    ) -> FrontierResult:
        band = band_for_level(knowledge_level)
        payload = self._payload(
            branch,
            band=band,
            interests=interests,
            learning_style=learning_style,
            knowledge_level=knowledge_level,
            completed_titles=completed_titles,
            context=context,
            goal=goal,
        )
        response = await self.oracle.propose(TASK_GENERATION, payload)

        if isinstance(response, Deferred):
            logger.info("Task generation for %s deferred (%s)", branch.id, response.reason)
            descriptor = PromptDescriptor(
                request_id=request_fingerprint(TASK_GENERATION, payload),
                kind=TASK_GENERATION,
                goal=goal,
                branch_id=branch.id,
                branch_title=branch.title,
                knowledge_level=knowledge_level,
                requested_batch=self.requested_batch,
                payload=payload,
            )
            return DeferredTasks(branch_id=branch.id, descriptor=descriptor)

        if isinstance(response, Unparseable):
            logger.warning("Task generation for %s unparseable: %s", branch.id, response.reason)
            return ReadyTasks(branch_id=branch.id)

        if not isinstance(response, Structured):
            logger.warning("Task generation for %s returned an unexpected outcome: %r", branch.id, response)
            return ReadyTasks(branch_id=branch.id)

        candidates = validate_model_list(response.data, TaskCandidate, keys=("tasks", "items"))
        if candidates is None:
            logger.warning("Task generation for %s returned a non-list payload", branch.id)
            return ReadyTasks(branch_id=branch.id)

        tasks: list[Task] = []
        seen_titles: set[str] = set()
        for candidate in candidates:
            if candidate.title in completed_titles or candidate.title in seen_titles:
                continue
            seen_titles.add(candidate.title)
            tasks.append(
                clamp_candidate(
                    candidate,
                    band=band,
                    task_id=f"{branch.id}_{len(tasks) + 1}",
                    branch_id=branch.id,
                )
            )
        return ReadyTasks(branch_id=branch.id, tasks=order_tasks(tasks, ideal_difficulty=band.ideal_difficulty(knowledge_level)))

    def _payload(
        self,
        branch: Branch,
        *,
        band: KnowledgeBand,
        interests: list[str],
        learning_style: str,
        knowledge_level: int,
        completed_titles: set[str],
        context: str,
        goal: str,
    ) -> dict[str, object]:
        return {
            "goal": goal,
            "branch_id": branch.id,
            "branch_title": branch.title,
            "branch_description": branch.description,
            "sub_branches": [sub.title for sub in branch.sub_branches],
            "interests": list(interests),
            "learning_style": learning_style,
            "knowledge_level": knowledge_level,
            "band": band.name,
            "max_difficulty": band.max_difficulty,
            "max_duration_minutes": band.duration_cap,
            "completed_titles": sorted(completed_titles),
            "context": context,
            "requested_batch": self.requested_batch,
            "instruction": (
                f"{band.guidance} Generate {self.requested_batch} tasks for the domain "
                f"'{branch.title}' toward the goal: {goal}"
            ),
        }
