from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class KnowledgeBand:
    """Difficulty and session-length envelope for a range of knowledge levels."""

    name: str
    label: str
    min_level: int
    max_level: int
    max_difficulty: int
    duration_cap: int | None
    default_difficulty: int
    expected_duration: str
    guidance: str

    def ideal_difficulty(self, knowledge_level: int) -> int:
        if self.max_level <= 6:
            return self.max_difficulty
        return max(1, min(knowledge_level - 2, self.max_difficulty))

    def clamp_difficulty(self, difficulty: int | None) -> int:
        value = self.default_difficulty if difficulty is None else difficulty
        return max(1, min(value, self.max_difficulty))

    def clamp_duration(self, minutes: int) -> int:
        if self.duration_cap is None:
            return minutes
        return min(minutes, self.duration_cap)


BANDS: tuple[KnowledgeBand, ...] = (
    KnowledgeBand(
        name="beginner",
        label="complete beginner",
        min_level=1,
        max_level=2,
        max_difficulty=1,
        duration_cap=25,
        default_difficulty=1,
        expected_duration="0-3 months",
        guidance=(
            "The learner is a complete beginner. Every task must be difficulty 1 only, "
            "take 5-25 minutes, and assume no background knowledge or tools."
        ),
    ),
    KnowledgeBand(
        name="early",
        label="early learner",
        min_level=3,
        max_level=4,
        max_difficulty=2,
        duration_cap=45,
        default_difficulty=1,
        expected_duration="2-6 months",
        guidance=(
            "The learner knows the basics. Use difficulty 1-2 and sessions of 15-45 minutes "
            "that consolidate fundamentals through small hands-on exercises."
        ),
    ),
    KnowledgeBand(
        name="intermediate",
        label="intermediate",
        min_level=5,
        max_level=6,
        max_difficulty=3,
        duration_cap=60,
        default_difficulty=2,
        expected_duration="4-9 months",
        guidance=(
            "The learner is intermediate. Use difficulty 1-3 and sessions of 30-60 minutes "
            "that combine concepts into small projects."
        ),
    ),
    KnowledgeBand(
        name="advanced",
        label="advanced",
        min_level=7,
        max_level=10,
        max_difficulty=5,
        duration_cap=None,
        default_difficulty=3,
        expected_duration="6-12+ months",
        guidance=(
            "The learner is advanced. Use difficulty 2-5 and sessions of any length that push "
            "into specialised, open-ended or research-grade work."
        ),
    ),
)


def band_for_level(knowledge_level: int) -> KnowledgeBand:
    """Return the band containing ``knowledge_level``; out-of-range levels snap to the nearest band."""
    level = max(1, min(int(knowledge_level), 10))
    for band in BANDS:
        if band.min_level <= level <= band.max_level:
            return band
    raise ValueError(f"No knowledge band for level {knowledge_level}")


def estimate_duration(knowledge_level: int) -> str:
    return band_for_level(knowledge_level).expected_duration
