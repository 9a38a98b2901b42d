from __future__ import annotations

import asyncio
import logging
import re

from .bands import estimate_duration
from .models import Branch, SubBranch
from .oracle import (
    DOMAIN_GENERATION,
    SUBDOMAIN_GENERATION,
    Deferred,
    GenerativeOracle,
    Structured,
    Unparseable,
    validate_string_list,
)
from .utils import capitalize_first, slugify_name

logger = logging.getLogger(__name__)

FALLBACK_DOMAIN = "General"
MIN_DOMAINS = 3
MAX_DOMAINS = 6
MAX_SUB_BRANCHES = 3
MAX_HEURISTIC_SUB_BRANCHES = 2

_WORD_RE = re.compile(r"[A-Za-z][A-Za-z0-9]*")


def heuristic_sub_branches(title: str) -> list[str]:
    """Sub-domain names derived from the content words of a branch title.

    Returns the first two capitalised words longer than three letters, or nothing
    when the title has fewer than two such words.
    """
    words = [word.capitalize() for word in _WORD_RE.findall(title) if len(word) > 3]
    if len(words) < MAX_HEURISTIC_SUB_BRANCHES:
        return []
    return words[:MAX_HEURISTIC_SUB_BRANCHES]


class GoalDecomposer:
    """Turns a learner goal into an ordered, non-empty list of branches."""

    def __init__(self, oracle: GenerativeOracle) -> None:
        self.oracle = oracle

    async def decompose(
        self,
        goal: str,
        explicit_focus_areas: list[str] | None,
        knowledge_level: int,
    ) -> list[Branch]:
        focus = self._ordered_unique(explicit_focus_areas or [])
        if focus:
            titles = [capitalize_first(title) for title in focus]
            description = "Focus area chosen by the learner for {goal}"
        else:
            titles = await self._propose_domains(goal, knowledge_level)
            description = "Core domain of {goal}"
        if not titles:
            logger.warning("No domains available for goal %r; using %s", goal, FALLBACK_DOMAIN)
            titles = [FALLBACK_DOMAIN]

        branches = self._make_branches(titles, goal=goal, description=description, knowledge_level=knowledge_level)
        results = await asyncio.gather(
            *(self._sub_branches_for(branch, goal) for branch in branches),
            return_exceptions=True,
        )
        for branch, result in zip(branches, results):
            if isinstance(result, BaseException):
                logger.warning("Sub-branch enrichment failed for %s: %s", branch.id, result)
                result = self._to_sub_branches(branch, heuristic_sub_branches(branch.title))
            branch.sub_branches = result
        return branches

    async def _propose_domains(self, goal: str, knowledge_level: int) -> list[str]:
        payload = {
            "goal": goal,
            "knowledge_level": knowledge_level,
            "min_domains": MIN_DOMAINS,
            "max_domains": MAX_DOMAINS,
            "instruction": (
                f"Propose {MIN_DOMAINS}-{MAX_DOMAINS} short noun-phrase learning domains "
                f"that together cover the goal: {goal}"
            ),
        }
        try:
            response = await self.oracle.propose(DOMAIN_GENERATION, payload)
        except Exception as exc:  # noqa: BLE001 - a failed oracle degrades to the fallback domain.
            logger.warning("Domain generation failed: %s", exc)
            return []
        if isinstance(response, Deferred):
            logger.warning("Domain generation deferred (%s)", response.reason)
            return []
        if isinstance(response, Unparseable):
            logger.warning("Domain generation unparseable: %s", response.reason)
            return []
        if not isinstance(response, Structured):
            logger.warning("Domain generation returned an unexpected outcome: %r", response)
            return []
        names = validate_string_list(response.data, keys=("domains", "items"))
        if names is None:
            logger.warning("Domain generation returned a non-list payload")
            return []
        return self._ordered_unique(names)[:MAX_DOMAINS]

    async def _sub_branches_for(self, branch: Branch, goal: str) -> list[SubBranch]:
        payload = {
            "goal": goal,
            "domain": branch.title,
            "max_sub_domains": MAX_SUB_BRANCHES,
            "instruction": f"Propose 2-{MAX_SUB_BRANCHES} sub-domains of '{branch.title}' for the goal: {goal}",
        }
        response = await self.oracle.propose(SUBDOMAIN_GENERATION, payload)
        names: list[str] | None = None
        if isinstance(response, Structured):
            names = validate_string_list(response.data, keys=("sub_domains", "subdomains", "items"))
        elif isinstance(response, Unparseable):
            logger.warning("Sub-domain generation for %s unparseable: %s", branch.id, response.reason)
        if not names:
            names = heuristic_sub_branches(branch.title)
        return self._to_sub_branches(branch, self._ordered_unique(names)[:MAX_SUB_BRANCHES])

    @staticmethod
    def _to_sub_branches(branch: Branch, names: list[str]) -> list[SubBranch]:
        return [
            SubBranch(
                id=f"{branch.id}_sub_{idx}",
                title=name,
                description=f"{name} within {branch.title}",
            )
            for idx, name in enumerate(names, start=1)
        ]

    @staticmethod
    def _make_branches(
        titles: list[str],
        *,
        goal: str,
        description: str,
        knowledge_level: int,
    ) -> list[Branch]:
        expected = estimate_duration(knowledge_level)
        branches: list[Branch] = []
        used: set[str] = set()
        for title in titles:
            base = slugify_name(title) or "domain"
            branch_id = base
            suffix = 2
            while branch_id in used:
                branch_id = f"{base}_{suffix}"
                suffix += 1
            used.add(branch_id)
            branches.append(
                Branch(
                    id=branch_id,
                    title=title,
                    description=description.format(goal=goal),
                    expected_duration=expected,
                )
            )
        return branches

    @staticmethod
    def _ordered_unique(values: list[str]) -> list[str]:
        seen: set[str] = set()
        ordered: list[str] = []
        for value in values:
            name = value.strip()
            key = name.lower()
            if not name or key in seen:
                continue
            seen.add(key)
            ordered.append(name)
        return ordered
