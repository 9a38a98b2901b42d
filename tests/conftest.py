from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from frontier_planner.oracle import (
    DOMAIN_GENERATION,
    SUBDOMAIN_GENERATION,
    TASK_GENERATION,
    Deferred,
    OracleResponse,
    Structured,
)
from frontier_planner.planner import RoadmapPlanner
from frontier_planner.settings import RuntimeSettings
from frontier_planner.state_store import DocumentStore, FileProjectContext

Responder = Callable[[dict[str, Any]], OracleResponse]


class ScriptedOracle:
    """Answers each request kind with a fixed response or a callable of the payload."""

    def __init__(self, responses: dict[str, OracleResponse | Responder | Exception] | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def propose(self, kind: str, payload: dict[str, Any]) -> OracleResponse:
        self.calls.append((kind, payload))
        response = self.responses.get(kind, Deferred(descriptor={"kind": kind}))
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(payload)
        return response

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.calls]


def scripted_roadmap_oracle(tasks_by_branch: dict[str, list[dict[str, Any]]]) -> ScriptedOracle:
    """Oracle proposing the given branch titles with the given tasks per branch."""

    def tasks_for(payload: dict[str, Any]) -> OracleResponse:
        return Structured(tasks_by_branch.get(payload["branch_title"], []))

    return ScriptedOracle(
        {
            DOMAIN_GENERATION: Structured(list(tasks_by_branch)),
            SUBDOMAIN_GENERATION: Structured(["Basics", "Practice"]),
            TASK_GENERATION: tasks_for,
        }
    )


@pytest.fixture
def store(tmp_path: Path) -> DocumentStore:
    return DocumentStore(tmp_path / "state_store")


@pytest.fixture
def make_planner(store: DocumentStore) -> Callable[..., RoadmapPlanner]:
    def factory(oracle: Any = None, **overrides: Any) -> RoadmapPlanner:
        settings = RuntimeSettings(oracle_mode="deferred", **overrides)
        return RoadmapPlanner(
            store=store,
            project_context=FileProjectContext(store),
            oracle=oracle if oracle is not None else ScriptedOracle(),
            settings=settings,
        )

    return factory
