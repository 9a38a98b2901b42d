"""Entry point for `python -m frontier_planner` and the `frontier-planner` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from frontier_planner.models import OperationError
from frontier_planner.oracle import DeferringOracle
from frontier_planner.planner import RoadmapPlanner
from frontier_planner.settings import RuntimeSettings

ORACLE_COMMANDS = frozenset({"build"})


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Plan a learning roadmap and pick the next task")
    parser.add_argument(
        "--state-store-root",
        default=None,
        help="Directory holding project documents (overrides PLANNER_STATE_STORE_ROOT)",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Create or replace a project and make it active")
    init.add_argument("project_id")
    init.add_argument("--goal", required=True)
    init.add_argument("--level", type=int, default=1, help="Knowledge level 1-10")
    init.add_argument("--interest", action="append", default=[], help="Repeatable learner interest")
    init.add_argument("--focus-area", action="append", default=[], help="Repeatable explicit focus area")
    init.add_argument("--context", default="", help="Free-text background about the learner")
    init.add_argument("--domain", default="")
    init.add_argument("--path", action="append", default=[], help="Repeatable extra learning path name")

    build = sub.add_parser("build", help="Build or regenerate the roadmap for a learning path")
    build.add_argument("--path", default=None)
    build.add_argument("--learning-style", default=None)
    build.add_argument("--focus-area", action="append", default=[])

    nxt = sub.add_parser("next", help="Select the best next task")
    nxt.add_argument("--context", default="")
    nxt.add_argument("--energy", type=int, default=3, help="Energy level 1-5")
    nxt.add_argument("--time", default="30", help='Minutes available, e.g. 30 or "1 hour"')

    complete = sub.add_parser("complete", help="Mark a task completed")
    complete.add_argument("task_id")
    complete.add_argument("--energy-after", type=int, default=None)
    complete.add_argument("--difficulty-rating", type=int, default=None)
    complete.add_argument("--learned", default="")

    evolve = sub.add_parser("evolve", help="Diagnose stalls and add remediation tasks")
    evolve.add_argument("--feedback", default="")

    ingest = sub.add_parser("ingest", help="Append externally generated tasks")
    ingest.add_argument("file", type=Path, help='JSON file with [{"branch_name": ..., "tasks": [...]}], or - for stdin')

    history = sub.add_parser("history", help="Show recent task generation sessions")
    history.add_argument("--limit", type=int, default=10)
    return parser.parse_args(argv)


def _read_ingest_payload(source: Path) -> list[dict[str, Any]]:
    text = sys.stdin.read() if str(source) == "-" else source.read_text(encoding="utf-8")
    data = json.loads(text)
    if isinstance(data, dict):
        data = data.get("branch_tasks", [data])
    if not isinstance(data, list):
        raise ValueError("ingest payload must be a JSON list of branch task batches")
    return data


async def _dispatch(planner: RoadmapPlanner, args: argparse.Namespace) -> BaseModel:
    if args.command == "init":
        return await planner.create_project(
            args.project_id,
            goal=args.goal,
            knowledge_level=args.level,
            interests=args.interest,
            focus_areas=args.focus_area,
            context=args.context,
            domain=args.domain,
            learning_paths=args.path,
        )
    if args.command == "build":
        return await planner.build_roadmap(
            args.path,
            learning_style=args.learning_style,
            focus_areas=args.focus_area,
        )
    if args.command == "next":
        return await planner.select_next_task(args.context, args.energy, args.time)
    if args.command == "complete":
        return await planner.complete_task(
            args.task_id,
            energy_after=args.energy_after,
            difficulty_rating=args.difficulty_rating,
            learned=args.learned,
        )
    if args.command == "evolve":
        return await planner.evolve_strategy(args.feedback)
    if args.command == "ingest":
        return await planner.ingest_generated_tasks(_read_ingest_payload(args.file))
    if args.command == "history":
        return await planner.generation_history(args.limit)
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = Path.cwd()
    try:
        settings = RuntimeSettings.from_env()
        if args.state_store_root is not None:
            settings = replace(settings, state_store_root=args.state_store_root).normalized()
        if args.command in ORACLE_COMMANDS:
            planner = RoadmapPlanner.from_settings(settings, repo_root=repo_root)
        else:
            planner = RoadmapPlanner.from_settings(settings, repo_root=repo_root, oracle=DeferringOracle())
        result = asyncio.run(_dispatch(planner, args))
    except (OSError, ValueError, RuntimeError) as exc:
        logging.error("frontier-planner %s failed: %s", args.command, exc)
        return 1

    summary = getattr(result, "summary", None)
    if summary:
        print(summary)
    print(json.dumps(result.model_dump(mode="json"), indent=2, default=str))
    return 1 if isinstance(result, OperationError) else 0


if __name__ == "__main__":
    raise SystemExit(main())
