"""Entry point for `python -m axon_engine` and the `axon-engine` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
import os
from pathlib import Path

from axon_engine.bridge import AgentBridge
from axon_engine.errors import AxonError, ConfigError
from axon_engine.graph import find_blocked_beads, get_graph_stats, get_next_executable, validate_graph
from axon_engine.scheduler import ExecutionScheduler
from axon_engine.settings import RuntimeSettings, load_project_env
from axon_engine.state_store import GraphStore

ACTION_CHOICES = ["next", "all", "bead", "status", "validate"]


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute the bead graph of an Axon project")
    parser.add_argument("--action", default="next", choices=ACTION_CHOICES, help="What to run")
    parser.add_argument("--bead-id", default=None, help="Bead to run with --action bead")
    parser.add_argument("--graph", type=Path, default=None, help="Path to graph.json (default: .beads/graph.json)")
    parser.add_argument("--project-root", type=Path, default=None, help="Project root (default: cwd)")
    parser.add_argument("--no-verify", action="store_true", help="Skip independent verification of completed beads")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Project env must be in place before settings and credentials are read.
    if args.project_root is not None:
        os.environ["AXON_PROJECT_ROOT"] = str(args.project_root.resolve())
    if args.graph is not None:
        os.environ["AXON_GRAPH_PATH"] = str(args.graph.resolve())
    load_project_env(args.project_root.resolve() if args.project_root is not None else None)

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("%s", ConfigError(f"Invalid configuration: {exc}").format())
        return 1

    try:
        if args.action in ("status", "validate"):
            graph = GraphStore(settings.graph_file).load()
            if args.action == "validate":
                report = validate_graph(graph)
                _print_json(report.model_dump())
                return 0 if report.valid else 1
            next_bead = get_next_executable(graph.beads)
            _print_json(
                {
                    "stats": get_graph_stats(graph).model_dump(),
                    "next": next_bead.id if next_bead else None,
                    "blocked": [entry.model_dump() for entry in find_blocked_beads(graph.beads)],
                    "agent_available": AgentBridge(settings).validate(),
                }
            )
            return 0

        scheduler = ExecutionScheduler(settings, verify=not args.no_verify)
        if args.action == "all":
            batch = scheduler.execute_all()
            _print_json(batch.model_dump())
            return 0 if batch.success else 1
        if args.action == "bead":
            if not args.bead_id:
                logging.error("--bead-id is required with --action bead")
                return 1
            result = scheduler.execute_by_id(args.bead_id)
        else:
            result = scheduler.execute_next()
            if result is None:
                stats = scheduler.stats()
                _print_json({"executed": None, "stats": stats.model_dump()})
                return 0 if stats.pending == 0 else 1
        _print_json(result.model_dump())
        return 0 if result.success else 1
    except AxonError as exc:
        logging.error("%s", exc.format())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
