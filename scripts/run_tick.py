from __future__ import annotations

import argparse
import importlib
import json
import os
from dataclasses import asdict
from pathlib import Path

from tickq.core.config import get_settings
from tickq.core.logging import configure_logging
from tickq.db.init_db import initialize_database
from tickq.worker.pipeline import run_tick


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one tick: recover stale jobs, enqueue due schedules, run due jobs")
    parser.add_argument("--state-root", help="State root directory (overrides TICKQ_STATE_ROOT)")
    parser.add_argument("--limit", type=int, default=None, help="Maximum jobs to claim in this tick")
    parser.add_argument("--runner-id", default=None, help="Runner id recorded as lock owner")
    parser.add_argument("--no-run", action="store_true", help="Skip the claim & execute step")
    parser.add_argument("--no-schedules", action="store_true", help="Skip enqueueing due schedules")
    parser.add_argument("--no-recover", action="store_true", help="Skip stale-lock recovery")
    parser.add_argument(
        "--handlers",
        action="append",
        default=[],
        metavar="MODULE",
        help="Import a module that registers job handlers (repeatable)",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.state_root:
        state_root = Path(args.state_root).resolve()
        state_root.mkdir(parents=True, exist_ok=True)
        os.environ["TICKQ_STATE_ROOT"] = state_root.as_posix()
        get_settings.cache_clear()

    settings = get_settings()
    configure_logging(settings.log_level, json_logs=settings.json_logs)
    for module_name in args.handlers:
        importlib.import_module(module_name)
    initialize_database()

    result = run_tick(
        run=not args.no_run,
        enqueue_schedules=not args.no_schedules,
        recover_stale=not args.no_recover,
        limit=args.limit,
        runner_id=args.runner_id,
    )
    print(json.dumps(asdict(result), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
