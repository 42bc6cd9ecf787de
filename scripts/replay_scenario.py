#!/usr/bin/env python3
"""Replay a CSV timeline of room commands and write per-tick room snapshots.

Timeline columns: tick, room_id, action (start|adjust|cancel), and optionally
mode, fan_speed, target_temp.

    python scripts/replay_scenario.py timeline.csv --output snapshots.csv
"""

from __future__ import annotations

import argparse
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from hvac_scheduler.repository.data_repository import DataRepository
from hvac_scheduler.services.scenario_service import (
    ScenarioReplayService,
    ScenarioValidationError,
    load_scenario_csv,
)
from hvac_scheduler.services.scheduler_service import ClimateSchedulerService
from hvac_scheduler.utils.config import get_settings


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("timeline", type=Path, help="CSV file with timed room commands")
    parser.add_argument("--output", type=Path, default=None, help="snapshot CSV path")
    parser.add_argument("--ticks", type=int, default=None, help="number of minutes to simulate")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    try:
        commands = load_scenario_csv(args.timeline)
    except ScenarioValidationError as exc:
        print(f"Invalid timeline: {exc}", file=sys.stderr)
        return 2

    with tempfile.TemporaryDirectory(prefix="climate-replay-") as temp_dir:
        settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "replay.db",
            scheduler_autostart=False,
        )
        repository = DataRepository(settings)
        repository.initialize_database()
        repository.seed_rooms()
        scheduler = ClimateSchedulerService(repository=repository, settings=settings)

        frame = ScenarioReplayService(scheduler, repository).run(commands, ticks=args.ticks)

    if args.output is None:
        print(frame.to_string(index=False))
    else:
        frame.to_csv(args.output, index=False)
        print(f"Wrote {len(frame)} rows to {args.output}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
