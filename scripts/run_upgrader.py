#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os

from fleet_upgrader.main import create_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run the platform upgrade scheduling loop.")
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--fleet-snapshot",
        default="",
        help="JSON fleet snapshot to schedule against (overrides UPGRADER_FLEET_SNAPSHOT).",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    env = dict(os.environ)
    if args.fleet_snapshot:
        env["UPGRADER_FLEET_SNAPSHOT"] = args.fleet_snapshot
    runtime = create_runtime_from_env(env)
    if args.iterations > 0:
        stats = runtime.run_forever(stop_after_iterations=args.iterations)
    else:
        stats = runtime.run_forever(stop_after_iterations=None)
    print(json.dumps({"success": True, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
