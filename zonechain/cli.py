"""
zonechain command line:
- Resolves a JSON configuration file
- Runs the zone workflow on a PostGIS working database
- Prints a per-location summary

Usage:
  python3 -m zonechain --config workflow.json \
    --host localhost --port 5432 --db zonechain --user postgres --password postgres
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

from dotenv import load_dotenv

from zonechain import __version__
from zonechain.errors import ConfigError, ZoneChainError
from zonechain.parameters import ConnectionSettings, load_config, resolve
from zonechain.workflow import WorkflowDriver


def warn(message: str) -> None:
    print(f"WARNING: {message}", file=sys.stderr, flush=True)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="zonechain", description="Compute zone indicators on a PostGIS working database.")
    p.add_argument("--config", required=True, help="Path to the JSON configuration file.")
    p.add_argument("--host", default=os.environ.get("PGHOST", "localhost"))
    p.add_argument("--port", type=int, default=int(os.environ.get("PGPORT", "5432")))
    p.add_argument("--db", default=os.environ.get("PGDATABASE", "postgres"))
    p.add_argument("--user", default=os.environ.get("PGUSER", "postgres"))
    p.add_argument("--password", default=os.environ.get("PGPASSWORD", ""))
    p.add_argument(
        "--log-level",
        default=os.environ.get("ZONECHAIN_LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level of the workflow stages.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    try:
        print(f"1) Reading configuration: {args.config}", flush=True)
        params = resolve(load_config(args.config))
    except ConfigError as e:
        print(f"ERROR: {e}", file=sys.stderr, flush=True)
        return 2

    working = ConnectionSettings(
        host=args.host, port=args.port, database=args.db, user=args.user, password=args.password
    )
    print(f"2) Connecting to Postgres: {working.describe()}", flush=True)
    print(f"3) Processing {len(params.input.locations)} location(s)...", flush=True)
    try:
        report = WorkflowDriver(params, working).run()
    except ConfigError as e:
        print(f"\nERROR: {e}", file=sys.stderr, flush=True)
        return 2
    except ZoneChainError as e:
        print(f"\nERROR: {e}", file=sys.stderr, flush=True)
        return 1

    print("\nDone.", flush=True)
    for location, results in report.results.items():
        print(f"- {location}: {len(results)} table(s) ({', '.join(sorted(results))})", flush=True)
    for failure in report.failures:
        warn(f"{failure.location} failed: {failure.message}")
    return 1 if report.failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
