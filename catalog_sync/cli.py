from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console

from .app import build_services, open_database, recover_on_startup, run_app
from .common import LOGGER
from .config import KNOWN_JOB_IDS, load_config
from .dashboard import render_jobs_table, render_sync_table
from .database import SYNC_DOMAINS
from .logging_setup import configure_logging


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Background catalog sync for TVMaze, TMDB, OMDB and Sonarr",
    )
    parser.add_argument(
        "--config",
        default="config.json",
        help="Path to config JSON file (default: config.json)",
    )
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the job scheduler until interrupted (default)")
    subparsers.add_parser("status", help="Print job and sync status, then exit")

    trigger = subparsers.add_parser("trigger", help="Run one job now, in the foreground")
    trigger.add_argument("job_id", choices=sorted(KNOWN_JOB_IDS))

    set_job = subparsers.add_parser("set-job", help="Enable, disable or re-time a job")
    set_job.add_argument("job_id", choices=sorted(KNOWN_JOB_IDS))
    toggle = set_job.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_true", default=None)
    toggle.add_argument("--disable", dest="enabled", action="store_false", default=None)
    set_job.add_argument("--interval", type=int, metavar="MINUTES")

    reset = subparsers.add_parser("reset-sync", help="Clear a stuck is_syncing flag")
    reset.add_argument("domain", choices=SYNC_DOMAINS)

    test_conn = subparsers.add_parser("test-connection", help="Probe an upstream API key")
    test_conn.add_argument("service", choices=("tmdb", "omdb"))

    return parser


def print_status(config: Dict[str, Any], console: Console) -> int:
    db = open_database(config)
    try:
        services = build_services(config, db)
        console.print(render_jobs_table(services.scheduler.get_jobs_status()))
        console.print(render_sync_table([db.get_sync_status(d) for d in SYNC_DOMAINS]))
        counts = db.library_counts()
        if counts:
            summary = ", ".join(f"{name}={total}" for name, total in sorted(counts.items()))
            console.print(f"Sonarr library: {summary}")
    finally:
        db.close()
    return 0


async def trigger_job(config: Dict[str, Any], job_id: str) -> int:
    db = open_database(config)
    try:
        recover_on_startup(db)
        scheduler = build_services(config, db).scheduler
        await scheduler.trigger_job(job_id, wait=True)
        job = next(j for j in scheduler.get_jobs_status() if j["id"] == job_id)
        if job["last_result"] == "error":
            LOGGER.error("Job %s failed: %s", job_id, job["last_error"])
            return 1
        return 0
    finally:
        db.close()


def set_job(
    config: Dict[str, Any],
    job_id: str,
    enabled: Optional[bool],
    interval: Optional[int],
    console: Console,
) -> int:
    if enabled is None and interval is None:
        console.print("Nothing to change: pass --enable, --disable or --interval.")
        return 1
    db = open_database(config)
    try:
        scheduler = build_services(config, db).scheduler
        scheduler.update_job_config(job_id, enabled=enabled, interval_minutes=interval)
        console.print(render_jobs_table(scheduler.get_jobs_status()))
    finally:
        db.close()
    return 0


def reset_sync(config: Dict[str, Any], domain: str, console: Console) -> int:
    db = open_database(config)
    try:
        if db.reset_sync_status(domain):
            console.print(f"Cleared stuck sync flag for {domain}.")
        else:
            console.print(f"{domain} was not marked as syncing.")
    finally:
        db.close()
    return 0


async def test_connection(config: Dict[str, Any], service: str) -> int:
    db = open_database(config)
    try:
        services = build_services(config, db)
        client = services.tmdb_client if service == "tmdb" else services.omdb_client
        ok = await client.test_connection()
    finally:
        db.close()
    LOGGER.info("[%s] Connection test %s", service.upper(), "passed" if ok else "failed")
    return 0 if ok else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    command = args.command or "run"

    config_path = Path(args.config).expanduser().resolve()

    try:
        config = load_config(config_path)
    except Exception as exc:
        print(f"[FATAL] Could not load config: {exc}")
        return 1

    if command != "run":
        config["runtime"]["console_mode"] = "raw"
    logging_runtime = configure_logging(config)
    console = Console()

    try:
        if command == "status":
            return print_status(config, console)
        if command == "trigger":
            return asyncio.run(trigger_job(config, args.job_id))
        if command == "set-job":
            return set_job(config, args.job_id, args.enabled, args.interval, console)
        if command == "reset-sync":
            return reset_sync(config, args.domain, console)
        if command == "test-connection":
            return asyncio.run(test_connection(config, args.service))

        asyncio.run(run_app(config, logging_runtime))
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
    except KeyboardInterrupt:
        LOGGER.info("Interrupted by user")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 0
    except Exception:
        LOGGER.exception("Fatal runtime error")
        LOGGER.info("Log file: %s", logging_runtime.log_file_path)
        return 1
    return 0
