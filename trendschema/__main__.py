"""CLI entrypoint: python -m trendschema {serve|harvest|harvest-loop|init-db|stats}."""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import os
import sys
from pathlib import Path

from trendschema.config import get_db_path, get_delivery_config, load_config
from trendschema.db import get_connection, get_recent_runs, init_db


def setup_logging(config: dict) -> None:
    """Configure logging with console + rotating file output."""
    root = logging.getLogger()
    root.setLevel(logging.INFO)

    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    # Rotate at 5MB, keep 3 backups
    db_path = get_db_path(config)
    log_dir = Path(db_path).parent
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "trendschema.log"

    file_handler = logging.handlers.RotatingFileHandler(
        str(log_file), maxBytes=5 * 1024 * 1024, backupCount=3,
    )
    file_handler.setFormatter(fmt)
    root.addHandler(file_handler)

    # Quiet noisy libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


logger = logging.getLogger("trendschema")


def cmd_init_db(config: dict, args: list[str]) -> None:
    """Initialize the SQLite database."""
    db_path = get_db_path(config)
    init_db(db_path)
    print(f"Database initialized at {db_path}")


def cmd_serve(config: dict, args: list[str]) -> None:
    """Serve the delivery API (add --with-harvest to run the scheduler in-process)."""
    import uvicorn

    from trendschema.deliver.api import create_app

    cfg = get_delivery_config(config)
    app = create_app(config, run_scheduler="--with-harvest" in args)
    uvicorn.run(app, host=cfg["host"], port=cfg["port"], log_config=None)


async def cmd_harvest(config: dict, args: list[str]) -> None:
    """Run a single harvest cycle, optionally for --client <id> only."""
    from trendschema.engine import build_engine

    client_ids = [args[i + 1] for i, a in enumerate(args[:-1]) if a == "--client"]
    engine = build_engine(config)
    try:
        run = await engine.scheduler.run_cycle(client_ids or None)
    finally:
        await engine.close()

    print(
        f"Run #{run.id} {run.status}: {run.trends_ingested} trends, "
        f"{run.clients_processed} clients ({run.clients_degraded} degraded), "
        f"{run.matches_found} matches, {run.artifacts_primed} primed, "
        f"{run.artifacts_invalidated} invalidated"
    )


async def cmd_harvest_loop(config: dict, args: list[str]) -> None:
    """Run harvest cycles on the configured interval until interrupted."""
    from trendschema.engine import build_engine

    engine = build_engine(config)
    try:
        await engine.scheduler.run_forever()
    finally:
        await engine.close()


def cmd_stats(config: dict, args: list[str]) -> None:
    """Show recent harvest run stats."""
    db_path = get_db_path(config)
    conn = get_connection(db_path)
    runs = get_recent_runs(conn, limit=10)
    conn.close()

    if not runs:
        print("No harvest runs yet.")
        return

    header = (
        f"{'Run':>4} {'Status':<10} {'Trends':<8} {'Clients':<8} "
        f"{'Matches':<8} {'Primed':<8} {'Dropped':<8} {'Started'}"
    )
    print(header)
    print("-" * 80)
    for r in runs:
        print(
            f"{r['id']:>4} {r['status']:<10} "
            f"{r['trends_ingested']:<8} "
            f"{r['clients_processed']:<8} "
            f"{r['matches_found']:<8} "
            f"{r['artifacts_primed']:<8} "
            f"{r['artifacts_invalidated']:<8} {r['started_at']}"
        )


COMMANDS = {
    "serve": cmd_serve,
    "harvest": cmd_harvest,
    "harvest-loop": cmd_harvest_loop,
    "init-db": cmd_init_db,
    "stats": cmd_stats,
}


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in COMMANDS:
        available = ", ".join(COMMANDS)
        print(f"Usage: python -m trendschema {{{available}}}")
        sys.exit(1)

    command = sys.argv[1]
    config = load_config(os.environ.get("CONFIG_PATH", "config.yaml"))
    setup_logging(config)
    handler = COMMANDS[command]

    if asyncio.iscoroutinefunction(handler):
        try:
            asyncio.run(handler(config, sys.argv[2:]))
        except KeyboardInterrupt:
            logger.info("Interrupted")
    else:
        handler(config, sys.argv[2:])


if __name__ == "__main__":
    main()
