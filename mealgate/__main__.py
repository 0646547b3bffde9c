"""Module entry-point: run the API server or the deferred task sweeper."""
from __future__ import annotations

import argparse

import uvicorn

from mealgate.core.database import init_database
from mealgate.core.logging import setup_logging


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="mealgate")
    sub = parser.add_subparsers(dest="command")

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    sweep = sub.add_parser("sweep", help="Poll and execute due deferred tasks")
    sweep.add_argument("--interval", type=float, default=None)
    sweep.add_argument("--once", action="store_true")

    args = parser.parse_args(argv)
    if args.command == "sweep":
        from mealgate.tasks.jobs import run_sweep_loop

        setup_logging()
        init_database()
        run_sweep_loop(interval=args.interval, iterations=1 if args.once else None)
        return

    from mealgate.api.main import create_app

    uvicorn.run(create_app(), host=getattr(args, "host", "0.0.0.0"), port=getattr(args, "port", 8000))


if __name__ == "__main__":
    main()
