"""Headless entry point: serve the dashboard or print one acquisition pass."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import Dict

from . import settings
from .stats_client import StatsService

LOGGER = logging.getLogger(__name__)


def _configure_logging(verbose: bool = False) -> None:
    settings.setup_logging(logging.DEBUG if verbose else logging.INFO)


def _print_json(payload: Dict[str, object]) -> None:
    json.dump(payload, sys.stdout, indent=2, sort_keys=True, default=str)
    sys.stdout.write("\n")


def _run_serve(cfg: settings.Settings, host: str | None, port: int | None) -> None:
    from ui.server import start_ui

    start_ui(host or cfg.ui.host, port or cfg.ui.port, open_browser=False, settings=cfg)


async def _status(cfg: settings.Settings) -> Dict[str, object]:
    from horizon.engine import StatsEngine

    engine = StatsEngine.from_settings(cfg, StatsService.from_config(cfg.viewer), hidden=True)
    try:
        context = await engine.initialize()
        await context.tick()
        payload = context.snapshot()
        payload["timezone"] = engine.preferences.timezone
        return payload
    finally:
        engine.shutdown()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="python -m app")
    parser.add_argument("--config", default=None, help="Path to a stats.yaml override")
    parser.add_argument("--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    subparsers.add_parser("status")

    args = parser.parse_args(argv)

    try:
        _configure_logging(args.verbose)
        cfg = settings.load_settings(args.config)
        if args.command == "serve":
            _run_serve(cfg, args.host, args.port)
        elif args.command == "status":
            _print_json(asyncio.run(_status(cfg)))
        else:  # pragma: no cover
            parser.error(f"Unknown command {args.command}")
    except Exception as exc:  # pragma: no cover - runtime failures
        LOGGER.exception("Command failed: %s", exc)
        sys.stderr.write(f"Error: {exc}\n")
        return 1
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
