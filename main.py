"""Command-line interface for the training registration sync engine."""

from __future__ import annotations
import argparse
import asyncio
import logging
import os
import sys
from typing import Sequence

from coursesync.config import SyncConfig, load_sync_config, resolve_config_path
from coursesync.service import TrainingService, build_service

logger = logging.getLogger("coursesync.main")


def _parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Training registration sync utilities")
    subparsers = parser.add_subparsers(dest="command")

    parser.set_defaults(command="serve")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=None,
        help="Path to the YAML configuration file (default: $COURSESYNC_CONFIG or config/coursesync.yaml)",
    )

    serve_parser = subparsers.add_parser("serve", parents=[common], help="Start the local HTTP bridge for the UI")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address for the API")
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port for the HTTP API (default: 8000)",
    )

    subparsers.add_parser("status", parents=[common], help="Load the remote store once and summarise it")

    reseed_parser = subparsers.add_parser(
        "reseed",
        parents=[common],
        help="Wipe the remote store and restore the seed accounts and courses",
    )
    reseed_parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm the destructive reset",
    )

    args_list = list(argv) if argv is not None else sys.argv[1:]
    known_commands = {"serve", "status", "reseed"}

    if not args_list:
        args_list = ["serve"]
    else:
        first = args_list[0]
        if first in ("-h", "--help"):
            return parser.parse_args(args_list)
        if first not in known_commands:
            if any(flag in args_list for flag in ("-h", "--help")):
                return parser.parse_args(args_list)
            args_list = ["serve", *args_list]

    return parser.parse_args(args_list)


def _load_config(path: str | None) -> SyncConfig:
    config_path = resolve_config_path(path or os.getenv("COURSESYNC_CONFIG"))
    config = load_sync_config(config_path)
    logger.info("Configuration loaded from %s", config_path if config_path.exists() else "defaults")
    return config


def _serve(service: TrainingService, *, host: str, port: int) -> None:
    from coursesync.api import create_app
    import uvicorn

    logger.info("Starting training sync API on http://%s:%s", host, port)
    uvicorn.run(create_app(service), host=host, port=port, log_level="info")


async def _status(service: TrainingService) -> int:
    try:
        snapshot = await service.start()
        state = service.status()
        print(f"Connected:      {'yes' if state['connected'] else 'no (seed data)'}")
        if state["empty_remote"]:
            print("Remote store holds no users. Run `reseed --yes` to restore it.")
        print(f"Users:          {len(snapshot.users)}")
        print(f"Courses:        {len(snapshot.courses)}")
        print(f"Registrations:  {len(snapshot.registrations)}")
        return 0 if state["connected"] else 1
    finally:
        await service.close()


async def _reseed(service: TrainingService, *, confirmed: bool) -> int:
    try:
        outcome = await service.reseed(confirmed=confirmed)
        print(outcome.message)
        return 0 if outcome.ok else 1
    finally:
        await service.close()


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point for CLI usage."""

    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")

    args = _parse_args(argv)
    service = build_service(_load_config(args.config))

    if args.command == "serve":
        _serve(service, host=args.host, port=args.port)
    elif args.command == "status":
        sys.exit(asyncio.run(_status(service)))
    elif args.command == "reseed":
        if not args.yes:
            raise SystemExit("Refusing to wipe the remote store without --yes.")
        sys.exit(asyncio.run(_reseed(service, confirmed=True)))


if __name__ == "__main__":
    main()
