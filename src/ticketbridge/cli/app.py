# Ticket Bridge
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Ticket Bridge.
#
# Ticket Bridge is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""
Ticket Bridge CLI -- Main entry point.

Usage:
    ticketbridge run [--config PATH] [--host HOST] [--port PORT]
    ticketbridge health [--url URL]      # Query a running bridge
    ticketbridge init-config [--config PATH]
    ticketbridge --version
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import httpx

from ticketbridge import __version__
from ticketbridge.core.config import BridgeSettings, default_config_path, load_settings, save_settings

logger = logging.getLogger("ticketbridge.cli")


def build_manager(settings: BridgeSettings):
    """Wire the Telegram and Discord adapters and the SQLite store into a manager."""
    from ticketbridge.bridges.discord_bridge import DiscordStaff
    from ticketbridge.bridges.manager import BridgeManager
    from ticketbridge.bridges.telegram_bridge import TelegramOrigin
    from ticketbridge.store.sqlite import SQLiteTicketStore

    store = SQLiteTicketStore(settings.resolved_database_path())
    origin = TelegramOrigin(settings.telegram_token)
    staff = DiscordStaff(settings.discord_token, guild_id=settings.discord_guild_id,
                         http_timeout=settings.send_timeout)
    return BridgeManager(origin, staff, store, settings)


async def _serve(settings: BridgeSettings) -> int:
    import uvicorn

    from ticketbridge.api.server import create_app
    from ticketbridge.core.errors import BridgeStartupError

    manager = build_manager(settings)
    try:
        await manager.start()
    except BridgeStartupError as exc:
        logger.error("Bridge failed to start: %s %s", exc.message, exc.details)
        await manager.stop()
        return 1

    app = create_app(manager)
    config = uvicorn.Config(app, host=settings.api_host, port=settings.api_port, log_level="info")
    server = uvicorn.Server(config)
    if manager.log:
        manager.log.server_start(host=settings.api_host, port=settings.api_port)
    try:
        await server.serve()
    finally:
        await manager.stop()
        await manager.store.close()
    return 0


def _cmd_run(args) -> int:
    settings = load_settings(args.config)
    if args.host:
        settings.api_host = args.host
    if args.port:
        settings.api_port = args.port
    if not settings.telegram_token and not settings.discord_token:
        print("No platform tokens configured (TELEGRAM_BOT_TOKEN / DISCORD_BOT_TOKEN).",
              file=sys.stderr)
        return 2
    return asyncio.run(_serve(settings))


def _cmd_health(args) -> int:
    settings = load_settings(args.config)
    url = args.url or f"http://{settings.api_host}:{settings.api_port}/health"
    try:
        response = httpx.get(url, timeout=10)
    except httpx.HTTPError as exc:
        print(f"Bridge unreachable at {url}: {exc}", file=sys.stderr)
        return 1
    print(json.dumps(response.json(), indent=2))
    return 0 if response.status_code == 200 and response.json().get("status") != "down" else 1


def _cmd_init_config(args) -> int:
    path = args.config or default_config_path()
    save_settings(load_settings(args.config, apply_env=False), path)
    print(f"Wrote {path}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="ticketbridge",
        description="Telegram <-> Discord support-ticket bridge",
    )
    parser.add_argument("--version", action="version", version=f"ticket-bridge {__version__}")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Start the bridge and its HTTP API")
    run.add_argument("--config", default=None, help="Path to bridge.yaml")
    run.add_argument("--host", default=None, help="API listen host")
    run.add_argument("--port", type=int, default=None, help="API listen port")
    run.set_defaults(func=_cmd_run)

    health = sub.add_parser("health", help="Query a running bridge's /health")
    health.add_argument("--config", default=None, help="Path to bridge.yaml")
    health.add_argument("--url", default=None, help="Full /health URL")
    health.set_defaults(func=_cmd_health)

    init = sub.add_parser("init-config", help="Write a bridge.yaml with default values")
    init.add_argument("--config", default=None, help="Where to write (default ~/.ticketbridge)")
    init.set_defaults(func=_cmd_init_config)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if not getattr(args, "func", None):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
