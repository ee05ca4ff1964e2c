"""Command-line interface for cmdrelay.

Provides the main entry point for running the relay listeners and for
querying or messaging a running relay through its admin API.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="cmdrelay",
        description="TCP command relay for developer tooling and device-debug bridges",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to YAML configuration file (default: config/cmdrelay.yaml)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("serve", help="Run the relay listeners and the status API")
    subparsers.add_parser("status", help="Print the status of a running relay")

    broadcast_parser = subparsers.add_parser(
        "broadcast", help="Send a BROADCAST notice to every connected client",
    )
    broadcast_parser.add_argument(
        "-m", "--message", type=str, required=True,
        help="Text to broadcast",
    )

    return parser.parse_args(argv)


def _api_base_url(settings) -> str:
    host = settings.api.host
    if host in ("0.0.0.0", "::"):
        host = "127.0.0.1"
    return f"http://{host}:{settings.api.port}"


def _serve(settings) -> int:
    """Run the listeners, under uvicorn when the status API is enabled."""
    from cmdrelay.relay.server import build_servers

    servers = build_servers(settings)
    if not servers:
        logger.error("No listeners enabled, nothing to serve")
        return 1

    if settings.api.enabled:
        import uvicorn
        from cmdrelay.api.server import create_app

        app = create_app(servers)
        config = uvicorn.Config(
            app, host=settings.api.host, port=settings.api.port, lifespan="on",
        )
        server = uvicorn.Server(config)
        server.run()
        return 0 if server.started else 1

    return asyncio.run(_run_listeners(servers))


async def _run_listeners(servers) -> int:
    """Run listeners without the HTTP API until SIGINT/SIGTERM."""
    from cmdrelay.relay.server import RelayStartError

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    started = []
    try:
        for server in servers:
            await server.start()
            started.append(server)
            logger.info("%s listener running on %s:%d", server.name, server.host, server.port)
    except RelayStartError as e:
        logger.error("%s", e)
        for server in started:
            await server.close()
        return 1

    await stop.wait()
    logger.info("Shutting down")
    await asyncio.gather(*(server.close() for server in started))
    return 0


def _status(settings) -> int:
    import httpx

    try:
        resp = httpx.get(f"{_api_base_url(settings)}/status", timeout=10.0)
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Could not query relay status: {e}", file=sys.stderr)
        return 1
    print(json.dumps(resp.json(), indent=2, ensure_ascii=False))
    return 0


def _broadcast(settings, message: str) -> int:
    import httpx

    try:
        resp = httpx.post(
            f"{_api_base_url(settings)}/broadcast",
            json={"message": message},
            timeout=10.0,
        )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        print(f"Broadcast failed: {e}", file=sys.stderr)
        return 1
    print(f"Broadcast delivered to {resp.json()['sent_count']} client(s)")
    return 0


def main(argv: list[str] | None = None) -> None:
    """Main entry point for the cmdrelay CLI."""
    args = parse_args(argv)

    if args.command is None:
        parse_args(["--help"])
        return

    from cmdrelay.config.settings import load_settings
    from cmdrelay.utils.logging import setup_logging

    settings = load_settings(args.config)

    if args.verbose:
        settings.logging.level = "DEBUG"

    setup_logging(settings.logging)

    if args.command == "serve":
        logger.info("Starting relay")
        code = _serve(settings)
    elif args.command == "status":
        code = _status(settings)
    elif args.command == "broadcast":
        code = _broadcast(settings, args.message)
    else:
        code = 2

    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
