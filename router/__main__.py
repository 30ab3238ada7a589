"""Entry point for the inference hub router."""

import argparse
import logging
import os
import sys
from pathlib import Path

import uvicorn

from hub import Hub
from hub.config import HubSettings

from .app import create_app
from .config import config

# Loggers kept at WARNING even in debug mode
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn", "uvicorn.access", "asyncio", "sse_starlette")

DEBUG_FORMAT = "%(asctime)s.%(msecs)03d %(levelname)-5s [%(name)s:%(lineno)d] %(message)s"
DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging(debug: bool = False):
    """Log to stdout; DEBUG for the hub and router packages when ``debug``."""
    if debug:
        formatter = logging.Formatter(DEBUG_FORMAT, datefmt="%H:%M:%S")
    else:
        formatter = logging.Formatter(DEFAULT_FORMAT)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    level = logging.DEBUG if debug else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(handler)

    for name in ("hub", "router"):
        logging.getLogger(name).setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="inference-hub",
        description="Serve cloud, local and custom inference backends as one OpenAI-compatible API",
    )
    parser.add_argument("--debug", "-d", action="store_true", help="Enable debug logging")
    parser.add_argument("--host", default=config.host, help="Host to bind to")
    parser.add_argument("--port", type=int, default=config.port, help="Port to listen on")
    parser.add_argument("--local-address", help="Base URL of the local inference daemon")
    parser.add_argument("--no-local", action="store_true", help="Start with the local backend disabled")
    parser.add_argument("--state-file", type=Path, help="JSON file for custom backends and cached quota")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> HubSettings:
    """Hub settings from the environment, overridden by command-line flags."""
    overrides = {}
    if args.local_address:
        overrides["local_address"] = args.local_address
    if args.no_local:
        overrides["local_enabled"] = False
    if args.state_file:
        overrides["state_file"] = args.state_file
    return HubSettings(**overrides)


def main(argv=None):
    args = parse_args(argv)
    debug = args.debug or config.debug or os.environ.get("DEBUG", "").lower() in ("1", "true", "yes")
    setup_logging(debug=debug)

    logger = logging.getLogger("router")
    if debug:
        logger.info("Debug logging enabled")

    settings = build_settings(args)
    logger.info(f"Local backend: {settings.local_address} ({'enabled' if settings.local_enabled else 'disabled'})")
    logger.info(f"Starting inference hub router on http://{args.host}:{args.port}")

    uvicorn.run(
        create_app(Hub(settings=settings)),
        host=args.host,
        port=args.port,
        log_level="warning",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
