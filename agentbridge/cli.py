"""Command-line entry point for the bridge server."""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

import uvicorn

from agentbridge import __version__
from agentbridge.bridge.message_bridge import MessageBridge
from agentbridge.core.errors import ConfigurationError
from agentbridge.core.log_config import configure_logging
from agentbridge.core.settings import BridgeSettings, load_settings
from agentbridge.feishu.event_handler import EventHandler
from agentbridge.feishu.message_sender import MessageSender
from agentbridge.server.app import create_app

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agentbridge",
        description="Bridge Feishu chats to Claude agent sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Serve with settings from the environment / .env
  agentbridge

  # Overlay a YAML config and listen on another port
  agentbridge --config bridge.yaml --port 9000
        """,
    )
    parser.add_argument("--config", type=str, help="Path to a YAML config file")
    parser.add_argument("--host", type=str, help="Listen address (overrides settings)")
    parser.add_argument("--port", type=int, help="Listen port (overrides settings)")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


async def serve(settings: BridgeSettings) -> None:
    """Run the HTTP server until it is stopped."""
    sender = MessageSender(settings.feishu)
    bridge = MessageBridge(settings, sender)
    app = create_app(bridge, EventHandler(settings), on_shutdown=sender.close)

    config = uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None)
    server = uvicorn.Server(config)
    logger.info(f"Listening on {settings.host}:{settings.port}")
    await server.serve()


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(args.config)
        if args.host:
            settings = settings.model_copy(update={"host": args.host})
        if args.port:
            settings = settings.model_copy(update={"port": args.port})
        settings.validate_for_runtime()
    except ConfigurationError as e:
        configure_logging("DEBUG" if args.debug else "INFO")
        logger.error(f"Configuration error: {e}")
        return 2

    configure_logging("DEBUG" if args.debug else settings.log_level)

    try:
        asyncio.run(serve(settings))
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Server failed: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
