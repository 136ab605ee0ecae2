"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Awaitable, Callable, Optional

from fastapi import FastAPI

from agentbridge import __version__
from agentbridge.bridge.message_bridge import MessageBridge
from agentbridge.feishu.event_handler import EventHandler
from agentbridge.server.api import events, health

logger = logging.getLogger(__name__)


def create_app(
    bridge: MessageBridge,
    event_handler: EventHandler,
    on_shutdown: Optional[Callable[[], Awaitable[None]]] = None,
) -> FastAPI:
    """Build the HTTP app around an existing bridge.

    Args:
        bridge: Bridge that handles dispatched messages
        event_handler: Parser for inbound event callbacks
        on_shutdown: Extra async cleanup, e.g. closing the sender's HTTP session
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan manager."""
        logger.info("Starting agentbridge server...")
        bridge.start()
        yield
        logger.info("Shutting down agentbridge server...")
        bridge.shutdown()
        if on_shutdown is not None:
            await on_shutdown()

    app = FastAPI(
        title="agentbridge",
        description="Feishu chat bridge for Claude agent sessions",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.bridge = bridge
    app.state.event_handler = event_handler

    app.include_router(health.router, tags=["health"])
    app.include_router(events.router, prefix="/feishu", tags=["feishu"])

    return app
