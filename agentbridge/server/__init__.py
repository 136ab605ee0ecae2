"""FastAPI surface for inbound Feishu events."""

from agentbridge.server.app import create_app

__all__ = ["create_app"]
