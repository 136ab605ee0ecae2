"""Feishu messaging surface: card rendering, outbound API client and inbound events."""

from agentbridge.feishu.card_builder import build_card, build_help_card, build_status_card, build_text_card
from agentbridge.feishu.event_handler import EventHandler, IncomingMessage
from agentbridge.feishu.message_sender import MessageSender

__all__ = [
    "build_card",
    "build_help_card",
    "build_status_card",
    "build_text_card",
    "EventHandler",
    "IncomingMessage",
    "MessageSender",
]
