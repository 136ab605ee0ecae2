"""Agent backend: typed events, the stream fold, and the SDK executor."""

from agentbridge.claude.events import AgentEvent, ContentBlock, EventType, from_sdk_message
from agentbridge.claude.executor import ClaudeExecutor
from agentbridge.claude.state import (
    CardState,
    CardStatus,
    PendingQuestion,
    Question,
    QuestionOption,
    ToolCall,
    ToolStatus,
)
from agentbridge.claude.stream_processor import StreamProcessor, extract_image_paths, format_tool_detail

__all__ = [
    "AgentEvent",
    "ContentBlock",
    "EventType",
    "from_sdk_message",
    "ClaudeExecutor",
    "CardState",
    "CardStatus",
    "PendingQuestion",
    "Question",
    "QuestionOption",
    "ToolCall",
    "ToolStatus",
    "StreamProcessor",
    "extract_image_paths",
    "format_tool_detail",
]
