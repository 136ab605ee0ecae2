"""Typed agent events.

The executor converts every message yielded by ``claude_agent_sdk`` into an
``AgentEvent`` so the stream processor folds one flat, validated shape and
never touches SDK classes directly.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from claude_agent_sdk import (
    AssistantMessage,
    ResultMessage,
    SystemMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)
from claude_agent_sdk.types import StreamEvent
from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Classes of events emitted by the agent backend."""

    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    STREAM_EVENT = "stream_event"
    RESULT = "result"


class ContentBlock(BaseModel):
    """One block of a whole assistant/user message."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: str = Field(..., description="text, tool_use or tool_result")
    text: Optional[str] = None
    id: Optional[str] = Field(default=None, description="Tool invocation id for tool_use blocks")
    name: Optional[str] = None
    input: Optional[Dict[str, Any]] = None
    tool_use_id: Optional[str] = Field(default=None, description="Invocation a tool_result answers")
    is_error: Optional[bool] = None


class AgentEvent(BaseModel):
    """A single event from the agent stream."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    type: EventType
    subtype: Optional[str] = None
    session_id: Optional[str] = None
    parent_tool_use_id: Optional[str] = Field(
        default=None, description="Set when the event belongs to a sub-agent invocation"
    )

    # assistant / user
    content: List[ContentBlock] = Field(default_factory=list)

    # stream_event: the raw Anthropic streaming event dict
    event: Optional[Dict[str, Any]] = None

    # result
    result: Optional[str] = None
    total_cost_usd: Optional[float] = None
    duration_ms: Optional[float] = None
    is_error: bool = False
    errors: List[str] = Field(default_factory=list)

    @property
    def is_top_level(self) -> bool:
        """True when the event is not part of a nested sub-agent run."""
        return self.parent_tool_use_id is None


def _convert_blocks(blocks: Any) -> List[ContentBlock]:
    if isinstance(blocks, str):
        return [ContentBlock(type="text", text=blocks)]

    converted: List[ContentBlock] = []
    for block in blocks or []:
        if isinstance(block, TextBlock):
            converted.append(ContentBlock(type="text", text=block.text))
        elif isinstance(block, ToolUseBlock):
            converted.append(ContentBlock(type="tool_use", id=block.id, name=block.name, input=dict(block.input or {})))
        elif isinstance(block, ToolResultBlock):
            converted.append(ContentBlock(type="tool_result", tool_use_id=block.tool_use_id, is_error=block.is_error))
        # Thinking blocks are not displayed
    return converted


def from_sdk_message(message: Any) -> Optional[AgentEvent]:
    """Convert a claude_agent_sdk message into an AgentEvent.

    Args:
        message: Any object yielded by ``claude_agent_sdk.query``

    Returns:
        The converted event, or None for message kinds the bridge ignores
    """
    if isinstance(message, SystemMessage):
        data = message.data or {}
        return AgentEvent(type=EventType.SYSTEM, subtype=message.subtype, session_id=data.get("session_id"))

    if isinstance(message, AssistantMessage):
        return AgentEvent(
            type=EventType.ASSISTANT,
            parent_tool_use_id=getattr(message, "parent_tool_use_id", None),
            content=_convert_blocks(message.content),
        )

    if isinstance(message, UserMessage):
        return AgentEvent(
            type=EventType.USER,
            parent_tool_use_id=getattr(message, "parent_tool_use_id", None),
            content=_convert_blocks(message.content),
        )

    if isinstance(message, StreamEvent):
        return AgentEvent(
            type=EventType.STREAM_EVENT,
            session_id=message.session_id,
            parent_tool_use_id=message.parent_tool_use_id,
            event=dict(message.event or {}),
        )

    if isinstance(message, ResultMessage):
        return AgentEvent(
            type=EventType.RESULT,
            subtype=message.subtype,
            session_id=message.session_id,
            result=message.result,
            total_cost_usd=message.total_cost_usd,
            duration_ms=message.duration_ms,
            is_error=bool(message.is_error),
            errors=[str(e) for e in (getattr(message, "errors", None) or [])],
        )

    return None
