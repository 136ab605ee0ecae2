"""Folds the agent event stream into card snapshots.

The processor is a pure state machine: it performs no I/O and the same
sequence of events always yields the same final snapshot.

Folding policy:
- a whole top-level assistant message *replaces* the response text (the
  backend sends cumulative messages), while top-level text deltas *append*;
  the whole message is authoritative when both arrive for the same text
- a new tool invocation closes the tool that is currently open
- a tool result closes the open tool
- the terminal result event force-closes every tool
"""

import logging
import os
import re
from typing import Any, Dict, List, Optional

from agentbridge.claude.events import AgentEvent, ContentBlock, EventType
from agentbridge.claude.state import (
    CardState,
    CardStatus,
    PendingQuestion,
    Question,
    QuestionOption,
    ToolCall,
    ToolStatus,
)

logger = logging.getLogger(__name__)

ASK_USER_QUESTION_TOOL = "AskUserQuestion"
WRITE_TOOL = "Write"

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".svg", ".tiff"})

# Absolute paths only; the lookbehind keeps URL paths and relative paths out
_IMAGE_PATH_RE = re.compile(r"(?<![\w/:.~-])/[\w./-]+\.(?:png|jpe?g|gif|webp|bmp|svg|tiff)\b", re.IGNORECASE)


def derive_status(
    pending_question: Optional[PendingQuestion],
    tool_calls: List[ToolCall],
    response_text: str,
) -> CardStatus:
    """Status for a non-terminal snapshot.

    waiting_for_input beats running, which beats thinking. Tool calls are
    never removed, so once any tool or text has appeared the status cannot
    fall back to thinking.
    """
    if pending_question is not None:
        return CardStatus.WAITING_FOR_INPUT
    if tool_calls or response_text:
        return CardStatus.RUNNING
    return CardStatus.THINKING


class StreamProcessor:
    """Accumulates agent events for one task invocation."""

    def __init__(self, user_prompt: str):
        """Initialize the processor.

        Args:
            user_prompt: Display form of what the user asked
        """
        self._user_prompt = user_prompt
        self._response_text = ""
        self._tool_calls: List[ToolCall] = []
        self._tools_by_id: Dict[str, ToolCall] = {}
        self._current_tool: Optional[ToolCall] = None
        self._pending_question: Optional[PendingQuestion] = None
        self._session_id: Optional[str] = None
        self._cost_usd: Optional[float] = None
        self._duration_ms: Optional[float] = None
        self._image_paths: Dict[str, None] = {}
        self._final: Optional[CardState] = None

    @property
    def session_id(self) -> Optional[str]:
        """First session id reported by the backend."""
        return self._session_id

    def image_paths(self) -> List[str]:
        """Absolute image paths written through the Write tool, in order."""
        return list(self._image_paths)

    def process_event(self, event: AgentEvent) -> CardState:
        """Fold one event and return the resulting snapshot.

        Args:
            event: Next event from the agent stream

        Returns:
            The snapshot after applying the event
        """
        if event.session_id and self._session_id is None:
            self._session_id = event.session_id

        if self._final is not None:
            # Terminal state already reached
            return self._final

        if event.type is EventType.ASSISTANT:
            self._process_message(event, from_assistant=True)
        elif event.type is EventType.USER:
            self._process_message(event, from_assistant=False)
        elif event.type is EventType.STREAM_EVENT:
            self._process_stream_event(event)
        elif event.type is EventType.RESULT:
            return self._process_result(event)
        # System events only carry the session id

        return self.snapshot()

    def snapshot(self) -> CardState:
        """Current render-ready state."""
        if self._final is not None:
            return self._final

        return CardState(
            status=derive_status(self._pending_question, self._tool_calls, self._response_text),
            user_prompt=self._user_prompt,
            response_text=self._response_text,
            tool_calls=[tool.model_copy() for tool in self._tool_calls],
            pending_question=self._pending_question,
            cost_usd=self._cost_usd,
            duration_ms=self._duration_ms,
        )

    def fail(self, error_message: str) -> CardState:
        """Finish the fold with an error, keeping text and tools seen so far.

        Used when the stream raised, was stopped, or timed out. Has no effect
        once a result event has produced a terminal snapshot.

        Args:
            error_message: Message to show in the card

        Returns:
            The terminal snapshot
        """
        if self._final is not None:
            return self._final

        self._close_all_tools()
        self._final = CardState(
            status=CardStatus.ERROR,
            user_prompt=self._user_prompt,
            response_text=self._response_text,
            tool_calls=[tool.model_copy() for tool in self._tool_calls],
            pending_question=self._pending_question,
            cost_usd=self._cost_usd,
            duration_ms=self._duration_ms,
            error_message=error_message,
        )
        return self._final

    def _process_message(self, event: AgentEvent, from_assistant: bool) -> None:
        for block in event.content:
            if block.type == "text" and block.text:
                # Sub-agent text is not part of the visible answer
                if from_assistant and event.is_top_level:
                    self._response_text = block.text
            elif block.type == "tool_use" and block.name:
                if block.name == ASK_USER_QUESTION_TOOL:
                    self._set_pending_question(block)
                else:
                    self._add_tool_call(block.name, block.input, block.id)
            elif block.type == "tool_result":
                if self._pending_question and block.tool_use_id == self._pending_question.tool_use_id:
                    self._pending_question = None
                else:
                    self._complete_current_tool()

    def _process_stream_event(self, event: AgentEvent) -> None:
        if not event.is_top_level or not event.event:
            return

        stream_event = event.event
        event_type = stream_event.get("type")

        if event_type == "content_block_start":
            block = stream_event.get("content_block") or {}
            name = block.get("name")
            if block.get("type") == "tool_use" and name and name != ASK_USER_QUESTION_TOOL:
                self._add_tool_call(name, None, block.get("id"))
        elif event_type == "content_block_delta":
            delta = stream_event.get("delta") or {}
            if delta.get("type") == "text_delta" and delta.get("text"):
                self._response_text += delta["text"]
        # content_block_stop is not a completion signal; whole messages are

    def _process_result(self, event: AgentEvent) -> CardState:
        if event.total_cost_usd is not None:
            self._cost_usd = float(event.total_cost_usd)
        if event.duration_ms is not None:
            self._duration_ms = float(event.duration_ms)

        self._close_all_tools()

        is_error = event.subtype != "success"
        if event.result:
            self._response_text = event.result

        error_message = None
        if is_error:
            error_message = "; ".join(event.errors) if event.errors else f"Ended with: {event.subtype}"

        self._final = CardState(
            status=CardStatus.ERROR if is_error else CardStatus.COMPLETE,
            user_prompt=self._user_prompt,
            response_text=self._response_text,
            tool_calls=[tool.model_copy() for tool in self._tool_calls],
            pending_question=self._pending_question,
            cost_usd=self._cost_usd,
            duration_ms=self._duration_ms,
            error_message=error_message,
        )
        return self._final

    def _add_tool_call(self, name: str, tool_input: Optional[Dict[str, Any]], tool_id: Optional[str]) -> None:
        existing = self._tools_by_id.get(tool_id) if tool_id else None
        if existing is not None:
            # Full invocation for a tool already opened by a stream delta
            if tool_input:
                existing.detail = format_tool_detail(name, tool_input)
            self._track_image_path(name, tool_input)
            return

        self._complete_current_tool()

        tool = ToolCall(name=name, detail=format_tool_detail(name, tool_input))
        self._tool_calls.append(tool)
        self._current_tool = tool
        if tool_id:
            self._tools_by_id[tool_id] = tool

        self._track_image_path(name, tool_input)

    def _complete_current_tool(self) -> None:
        if self._current_tool is not None:
            if self._current_tool.status is ToolStatus.RUNNING:
                self._current_tool.status = ToolStatus.DONE
            self._current_tool = None

    def _close_all_tools(self) -> None:
        for tool in self._tool_calls:
            if tool.status is ToolStatus.RUNNING:
                tool.status = ToolStatus.DONE
        self._current_tool = None

    def _set_pending_question(self, block: ContentBlock) -> None:
        questions = parse_questions((block.input or {}).get("questions"))
        self._pending_question = PendingQuestion(tool_use_id=block.id or "", questions=questions)
        logger.debug(f"Agent asked {len(questions)} question(s), tool_use_id={block.id}")

    def _track_image_path(self, name: str, tool_input: Optional[Dict[str, Any]]) -> None:
        if name != WRITE_TOOL or not tool_input:
            return
        file_path = tool_input.get("file_path")
        if isinstance(file_path, str) and os.path.isabs(file_path) and is_image_path(file_path):
            self._image_paths[file_path] = None


def parse_questions(raw: Any) -> List[Question]:
    """Build Question models from AskUserQuestion input, skipping malformed entries."""
    questions: List[Question] = []
    if not isinstance(raw, list):
        return questions

    for item in raw:
        if not isinstance(item, dict) or not isinstance(item.get("question"), str):
            continue
        options = [
            QuestionOption(label=str(opt.get("label", "")), description=str(opt.get("description", "")))
            for opt in item.get("options") or []
            if isinstance(opt, dict)
        ]
        questions.append(
            Question(
                question=item["question"],
                header=str(item.get("header", "")),
                options=options,
                multi_select=bool(item.get("multiSelect", False)),
            )
        )
    return questions


def is_image_path(file_path: str) -> bool:
    """Check the extension against the known image set."""
    return os.path.splitext(file_path)[1].lower() in IMAGE_EXTENSIONS


def extract_image_paths(text: str) -> List[str]:
    """Scan text for absolute image file paths, deduplicated in order of appearance."""
    if not text:
        return []
    return list(dict.fromkeys(_IMAGE_PATH_RE.findall(text)))


def format_tool_detail(name: str, tool_input: Optional[Dict[str, Any]]) -> str:
    """Short, markdown-formatted summary of a tool's input."""
    if not tool_input:
        return ""

    if name in ("Read", "Write", "Edit"):
        file_path = tool_input.get("file_path")
        return f"`{shorten_path(str(file_path))}`" if file_path else ""
    if name == "Bash":
        command = tool_input.get("command")
        return f"`{truncate(str(command), 60)}`" if command else ""
    if name in ("Glob", "Grep"):
        pattern = tool_input.get("pattern")
        return f"`{pattern}`" if pattern else ""
    if name == "WebSearch":
        query = tool_input.get("query")
        return f'"{truncate(str(query), 50)}"' if query else ""
    if name == "WebFetch":
        url = tool_input.get("url")
        return f"`{truncate(str(url), 60)}`" if url else ""
    if name == "Task":
        description = tool_input.get("description")
        return str(description) if description else ""
    return ""


def shorten_path(file_path: str) -> str:
    """Keep only the last two components of long paths."""
    parts = file_path.split("/")
    if len(parts) <= 3:
        return file_path
    return ".../" + "/".join(parts[-2:])


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."
