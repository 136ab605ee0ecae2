"""Feishu interactive card rendering.

Every builder returns the card JSON as a string, ready to be used as the
``content`` of an ``interactive`` message.
"""

import json
from typing import Any, Dict, List, Optional

from agentbridge.claude.state import CardState, CardStatus, PendingQuestion, ToolStatus

MAX_CONTENT_LENGTH = 28000
THINKING_PLACEHOLDER = "_Claude is thinking..._"

STATUS_CONFIG: Dict[CardStatus, Dict[str, str]] = {
    CardStatus.THINKING: {"color": "blue", "title": "Thinking...", "icon": "🔵"},
    CardStatus.RUNNING: {"color": "blue", "title": "Running...", "icon": "🔵"},
    CardStatus.WAITING_FOR_INPUT: {"color": "yellow", "title": "Waiting for input", "icon": "🟡"},
    CardStatus.COMPLETE: {"color": "green", "title": "Complete", "icon": "🟢"},
    CardStatus.ERROR: {"color": "red", "title": "Error", "icon": "🔴"},
}


def truncate_content(text: str) -> str:
    """Keep the head and tail of text longer than the card limit."""
    if len(text) <= MAX_CONTENT_LENGTH:
        return text
    half = MAX_CONTENT_LENGTH // 2 - 50
    return text[:half] + "\n\n... (content truncated) ...\n\n" + text[-half:]


def _markdown(content: str) -> Dict[str, Any]:
    return {"tag": "markdown", "content": content}


def _card(title: str, color: str, elements: List[Dict[str, Any]]) -> str:
    card = {
        "config": {"wide_screen_mode": True},
        "header": {
            "template": color,
            "title": {"content": title, "tag": "plain_text"},
        },
        "elements": elements,
    }
    return json.dumps(card, ensure_ascii=False)


def format_pending_question(pending: PendingQuestion) -> str:
    """Markdown for the questions the agent is waiting on."""
    lines: List[str] = []
    for question in pending.questions:
        if question.header:
            lines.append(f"**{question.header}**")
        lines.append(question.question)
        for option in question.options:
            if option.description:
                lines.append(f"- **{option.label}**: {option.description}")
            else:
                lines.append(f"- **{option.label}**")
        if question.multi_select:
            lines.append("_(multiple answers allowed)_")
        lines.append("")
    lines.append("_Reply in this chat to answer._")
    return "\n".join(lines)


def build_card(state: CardState) -> str:
    """Render a task snapshot."""
    config = STATUS_CONFIG[state.status]
    elements: List[Dict[str, Any]] = []

    if state.tool_calls:
        tool_lines = []
        for tool in state.tool_calls:
            icon = "⏳" if tool.status is ToolStatus.RUNNING else "✅"
            tool_lines.append(f"{icon} **{tool.name}** {tool.detail}".rstrip())
        elements.append(_markdown("\n".join(tool_lines)))
        elements.append({"tag": "hr"})

    if state.response_text:
        elements.append(_markdown(truncate_content(state.response_text)))
    elif state.status is CardStatus.THINKING:
        elements.append(_markdown(THINKING_PLACEHOLDER))

    if state.pending_question is not None and state.pending_question.questions:
        elements.append({"tag": "hr"})
        elements.append(_markdown(format_pending_question(state.pending_question)))

    if state.error_message:
        elements.append(_markdown(f"**Error:** {state.error_message}"))

    if state.status.is_terminal:
        stats = _format_stats(state.duration_ms, state.cost_usd)
        if stats:
            elements.append({"tag": "note", "elements": [{"tag": "plain_text", "content": stats}]})

    return _card(f"{config['icon']} {config['title']}", config["color"], elements)


def _format_stats(duration_ms: Optional[float], cost_usd: Optional[float]) -> str:
    parts = []
    if duration_ms is not None:
        parts.append(f"Duration: {duration_ms / 1000:.1f}s")
    if cost_usd is not None:
        parts.append(f"Cost: ${cost_usd:.4f}")
    return " | ".join(parts)


def build_help_card() -> str:
    content = "\n".join(
        [
            "**Available Commands:**",
            "`/cd /path/to/project` - Set working directory",
            "`/reset` - Clear session, start fresh (keeps working directory)",
            "`/stop` - Abort current running task",
            "`/status` - Show current session and directory info",
            "`/help` - Show this help message",
            "",
            "**Usage:**",
            "Send any text message to start a conversation with Claude.",
            "Claude will execute in the working directory you set with `/cd`.",
            "Each chat has an independent session and working directory.",
        ]
    )
    return _card("📖 Help", "blue", [_markdown(content)])


def build_status_card(
    chat_id: str,
    working_directory: Optional[str],
    session_id: Optional[str],
    is_running: bool,
) -> str:
    directory = f"`{working_directory}`" if working_directory else "_Not set (use /cd to set)_"
    session = f"`{session_id[:8]}...`" if session_id else "_None_"
    content = "\n".join(
        [
            f"**Chat:** `{chat_id}`",
            f"**Working Directory:** {directory}",
            f"**Session:** {session}",
            f"**Running:** {'Yes ⏳' if is_running else 'No'}",
        ]
    )
    return _card("📊 Status", "blue", [_markdown(content)])


def build_text_card(title: str, content: str, color: str = "blue") -> str:
    return _card(title, color, [_markdown(content)])
