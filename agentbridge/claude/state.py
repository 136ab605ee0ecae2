"""Render-ready task state (the card snapshot)."""

from enum import Enum
from typing import List, Optional

from pydantic import Field

from agentbridge.core.models import MutableStrictBaseModel, StrictBaseModel


class CardStatus(str, Enum):
    """Lifecycle status shown in the card header."""

    THINKING = "thinking"
    RUNNING = "running"
    WAITING_FOR_INPUT = "waiting_for_input"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        """Complete and error are final; nothing renders after them."""
        return self in (CardStatus.COMPLETE, CardStatus.ERROR)


class ToolStatus(str, Enum):
    """Tool call progress."""

    RUNNING = "running"
    DONE = "done"


class ToolCall(MutableStrictBaseModel):
    """One tool invocation as displayed in the card."""

    name: str
    detail: str = ""
    status: ToolStatus = ToolStatus.RUNNING


class QuestionOption(StrictBaseModel):
    """A selectable answer to an interactive question."""

    label: str
    description: str = ""


class Question(StrictBaseModel):
    """A question the agent asks the user."""

    question: str
    header: str = ""
    options: List[QuestionOption] = Field(default_factory=list)
    multi_select: bool = False


class PendingQuestion(StrictBaseModel):
    """Questions awaiting an answer, correlated by the tool invocation id."""

    tool_use_id: str
    questions: List[Question] = Field(default_factory=list)


class CardState(StrictBaseModel):
    """Immutable snapshot of a task's progress, ready to render."""

    status: CardStatus
    user_prompt: str
    response_text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list)
    pending_question: Optional[PendingQuestion] = None
    cost_usd: Optional[float] = None
    duration_ms: Optional[float] = None
    error_message: Optional[str] = None
