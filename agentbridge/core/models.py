"""Pydantic bases for bridge state.

Card snapshots, inbound messages and output listings are immutable; chat
contexts and tool calls are updated in place. Both bases reject unknown
fields and coerce nothing, so a malformed event payload fails loudly.
"""

from pydantic import BaseModel, ConfigDict


class StrictBaseModel(BaseModel):
    """Frozen, strictly validated model (CardState, IncomingMessage, OutputFile)."""

    model_config = ConfigDict(
        strict=True,
        extra="forbid",
        frozen=True,
        validate_default=True,
    )


class MutableStrictBaseModel(BaseModel):
    """Strict model whose fields may be reassigned (ChatContext, ToolCall).

    Assignments are validated too, so a ToolCall status can only become
    another ToolStatus.
    """

    model_config = ConfigDict(
        strict=True,
        extra="forbid",
        validate_assignment=True,
        validate_default=True,
    )


__all__ = [
    "StrictBaseModel",
    "MutableStrictBaseModel",
]
