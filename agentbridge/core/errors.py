"""
Bridge error classes.

This module defines the error taxonomy used across the bridge. Only
admission rejections and command validation errors are surfaced to the
chat user as direct replies; backend and transport failures are absorbed
into the card pipeline or the log.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

ContextValue = Union[str, int, float, bool, None]


class BridgeError(Exception):
    """Base error class for all bridge errors.

    This class provides:
    1. A plain message suitable for showing to a user
    2. Cause tracking for wrapped exceptions
    3. Structured context for logging
    """

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        component: str = "bridge",
        operation: str = "unknown",
        **context: ContextValue
    ):
        """Initialize bridge error.

        Args:
            message: Error message
            cause: Original exception that caused this error
            component: Component that raised the error
            operation: Operation being performed
            **context: Additional context information
        """
        self.message = message
        self.cause = cause
        self.component = component
        self.operation = operation
        self.timestamp = datetime.now()
        self.additional_context: Dict[str, ContextValue] = {
            k: v for k, v in context.items() if v is not None
        }
        super().__init__(message)

    def __str__(self) -> str:
        """String representation - just the message plus the cause."""
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary.

        Returns:
            Dictionary representation of the error
        """
        result: Dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "location": f"{self.component}.{self.operation}",
            "timestamp": self.timestamp.isoformat(),
            "context": dict(self.additional_context),
        }

        if self.cause:
            if isinstance(self.cause, BridgeError):
                result["cause"] = self.cause.to_dict()
            else:
                result["cause"] = {
                    "error_type": self.cause.__class__.__name__,
                    "message": str(self.cause),
                }

        return result


class RejectionReason(str, Enum):
    """Why a new task was not admitted."""

    NO_WORKSPACE = "no_workspace"
    BUSY = "busy"


class AdmissionRejection(BridgeError):
    """Raised when a task cannot start for a chat.

    This is an expected, user-facing outcome rather than a failure: the chat
    either has no working directory yet or already has a running task.
    """

    def __init__(self, reason: RejectionReason, chat_id: str):
        """Initialize admission rejection.

        Args:
            reason: Why admission was refused
            chat_id: Chat the task was requested for
        """
        if reason is RejectionReason.NO_WORKSPACE:
            message = "Working directory is not set"
        else:
            message = "A task is already running"
        super().__init__(message, component="message_bridge", operation="admit", chat_id=chat_id, reason=reason.value)
        self.reason = reason
        self.chat_id = chat_id


class CommandValidationError(BridgeError):
    """Raised when a chat command argument is invalid, e.g. a bad /cd path."""

    def __init__(self, message: str, command: str, argument: Optional[str] = None):
        super().__init__(message, component="commands", operation=command, argument=argument)
        self.command = command
        self.argument = argument


class BackendError(BridgeError):
    """Raised when the agent backend stream fails.

    The orchestrator converts it into an error card; it never escapes a task.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None, **context: ContextValue):
        super().__init__(message, cause=cause, component="claude_executor", operation="execute", **context)


class TransportError(BridgeError):
    """Raised by the messaging transport when a platform call fails.

    Transport errors are caught inside the sender, logged, and reported to
    callers as a missing result.
    """

    def __init__(
        self,
        message: str,
        operation: str,
        status: Optional[int] = None,
        code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause=cause, component="message_sender", operation=operation, status=status, code=code)
        self.status = status
        self.code = code


class ConfigurationError(BridgeError):
    """Error in bridge configuration.

    Raised when there is an invalid configuration value or missing required config.
    """

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        """Initialize configuration error.

        Args:
            message: Error message
            config_key: Key of the problematic configuration
            cause: Original exception that caused this error
        """
        super().__init__(message, cause=cause, component="settings", operation="load", config_key=config_key)
        self.config_key = config_key


__all__ = [
    "BridgeError",
    "RejectionReason",
    "AdmissionRejection",
    "CommandValidationError",
    "BackendError",
    "TransportError",
    "ConfigurationError",
]
