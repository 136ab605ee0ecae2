"""Task orchestration: admission, the drive loop, throttling and chat contexts."""

from agentbridge.bridge.message_bridge import MessageBridge, RunningTask
from agentbridge.bridge.outputs_manager import OutputFile, OutputsManager
from agentbridge.bridge.rate_limiter import RateLimiter
from agentbridge.bridge.session_manager import ChatContext, SessionManager

__all__ = [
    "MessageBridge",
    "RunningTask",
    "OutputFile",
    "OutputsManager",
    "RateLimiter",
    "ChatContext",
    "SessionManager",
]
