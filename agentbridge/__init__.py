"""agentbridge: drive Claude agent sessions from Feishu chats."""

__version__ = "0.1.0"
