"""Per-chat context store with TTL eviction."""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from agentbridge.core.models import MutableStrictBaseModel

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 24 * 60 * 60
SWEEP_INTERVAL_SECONDS = 60 * 60


class ChatContext(MutableStrictBaseModel):
    """Workspace and resumable session for one chat."""

    session_id: Optional[str] = None
    working_directory: Optional[str] = None
    last_active_at: float


class SessionManager:
    """Maps chat ids to ChatContext entries.

    Contexts are created lazily with the default working directory and
    evicted by a periodic sweep once idle for longer than the TTL.
    """

    def __init__(
        self,
        default_working_directory: Optional[str] = None,
        ttl_seconds: float = SESSION_TTL_SECONDS,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._default_working_directory = default_working_directory
        self._ttl = ttl_seconds
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._contexts: Dict[str, ChatContext] = {}
        self._sweep_task: Optional[asyncio.Task[None]] = None

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._contexts

    def __len__(self) -> int:
        return len(self._contexts)

    def get_session(self, chat_id: str) -> ChatContext:
        """Get or create the context for a chat, refreshing its activity time."""
        context = self._contexts.get(chat_id)
        if context is None:
            context = ChatContext(
                working_directory=self._default_working_directory,
                last_active_at=self._clock(),
            )
            self._contexts[chat_id] = context
        context.last_active_at = self._clock()
        return context

    def set_session_id(self, chat_id: str, session_id: str) -> None:
        context = self.get_session(chat_id)
        context.session_id = session_id
        logger.debug(f"Session id updated for chat {chat_id}: {session_id[:8]}")

    def set_working_directory(self, chat_id: str, directory: str) -> None:
        """Change the workspace; a session bound to the old one is dropped."""
        context = self.get_session(chat_id)
        if context.working_directory != directory and context.session_id:
            context.session_id = None
            logger.info(f"Session reset for chat {chat_id} due to directory change")
        context.working_directory = directory
        logger.info(f"Working directory for chat {chat_id} set to {directory}")

    def reset_session(self, chat_id: str) -> None:
        """Forget the session but keep the working directory."""
        context = self._contexts.get(chat_id)
        if context is not None:
            context.session_id = None
            logger.info(f"Session reset for chat {chat_id}")

    def has_working_directory(self, chat_id: str) -> bool:
        return bool(self.get_session(chat_id).working_directory)

    def sweep_expired(self) -> int:
        """Evict contexts idle for longer than the TTL.

        Returns:
            Number of contexts evicted
        """
        now = self._clock()
        expired = [chat_id for chat_id, context in self._contexts.items() if now - context.last_active_at > self._ttl]
        for chat_id in expired:
            del self._contexts[chat_id]

        if expired:
            logger.debug(f"Evicted {len(expired)} expired chat contexts")
        return len(expired)

    def start(self) -> None:
        """Launch the periodic sweep on the running loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    def destroy(self) -> None:
        """Stop the periodic sweep. Safe to call more than once."""
        if self._sweep_task is not None:
            if not self._sweep_task.done():
                self._sweep_task.cancel()
            self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep_expired()
            except Exception as e:
                logger.warning(f"Session sweep failed: {e}")
