"""Agent backend stream built on claude_agent_sdk."""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, List, Optional

from claude_agent_sdk import ClaudeAgentOptions, query

from agentbridge.claude.events import AgentEvent, from_sdk_message
from agentbridge.core.async_queue import AsyncQueue
from agentbridge.core.cancellation import CancellationToken
from agentbridge.core.errors import BackendError
from agentbridge.core.settings import ClaudeSettings

logger = logging.getLogger(__name__)

QueryFn = Callable[..., AsyncIterator[Any]]


class ClaudeExecutor:
    """Runs one agent query per call and yields typed events.

    SDK messages are pumped into an AsyncQueue by a producer task so the
    cancellation token can stop the pump without waiting for the next
    message to arrive.
    """

    def __init__(self, settings: ClaudeSettings, query_fn: Optional[QueryFn] = None):
        """Initialize the executor.

        Args:
            settings: Agent backend settings
            query_fn: Replacement for ``claude_agent_sdk.query``, used by tests
        """
        self._settings = settings
        self._query_fn = query_fn or query

    def build_options(self, cwd: str, session_id: Optional[str] = None) -> ClaudeAgentOptions:
        """Build SDK options for one invocation."""
        return ClaudeAgentOptions(
            cwd=cwd,
            resume=session_id,
            include_partial_messages=True,
            permission_mode="bypassPermissions",
            allowed_tools=list(self._settings.allowed_tools),
            max_turns=self._settings.max_turns,
            max_budget_usd=self._settings.max_budget_usd,
            model=self._settings.model,
            setting_sources=["user", "project"],
        )

    async def execute(
        self,
        prompt: str,
        cwd: str,
        session_id: Optional[str],
        cancellation: CancellationToken,
    ) -> AsyncIterator[AgentEvent]:
        """Stream agent events for a prompt.

        Iteration ends quietly when the token is cancelled.

        Args:
            prompt: Full prompt text
            cwd: Working directory for the agent
            session_id: Session to resume, if any
            cancellation: Token that stops the stream

        Yields:
            Converted agent events in arrival order

        Raises:
            BackendError: If the SDK stream fails while not cancelled
        """
        options = self.build_options(cwd, session_id)
        queue: AsyncQueue[AgentEvent] = AsyncQueue()
        failures: List[BaseException] = []

        async def pump() -> None:
            try:
                async for message in self._query_fn(prompt=prompt, options=options):
                    event = from_sdk_message(message)
                    if event is not None:
                        queue.put(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                failures.append(e)
            finally:
                queue.finish()

        logger.info(f"Starting agent query in {cwd} (resume={session_id or 'none'})")
        pump_task = asyncio.create_task(pump())

        def on_cancel() -> None:
            pump_task.cancel()
            queue.finish()

        remove_callback = cancellation.add_callback(on_cancel)
        try:
            async for event in queue:
                if cancellation.cancelled:
                    break
                yield event

            if failures and not cancellation.cancelled:
                error = failures[0]
                raise BackendError(str(error) or error.__class__.__name__, cause=error, cwd=cwd)
        finally:
            remove_callback()
            if not pump_task.done():
                pump_task.cancel()
            # wait() leaves the pump's own cancellation alone but still raises
            # if the consuming task is cancelled
            await asyncio.wait({pump_task})
