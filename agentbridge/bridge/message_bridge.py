"""Task orchestration between chat messages and the agent backend.

One task may run per chat at a time. Each task goes through the same
path: admission, an initial card, the drive loop that folds agent events
and schedules throttled card updates, and a termination phase that always
sends a final card and releases the chat.
"""

import asyncio
import hashlib
import logging
import os
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from functools import partial
from pathlib import Path
from typing import Dict, Optional, Tuple

from agentbridge.bridge.outputs_manager import OutputsManager
from agentbridge.bridge.rate_limiter import RateLimiter
from agentbridge.bridge.session_manager import SessionManager
from agentbridge.claude.executor import ClaudeExecutor
from agentbridge.claude.state import CardState
from agentbridge.claude.stream_processor import StreamProcessor, extract_image_paths
from agentbridge.core.cancellation import CancellationToken
from agentbridge.core.errors import AdmissionRejection, CommandValidationError, RejectionReason
from agentbridge.core.settings import BridgeSettings
from agentbridge.feishu.card_builder import build_card, build_help_card, build_status_card, build_text_card
from agentbridge.feishu.event_handler import IncomingMessage
from agentbridge.feishu.message_sender import MessageSender

logger = logging.getLogger(__name__)

# Feishu upload ceilings
MAX_IMAGE_BYTES = 10 * 1024 * 1024
MAX_FILE_BYTES = 30 * 1024 * 1024

CANCEL_REASON_USER = "user"
CANCEL_REASON_TIMEOUT = "timeout"
CANCEL_REASON_SHUTDOWN = "shutdown"

_REJECTION_CARDS = {
    RejectionReason.NO_WORKSPACE: (
        "⚠️ Working Directory Not Set",
        "Please set a working directory first:\n`/cd /path/to/your/project`",
    ),
    RejectionReason.BUSY: (
        "⏳ Task In Progress",
        "A task is already running in this chat. Use `/stop` to abort it, or wait for it to finish.",
    ),
}


@dataclass
class RunningTask:
    """Registry entry for an admitted task; its presence marks the chat busy."""

    cancellation: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.time)


class MessageBridge:
    """Routes chat messages to commands or agent tasks."""

    def __init__(
        self,
        settings: BridgeSettings,
        sender: MessageSender,
        executor: Optional[ClaudeExecutor] = None,
        session_manager: Optional[SessionManager] = None,
        outputs_manager: Optional[OutputsManager] = None,
        running_tasks: Optional[Dict[str, RunningTask]] = None,
    ):
        """Initialize the bridge.

        Args:
            settings: Bridge settings
            sender: Outbound transport
            executor: Agent backend; built from settings when omitted
            session_manager: Chat context store; built from settings when omitted
            outputs_manager: Outputs directory handler; built from settings when omitted
            running_tasks: Running task table, shared when several bridges must coordinate
        """
        self._settings = settings
        self._sender = sender
        self._executor = executor or ClaudeExecutor(settings.claude)
        self._sessions = session_manager or SessionManager(
            settings.claude.default_working_directory,
            ttl_seconds=settings.session_ttl_seconds,
            sweep_interval_seconds=settings.session_sweep_interval_seconds,
        )
        self._outputs = outputs_manager or OutputsManager(settings.outputs_root)
        self._running_tasks: Dict[str, RunningTask] = running_tasks if running_tasks is not None else {}
        self._shut_down = False

    @property
    def sessions(self) -> SessionManager:
        return self._sessions

    @property
    def running_task_count(self) -> int:
        return len(self._running_tasks)

    def is_running(self, chat_id: str) -> bool:
        return chat_id in self._running_tasks

    def start(self) -> None:
        """Start background maintenance (the session sweep)."""
        self._sessions.start()

    async def handle_message(self, msg: IncomingMessage) -> None:
        """Entry point for every inbound chat message."""
        if msg.text.startswith("/"):
            await self.handle_command(msg)
            return

        try:
            task = self._admit(msg.chat_id)
        except AdmissionRejection as e:
            logger.info(f"Task rejected for chat {msg.chat_id}: {e.message}")
            title, content = _REJECTION_CARDS[e.reason]
            await self._sender.send_card(msg.chat_id, build_text_card(title, content, "orange"))
            return

        await self._execute_query(msg, task)

    def stop_task(self, chat_id: str, reason: str = CANCEL_REASON_USER) -> bool:
        """Cancel and unregister the chat's running task.

        Returns:
            False when nothing was running
        """
        task = self._running_tasks.pop(chat_id, None)
        if task is None:
            return False
        task.cancellation.cancel(reason)
        logger.info(f"Stopped task for chat {chat_id} ({reason})")
        return True

    def shutdown(self) -> None:
        """Cancel every running task and stop the session sweep. Idempotent."""
        if self._shut_down:
            return
        self._shut_down = True

        for chat_id, task in list(self._running_tasks.items()):
            task.cancellation.cancel(CANCEL_REASON_SHUTDOWN)
            logger.info(f"Aborted running task for chat {chat_id} during shutdown")
        self._running_tasks.clear()
        self._sessions.destroy()

    def _admit(self, chat_id: str) -> RunningTask:
        """Register a new task for the chat.

        Runs without suspension points, so checking and registering are atomic.

        Raises:
            AdmissionRejection: If the chat has no workspace or is busy
        """
        if not self._sessions.has_working_directory(chat_id):
            raise AdmissionRejection(RejectionReason.NO_WORKSPACE, chat_id)
        if chat_id in self._running_tasks:
            raise AdmissionRejection(RejectionReason.BUSY, chat_id)

        task = RunningTask()
        self._running_tasks[chat_id] = task
        return task

    async def _execute_query(self, msg: IncomingMessage, task: RunningTask) -> None:
        chat_id = msg.chat_id
        context = self._sessions.get_session(chat_id)
        cwd = context.working_directory or ""

        loop = asyncio.get_running_loop()
        timeout_handle = loop.call_later(self._settings.task_timeout_seconds, self._on_timeout, chat_id, task)

        display_prompt = f"🖼️ {msg.text}" if msg.image_key else msg.text
        processor = StreamProcessor(display_prompt)
        image_path: Optional[Path] = None
        outputs_dir: Optional[Path] = None
        final_state: Optional[CardState] = None

        try:
            try:
                prompt, image_path = await self._stage_image(msg)
                outputs_dir = self._prepare_outputs(chat_id)
                if outputs_dir is not None:
                    prompt += (
                        f"\n\n[Output files: save any file you want sent back to the user in {outputs_dir}. "
                        "Files placed there are delivered to the chat when the task ends.]"
                    )

                message_id = await self._sender.send_card(chat_id, build_card(processor.snapshot()))
                if not message_id:
                    logger.error(f"Failed to send initial card for chat {chat_id}, aborting task")
                    return

                final_state = await self._drive(chat_id, task, processor, prompt, cwd, context.session_id, message_id)
                await self._sender.update_card(message_id, build_card(final_state))
                logger.info(f"Task for chat {chat_id} finished with status {final_state.status.value}")
            finally:
                timeout_handle.cancel()
                # /stop may already have removed the entry, and a newer task may own it now
                if self._running_tasks.get(chat_id) is task:
                    del self._running_tasks[chat_id]
                if image_path is not None:
                    image_path.unlink(missing_ok=True)

            # The chat is free again; uploads only touch this task's own directory
            if final_state is not None:
                await self._deliver_outputs(chat_id, processor, final_state, outputs_dir)
        finally:
            if outputs_dir is not None:
                self._outputs.cleanup(outputs_dir)

    async def _drive(
        self,
        chat_id: str,
        task: RunningTask,
        processor: StreamProcessor,
        prompt: str,
        cwd: str,
        session_id: Optional[str],
        message_id: str,
    ) -> CardState:
        """Fold the agent stream into throttled card updates.

        Returns:
            The terminal snapshot for the final update
        """
        limiter = RateLimiter(self._settings.update_interval_seconds)
        state = processor.snapshot()
        last_digest: Optional[str] = None

        try:
            stream = self._executor.execute(prompt, cwd, session_id, task.cancellation)
            async with aclosing(stream):
                async for event in stream:
                    if task.cancellation.cancelled:
                        break

                    state = processor.process_event(event)

                    new_session_id = processor.session_id
                    if new_session_id and new_session_id != self._sessions.get_session(chat_id).session_id:
                        self._sessions.set_session_id(chat_id, new_session_id)

                    if state.status.is_terminal:
                        continue

                    card = build_card(state)
                    digest = hashlib.sha256(card.encode("utf-8")).hexdigest()
                    if digest == last_digest:
                        continue
                    last_digest = digest
                    limiter.schedule(partial(self._sender.update_card, message_id, card))
        except Exception as e:
            logger.error(f"Agent execution failed for chat {chat_id}: {e}", exc_info=True)
            # No throttled update may land after the error card
            await limiter.cancel_and_wait()
            return processor.fail(getattr(e, "message", None) or str(e) or e.__class__.__name__)

        await limiter.flush()

        if task.cancellation.cancelled:
            return processor.fail(self._cancellation_message(task.cancellation.reason))
        if not state.status.is_terminal:
            return processor.fail("Agent stream ended without a result")
        return state

    def _on_timeout(self, chat_id: str, task: RunningTask) -> None:
        logger.warning(f"Task for chat {chat_id} timed out, cancelling")
        task.cancellation.cancel(CANCEL_REASON_TIMEOUT)

    def _cancellation_message(self, reason: Optional[str]) -> str:
        if reason == CANCEL_REASON_TIMEOUT:
            return f"Task timed out after {self._settings.task_timeout_seconds:.0f}s"
        if reason == CANCEL_REASON_SHUTDOWN:
            return "Task aborted because the bridge is shutting down"
        return "Task stopped by user"

    async def _stage_image(self, msg: IncomingMessage) -> Tuple[str, Optional[Path]]:
        """Download the message's image and reference it in the prompt."""
        if not msg.image_key:
            return msg.text, None

        image_path = Path(self._settings.scratch_dir) / f"{msg.image_key}.png"
        try:
            image_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create scratch directory {image_path.parent}: {e}")
            return f"{msg.text}\n\n(Note: Failed to download the image from Feishu)", None

        if await self._sender.download_image(msg.message_id, msg.image_key, image_path):
            prompt = (
                f"{msg.text}\n\n[Image saved at: {image_path}]\n"
                "Please use the Read tool to read and analyze this image file."
            )
            return prompt, image_path

        return f"{msg.text}\n\n(Note: Failed to download the image from Feishu)", image_path

    def _prepare_outputs(self, chat_id: str) -> Optional[Path]:
        try:
            return self._outputs.prepare_dir(chat_id)
        except OSError as e:
            logger.warning(f"Cannot prepare outputs directory for chat {chat_id}: {e}")
            return None

    async def _deliver_outputs(
        self,
        chat_id: str,
        processor: StreamProcessor,
        state: CardState,
        outputs_dir: Optional[Path],
    ) -> None:
        """Send images the agent wrote or mentioned, then every file in the outputs directory."""
        image_paths = dict.fromkeys(processor.image_paths())
        image_paths.update(dict.fromkeys(extract_image_paths(state.response_text)))

        sent = set()
        for path in image_paths:
            if not _is_deliverable(path, MAX_IMAGE_BYTES):
                continue
            try:
                logger.info(f"Sending output image {path} to chat {chat_id}")
                await self._sender.send_image_file(chat_id, path)
                sent.add(os.path.realpath(path))
            except Exception as e:
                logger.warning(f"Failed to send output image {path}: {e}")

        if outputs_dir is None:
            return

        for output in self._outputs.scan_outputs(outputs_dir):
            if os.path.realpath(output.path) in sent:
                continue
            limit = MAX_IMAGE_BYTES if output.is_image else MAX_FILE_BYTES
            if not _is_deliverable(output.path, limit):
                logger.warning(f"Skipping output {output.file_name} ({output.size_bytes} bytes)")
                continue
            try:
                logger.info(f"Sending output file {output.file_name} to chat {chat_id}")
                if output.is_image:
                    await self._sender.send_image_file(chat_id, output.path)
                else:
                    file_type = OutputsManager.feishu_file_type(output.extension)
                    await self._sender.send_local_file(chat_id, output.path, file_type)
            except Exception as e:
                logger.warning(f"Failed to send output file {output.path}: {e}")

    async def handle_command(self, msg: IncomingMessage) -> None:
        """Run a slash command. The first token is matched case-insensitively."""
        chat_id = msg.chat_id
        parts = msg.text.strip().split(maxsplit=1)
        command = parts[0].lower()
        argument = parts[1].strip() if len(parts) > 1 else ""

        if command == "/help":
            await self._sender.send_card(chat_id, build_help_card())

        elif command == "/cd":
            if not argument:
                await self._sender.send_card(chat_id, build_text_card("⚠️ Usage", "`/cd /path/to/project`", "orange"))
                return
            try:
                directory = resolve_directory(argument)
            except CommandValidationError as e:
                await self._sender.send_card(chat_id, build_text_card("❌ Error", e.message, "red"))
                return
            self._sessions.set_working_directory(chat_id, directory)
            await self._sender.send_card(
                chat_id, build_text_card("✅ Working Directory Set", f"`{directory}`", "green")
            )

        elif command == "/reset":
            self._sessions.reset_session(chat_id)
            await self._sender.send_card(
                chat_id,
                build_text_card("✅ Session Reset", "Conversation cleared. Working directory preserved.", "green"),
            )

        elif command == "/stop":
            if self.stop_task(chat_id):
                await self._sender.send_card(
                    chat_id, build_text_card("🛑 Stopped", "Current task has been aborted.", "orange")
                )
            else:
                await self._sender.send_card(
                    chat_id, build_text_card("ℹ️ No Running Task", "There is no task to stop.", "blue")
                )

        elif command == "/status":
            context = self._sessions.get_session(chat_id)
            await self._sender.send_card(
                chat_id,
                build_status_card(chat_id, context.working_directory, context.session_id, self.is_running(chat_id)),
            )

        else:
            await self._sender.send_card(
                chat_id,
                build_text_card(
                    "❓ Unknown Command",
                    f"Unknown command: `{command}`\nUse `/help` for available commands.",
                    "orange",
                ),
            )


def resolve_directory(argument: str) -> str:
    """Expand ``~``, resolve, and require an existing directory.

    Raises:
        CommandValidationError: If the path is missing or not a directory
    """
    path = Path(argument).expanduser().resolve()
    if not path.exists():
        raise CommandValidationError(f"Directory not found: `{path}`", "cd", argument)
    if not path.is_dir():
        raise CommandValidationError(f"Not a directory: `{path}`", "cd", argument)
    return str(path)


def _is_deliverable(path: str, max_bytes: int) -> bool:
    """Existing regular file, non-empty and within the upload ceiling."""
    try:
        if not os.path.isfile(path):
            return False
        size = os.path.getsize(path)
    except OSError:
        return False
    return 0 < size <= max_bytes
