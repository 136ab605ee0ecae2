"""Tests for MessageBridge task orchestration."""

import asyncio
import json
import os
import re
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from agentbridge.bridge.message_bridge import MessageBridge, RunningTask, resolve_directory
from agentbridge.core.errors import BackendError, CommandValidationError
from agentbridge.feishu.event_handler import IncomingMessage
from agentbridge.feishu.message_sender import MessageSender
from agentbridge.tests.factories import (
    result_event,
    system_event,
    text_message,
    tool_result,
    tool_use,
)

CHAT = "oc_chat"

_OUTPUTS_DIR_RE = re.compile(r"sent back to the user in (\S+)\. Files placed")


class FakeExecutor:
    """Scripted agent backend."""

    def __init__(self, events=(), error=None, hang=False, on_start=None):
        self.events = list(events)
        self.error = error
        self.hang = hang
        self.on_start = on_start
        self.calls = []

    async def execute(self, prompt, cwd, session_id, cancellation):
        self.calls.append({"prompt": prompt, "cwd": cwd, "session_id": session_id})
        if self.on_start is not None:
            self.on_start(prompt, cwd)
        for event in self.events:
            if cancellation.cancelled:
                return
            yield event
            await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        if self.hang:
            await cancellation.wait()


def make_sender():
    sender = AsyncMock(spec=MessageSender)
    sender.send_card.return_value = "om_card"
    sender.update_card.return_value = True
    sender.download_image.return_value = True
    return sender


def message(text="hello", image_key=None, chat_id=CHAT):
    return IncomingMessage(message_id="om_in", chat_id=chat_id, user_id="ou_user", text=text, image_key=image_key)


def outputs_dir_of(prompt):
    return Path(_OUTPUTS_DIR_RE.search(prompt).group(1))


def title(content):
    return json.loads(content)["header"]["title"]["content"]


def body(content):
    return "\n".join(e.get("content", "") for e in json.loads(content)["elements"])


def sent_titles(sender):
    return [title(c.args[1]) for c in sender.send_card.call_args_list]


def updated_titles(sender):
    return [title(c.args[1]) for c in sender.update_card.call_args_list]


async def wait_until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


@pytest.fixture
def workspace(tmp_path):
    directory = tmp_path / "workspace"
    directory.mkdir()
    return directory


def make_bridge(settings, executor, workspace=None, sender=None):
    sender = sender or make_sender()
    bridge = MessageBridge(settings, sender, executor=executor)
    if workspace is not None:
        bridge.sessions.set_working_directory(CHAT, str(workspace))
    return bridge, sender


class TestAdmission:
    """Test admission control."""

    @pytest.mark.asyncio
    async def test_rejects_without_workspace(self, bridge_settings):
        """Test a chat without a working directory gets a card and no task."""
        executor = FakeExecutor([result_event()])
        bridge, sender = make_bridge(bridge_settings, executor)

        await bridge.handle_message(message())

        assert sent_titles(sender) == ["⚠️ Working Directory Not Set"]
        assert executor.calls == []
        assert bridge.running_task_count == 0

    @pytest.mark.asyncio
    async def test_rejects_when_busy(self, bridge_settings, workspace):
        """Test a second message is rejected and the running task is untouched."""
        executor = FakeExecutor([result_event()])
        running = {CHAT: RunningTask()}
        sender = make_sender()
        bridge = MessageBridge(bridge_settings, sender, executor=executor, running_tasks=running)
        bridge.sessions.set_working_directory(CHAT, str(workspace))
        original = running[CHAT]

        await bridge.handle_message(message())

        assert sent_titles(sender) == ["⏳ Task In Progress"]
        assert running[CHAT] is original
        assert not original.cancellation.cancelled
        assert executor.calls == []


class TestTaskExecution:
    """Test the drive loop and termination."""

    @pytest.mark.asyncio
    async def test_successful_task(self, bridge_settings, workspace):
        """Test a task runs to one final complete render and releases the chat."""
        executor = FakeExecutor(
            [
                system_event("sess-new"),
                text_message("Working on it"),
                tool_use("Read", {"file_path": "/w/a.py"}, tool_id="t1"),
                tool_result("t1"),
                result_event(result="Done", session_id="sess-new"),
            ]
        )
        bridge, sender = make_bridge(bridge_settings, executor, workspace)

        await bridge.handle_message(message("fix the bug"))

        assert sent_titles(sender) == ["🔵 Thinking..."]
        titles = updated_titles(sender)
        assert titles.count("🟢 Complete") == 1
        assert titles[-1] == "🟢 Complete"
        assert "Done" in body(sender.update_card.call_args_list[-1].args[1])
        assert bridge.running_task_count == 0
        assert bridge.sessions.get_session(CHAT).session_id == "sess-new"
        assert executor.calls[0]["cwd"] == str(workspace)
        assert executor.calls[0]["prompt"].startswith("fix the bug")

    @pytest.mark.asyncio
    async def test_resumes_existing_session(self, bridge_settings, workspace):
        executor = FakeExecutor([result_event()])
        bridge, _ = make_bridge(bridge_settings, executor, workspace)
        bridge.sessions.set_session_id(CHAT, "sess-old")

        await bridge.handle_message(message())

        assert executor.calls[0]["session_id"] == "sess-old"

    @pytest.mark.asyncio
    async def test_identical_renders_are_skipped(self, bridge_settings, workspace):
        """Test events that do not change the card do not trigger updates."""
        executor = FakeExecutor([text_message("Hi"), system_event(), system_event(), result_event()])
        bridge, sender = make_bridge(bridge_settings, executor, workspace)

        await bridge.handle_message(message())

        assert updated_titles(sender) == ["🔵 Running...", "🟢 Complete"]

    @pytest.mark.asyncio
    async def test_staged_image_is_deleted(self, bridge_settings, workspace):
        """Test the downloaded image is referenced in the prompt and removed afterwards."""
        sender = make_sender()
        staged = []

        async def download(message_id, image_key, dest):
            dest.write_bytes(b"img")
            staged.append(dest)
            return True

        sender.download_image.side_effect = download
        executor = FakeExecutor([result_event()])
        bridge, _ = make_bridge(bridge_settings, executor, workspace, sender=sender)

        await bridge.handle_message(message("what is this", image_key="img_v2_abc"))

        assert f"[Image saved at: {staged[0]}]" in executor.calls[0]["prompt"]
        assert not staged[0].exists()

    @pytest.mark.asyncio
    async def test_failed_image_download_adds_note(self, bridge_settings, workspace):
        sender = make_sender()
        sender.download_image.return_value = False
        executor = FakeExecutor([result_event()])
        bridge, _ = make_bridge(bridge_settings, executor, workspace, sender=sender)

        await bridge.handle_message(message("look", image_key="img_v2_abc"))

        assert "(Note: Failed to download the image from Feishu)" in executor.calls[0]["prompt"]

    @pytest.mark.asyncio
    async def test_initial_card_failure_aborts(self, bridge_settings, workspace):
        """Test nothing runs when the initial card cannot be sent."""
        sender = make_sender()
        sender.send_card.return_value = None
        executor = FakeExecutor([result_event()])
        bridge, _ = make_bridge(bridge_settings, executor, workspace, sender=sender)

        await bridge.handle_message(message())

        assert executor.calls == []
        sender.update_card.assert_not_called()
        assert bridge.running_task_count == 0

    @pytest.mark.asyncio
    async def test_backend_error_becomes_error_card(self, bridge_settings, workspace):
        """Test a stream failure is rendered as an error and the chat is released."""
        executor = FakeExecutor([text_message("partial")], error=BackendError("CLI crashed"))
        bridge, sender = make_bridge(bridge_settings, executor, workspace)

        await bridge.handle_message(message())

        final = sender.update_card.call_args_list[-1].args[1]
        assert title(final) == "🔴 Error"
        assert "CLI crashed" in body(final)
        assert "partial" in body(final)
        assert bridge.running_task_count == 0

    @pytest.mark.asyncio
    async def test_stream_without_result_is_an_error(self, bridge_settings, workspace):
        executor = FakeExecutor([text_message("hmm")])
        bridge, sender = make_bridge(bridge_settings, executor, workspace)

        await bridge.handle_message(message())

        final = sender.update_card.call_args_list[-1].args[1]
        assert title(final) == "🔴 Error"
        assert "without a result" in body(final)

    @pytest.mark.asyncio
    async def test_stop_command_cancels_running_task(self, bridge_settings, workspace):
        """Test /stop cancels the task, confirms, and the task ends with an error card."""
        executor = FakeExecutor([text_message("working")], hang=True)
        bridge, sender = make_bridge(bridge_settings, executor, workspace)

        task = asyncio.create_task(bridge.handle_message(message()))
        await wait_until(lambda: executor.calls and bridge.is_running(CHAT))

        await bridge.handle_command(message("/stop"))
        await asyncio.wait_for(task, timeout=1.0)

        assert "🛑 Stopped" in sent_titles(sender)
        final = sender.update_card.call_args_list[-1].args[1]
        assert title(final) == "🔴 Error"
        assert "stopped by user" in body(final)
        assert bridge.running_task_count == 0

    @pytest.mark.asyncio
    async def test_timeout_cancels_task(self, bridge_settings, workspace):
        settings = bridge_settings.model_copy(update={"task_timeout_seconds": 0.05})
        executor = FakeExecutor(hang=True)
        bridge, sender = make_bridge(settings, executor, workspace)

        await asyncio.wait_for(bridge.handle_message(message()), timeout=2.0)

        final = sender.update_card.call_args_list[-1].args[1]
        assert title(final) == "🔴 Error"
        assert "timed out" in body(final)
        assert bridge.running_task_count == 0

    @pytest.mark.asyncio
    async def test_output_artifacts_delivered(self, bridge_settings, workspace, tmp_path):
        """Test written images and outputs-directory files are sent after the chat is released."""
        image = tmp_path / "pics" / "plot.png"
        dirs = []

        def produce(prompt, cwd):
            outputs_dir = outputs_dir_of(prompt)
            assert outputs_dir.parent == bridge_settings.outputs_root / CHAT
            dirs.append(outputs_dir)
            image.parent.mkdir()
            image.write_bytes(b"png-bytes")
            (outputs_dir / "report.pdf").write_bytes(b"%PDF")
            (outputs_dir / "chart.png").write_bytes(b"png")
            (outputs_dir / "empty.txt").write_bytes(b"")

        executor = FakeExecutor(
            [
                tool_use("Write", {"file_path": str(image), "content": "..."}, tool_id="t1"),
                tool_result("t1"),
                result_event(result=f"Plot saved to {image}"),
            ],
            on_start=produce,
        )
        sender = make_sender()
        busy_during_upload = []

        async def upload(chat_id, *args):
            busy_during_upload.append(bridge.is_running(chat_id))
            return True

        sender.send_image_file.side_effect = upload
        sender.send_local_file.side_effect = upload
        bridge, _ = make_bridge(bridge_settings, executor, workspace, sender=sender)

        await bridge.handle_message(message())

        outputs_dir = dirs[0]
        sent_images = [c.args[1] for c in sender.send_image_file.call_args_list]
        assert sent_images == [str(image), str(outputs_dir / "chart.png")]
        sender.send_local_file.assert_called_once_with(CHAT, str(outputs_dir / "report.pdf"), "pdf")
        assert busy_during_upload == [False, False, False]
        assert not outputs_dir.exists()

    @pytest.mark.asyncio
    async def test_stopped_task_delivers_only_its_own_outputs(self, bridge_settings, workspace):
        """Test a task stopped mid-run and the next task in the chat keep separate outputs."""
        release_b = asyncio.Event()
        b_written = asyncio.Event()
        dirs = {}

        class TwoTaskExecutor:
            calls = 0

            async def execute(self, prompt, cwd, session_id, cancellation):
                outputs_dir = outputs_dir_of(prompt)
                if self.calls == 0:
                    self.calls += 1
                    dirs["a"] = outputs_dir
                    (outputs_dir / "a_report.pdf").write_bytes(b"a")
                    yield text_message("task a")
                    await cancellation.wait()
                else:
                    self.calls += 1
                    dirs["b"] = outputs_dir
                    (outputs_dir / "b_report.pdf").write_bytes(b"b")
                    b_written.set()
                    await release_b.wait()
                    yield result_event(result="b done")

        sender = make_sender()
        gate = asyncio.Event()
        a_at_final_card = asyncio.Event()

        async def update_card(message_id, content):
            # Hold the stopped task at its final render
            if title(content) == "🔴 Error":
                a_at_final_card.set()
                await gate.wait()
            return True

        sender.update_card.side_effect = update_card
        bridge, _ = make_bridge(bridge_settings, TwoTaskExecutor(), workspace, sender=sender)

        task_a = asyncio.create_task(bridge.handle_message(message("first")))
        await wait_until(lambda: "a" in dirs)
        await bridge.handle_command(message("/stop"))
        await asyncio.wait_for(a_at_final_card.wait(), timeout=1.0)

        task_b = asyncio.create_task(bridge.handle_message(message("second")))
        await asyncio.wait_for(b_written.wait(), timeout=1.0)

        gate.set()
        await asyncio.wait_for(task_a, timeout=1.0)

        sent = [os.path.basename(c.args[1]) for c in sender.send_local_file.call_args_list]
        assert sent == ["a_report.pdf"]
        assert not dirs["a"].exists()
        assert (dirs["b"] / "b_report.pdf").exists()

        release_b.set()
        await asyncio.wait_for(task_b, timeout=1.0)

        sent = [os.path.basename(c.args[1]) for c in sender.send_local_file.call_args_list]
        assert sent == ["a_report.pdf", "b_report.pdf"]
        assert not dirs["b"].exists()


class TestCommands:
    """Test slash commands."""

    @pytest.mark.asyncio
    async def test_help(self, bridge_settings):
        bridge, sender = make_bridge(bridge_settings, FakeExecutor())

        await bridge.handle_message(message("/help"))

        assert sent_titles(sender) == ["📖 Help"]

    @pytest.mark.asyncio
    async def test_cd_sets_directory(self, bridge_settings, workspace):
        bridge, sender = make_bridge(bridge_settings, FakeExecutor())

        await bridge.handle_message(message(f"/CD {workspace}"))

        assert sent_titles(sender) == ["✅ Working Directory Set"]
        assert bridge.sessions.get_session(CHAT).working_directory == str(workspace.resolve())

    @pytest.mark.asyncio
    async def test_cd_missing_directory(self, bridge_settings, tmp_path):
        bridge, sender = make_bridge(bridge_settings, FakeExecutor())

        await bridge.handle_message(message(f"/cd {tmp_path / 'nope'}"))

        assert sent_titles(sender) == ["❌ Error"]
        assert "Directory not found" in body(sender.send_card.call_args.args[1])
        assert not bridge.sessions.has_working_directory(CHAT)

    @pytest.mark.asyncio
    async def test_cd_without_argument(self, bridge_settings):
        bridge, sender = make_bridge(bridge_settings, FakeExecutor())

        await bridge.handle_message(message("/cd"))

        assert sent_titles(sender) == ["⚠️ Usage"]

    @pytest.mark.asyncio
    async def test_reset(self, bridge_settings, workspace):
        bridge, sender = make_bridge(bridge_settings, FakeExecutor(), workspace)
        bridge.sessions.set_session_id(CHAT, "sess-1")

        await bridge.handle_message(message("/reset"))

        assert sent_titles(sender) == ["✅ Session Reset"]
        assert bridge.sessions.get_session(CHAT).session_id is None
        assert bridge.sessions.has_working_directory(CHAT)

    @pytest.mark.asyncio
    async def test_stop_without_task(self, bridge_settings):
        bridge, sender = make_bridge(bridge_settings, FakeExecutor())

        await bridge.handle_message(message("/stop"))

        assert sent_titles(sender) == ["ℹ️ No Running Task"]

    @pytest.mark.asyncio
    async def test_status(self, bridge_settings, workspace):
        bridge, sender = make_bridge(bridge_settings, FakeExecutor(), workspace)
        bridge.sessions.set_session_id(CHAT, "abcdef123456")

        await bridge.handle_message(message("/status"))

        content = body(sender.send_card.call_args.args[1])
        assert str(workspace) in content
        assert "`abcdef12...`" in content
        assert "**Running:** No" in content

    @pytest.mark.asyncio
    async def test_unknown_command(self, bridge_settings):
        bridge, sender = make_bridge(bridge_settings, FakeExecutor())

        await bridge.handle_message(message("/frobnicate now"))

        assert sent_titles(sender) == ["❓ Unknown Command"]
        assert "/frobnicate" in body(sender.send_card.call_args.args[1])


class TestResolveDirectory:
    """Test /cd path validation."""

    def test_expands_home(self, monkeypatch, tmp_path):
        monkeypatch.setenv("HOME", str(tmp_path))

        assert resolve_directory("~") == str(tmp_path.resolve())

    def test_rejects_file(self, tmp_path):
        target = tmp_path / "file.txt"
        target.write_text("x")

        with pytest.raises(CommandValidationError) as exc_info:
            resolve_directory(str(target))

        assert "Not a directory" in exc_info.value.message


class TestShutdown:
    """Test process shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_cancels_tasks_and_is_idempotent(self, bridge_settings, workspace):
        executor = FakeExecutor(hang=True)
        bridge, sender = make_bridge(bridge_settings, executor, workspace)
        bridge.start()
        task = asyncio.create_task(bridge.handle_message(message()))
        await wait_until(lambda: executor.calls)

        bridge.shutdown()
        bridge.shutdown()
        await asyncio.wait_for(task, timeout=1.0)

        assert bridge.running_task_count == 0
        final = sender.update_card.call_args_list[-1].args[1]
        assert "shutting down" in body(final)
