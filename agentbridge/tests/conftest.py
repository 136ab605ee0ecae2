"""Shared fixtures for the agentbridge test suite."""

import pytest

from agentbridge.core.settings import BridgeSettings, ClaudeSettings, FeishuSettings


@pytest.fixture
def bridge_settings(tmp_path):
    """Settings with short intervals and temp directories."""
    return BridgeSettings(
        feishu=FeishuSettings(app_id="cli_test", app_secret="secret", verification_token="verify-me"),
        claude=ClaudeSettings(default_working_directory=None),
        authorized_user_ids=[],
        authorized_chat_ids=[],
        task_timeout_seconds=5.0,
        update_interval_seconds=0.01,
        outputs_root=tmp_path / "outputs",
        scratch_dir=tmp_path / "inputs",
    )
