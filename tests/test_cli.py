"""Tests for the inspection CLI."""

import asyncio
import json

import pytest
from click.testing import CliRunner

from stepwise.main import cli
from stepwise.models import AgentSession, Plan, ToolOutputRecord
from stepwise.storage.outputs import ToolOutputStore
from stepwise.storage.sessions import SessionStore


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("STEPWISE_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("STEPWISE_CONFIG_DIR", str(tmp_path / "config"))
    monkeypatch.delenv("STEPWISE_CONFIG", raising=False)
    return tmp_path / "data"


async def seed(data_dir) -> str:
    sessions = SessionStore(data_dir / "sessions.db")
    outputs = ToolOutputStore(data_dir / "tool_outputs.db")
    await sessions.start()
    await outputs.start()
    try:
        session = AgentSession(conversation_id="conv-1", message_id="msg-1")
        await sessions.save_session(session)
        await sessions.save_plan(session.id, Plan(goal="find files"))
        await sessions.mark_completed(session.id, "found 3 files")
        await outputs.store(ToolOutputRecord(
            id="out-1", tool_name="fs.list", message_id="assistant-1",
            conversation_id="conv-1", output={"files": ["a", "b", "c"]},
        ))
        return session.id
    finally:
        await sessions.stop()
        await outputs.stop()


class TestCli:
    def test_session(self, data_dir):
        session_id = asyncio.run(seed(data_dir))
        result = CliRunner().invoke(cli, ["sessions", session_id])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["final_response"] == "found 3 files"
        assert data["plan"]["goal"] == "find files"

    def test_missing_session(self, data_dir):
        result = CliRunner().invoke(cli, ["sessions", "nope"])
        assert result.exit_code == 1
        assert "Session not found: nope" in result.output

    def test_outputs(self, data_dir):
        asyncio.run(seed(data_dir))
        result = CliRunner().invoke(cli, ["outputs", "--conversation", "conv-1"])
        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["total"] == 1
        assert data["outputs"][0]["id"] == "out-1"

    def test_output(self, data_dir):
        asyncio.run(seed(data_dir))
        result = CliRunner().invoke(cli, ["output", "out-1"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.stdout)["output"] == {"files": ["a", "b", "c"]}

        missing = CliRunner().invoke(cli, ["output", "nope"])
        assert missing.exit_code == 1
        assert "Tool output not found: nope" in missing.output
