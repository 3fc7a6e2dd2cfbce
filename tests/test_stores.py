"""Tests for the SQLite session and tool-output stores."""

import pytest

from stepwise.models import (
    AgentSession,
    ExecutingPhase,
    Plan,
    PlanStep,
    StepResult,
    StepStatus,
    ToolCallAction,
    ToolExecutionRecord,
    ToolOutputRecord,
)
from stepwise.storage.sessions import SessionStore


@pytest.fixture
async def sessions(tmp_path):
    store = SessionStore(tmp_path / "sessions.db")
    await store.start()
    yield store
    await store.stop()


def output(id: str, created_at: int, tool: str = "fs.read", conv: str = "c1", success: bool = True,
           payload=None) -> ToolOutputRecord:
    return ToolOutputRecord(
        id=id,
        tool_name=tool,
        message_id="m1",
        conversation_id=conv,
        output=payload if payload is not None else {"id": id},
        parameters={"path": id},
        success=success,
        created_at=created_at,
    )


class TestSessionStore:
    async def test_session_lifecycle(self, sessions):
        session = AgentSession(conversation_id="c1", message_id="m1")
        await sessions.save_session(session)
        await sessions.update_phase(session.id, ExecutingPhase(step_id="s1", tool_iteration=2))

        stored = await sessions.get_session(session.id)
        assert stored["conversation_id"] == "c1"
        assert stored["phase"] == {"kind": "executing", "step_id": "s1", "tool_iteration": 2}
        assert stored["config"]["max_tool_calls_per_step"] == 8
        assert stored["completed_at"] is None

        await sessions.mark_completed(session.id, "done")
        stored = await sessions.get_session(session.id)
        assert stored["final_response"] == "done"
        assert stored["phase"]["kind"] == "complete"

    async def test_missing_session(self, sessions):
        assert await sessions.get_session("nope") is None
        assert await sessions.get_plan("nope") is None

    async def test_plan_steps_and_results(self, sessions):
        plan = Plan(goal="do it")
        step = PlanStep(id="s1", sequence=0, description="Call the selected tool",
                        action=ToolCallAction(tool="fs.read", args={"path": "a"}))
        await sessions.save_plan("sess", plan)
        await sessions.save_plan_steps(plan.id, [step])
        await sessions.update_step_status("s1", StepStatus.FAILED)
        await sessions.save_step_result(
            "sess", StepResult(step_id="s1", success=False, error="boom", duration_ms=4)
        )

        stored = await sessions.get_plan("sess")
        assert stored["goal"] == "do it"
        [entry] = stored["steps"]
        assert entry["status"] == "failed"
        assert entry["action"] == {"type": "tool", "tool": "fs.read", "args": {"path": "a"},
                                   "output_mode": "auto"}
        assert entry["result"] == {"success": False, "output": None, "error": "boom", "duration_ms": 4}

    async def test_tool_executions(self, sessions):
        record = ToolExecutionRecord(
            execution_id="e1", tool_name="fs.read", args={"path": "a"}, result={"ok": True},
            success=True, error=None, duration_ms=2, iteration=1, timestamp_ms=10,
        )
        await sessions.save_tool_executions("m1", [record])
        [row] = await sessions.list_tool_executions("m1")
        assert row["id"] == "e1"
        assert row["parameters"] == {"path": "a"}
        assert row["result"] == {"ok": True}
        assert await sessions.list_tool_executions("other") == []

    async def test_approval_overrides(self, sessions):
        assert await sessions.get_tool_approval_override("fs.write") is None
        await sessions.set_tool_approval_override("fs.write", True)
        await sessions.set_conversation_tool_approval_override("c1", "fs.write", False)
        assert await sessions.get_tool_approval_override("fs.write") is True
        assert await sessions.get_conversation_tool_approval_override("c1", "fs.write") is False
        assert await sessions.get_conversation_tool_approval_override("c2", "fs.write") is None
        assert await sessions.load_tool_approval_overrides() == {"fs.write": True}
        assert await sessions.load_conversation_tool_approval_overrides("c1") == {"fs.write": False}

        await sessions.set_tool_approval_override("fs.write", None)
        await sessions.set_conversation_tool_approval_override("c1", "fs.write", None)
        assert await sessions.load_tool_approval_overrides() == {}
        assert await sessions.load_conversation_tool_approval_overrides("c1") == {}


class TestToolOutputStore:
    async def test_store_and_read(self, output_store):
        ref = await output_store.store(output("o1", 100))
        assert ref.to_dict() == {"id": "o1", "storage": "sqlite"}
        assert await output_store.exists("o1")
        assert not await output_store.exists("o2")
        record = await output_store.read("o1")
        assert record.output == {"id": "o1"}
        assert record.parameters == {"path": "o1"}
        assert record.created_at == 100
        assert await output_store.read("o2") is None

    async def test_list_filters_and_pages(self, output_store):
        await output_store.store(output("a", 100))
        await output_store.store(output("b", 200, tool="web.get"))
        await output_store.store(output("c", 300, success=False))
        await output_store.store(output("d", 400, conv="c2"))

        records, total = await output_store.list(conversation_id="c1")
        assert total == 3
        assert [r.id for r in records] == ["c", "b", "a"]

        records, total = await output_store.list(conversation_id="c1", limit=1, offset=1)
        assert total == 3
        assert [r.id for r in records] == ["b"]

        records, _ = await output_store.list(tool_name="web.get")
        assert [r.id for r in records] == ["b"]

        records, _ = await output_store.list(success=False)
        assert [r.id for r in records] == ["c"]

        records, _ = await output_store.list(after=150, before=350, descending=False)
        assert [r.id for r in records] == ["b", "c"]

    async def test_sort_by_size(self, output_store):
        await output_store.store(output("small", 1, payload=[1]))
        await output_store.store(output("large", 2, payload=list(range(100))))
        records, _ = await output_store.list(sort_by="size")
        assert [r.id for r in records] == ["large", "small"]
