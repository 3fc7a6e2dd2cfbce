"""Agent session, plan and step persistence with SQLite backend."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable

import aiosqlite

from stepwise.models import (
    AgentSession,
    Phase,
    Plan,
    PlanStep,
    StepResult,
    StepStatus,
    ToolExecutionRecord,
    utcnow,
)
from stepwise.utils.logging import get_logger
from stepwise.utils.text import to_json

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS agent_sessions (
    id TEXT PRIMARY KEY,
    conversation_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    phase_json TEXT NOT NULL,
    config_json TEXT NOT NULL,
    final_response TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE TABLE IF NOT EXISTS agent_plans (
    id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    goal TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS plan_steps (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    description TEXT NOT NULL,
    expected_outcome TEXT NOT NULL,
    action_json TEXT NOT NULL,
    status TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS step_results (
    step_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    success INTEGER NOT NULL,
    output_json TEXT,
    error TEXT,
    duration_ms INTEGER NOT NULL,
    completed_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS tool_executions (
    id TEXT PRIMARY KEY,
    message_id TEXT NOT NULL,
    tool_name TEXT NOT NULL,
    parameters_json TEXT NOT NULL,
    result_json TEXT,
    success INTEGER NOT NULL,
    error TEXT,
    duration_ms INTEGER NOT NULL,
    iteration INTEGER NOT NULL,
    timestamp_ms INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS tool_approval_overrides (
    tool_name TEXT PRIMARY KEY,
    requires_approval INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS conversation_tool_approval_overrides (
    conversation_id TEXT NOT NULL,
    tool_name TEXT NOT NULL,
    requires_approval INTEGER NOT NULL,
    PRIMARY KEY (conversation_id, tool_name)
);
"""


def _loads(raw: str | None) -> Any:
    return json.loads(raw) if raw is not None else None


class SessionStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # -- sessions ------------------------------------------------------------

    async def save_session(self, session: AgentSession) -> None:
        assert self._db is not None
        await self._db.execute(
            "INSERT OR REPLACE INTO agent_sessions "
            "(id, conversation_id, message_id, phase_json, config_json, "
            "created_at, updated_at, completed_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                session.id,
                session.conversation_id,
                session.message_id,
                to_json(session.phase.to_dict()),
                to_json(session.config.model_dump()),
                session.created_at.isoformat(),
                session.updated_at.isoformat(),
                session.completed_at.isoformat() if session.completed_at else None,
            ),
        )
        await self._db.commit()

    async def update_phase(self, session_id: str, phase: Phase) -> None:
        assert self._db is not None
        await self._db.execute(
            "UPDATE agent_sessions SET phase_json = ?, updated_at = ? WHERE id = ?",
            (to_json(phase.to_dict()), utcnow().isoformat(), session_id),
        )
        await self._db.commit()

    async def mark_completed(self, session_id: str, response: str) -> None:
        assert self._db is not None
        now = utcnow().isoformat()
        await self._db.execute(
            "UPDATE agent_sessions SET phase_json = ?, final_response = ?, "
            "updated_at = ?, completed_at = ? WHERE id = ?",
            (
                to_json({"kind": "complete", "final_response": response}),
                response,
                now,
                now,
                session_id,
            ),
        )
        await self._db.commit()

    async def get_session(self, session_id: str) -> dict[str, Any] | None:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT id, conversation_id, message_id, phase_json, config_json, "
            "final_response, created_at, updated_at, completed_at "
            "FROM agent_sessions WHERE id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return {
            "id": row[0],
            "conversation_id": row[1],
            "message_id": row[2],
            "phase": json.loads(row[3]),
            "config": json.loads(row[4]),
            "final_response": row[5],
            "created_at": row[6],
            "updated_at": row[7],
            "completed_at": row[8],
        }

    # -- plans and steps -----------------------------------------------------

    async def save_plan(self, session_id: str, plan: Plan) -> None:
        assert self._db is not None
        await self._db.execute(
            "INSERT OR REPLACE INTO agent_plans (id, session_id, goal, created_at) "
            "VALUES (?, ?, ?, ?)",
            (plan.id, session_id, plan.goal, plan.created_at.isoformat()),
        )
        await self._db.commit()

    async def save_plan_steps(self, plan_id: str, steps: Iterable[PlanStep]) -> None:
        assert self._db is not None
        now = utcnow().isoformat()
        await self._db.executemany(
            "INSERT OR REPLACE INTO plan_steps "
            "(id, plan_id, sequence, description, expected_outcome, action_json, status, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    step.id,
                    plan_id,
                    step.sequence,
                    step.description,
                    step.expected_outcome,
                    to_json(step.action.to_dict()),
                    step.status.value,
                    now,
                )
                for step in steps
            ],
        )
        await self._db.commit()

    async def update_step_status(self, step_id: str, status: StepStatus) -> None:
        assert self._db is not None
        await self._db.execute(
            "UPDATE plan_steps SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, utcnow().isoformat(), step_id),
        )
        await self._db.commit()

    async def save_step_result(self, session_id: str, result: StepResult) -> None:
        assert self._db is not None
        await self._db.execute(
            "INSERT OR REPLACE INTO step_results "
            "(step_id, session_id, success, output_json, error, duration_ms, completed_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                result.step_id,
                session_id,
                int(result.success),
                to_json(result.output) if result.output is not None else None,
                result.error,
                result.duration_ms,
                result.completed_at.isoformat(),
            ),
        )
        await self._db.commit()

    async def get_plan(self, session_id: str) -> dict[str, Any] | None:
        """Plan with its steps (and each step's result when recorded)."""
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT id, goal, created_at FROM agent_plans WHERE session_id = ?",
            (session_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        plan = {"id": row[0], "goal": row[1], "created_at": row[2], "steps": []}

        cursor = await self._db.execute(
            "SELECT s.id, s.sequence, s.description, s.expected_outcome, s.action_json, "
            "s.status, r.success, r.output_json, r.error, r.duration_ms "
            "FROM plan_steps s LEFT JOIN step_results r ON r.step_id = s.id "
            "WHERE s.plan_id = ? ORDER BY s.sequence",
            (plan["id"],),
        )
        for step in await cursor.fetchall():
            result = None
            if step[6] is not None:
                result = {
                    "success": bool(step[6]),
                    "output": _loads(step[7]),
                    "error": step[8],
                    "duration_ms": step[9],
                }
            plan["steps"].append({
                "id": step[0],
                "sequence": step[1],
                "description": step[2],
                "expected_outcome": step[3],
                "action": json.loads(step[4]),
                "status": step[5],
                "result": result,
            })
        return plan

    # -- tool executions -----------------------------------------------------

    async def save_tool_executions(
        self, message_id: str, records: Iterable[ToolExecutionRecord]
    ) -> None:
        assert self._db is not None
        await self._db.executemany(
            "INSERT OR REPLACE INTO tool_executions "
            "(id, message_id, tool_name, parameters_json, result_json, success, error, "
            "duration_ms, iteration, timestamp_ms) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (
                    record.execution_id,
                    message_id,
                    record.tool_name,
                    to_json(record.args),
                    to_json(record.result) if record.result is not None else None,
                    int(record.success),
                    record.error,
                    record.duration_ms,
                    record.iteration,
                    record.timestamp_ms,
                )
                for record in records
            ],
        )
        await self._db.commit()

    async def list_tool_executions(self, message_id: str) -> list[dict[str, Any]]:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT id, tool_name, parameters_json, result_json, success, error, "
            "duration_ms, iteration, timestamp_ms FROM tool_executions "
            "WHERE message_id = ? ORDER BY timestamp_ms, iteration",
            (message_id,),
        )
        rows = await cursor.fetchall()
        return [
            {
                "id": row[0],
                "tool_name": row[1],
                "parameters": json.loads(row[2]),
                "result": _loads(row[3]),
                "success": bool(row[4]),
                "error": row[5],
                "duration_ms": row[6],
                "iteration": row[7],
                "timestamp_ms": row[8],
            }
            for row in rows
        ]

    # -- approval overrides --------------------------------------------------

    async def set_tool_approval_override(self, tool_name: str, requires_approval: bool | None) -> None:
        """Set the global override for ``tool_name``; None clears it."""
        assert self._db is not None
        if requires_approval is None:
            await self._db.execute(
                "DELETE FROM tool_approval_overrides WHERE tool_name = ?", (tool_name,),
            )
        else:
            await self._db.execute(
                "INSERT OR REPLACE INTO tool_approval_overrides (tool_name, requires_approval) "
                "VALUES (?, ?)",
                (tool_name, int(requires_approval)),
            )
        await self._db.commit()

    async def set_conversation_tool_approval_override(
        self, conversation_id: str, tool_name: str, requires_approval: bool | None
    ) -> None:
        assert self._db is not None
        if requires_approval is None:
            await self._db.execute(
                "DELETE FROM conversation_tool_approval_overrides "
                "WHERE conversation_id = ? AND tool_name = ?",
                (conversation_id, tool_name),
            )
        else:
            await self._db.execute(
                "INSERT OR REPLACE INTO conversation_tool_approval_overrides "
                "(conversation_id, tool_name, requires_approval) VALUES (?, ?, ?)",
                (conversation_id, tool_name, int(requires_approval)),
            )
        await self._db.commit()

    async def get_tool_approval_override(self, tool_name: str) -> bool | None:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT requires_approval FROM tool_approval_overrides WHERE tool_name = ?",
            (tool_name,),
        )
        row = await cursor.fetchone()
        return None if row is None else bool(row[0])

    async def get_conversation_tool_approval_override(
        self, conversation_id: str, tool_name: str
    ) -> bool | None:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT requires_approval FROM conversation_tool_approval_overrides "
            "WHERE conversation_id = ? AND tool_name = ?",
            (conversation_id, tool_name),
        )
        row = await cursor.fetchone()
        return None if row is None else bool(row[0])

    async def load_tool_approval_overrides(self) -> dict[str, bool]:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT tool_name, requires_approval FROM tool_approval_overrides"
        )
        return {row[0]: bool(row[1]) for row in await cursor.fetchall()}

    async def load_conversation_tool_approval_overrides(self, conversation_id: str) -> dict[str, bool]:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT tool_name, requires_approval FROM conversation_tool_approval_overrides "
            "WHERE conversation_id = ?",
            (conversation_id,),
        )
        return {row[0]: bool(row[1]) for row in await cursor.fetchall()}
