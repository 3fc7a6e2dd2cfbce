"""Persisted tool outputs (artifacts) with SQLite backend."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite

from stepwise.models import OutputRef, ToolOutputRecord
from stepwise.utils.logging import get_logger
from stepwise.utils.text import to_json

log = get_logger(__name__)

STORAGE_NAME = "sqlite"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tool_outputs (
    id TEXT PRIMARY KEY,
    tool_name TEXT NOT NULL,
    conversation_id TEXT,
    message_id TEXT NOT NULL,
    created_at INTEGER NOT NULL,
    success INTEGER NOT NULL,
    parameters_json TEXT NOT NULL,
    output_json TEXT NOT NULL,
    size_chars INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_tool_outputs_conversation
    ON tool_outputs (conversation_id, created_at);
"""

_COLUMNS = (
    "id, tool_name, conversation_id, message_id, created_at, success, "
    "parameters_json, output_json, size_chars"
)

_SORT_COLUMNS = {"created_at": "created_at", "size": "size_chars", "tool_name": "tool_name"}


def _row_to_record(row: Any) -> ToolOutputRecord:
    return ToolOutputRecord(
        id=row[0],
        tool_name=row[1],
        conversation_id=row[2],
        message_id=row[3],
        created_at=row[4],
        success=bool(row[5]),
        parameters=json.loads(row[6]),
        output=json.loads(row[7]),
    )


class ToolOutputStore:
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

    async def store(self, record: ToolOutputRecord) -> OutputRef:
        """Insert or replace ``record``. The execution id doubles as the output id."""
        assert self._db is not None
        output_json = to_json(record.output)
        await self._db.execute(
            f"INSERT OR REPLACE INTO tool_outputs ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.tool_name,
                record.conversation_id,
                record.message_id,
                record.created_at,
                int(record.success),
                to_json(record.parameters),
                output_json,
                len(output_json),
            ),
        )
        await self._db.commit()
        log.debug("tool_output_stored", id=record.id, tool=record.tool_name, size=len(output_json))
        return OutputRef(id=record.id, storage=STORAGE_NAME)

    async def exists(self, output_id: str) -> bool:
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT 1 FROM tool_outputs WHERE id = ?", (output_id,),
        )
        return await cursor.fetchone() is not None

    async def read(self, output_id: str) -> ToolOutputRecord | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM tool_outputs WHERE id = ?", (output_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return _row_to_record(row)

    async def list(
        self,
        conversation_id: str | None = None,
        tool_name: str | None = None,
        success: bool | None = None,
        after: int | None = None,
        before: int | None = None,
        limit: int = 20,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> tuple[list[ToolOutputRecord], int]:
        """Return one page of matching records and the total match count."""
        assert self._db is not None
        clauses: list[str] = []
        params: list[Any] = []
        if conversation_id is not None:
            clauses.append("conversation_id = ?")
            params.append(conversation_id)
        if tool_name is not None:
            clauses.append("tool_name = ?")
            params.append(tool_name)
        if success is not None:
            clauses.append("success = ?")
            params.append(int(success))
        if after is not None:
            clauses.append("created_at > ?")
            params.append(after)
        if before is not None:
            clauses.append("created_at < ?")
            params.append(before)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""

        cursor = await self._db.execute(f"SELECT COUNT(*) FROM tool_outputs{where}", params)
        total = (await cursor.fetchone())[0]

        order = _SORT_COLUMNS.get(sort_by, "created_at")
        direction = "DESC" if descending else "ASC"
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM tool_outputs{where} "
            f"ORDER BY {order} {direction}, id {direction} LIMIT ? OFFSET ?",
            [*params, limit, offset],
        )
        rows = await cursor.fetchall()
        return [_row_to_record(row) for row in rows], total
