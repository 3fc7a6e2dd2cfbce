"""stepwise entry point: inspect stored agent sessions and tool outputs."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click

from stepwise.config import Settings, load_settings
from stepwise.storage.outputs import ToolOutputStore
from stepwise.storage.sessions import SessionStore
from stepwise.utils.logging import get_logger, setup_logging

log = get_logger(__name__)


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, ensure_ascii=False, default=str))


async def show_session(settings: Settings, session_id: str) -> dict[str, Any] | None:
    store = SessionStore(settings.sessions_db_path())
    await store.start()
    try:
        session = await store.get_session(session_id)
        if session is None:
            return None
        session["plan"] = await store.get_plan(session_id)
        return session
    finally:
        await store.stop()


async def list_outputs(
    settings: Settings, conversation_id: str | None, limit: int
) -> dict[str, Any]:
    store = ToolOutputStore(settings.outputs_db_path())
    await store.start()
    try:
        records, total = await store.list(conversation_id=conversation_id, limit=limit)
    finally:
        await store.stop()
    return {
        "total": total,
        "outputs": [
            {
                "id": r.id,
                "tool_name": r.tool_name,
                "conversation_id": r.conversation_id,
                "message_id": r.message_id,
                "created_at": r.created_at,
                "success": r.success,
            }
            for r in records
        ],
    }


async def show_output(settings: Settings, output_id: str) -> dict[str, Any] | None:
    store = ToolOutputStore(settings.outputs_db_path())
    await store.start()
    try:
        record = await store.read(output_id)
    finally:
        await store.stop()
    if record is None:
        return None
    return {
        "id": record.id,
        "tool_name": record.tool_name,
        "conversation_id": record.conversation_id,
        "message_id": record.message_id,
        "created_at": record.created_at,
        "success": record.success,
        "parameters": record.parameters,
        "output": record.output,
    }


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML file")
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None, log_level: str | None) -> None:
    """Inspect stepwise agent sessions and persisted tool outputs."""
    settings = load_settings(config_path)
    if log_level:
        settings.log_level = log_level
    setup_logging(level=settings.log_level, json_output=settings.log_json)
    log.debug("settings_loaded", data_dir=str(settings.get_data_dir()))
    ctx.obj = settings


@cli.command()
@click.argument("session_id")
@click.pass_obj
def sessions(settings: Settings, session_id: str) -> None:
    """Show a stored session with its plan and step results."""
    data = asyncio.run(show_session(settings, session_id))
    if data is None:
        raise click.ClickException(f"Session not found: {session_id}")
    _echo_json(data)


@cli.command()
@click.option("--conversation", "conversation_id", default=None, help="Filter by conversation ID")
@click.option("--limit", default=20, show_default=True, type=click.IntRange(1, 100))
@click.pass_obj
def outputs(settings: Settings, conversation_id: str | None, limit: int) -> None:
    """List persisted tool outputs, newest first."""
    _echo_json(asyncio.run(list_outputs(settings, conversation_id, limit)))


@cli.command()
@click.argument("output_id")
@click.pass_obj
def output(settings: Settings, output_id: str) -> None:
    """Show one persisted tool output."""
    data = asyncio.run(show_output(settings, output_id))
    if data is None:
        raise click.ClickException(f"Tool output not found: {output_id}")
    _echo_json(data)


if __name__ == "__main__":
    cli()
