"""burrow CLI entry point."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Coroutine, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from burrow.config import BurrowConfig, load_config
from burrow.directory import AgentDirectory, AgentSubdirectory, validate_file_name
from burrow.errors import BurrowError
from burrow.logging_setup import setup_logging
from burrow.message_queue import MessageQueue
from burrow.migrate import DirectoryMigrator, render_report
from burrow.models import AgentMessage, MessagePriority

APP_HELP = "File-based mailboxes and priority queues for cooperating agents"

app = typer.Typer(add_completion=False, help=APP_HELP)
console = Console()

T = TypeVar("T")


@dataclass
class _State:
    config: BurrowConfig


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(Path("burrow.toml"), "--config", help="config file (TOML)"),
    root: Path | None = typer.Option(None, "--root", help="agents root (overrides config)"),
    log_level: str | None = typer.Option(None, "--log-level", help="DEBUG / INFO / WARNING"),
    log_console: bool = typer.Option(False, "--log-console", help="also log to stderr"),
) -> None:
    cfg = load_config(config)
    if root is not None:
        cfg.agents_root = root
    if log_level:
        cfg.log_level = log_level
    setup_logging(root=cfg.agents_root, level=cfg.log_level, console=log_console)
    ctx.obj = _State(config=cfg)


def _cfg(ctx: typer.Context) -> BurrowConfig:
    return ctx.obj.config


def _fail(e: BurrowError) -> typer.Exit:
    console.print(f"❌ {e}", style="red")
    return typer.Exit(code=1)


def _directory(ctx: typer.Context, agent: str) -> AgentDirectory:
    try:
        validate_file_name(agent)
    except BurrowError as e:
        raise _fail(e) from e
    return AgentDirectory(agent, _cfg(ctx).agents_root / agent)


def _queue(ctx: typer.Context, agent: str) -> MessageQueue:
    try:
        return _cfg(ctx).registry(enable_watchers=False).get_queue(agent)
    except BurrowError as e:
        raise _fail(e) from e


def _run(coro: Coroutine[Any, Any, T]) -> T:
    try:
        return asyncio.run(coro)
    except BurrowError as e:
        raise _fail(e) from e


def _print_messages(messages: list[AgentMessage], title: str) -> None:
    if not messages:
        console.print("(empty)", style="dim")
        return
    table = Table(title=title)
    for col in ["id", "created", "priority", "status", "type", "from"]:
        table.add_column(col)
    for m in messages:
        table.add_row(
            m.id,
            m.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            m.priority.name.lower(),
            m.status.value,
            m.message_type,
            m.from_agent or "-",
        )
    console.print(table)


def _parse_payload(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


@app.command()
def init(ctx: typer.Context, agent: str = typer.Argument(..., help="agent name")) -> None:
    """Create the mailbox areas for an agent."""
    directory = _run(AgentDirectory.create(_cfg(ctx).agents_root, agent))
    console.print(f"✅ mailbox ready: {directory.root}", style="green")


@app.command()
def send(
    ctx: typer.Context,
    to_agent: str = typer.Argument(..., help="recipient agent"),
    message_type: str = typer.Argument(..., help="message type / action"),
    payload: str = typer.Option("", "--payload", help="JSON payload (plain text is sent as a string)"),
    from_agent: str | None = typer.Option(None, "--from", help="sender agent"),
    priority: str = typer.Option("normal", "--priority", help="low / normal / high / critical"),
    ttl: float | None = typer.Option(None, "--ttl", help="time to live in seconds"),
) -> None:
    """Put a message into an agent's inbox."""
    try:
        prio = MessagePriority[priority.upper()]
    except KeyError:
        console.print(f"❌ unknown priority: {priority}", style="red")
        raise typer.Exit(code=1) from None

    message = AgentMessage(
        to_agent=to_agent,
        message_type=message_type,
        payload=_parse_payload(payload),
        from_agent=from_agent,
        priority=prio,
        reply_to=from_agent,
        time_to_live=timedelta(seconds=ttl) if ttl is not None else None,
    )
    msg_id = _run(_queue(ctx, to_agent).enqueue(message))
    console.print(f"sent: {msg_id} -> {to_agent}", style="green")


@app.command()
def pending(ctx: typer.Context, agent: str = typer.Argument(..., help="agent name")) -> None:
    """List pending inbox messages in dequeue order."""
    _print_messages(_run(_queue(ctx, agent).list_pending()), f"{agent}: pending")


@app.command()
def peek(ctx: typer.Context, agent: str = typer.Argument(..., help="agent name")) -> None:
    """Show the next message without claiming it."""
    msg = _run(_queue(ctx, agent).peek())
    if msg is None:
        console.print("(empty)", style="dim")
        return
    console.print_json(msg.to_json())


@app.command()
def take(ctx: typer.Context, agent: str = typer.Argument(..., help="agent name")) -> None:
    """Claim the next message (pending -> processing)."""
    msg = _run(_queue(ctx, agent).dequeue())
    if msg is None:
        console.print("(empty)", style="dim")
        return
    console.print_json(msg.to_json())


@app.command()
def complete(
    ctx: typer.Context,
    agent: str = typer.Argument(..., help="agent name"),
    message_id: str = typer.Argument(..., help="message id"),
) -> None:
    """Mark a message completed (moves it to inbox/.processed)."""
    if not _run(_queue(ctx, agent).complete(message_id)):
        console.print(f"❌ not found: {message_id}", style="red")
        raise typer.Exit(code=1)
    console.print(f"completed: {message_id}", style="green")


@app.command()
def fail(
    ctx: typer.Context,
    agent: str = typer.Argument(..., help="agent name"),
    message_id: str = typer.Argument(..., help="message id"),
    reason: str = typer.Option("", "--reason", help="failure reason"),
) -> None:
    """Mark a message failed (moves it to inbox/.failed)."""
    if not _run(_queue(ctx, agent).fail(message_id, reason or None)):
        console.print(f"❌ not found: {message_id}", style="red")
        raise typer.Exit(code=1)
    console.print(f"failed: {message_id}", style="yellow")


@app.command()
def outbox(
    ctx: typer.Context,
    agent: str = typer.Argument(..., help="agent name"),
    limit: int = typer.Option(20, "--limit", help="max messages"),
) -> None:
    """List published results, newest first."""
    _print_messages(_run(_queue(ctx, agent).list_outbox(limit)), f"{agent}: outbox")


@app.command()
def cleanup(ctx: typer.Context, agent: str = typer.Argument(..., help="agent name")) -> None:
    """Delete expired inbox messages and recover stale claims."""

    async def _cleanup(q: MessageQueue) -> tuple[int, int]:
        return await q.cleanup_expired(), await q.recover_claims()

    expired, recovered = _run(_cleanup(_queue(ctx, agent)))
    console.print(f"expired: {expired}  recovered claims: {recovered}")


@app.command("clean-workspace")
def clean_workspace(ctx: typer.Context, agent: str = typer.Argument(..., help="agent name")) -> None:
    """Wipe an agent's workspace area."""
    directory = _directory(ctx, agent)
    removed = _run(directory.clean_workspace())
    console.print(f"removed: {removed}")


@app.command()
def info(ctx: typer.Context, agent: str = typer.Argument(..., help="agent name")) -> None:
    """Show file counts and sizes per mailbox area."""
    directory = _directory(ctx, agent)
    snapshot = _run(directory.get_info())

    table = Table(title=f"{agent}: {snapshot.root}")
    table.add_column("area")
    table.add_column("files", justify="right")
    table.add_column("bytes", justify="right")
    for area in AgentSubdirectory:
        table.add_row(area.value, str(snapshot.file_counts[area]), str(snapshot.sizes[area]))
    table.add_row("total", str(snapshot.total_files), str(snapshot.total_size_bytes), style="bold")
    console.print(table)


@app.command()
def migrate(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="migrate even if already migrated"),
    no_memory: bool = typer.Option(False, "--no-memory", help="do not write memory/agent-metadata.json"),
) -> None:
    """Create the mailbox layout for every agent under the root."""
    migrator = DirectoryMigrator(force=force, create_initial_memory=not no_memory)
    batch = _run(migrator.migrate_all(_cfg(ctx).agents_root))
    console.print(render_report(batch))
    if not batch.all_successful:
        raise typer.Exit(code=1)


@app.command()
def watch(
    ctx: typer.Context,
    agent: str = typer.Argument(..., help="agent name"),
    cleanup_interval: float = typer.Option(60.0, "--cleanup-interval", help="seconds between expiry sweeps (0=off)"),
) -> None:
    """Print new inbox messages as they arrive (Ctrl+C to stop)."""
    cfg = _cfg(ctx)

    def _show(msg: AgentMessage) -> None:
        console.print(
            f"📬 {msg.id} [{msg.priority.name.lower()}] {msg.message_type} from {msg.from_agent or '-'}",
            style="cyan",
        )

    async def _watch() -> None:
        registry = cfg.registry(enable_watchers=True)
        q = registry.get_queue(agent)
        await q.directory.ensure_structure()
        q.subscribe(_show)
        console.print(f"watching: {q.directory.inbox}", style="cyan")
        try:
            while True:
                if cleanup_interval > 0:
                    await asyncio.sleep(cleanup_interval)
                    expired = await q.cleanup_expired()
                    if expired:
                        console.print(f"expired: {expired}", style="dim")
                else:
                    await asyncio.sleep(3600)
        finally:
            registry.close()

    try:
        _run(_watch())
    except KeyboardInterrupt:
        console.print("stopped", style="yellow")
