from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from burrow.directory import AgentDirectory
from burrow.message_queue import MessageQueue
from burrow.models import AgentMessage, MessagePriority

T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture()
def agents_root(tmp_path: Path) -> Path:
    root = tmp_path / "agents"
    root.mkdir()
    return root


@pytest.fixture()
def directory(agents_root: Path) -> AgentDirectory:
    return AgentDirectory("worker", agents_root / "worker")


@pytest.fixture()
def queue(directory: AgentDirectory) -> MessageQueue:
    q = MessageQueue(directory, settle_delay=0)
    yield q
    q.close()


def make_message(
    message_type: str = "task",
    *,
    priority: MessagePriority = MessagePriority.NORMAL,
    offset: float = 0.0,
    to_agent: str = "worker",
    **kw,
) -> AgentMessage:
    """Message created `offset` seconds after T0."""
    return AgentMessage(
        to_agent=to_agent,
        message_type=message_type,
        priority=priority,
        created_at=T0 + timedelta(seconds=offset),
        **kw,
    )
