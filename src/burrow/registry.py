"""One MessageQueue per agent name.

Queues are created on first use and cached so each mailbox has a single
watcher and a single dequeue lock in this process. Cached queues live until
`release()` / `close()`; with a fixed set of agents that is the process
lifetime.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

from burrow.directory import AgentDirectory, validate_file_name
from burrow.message_queue import MessageQueue
from burrow.models import AgentMessage, MessagePriority

logger = logging.getLogger(__name__)


class MessageQueueRegistry:
    def __init__(
        self,
        agents_root: Path | str,
        *,
        enable_watchers: bool = False,
        settle_delay: float = 0.05,
        event_queue_size: int = 256,
    ) -> None:
        if not str(agents_root).strip():
            raise ValueError("agents_root is required")
        self.agents_root = Path(agents_root)
        self.enable_watchers = enable_watchers
        self.settle_delay = settle_delay
        self.event_queue_size = event_queue_size
        self._lock = threading.Lock()
        self._queues: dict[str, MessageQueue] = {}

    def get_queue(self, agent_name: str) -> MessageQueue:
        validate_file_name(agent_name)
        with self._lock:
            q = self._queues.get(agent_name)
            if q is None:
                directory = AgentDirectory(agent_name, self.agents_root / agent_name)
                q = MessageQueue(
                    directory,
                    enable_watcher=self.enable_watchers,
                    settle_delay=self.settle_delay,
                    event_queue_size=self.event_queue_size,
                )
                self._queues[agent_name] = q
                logger.debug("queue created for %s", agent_name)
            return q

    def agents(self) -> list[str]:
        with self._lock:
            return sorted(self._queues)

    async def send(
        self,
        from_agent: str | None,
        to_agent: str,
        message_type: str,
        payload: Any = None,
        priority: MessagePriority = MessagePriority.NORMAL,
    ) -> str:
        """Build a message (replies go back to the sender) and enqueue it."""

        if not to_agent or not to_agent.strip():
            raise ValueError("to_agent is required")
        if not message_type or not message_type.strip():
            raise ValueError("message_type is required")

        message = AgentMessage(
            to_agent=to_agent,
            message_type=message_type,
            payload=payload,
            from_agent=from_agent,
            priority=priority,
            reply_to=from_agent,
        )
        return await self.get_queue(to_agent).enqueue(message)

    def release(self, agent_name: str) -> bool:
        with self._lock:
            q = self._queues.pop(agent_name, None)
        if q is None:
            return False
        q.close()
        return True

    def close(self) -> None:
        with self._lock:
            queues = list(self._queues.values())
            self._queues.clear()
        for q in queues:
            q.close()
