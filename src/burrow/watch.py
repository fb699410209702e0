"""inbox/ watching for subscribers.

- watchdog reports new records (created, or renamed into place) on its own
  observer thread
- the bridge hands the path to the event loop through a bounded asyncio.Queue
- a single pump task drains the queue, waits a short settle delay, parses the
  record and fans it out to every subscriber, one task per handler

A failing or slow handler cannot stop the pump or starve the other handlers.

CI may not have working inotify, so the Observer part is kept thin; the
bridge, pump and dispatch are plain objects the tests drive directly.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Union

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from burrow.errors import MessageFormatError
from burrow.models import FILE_EXTENSION, AgentMessage, MessageStatus

logger = logging.getLogger(__name__)

MessageHandler = Callable[[AgentMessage], Union[Awaitable[Any], Any]]


class Subscription:
    """Handle returned by `subscribe`; disposing it removes that handler only."""

    def __init__(self, subscribers: SubscriberSet, key: str) -> None:
        self._subscribers = subscribers
        self.key = key
        self._disposed = False

    @property
    def active(self) -> bool:
        return not self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._subscribers.remove(self.key)
        self._disposed = True

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.dispose()


class SubscriberSet:
    def __init__(self) -> None:
        self._handlers: dict[str, MessageHandler] = {}

    def __len__(self) -> int:
        return len(self._handlers)

    def add(self, handler: MessageHandler) -> Subscription:
        key = uuid.uuid4().hex
        self._handlers[key] = handler
        return Subscription(self, key)

    def remove(self, key: str) -> None:
        self._handlers.pop(key, None)

    def snapshot(self) -> list[MessageHandler]:
        return list(self._handlers.values())


class InboxEventBridge:
    """Thread-safe hand-off from the observer thread to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, inbox: Path, maxsize: int = 256) -> None:
        self.loop = loop
        self.inbox = inbox
        self.queue: asyncio.Queue[Path] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, path: Path) -> None:
        if path.suffix != FILE_EXTENSION or path.parent != self.inbox:
            return
        try:
            self.loop.call_soon_threadsafe(self._put, path)
        except RuntimeError:
            # loop already closed; nobody is listening any more
            logger.debug("inbox event after loop close: %s", path.name)

    def _put(self, path: Path) -> None:
        try:
            self.queue.put_nowait(path)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning("inbox event queue full, dropped: %s", path.name)


class _Handler(FileSystemEventHandler):
    def __init__(self, bridge: InboxEventBridge) -> None:
        self.bridge = bridge

    def on_created(self, event: FileSystemEvent) -> None:  # type: ignore[override]
        if not event.is_directory:
            self.bridge.offer(Path(os.fsdecode(event.src_path)))

    def on_moved(self, event: FileSystemEvent) -> None:  # type: ignore[override]
        # records are written to a temp file and renamed into place
        if not event.is_directory:
            self.bridge.offer(Path(os.fsdecode(event.dest_path)))


class InboxWatcher:
    def __init__(
        self,
        inbox: Path,
        subscribers: SubscriberSet,
        *,
        settle_delay: float = 0.05,
        maxsize: int = 256,
    ) -> None:
        self.inbox = inbox.resolve()
        self.subscribers = subscribers
        self.settle_delay = settle_delay
        self.maxsize = maxsize
        self.bridge: InboxEventBridge | None = None
        self._observer: Any = None
        self._pump_task: asyncio.Task[None] | None = None
        self._handler_tasks: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> bool:
        return self._pump_task is not None and not self._pump_task.done()

    def start(self, *, observe: bool = True) -> None:
        """Start the pump on the running loop (and the Observer if `observe`)."""

        if self.running:
            return
        loop = asyncio.get_running_loop()
        self.inbox.mkdir(parents=True, exist_ok=True)
        self.bridge = InboxEventBridge(loop, self.inbox, maxsize=self.maxsize)
        self._pump_task = loop.create_task(self._pump(self.bridge))

        if observe:
            obs = Observer()
            obs.schedule(_Handler(self.bridge), str(self.inbox), recursive=False)
            obs.daemon = True
            obs.start()
            self._observer = obs
        logger.debug("inbox watcher started: %s", self.inbox)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None
        if self._pump_task is not None:
            self._pump_task.cancel()
            self._pump_task = None

    async def drain(self) -> None:
        """Wait until every queued event and running handler has finished."""

        if self.bridge is not None:
            await self.bridge.queue.join()
        while self._handler_tasks:
            await asyncio.gather(*list(self._handler_tasks), return_exceptions=True)

    async def _pump(self, bridge: InboxEventBridge) -> None:
        while True:
            path = await bridge.queue.get()
            try:
                await self.dispatch(path)
            except Exception:  # noqa: BLE001
                logger.warning("failed to handle inbox event: %s", path.name, exc_info=True)
            finally:
                bridge.queue.task_done()

    async def dispatch(self, path: Path) -> int:
        """Parse the record at `path` and start one task per subscriber.

        Returns the number of handlers started.
        """

        handlers = self.subscribers.snapshot()
        if not handlers:
            return 0
        if self.settle_delay > 0:
            await asyncio.sleep(self.settle_delay)

        try:
            text = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError:
            # already claimed or moved on
            return 0
        try:
            message = AgentMessage.from_json(text)
        except MessageFormatError:
            logger.debug("skipping unreadable inbox record: %s", path.name, exc_info=True)
            return 0
        if message.status is not MessageStatus.PENDING:
            return 0

        for handler in handlers:
            task = asyncio.create_task(self._run_handler(handler, message))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)
        return len(handlers)

    async def _run_handler(self, handler: MessageHandler, message: AgentMessage) -> None:
        try:
            result = handler(message)
            if inspect.isawaitable(result):
                await result
        except Exception:  # noqa: BLE001
            logger.warning("subscriber failed on message %s", message.id, exc_info=True)
