"""inbox watching tests (dispatch logic only, no inotify needed)."""

import asyncio
from pathlib import Path

import pytest
from watchdog.events import DirCreatedEvent, FileCreatedEvent, FileMovedEvent

from burrow.message_queue import MessageQueue
from burrow.models import AgentMessage, MessageStatus
from burrow.watch import InboxEventBridge, InboxWatcher, SubscriberSet, _Handler
from conftest import make_message


async def _write(queue: MessageQueue, message: AgentMessage) -> Path:
    await queue.enqueue(message)
    return queue.directory.inbox / message.file_name()


def _watcher(queue: MessageQueue, subscribers: SubscriberSet) -> InboxWatcher:
    return InboxWatcher(queue.directory.inbox, subscribers, settle_delay=0)


def test_subscription_dispose_removes_only_its_handler() -> None:
    subs = SubscriberSet()
    a = subs.add(lambda m: None)
    b = subs.add(lambda m: None)
    assert len(subs) == 2

    a.dispose()
    a.dispose()
    assert not a.active
    assert b.active
    assert len(subs) == 1

    with subs.add(lambda m: None):
        assert len(subs) == 2
    assert len(subs) == 1


@pytest.mark.asyncio()
async def test_dispatch_sync_and_async_handlers(queue: MessageQueue) -> None:
    seen: list[str] = []

    async def on_async(m: AgentMessage) -> None:
        await asyncio.sleep(0)
        seen.append(f"async:{m.message_type}")

    subs = SubscriberSet()
    subs.add(lambda m: seen.append(f"sync:{m.message_type}"))
    subs.add(on_async)
    w = _watcher(queue, subs)

    path = await _write(queue, make_message("ping"))
    assert await w.dispatch(path) == 2
    await w.drain()
    assert sorted(seen) == ["async:ping", "sync:ping"]


@pytest.mark.asyncio()
async def test_failing_handler_is_isolated(queue: MessageQueue) -> None:
    seen: list[str] = []

    def boom(m: AgentMessage) -> None:
        raise RuntimeError("handler crashed")

    subs = SubscriberSet()
    subs.add(boom)
    subs.add(lambda m: seen.append(m.id))
    w = _watcher(queue, subs)

    msg = make_message()
    assert await w.dispatch(await _write(queue, msg)) == 2
    await w.drain()
    assert seen == [msg.id]


@pytest.mark.asyncio()
async def test_dispatch_skips_what_is_not_pending(queue: MessageQueue, tmp_path: Path) -> None:
    subs = SubscriberSet()
    subs.add(lambda m: None)
    w = _watcher(queue, subs)

    msg = make_message()
    path = await _write(queue, msg)
    await queue.dequeue()
    assert await w.dispatch(path) == 0

    broken = queue.directory.inbox / "20250101120000000000_bad.json"
    broken.write_text("{", encoding="utf-8")
    assert await w.dispatch(broken) == 0

    assert await w.dispatch(tmp_path / "gone.json") == 0


@pytest.mark.asyncio()
async def test_dispatch_without_subscribers(queue: MessageQueue) -> None:
    w = _watcher(queue, SubscriberSet())
    assert await w.dispatch(await _write(queue, make_message())) == 0


@pytest.mark.asyncio()
async def test_bridge_feeds_pump(queue: MessageQueue) -> None:
    seen: list[AgentMessage] = []
    sub = queue.subscribe(seen.append)
    queue.watcher.settle_delay = 0
    queue.watcher.start(observe=False)
    assert queue.watcher.running

    msg = make_message("hello")
    path = await _write(queue, msg)
    bridge = queue.watcher.bridge
    assert bridge is not None
    bridge.offer(path)
    bridge.offer(path.with_suffix(".txt"))
    bridge.offer(queue.directory.inbox / ".processed" / path.name)
    await asyncio.sleep(0)
    await queue.watcher.drain()

    assert [m.id for m in seen] == [msg.id]
    assert seen[0].status is MessageStatus.PENDING

    sub.dispose()
    bridge.offer(path)
    await asyncio.sleep(0)
    await queue.watcher.drain()
    assert len(seen) == 1

    queue.close()
    assert not queue.watcher.running


@pytest.mark.asyncio()
async def test_bridge_drops_when_full(tmp_path: Path) -> None:
    bridge = InboxEventBridge(asyncio.get_running_loop(), tmp_path, maxsize=1)
    bridge.offer(tmp_path / "a.json")
    bridge.offer(tmp_path / "b.json")
    await asyncio.sleep(0)
    assert bridge.queue.qsize() == 1
    assert bridge.dropped == 1


class _Recorder:
    def __init__(self) -> None:
        self.paths: list[Path] = []

    def offer(self, path: Path) -> None:
        self.paths.append(path)


def test_handler_forwards_created_and_moved(tmp_path: Path) -> None:
    rec = _Recorder()
    h = _Handler(rec)  # type: ignore[arg-type]

    h.on_created(FileCreatedEvent(str(tmp_path / "a.json")))
    h.on_moved(FileMovedEvent(str(tmp_path / ".a.json.1.tmp"), str(tmp_path / "b.json")))
    h.on_created(DirCreatedEvent(str(tmp_path / "sub")))

    assert rec.paths == [tmp_path / "a.json", tmp_path / "b.json"]
