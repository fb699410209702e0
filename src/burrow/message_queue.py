"""Priority message queue on top of an agent's inbox/outbox.

Record lifecycle:
- `inbox/<name>.json`             pending, then processing (same file name)
- `inbox/.processed/<name>.json`  completed
- `inbox/.failed/<name>.json`     failed (metadata carries error/failedAt)

There is no index: every call re-reads the inbox, so several processes can
share a mailbox and the files stay the only source of truth.

Claiming is an atomic rename `<name>.json -> <name>.json.claim-<token>`.
Only one process can win that rename. Dequeue only claims records it has just
read as pending, re-checks after the rename, writes the processing record and
renames it back. complete/fail claim too, then move the claim file straight
into `.processed`/`.failed` under the original name. A record seen only as a
claim is in flight: lookups by id wait for it briefly. Within one process an
asyncio.Lock additionally serializes dequeues.

Human-readable queue events go to `logs/queue.log` of the mailbox.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone

from burrow.directory import CLAIM_MARKER, AgentDirectory, AgentSubdirectory, validate_file_name
from burrow.errors import DuplicateMessageError, MessageFormatError
from burrow.lifecycle import can_transition, destination_for
from burrow.models import FILE_PATTERN, AgentMessage, MessageStatus, new_message_id, parse_id_from_file_name
from burrow.watch import InboxWatcher, MessageHandler, SubscriberSet, Subscription

logger = logging.getLogger(__name__)

INBOX = AgentSubdirectory.INBOX
OUTBOX = AgentSubdirectory.OUTBOX
QUEUE_LOG = "queue.log"
STALE_CLAIM_AFTER = timedelta(minutes=5)
CLAIM_WAIT_ATTEMPTS = 20
CLAIM_WAIT_DELAY = 0.05


class MessageQueue:
    """Queue engine for one agent mailbox."""

    def __init__(
        self,
        directory: AgentDirectory,
        *,
        enable_watcher: bool = False,
        settle_delay: float = 0.05,
        event_queue_size: int = 256,
    ) -> None:
        self.directory = directory
        self.enable_watcher = enable_watcher
        self._dequeue_lock = asyncio.Lock()
        self._subscribers = SubscriberSet()
        self._watcher = InboxWatcher(
            directory.inbox,
            self._subscribers,
            settle_delay=settle_delay,
            maxsize=event_queue_size,
        )

    def __repr__(self) -> str:
        return f"MessageQueue({self.agent_name!r})"

    @property
    def agent_name(self) -> str:
        return self.directory.agent_name

    @property
    def watcher(self) -> InboxWatcher:
        return self._watcher

    async def enqueue(self, message: AgentMessage) -> str:
        """Drop `message` into the inbox as pending and return its id."""

        pending = _prepare(message, MessageStatus.PENDING)
        name = pending.file_name()
        # ids are unique per inbox, whatever their timestamp or claim state
        if await self._find_name(pending.id) is not None or await self._claims_for(pending.id):
            raise DuplicateMessageError(self.agent_name, name)

        await self.directory.write_file(INBOX, name, pending.to_json())
        if pending.to_agent != self.agent_name:
            logger.debug("%s: enqueued message addressed to %s", self.agent_name, pending.to_agent)
        await self._event(
            f"enqueued {pending.id} type={pending.message_type} "
            f"from={pending.from_agent or '-'} priority={pending.priority.name.lower()}"
        )
        return pending.id

    async def dequeue(self) -> AgentMessage | None:
        """Claim the highest-priority, oldest pending message."""

        async with self._dequeue_lock:
            for name, _msg in await self._select_pending():
                claimed = await self._commit_claim(name)
                if claimed is not None:
                    await self._event(f"claimed {claimed.id}")
                    return claimed
            return None

    async def peek(self) -> AgentMessage | None:
        entries = await self._select_pending()
        return entries[0][1] if entries else None

    async def list_pending(self) -> list[AgentMessage]:
        return [m for _name, m in await self._select_pending()]

    async def pending_count(self) -> int:
        return len(await self._select_pending())

    async def complete(self, message_id: str) -> bool:
        return await self._finish(message_id, MessageStatus.COMPLETED)

    async def fail(self, message_id: str, reason: str | None = None) -> bool:
        return await self._finish(message_id, MessageStatus.FAILED, reason=reason)

    async def publish_result(self, message: AgentMessage) -> str:
        """Write a result into this agent's outbox. No state transitions."""

        result = _prepare(message, message.status)
        await self.directory.write_file(OUTBOX, result.file_name(), result.to_json())
        await self._event(f"published {result.id} type={result.message_type}")
        return result.id

    async def list_outbox(self, limit: int = 100) -> list[AgentMessage]:
        """Outbox messages, newest first, at most `limit`."""

        if limit <= 0:
            return []
        out: list[AgentMessage] = []
        for name in reversed(await self.directory.list_files(OUTBOX, FILE_PATTERN)):
            text = await self.directory.read_file(OUTBOX, name)
            if text is None:
                continue
            try:
                out.append(AgentMessage.from_json(text))
            except MessageFormatError:
                logger.debug("skipping unreadable outbox record %s/%s", self.agent_name, name, exc_info=True)
                continue
            if len(out) >= limit:
                break
        return out

    async def cleanup_expired(self) -> int:
        """Delete every expired inbox record, whatever its status."""

        now = datetime.now(timezone.utc)
        removed = 0
        for name, msg in await self._scan_inbox():
            if msg.is_expired(now) and await self.directory.delete_file(INBOX, name):
                removed += 1
        if removed:
            await self._event(f"expired {removed} message(s)")
        return removed

    async def recover_claims(self, older_than: timedelta = STALE_CLAIM_AFTER) -> int:
        """Put claim files left behind by a crashed consumer back in place."""

        cutoff = time.time() - older_than.total_seconds()
        recovered = 0
        for claim in await self._claim_files(older_than=cutoff):
            original = claim.split(CLAIM_MARKER, 1)[0]
            if await self.directory.exists(INBOX, original):
                logger.warning("%s: claim %s shadows an existing record, left alone", self.agent_name, claim)
                continue
            if await self.directory.rename_file(INBOX, claim, original):
                recovered += 1
        if recovered:
            await self._event(f"recovered {recovered} stale claim(s)")
        return recovered

    def subscribe(self, handler: MessageHandler) -> Subscription:
        """Call `handler` for every new pending inbox record.

        Must be called from a running event loop when watching is enabled.
        Without `enable_watcher` the subscription is kept but never fires.
        """

        sub = self._subscribers.add(handler)
        if self.enable_watcher and not self._watcher.running:
            self._watcher.start()
        return sub

    def close(self) -> None:
        self._watcher.stop()

    async def _scan_inbox(self) -> list[tuple[str, AgentMessage]]:
        entries: list[tuple[str, AgentMessage]] = []
        for name in await self.directory.list_files(INBOX, FILE_PATTERN):
            text = await self.directory.read_file(INBOX, name)
            if text is None:
                continue
            try:
                entries.append((name, AgentMessage.from_json(text)))
            except MessageFormatError as e:
                logger.warning("skipping unreadable inbox record %s/%s: %s", self.agent_name, name, e)
        return entries

    async def _select_pending(self) -> list[tuple[str, AgentMessage]]:
        now = datetime.now(timezone.utc)
        entries = [
            (name, msg)
            for name, msg in await self._scan_inbox()
            if msg.status is MessageStatus.PENDING and not msg.is_expired(now)
        ]
        # stable: equal priority and time keep file-name order
        entries.sort(key=lambda e: (-int(e[1].priority), e[1].created_at))
        return entries

    async def _commit_claim(self, name: str) -> AgentMessage | None:
        commit = asyncio.ensure_future(self._claim(name))
        try:
            return await asyncio.shield(commit)
        except asyncio.CancelledError:
            # let the in-flight claim land, then hand the record back untouched
            claimed = await commit
            if claimed is not None:
                await self.directory.write_file(INBOX, name, claimed.with_status(MessageStatus.PENDING).to_json())
            raise

    async def _claim(self, name: str) -> AgentMessage | None:
        # never hide a record another consumer already owns
        if not _is_pending(await self.directory.read_file(INBOX, name)):
            return None

        claim_name = _claim_name(name)
        if not await self.directory.rename_file(INBOX, name, claim_name):
            return None

        text = await self.directory.read_file(INBOX, claim_name)
        try:
            current = AgentMessage.from_json(text or "")
        except MessageFormatError:
            current = None
        if current is None or current.status is not MessageStatus.PENDING:
            # someone else claimed it between our read and the rename
            await self.directory.rename_file(INBOX, claim_name, name)
            return None

        processing = current.with_status(MessageStatus.PROCESSING)
        await self.directory.write_file(INBOX, claim_name, processing.to_json())
        await self.directory.rename_file(INBOX, claim_name, name)
        return processing

    async def _find_name(self, message_id: str) -> str | None:
        for name in await self.directory.list_files(INBOX, FILE_PATTERN):
            if parse_id_from_file_name(name) == message_id:
                return name
        return None

    async def _claim_files(self, older_than: float | None = None) -> list[str]:
        """Claim file names in the inbox, optionally only those last touched before `older_than`."""

        inbox = self.directory.inbox

        def _scan() -> list[str]:
            if not inbox.is_dir():
                return []
            out = []
            for p in inbox.glob(f"*{CLAIM_MARKER}*"):
                try:
                    if older_than is None or p.stat().st_mtime <= older_than:
                        out.append(p.name)
                except FileNotFoundError:
                    continue
            return sorted(out)

        return await asyncio.to_thread(_scan)

    async def _claims_for(self, message_id: str) -> list[str]:
        return [
            c for c in await self._claim_files() if parse_id_from_file_name(c.split(CLAIM_MARKER, 1)[0]) == message_id
        ]

    async def _find(self, message_id: str) -> tuple[str, AgentMessage] | None:
        """Locate a record by id, waiting briefly while someone holds a claim on it."""

        for _ in range(CLAIM_WAIT_ATTEMPTS):
            name = await self._find_name(message_id)
            if name is not None:
                text = await self.directory.read_file(INBOX, name)
                if text is not None:
                    return name, AgentMessage.from_json(text)
            elif not await self._claims_for(message_id):
                return None
            await asyncio.sleep(CLAIM_WAIT_DELAY)
        logger.warning("%s: %s stayed claimed, giving up", self.agent_name, message_id)
        return None

    async def _finish(self, message_id: str, status: MessageStatus, reason: str | None = None) -> bool:
        if not message_id or not message_id.strip():
            raise ValueError("message_id is required")

        found = await self._find(message_id)
        if found is None:
            return False
        dest = destination_for(status)
        if dest is None:
            return False

        relocate = asyncio.ensure_future(self._relocate(found[0], status, dest, reason))
        try:
            done = await asyncio.shield(relocate)
        except asyncio.CancelledError:
            # the relocation always runs to the end
            await relocate
            raise
        if not done:
            return False

        note = f"{status.value} {message_id}"
        if reason:
            note += f": {reason}"
        await self._event(note)
        return True

    async def _relocate(self, name: str, status: MessageStatus, dest: str, reason: str | None) -> bool:
        # the claim rename fails when the record vanished (expired, finished
        # elsewhere); from here on nobody else sees it
        claim_name = _claim_name(name)
        if not await self.directory.rename_file(INBOX, name, claim_name):
            return False

        text = await self.directory.read_file(INBOX, claim_name)
        try:
            msg = AgentMessage.from_json(text or "")
        except MessageFormatError:
            await self.directory.rename_file(INBOX, claim_name, name)
            raise

        if not can_transition(msg.status, status):
            logger.info("%s: %s goes %s -> %s", self.agent_name, msg.id, msg.status.value, status.value)

        done = msg.with_status(status)
        if status is MessageStatus.FAILED:
            if reason:
                done.metadata["error"] = reason
            done.metadata["failedAt"] = datetime.now(timezone.utc).isoformat()

        await self.directory.write_file(INBOX, claim_name, done.to_json())
        return await self.directory.move_to_subdir(INBOX, claim_name, dest, dest_name=name) is not None

    async def _event(self, line: str) -> None:
        try:
            await self.directory.append_to_log(QUEUE_LOG, line)
        except OSError:
            logger.debug("could not write queue log for %s", self.agent_name, exc_info=True)


def _claim_name(name: str) -> str:
    return f"{name}{CLAIM_MARKER}{uuid.uuid4().hex[:8]}"


def _is_pending(text: str | None) -> bool:
    if text is None:
        return False
    try:
        return AgentMessage.from_json(text).status is MessageStatus.PENDING
    except MessageFormatError:
        return False


def _prepare(message: AgentMessage, status: MessageStatus) -> AgentMessage:
    if not message.to_agent or not message.to_agent.strip():
        raise ValueError("to_agent is required")
    if not message.message_type or not message.message_type.strip():
        raise ValueError("message_type is required")

    msg_id = message.id or new_message_id()
    validate_file_name(msg_id)
    created_at = message.created_at
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return replace(message, id=msg_id, created_at=created_at, status=status, metadata=dict(message.metadata))
