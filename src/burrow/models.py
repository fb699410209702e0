"""Message records exchanged through agent mailboxes.

One message = one JSON file. The file name is derived from the creation time
and the id:

- `<%Y%m%d%H%M%S%f>_<id>.json` (e.g. `20250101120000000000_3f9c0a1b2d4e.json`)

so that sorting file names sorts by arrival time. The id is recovered from the
part after the first `_`.

Record keys are camelCase and enums are written by name (`"high"`,
`"pending"`), which keeps inbox files greppable and readable by the other
mailbox implementations sharing the same directories.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum
from pathlib import PurePath
from typing import Any

from burrow.errors import MessageFormatError

FILE_EXTENSION = ".json"
FILE_PATTERN = "*" + FILE_EXTENSION
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S%f"

_TTL_RE = re.compile(r"^(?:(\d+)\.)?(\d{1,2}):(\d{2}):(\d{2})(?:\.(\d{1,7}))?$")
_FRACTION_RE = re.compile(r"\.(\d+)")


class MessagePriority(IntEnum):
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3


class MessageStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def new_message_id() -> str:
    return uuid.uuid4().hex[:12]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AgentMessage:
    to_agent: str
    message_type: str
    payload: Any = None
    from_agent: str | None = None
    priority: MessagePriority = MessagePriority.NORMAL
    status: MessageStatus = MessageStatus.PENDING
    correlation_id: str | None = None
    reply_to: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    time_to_live: timedelta | None = None
    id: str = field(default_factory=new_message_id)
    created_at: datetime = field(default_factory=_utcnow)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.time_to_live is None:
            return False
        now = now or _utcnow()
        return now > self.created_at + self.time_to_live

    def file_name(self) -> str:
        stamp = self.created_at.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)
        return f"{stamp}_{self.id}{FILE_EXTENSION}"

    def with_status(self, status: MessageStatus) -> AgentMessage:
        return replace(self, status=status, metadata=dict(self.metadata))

    def create_reply(self, from_agent: str, message_type: str, payload: Any = None) -> AgentMessage:
        """Build a response addressed to `reply_to` (or the sender).

        The reply shares the original's correlation id, falling back to the
        original message id so a conversation can be traced from either end.
        """

        to_agent = self.reply_to or self.from_agent
        if not to_agent:
            raise ValueError(f"cannot reply to {self.id}: no reply_to or from_agent")
        return AgentMessage(
            to_agent=to_agent,
            message_type=message_type,
            payload=payload,
            from_agent=from_agent,
            priority=self.priority,
            correlation_id=self.correlation_id or self.id,
        )

    def to_dict(self) -> dict[str, Any]:
        raw: dict[str, Any] = {
            "id": self.id,
            "timestamp": self.created_at.astimezone(timezone.utc).isoformat(),
            "fromAgent": self.from_agent,
            "toAgent": self.to_agent,
            "messageType": self.message_type,
            "payload": self.payload,
            "priority": self.priority.name.lower(),
            "status": self.status.value,
            "correlationId": self.correlation_id,
            "replyTo": self.reply_to,
            "metadata": dict(self.metadata) if self.metadata else None,
            "timeToLive": format_time_to_live(self.time_to_live) if self.time_to_live is not None else None,
        }
        return {k: v for k, v in raw.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=2)

    @classmethod
    def from_dict(cls, raw: Any) -> AgentMessage:
        if not isinstance(raw, dict):
            raise MessageFormatError(f"message record must be an object, got {type(raw).__name__}")

        # unknown keys are ignored; key case is not significant
        data = {str(k).lower(): v for k, v in raw.items()}

        to_agent = data.get("toagent")
        message_type = data.get("messagetype")
        if not to_agent or not isinstance(to_agent, str):
            raise MessageFormatError("message record has no toAgent")
        if not message_type or not isinstance(message_type, str):
            raise MessageFormatError("message record has no messageType")

        msg = cls(
            to_agent=to_agent,
            message_type=message_type,
            payload=data.get("payload"),
            from_agent=_opt_str(data.get("fromagent")),
            priority=_parse_priority(data.get("priority")),
            status=_parse_status(data.get("status")),
            correlation_id=_opt_str(data.get("correlationid")),
            reply_to=_opt_str(data.get("replyto")),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            time_to_live=parse_time_to_live(data.get("timetolive")),
        )
        if data.get("id"):
            msg.id = str(data["id"])
        if data.get("timestamp"):
            msg.created_at = parse_timestamp(data["timestamp"])
        return msg

    @classmethod
    def from_json(cls, text: str) -> AgentMessage:
        if not text or not text.strip():
            raise MessageFormatError("empty message record")
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise MessageFormatError(f"invalid JSON: {e}") from e
        return cls.from_dict(raw)


def parse_id_from_file_name(file_name: str) -> str | None:
    if not file_name or not file_name.strip():
        return None
    stem = PurePath(file_name).stem
    parts = stem.split("_", 1)
    if len(parts) != 2 or not parts[1]:
        return None
    return parts[1]


def format_time_to_live(ttl: timedelta) -> str:
    """timedelta -> `[d.]hh:mm:ss[.fffffff]`."""

    micros = (ttl.days * 86_400 + ttl.seconds) * 1_000_000 + ttl.microseconds
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    total_seconds, frac = divmod(micros, 1_000_000)
    days, rem = divmod(total_seconds, 86_400)
    hours, rem = divmod(rem, 3_600)
    minutes, seconds = divmod(rem, 60)

    out = f"{hours:02d}:{minutes:02d}:{seconds:02d}"
    if days:
        out = f"{days}.{out}"
    if frac:
        out = f"{out}.{frac * 10:07d}"
    return sign + out


def parse_time_to_live(value: Any) -> timedelta | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise MessageFormatError(f"invalid timeToLive: {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise MessageFormatError(f"invalid timeToLive: {value!r}")

    text = value.strip()
    negative = text.startswith("-")
    m = _TTL_RE.match(text.lstrip("-"))
    if m is None:
        raise MessageFormatError(f"invalid timeToLive: {value!r}")
    days, hours, minutes, seconds, frac = m.groups()
    ttl = timedelta(
        days=int(days or 0),
        hours=int(hours),
        minutes=int(minutes),
        seconds=int(seconds),
        microseconds=int((frac or "0").ljust(7, "0")) // 10,
    )
    return -ttl if negative else ttl


def parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str):
        raise MessageFormatError(f"invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    # other writers emit 7 fractional digits; datetime keeps 6
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        dt = datetime.fromisoformat(text)
    except ValueError as e:
        raise MessageFormatError(f"invalid timestamp: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _parse_priority(value: Any) -> MessagePriority:
    if value is None:
        return MessagePriority.NORMAL
    if isinstance(value, int) and not isinstance(value, bool):
        try:
            return MessagePriority(value)
        except ValueError as e:
            raise MessageFormatError(f"unknown priority: {value!r}") from e
    try:
        return MessagePriority[str(value).strip().upper()]
    except KeyError as e:
        raise MessageFormatError(f"unknown priority: {value!r}") from e


def _parse_status(value: Any) -> MessageStatus:
    if value is None:
        return MessageStatus.PENDING
    try:
        return MessageStatus(str(value).strip().lower())
    except ValueError as e:
        raise MessageFormatError(f"unknown status: {value!r}") from e


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)
