"""Message lifecycle: allowed transitions and where terminal records live.

Pending and processing records stay in `inbox/` under their original file
name. Terminal records move into a dot-prefixed sub-area of the inbox. The
queue engine looks both up here instead of hard-coding paths.
"""

from __future__ import annotations

from burrow.models import MessageStatus

PROCESSED_DIR = ".processed"
FAILED_DIR = ".failed"

TERMINAL_DESTINATIONS: dict[MessageStatus, str] = {
    MessageStatus.COMPLETED: PROCESSED_DIR,
    MessageStatus.FAILED: FAILED_DIR,
}

TRANSITIONS: dict[MessageStatus, frozenset[MessageStatus]] = {
    MessageStatus.PENDING: frozenset({MessageStatus.PROCESSING}),
    MessageStatus.PROCESSING: frozenset({MessageStatus.COMPLETED, MessageStatus.FAILED}),
    MessageStatus.COMPLETED: frozenset(),
    MessageStatus.FAILED: frozenset(),
    MessageStatus.CANCELLED: frozenset(),
}


def is_terminal(status: MessageStatus) -> bool:
    return not TRANSITIONS[status]


def can_transition(src: MessageStatus, dst: MessageStatus) -> bool:
    return dst in TRANSITIONS[src]


def destination_for(status: MessageStatus) -> str | None:
    """Inbox sub-area a record with `status` is relocated to (None = stays put)."""

    return TERMINAL_DESTINATIONS.get(status)
