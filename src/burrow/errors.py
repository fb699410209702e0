"""Exceptions raised by the mailbox layer.

Absence (missing file / unknown message id) is never an exception: the
directory and queue return None / False for it. What remains here are the
conditions a caller has to deal with.
"""

from __future__ import annotations


class BurrowError(Exception):
    """Base class for burrow errors."""


class InvalidFileNameError(BurrowError, ValueError):
    """A file name tried to escape its area or used reserved characters."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"invalid file name {name!r}: {reason}")
        self.name = name
        self.reason = reason


class MessageFormatError(BurrowError, ValueError):
    """A record could not be decoded as an AgentMessage."""


class DuplicateMessageError(BurrowError):
    """A record with the same file name already sits in the mailbox."""

    def __init__(self, agent_name: str, file_name: str) -> None:
        super().__init__(f"{agent_name}: message already queued: {file_name}")
        self.agent_name = agent_name
        self.file_name = file_name
