"""lifecycle table tests."""

import pytest

from burrow.lifecycle import FAILED_DIR, PROCESSED_DIR, can_transition, destination_for, is_terminal
from burrow.models import MessageStatus


def test_forward_transitions() -> None:
    assert can_transition(MessageStatus.PENDING, MessageStatus.PROCESSING)
    assert can_transition(MessageStatus.PROCESSING, MessageStatus.COMPLETED)
    assert can_transition(MessageStatus.PROCESSING, MessageStatus.FAILED)


@pytest.mark.parametrize(
    ("src", "dst"),
    [
        (MessageStatus.PENDING, MessageStatus.COMPLETED),
        (MessageStatus.COMPLETED, MessageStatus.PENDING),
        (MessageStatus.FAILED, MessageStatus.PROCESSING),
        (MessageStatus.PROCESSING, MessageStatus.PENDING),
    ],
)
def test_rejected_transitions(src: MessageStatus, dst: MessageStatus) -> None:
    assert not can_transition(src, dst)


def test_terminal_states() -> None:
    assert is_terminal(MessageStatus.COMPLETED)
    assert is_terminal(MessageStatus.FAILED)
    assert is_terminal(MessageStatus.CANCELLED)
    assert not is_terminal(MessageStatus.PENDING)
    assert not is_terminal(MessageStatus.PROCESSING)


def test_destinations() -> None:
    assert destination_for(MessageStatus.COMPLETED) == PROCESSED_DIR
    assert destination_for(MessageStatus.FAILED) == FAILED_DIR
    assert destination_for(MessageStatus.PENDING) is None
    assert destination_for(MessageStatus.CANCELLED) is None
