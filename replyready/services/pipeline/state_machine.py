"""Message status state machine and the compare-and-advance primitive.

`Message.status` doubles as the pipeline's work queue. Every status change
goes through `advance_status`, a conditional UPDATE that only matches when
the row is still in the expected state. Zero affected rows means another
runner got there first; callers report that as a lost race, never raise.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from replyready.db.enums import MessageStatus as S
from replyready.db.models import Message

logger = logging.getLogger(__name__)


TRANSITIONS: dict[S, frozenset[S]] = {
    S.INTENT_PENDING: frozenset({S.INTENT_DONE, S.IGNORED, S.NEEDS_HUMAN}),
    S.INTENT_DONE: frozenset({S.ROUTE_RESOLVED, S.IGNORED, S.NEEDS_HUMAN}),
    S.ROUTE_RESOLVED: frozenset({S.DRAFT_CREATED, S.NEEDS_HUMAN, S.FAILED_DRAFT}),
    S.DRAFT_CREATED: frozenset({S.SENT, S.NEEDS_HUMAN}),
    # Outbound drafts
    S.QA_PENDING: frozenset({S.READY_TO_SEND, S.NEEDS_APPROVAL, S.REWRITE_PENDING, S.NEEDS_HUMAN}),
    S.REWRITE_PENDING: frozenset({S.QA_PENDING, S.NEEDS_HUMAN}),
    S.NEEDS_APPROVAL: frozenset({S.READY_TO_SEND, S.NEEDS_HUMAN}),
    S.READY_TO_SEND: frozenset({S.SENT, S.NEEDS_APPROVAL, S.NEEDS_HUMAN, S.IGNORED}),
    # Manual retry
    S.FAILED_DRAFT: frozenset({S.ROUTE_RESOLVED}),
    S.NEEDS_HUMAN: frozenset(),
    S.SENT: frozenset(),
    S.IGNORED: frozenset(),
}

TERMINAL_STATES = frozenset(state for state, targets in TRANSITIONS.items() if not targets)


class InvalidTransition(ValueError):
    """Raised for a transition the state machine does not allow (a code bug)."""


def can_transition(current: S, target: S) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def advance_status(
    db: Session,
    message_id: UUID,
    expected: S,
    target: S,
    *,
    commit: bool = True,
    extra_filters: tuple = (),
    **fields: Any,
) -> bool:
    """
    Move one message `expected -> target` (plus `fields`) iff it is still in
    `expected`. Returns False when the row was already advanced elsewhere.
    """
    if not can_transition(expected, target):
        raise InvalidTransition(f"{expected.value} -> {target.value}")

    values: dict[Any, Any] = {
        Message.status: target.value,
        Message.updated_at: datetime.now(timezone.utc),
    }
    for name, value in fields.items():
        values[getattr(Message, name)] = value

    updated = (
        db.query(Message)
        .filter(Message.id == message_id, Message.status == expected.value, *extra_filters)
        .update(values, synchronize_session=False)
    )
    if commit:
        db.commit()
    if not updated:
        logger.info(f"Lost race advancing {expected.value} -> {target.value}")
    return bool(updated)
