"""Lifecycle rules for :class:`LoanApplication`.

Only the edges in :data:`TRANSITIONS` (plus ``FAILED`` from any live state)
are legal. New records may only be created through :data:`ENTRY_EDGES`,
which maps each message type allowed to create a record to its entry state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import IllegalTransitionError
from app.core.logging import get_audit_logger
from app.models.loan_application import LoanApplication
from app.schemas.loan import LoanApplicationStatus, LoanEventKey
from app.schemas.messages import Message, MessageType
from app.services.application_events import record_event

logger = logging.getLogger(__name__)
audit_logger = get_audit_logger()

S = LoanApplicationStatus

TERMINAL_STATES: frozenset[S] = frozenset({S.LIQUIDATED, S.SETTLED, S.FAILED, S.REJECTED, S.CANCELLED})

TRANSITIONS: dict[S, frozenset[S]] = {
    S.RECEIVED: frozenset({S.FINAL_APPROVAL_RECEIVED, S.REJECTED, S.CANCELLED}),
    S.FINAL_APPROVAL_RECEIVED: frozenset({S.CLIENT_CREATED, S.CANCELLED}),
    S.CLIENT_CREATED: frozenset({S.LOAN_CREATED, S.CANCELLED}),
    S.LOAN_CREATED: frozenset({S.DISBURSED, S.CANCELLED}),
    S.DISBURSED: frozenset({S.LIQUIDATED, S.DEFAULTED, S.SETTLED}),
    S.DEFAULTED: frozenset({S.LIQUIDATED, S.SETTLED}),
}

ENTRY_EDGES: dict[str, S] = {
    MessageType.LOAN_OFFER_REQUEST.value: S.RECEIVED,
    MessageType.TOP_UP_OFFER_REQUEST.value: S.RECEIVED,
    MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION.value: S.FINAL_APPROVAL_RECEIVED,
}

# States where the CBS pipeline has started but not yet disbursed.
IN_PROGRESS_STATES: frozenset[S] = frozenset({S.FINAL_APPROVAL_RECEIVED, S.CLIENT_CREATED, S.LOAN_CREATED})
PRE_DISBURSEMENT_STATES: frozenset[S] = frozenset({S.RECEIVED}) | IN_PROGRESS_STATES


@dataclass(frozen=True)
class Trigger:
    """What caused a transition: an inbound message or an operator action."""

    source: str
    message_id: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Message) -> "Trigger":
        return cls(source=message.message_type, message_id=message.msg_id or None)

    @classmethod
    def operator(cls, operator_id: str, action: str, **detail: Any) -> "Trigger":
        return cls(source=f"operator:{operator_id}", detail={"action": action, **detail})

    @classmethod
    def system(cls, action: str) -> "Trigger":
        return cls(source=f"system:{action}")


def status_of(application: LoanApplication) -> S:
    return S(application.status)


def is_terminal(status: S) -> bool:
    return status in TERMINAL_STATES


def can_transition(current: S | None, target: S) -> bool:
    if current is None or current in TERMINAL_STATES:
        return False
    if target is S.FAILED:
        return True
    return target in TRANSITIONS.get(current, frozenset())


def assert_transition(current: S | None, target: S, *, trigger: Trigger | None = None) -> None:
    if can_transition(current, target):
        return
    source = trigger.source if trigger else None
    logger.warning(
        "Rejected illegal transition %s -> %s (trigger=%s)",
        current.value if current else "NEW",
        target.value,
        source,
    )
    raise IllegalTransitionError(current.value if current else None, target.value, trigger=source)


def entry_status(message_type: str) -> S:
    status = ENTRY_EDGES.get(message_type)
    if status is None:
        logger.warning("Message type %s cannot create a loan application", message_type)
        raise IllegalTransitionError(None, "NEW", trigger=message_type)
    return status


async def transition(
    db: AsyncSession,
    application: LoanApplication,
    target: S,
    *,
    trigger: Trigger,
    changes: dict[str, Any] | None = None,
    event_value: dict[str, Any] | None = None,
) -> LoanApplication:
    """Apply one legal transition and commit it together with its audit event.

    Field ``changes``, the new status and the transition event go out in a
    single commit; on failure the session is rolled back and the error
    propagates with the record left at its previous status.
    """
    current = status_of(application)
    assert_transition(current, target, trigger=trigger)

    try:
        for name, value in (changes or {}).items():
            setattr(application, name, value)
        application.status = target.value
        application.status_changed_at = datetime.now(timezone.utc)
        db.add(application)
        record_event(
            db,
            application,
            LoanEventKey.TRANSITION,
            {"from": current.value, "to": target.value, **trigger.detail, **(event_value or {})},
            source=trigger.source,
            message_id=trigger.message_id,
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    audit_logger.info(
        "loan_application.transition application=%s from=%s to=%s trigger=%s",
        application.ess_application_number,
        current.value,
        target.value,
        trigger.source,
    )
    return application
