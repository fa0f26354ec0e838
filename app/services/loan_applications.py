from __future__ import annotations

import logging
import secrets
import time
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ApplicationNotFoundError, IllegalTransitionError, MalformedMessageError
from app.models.loan_application import LoanApplication
from app.schemas.loan import LoanEventKey
from app.schemas.messages import Message
from app.services.application_events import record_event
from app.services.loan_state import Trigger, entry_status

logger = logging.getLogger(__name__)

# Unique index backing ess_application_number.
APPLICATION_NUMBER_INDEX = "ix_loan_applications_ess_application_number"


def _millis() -> int:
    return time.time_ns() // 1_000_000


def generate_fsp_reference() -> str:
    return f"FSP{_millis()}{secrets.randbelow(1000):03d}"


def generate_loan_number() -> str:
    return f"LOAN{_millis()}{secrets.randbelow(1000):03d}"


def generate_payment_reference(cbs_loan_id: str) -> str:
    return f"TOPUP{_millis()}{cbs_loan_id}"


def to_decimal(value: Any, default: Decimal | None = Decimal("0")) -> Decimal | None:
    if value is None or value == "":
        return default
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return default


def to_int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None


def to_date(value: Any) -> date | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00")).date()
    except ValueError:
        return None


async def get_by_application_number(
    db: AsyncSession, application_number: str, *, for_update: bool = False
) -> LoanApplication | None:
    stmt = select(LoanApplication).where(LoanApplication.ess_application_number == application_number)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def require_application(
    db: AsyncSession, application_number: str, *, for_update: bool = False
) -> LoanApplication:
    application = await get_by_application_number(db, application_number, for_update=for_update)
    if application is None:
        raise ApplicationNotFoundError(
            f"No loan application {application_number}",
            details={"application_number": application_number},
        )
    return application


async def find_for_message(
    db: AsyncSession, message: Message, *, for_update: bool = True
) -> LoanApplication | None:
    """Correlate by ApplicationNumber, then FSPReferenceNumber, then the LoanNumber alias."""
    lookups = (
        (LoanApplication.ess_application_number, message.get("ApplicationNumber")),
        (LoanApplication.fsp_reference_number, message.get("FSPReferenceNumber")),
        (LoanApplication.ess_loan_number_alias, message.get("LoanNumber")),
    )
    for column, value in lookups:
        if not value:
            continue
        stmt = select(LoanApplication).where(column == value)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        application = result.scalar_one_or_none()
        if application is not None:
            return application
    return None


async def find_by_loan_number(db: AsyncSession, loan_number: str) -> LoanApplication | None:
    """The loan ESS knows as ``loan_number``: our alias first, then the CBS account number."""
    for column in (LoanApplication.ess_loan_number_alias, LoanApplication.cbs_loan_account_number):
        result = await db.execute(select(LoanApplication).where(column == loan_number))
        application = result.scalar_one_or_none()
        if application is not None:
            return application
    return None


def is_duplicate_application(exc: IntegrityError) -> bool:
    return APPLICATION_NUMBER_INDEX in str(exc.orig)


async def create_application(
    db: AsyncSession,
    message: Message,
    *,
    fields: dict[str, Any],
    event_value: dict[str, Any] | None = None,
    events: list[tuple[LoanEventKey, dict[str, Any]]] | None = None,
) -> LoanApplication:
    """Create a record through the entry edge allowed for ``message``'s type.

    ``events`` are extra log entries committed together with the new record.
    """
    requested = fields.get("requested_amount")
    if requested is not None and requested < 0:
        raise MalformedMessageError(f"Requested amount must not be negative: {requested}")
    status = entry_status(message.message_type)
    trigger = Trigger.from_message(message)
    application = LoanApplication(
        ess_application_number=message.application_number,
        fsp_reference_number=generate_fsp_reference(),
        status=status.value,
        status_changed_at=datetime.now(timezone.utc),
        **fields,
    )
    db.add(application)
    try:
        await db.flush()
        record_event(
            db,
            application,
            LoanEventKey.TRANSITION,
            {"from": None, "to": status.value, **(event_value or {})},
            source=trigger.source,
            message_id=trigger.message_id,
        )
        for key, value in events or ():
            record_event(db, application, key, value, source=trigger.source, message_id=trigger.message_id)
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        if not is_duplicate_application(exc):
            raise
        logger.warning("Concurrent creation of application %s", message.application_number)
        raise IllegalTransitionError(None, status.value, trigger=trigger.source) from exc
    logger.info(
        "Created loan application %s at %s (fsp_reference=%s)",
        application.ess_application_number,
        status.value,
        application.fsp_reference_number,
    )
    return application
