from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable

from fastapi.encoders import jsonable_encoder
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.fernet_crypto import get_fernet
from app.core.logging import get_audit_logger
from app.models.loan_application import LoanApplication
from app.models.loan_application_event import LoanApplicationEvent
from app.schemas.loan import LoanEventKey

audit_logger = get_audit_logger()

_REDACTED_FIELDS = {"borrower_national_id", "borrower_disbursement_account", "NIN", "BankAccountNumber"}


def serialize_for_audit(value: Any) -> Any:
    return jsonable_encoder(
        value,
        custom_encoder={
            Decimal: lambda v: str(v),
            datetime: lambda v: v.isoformat(),
            date: lambda v: v.isoformat(),
            bytes: lambda v: "<binary>",
        },
    )


_SEALED = "sealed"


def seal_pii(values: dict[str, Any]) -> dict[str, Any]:
    """Encrypt identity fields before they land in the JSON event log."""
    sealed: dict[str, Any] = {}
    for key, value in values.items():
        if key in _REDACTED_FIELDS and value:
            token = get_fernet().encrypt(str(value).encode("utf-8")).decode("ascii")
            sealed[key] = {_SEALED: token}
        else:
            sealed[key] = value
    return sealed


def unseal_pii(values: dict[str, Any]) -> dict[str, Any]:
    opened: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, dict) and _SEALED in value:
            opened[key] = get_fernet().decrypt(value[_SEALED].encode("ascii")).decode("utf-8")
        else:
            opened[key] = value
    return opened


def redact(values: dict[str, Any]) -> dict[str, Any]:
    return {key: ("***" if key in _REDACTED_FIELDS and value else value) for key, value in values.items()}


def model_snapshot(model: Any, *, exclude: Iterable[str] | None = None) -> dict[str, Any]:
    if model is None:
        return {}
    excluded = set(exclude or []) | _REDACTED_FIELDS
    data: dict[str, Any] = {}
    for column in model.__table__.columns:
        if column.name in excluded:
            continue
        data[column.name] = getattr(model, column.name)
    return serialize_for_audit(data)


def record_event(
    db: AsyncSession,
    application: LoanApplication,
    key: LoanEventKey,
    value: dict[str, Any] | None = None,
    *,
    source: str | None = None,
    message_id: str | None = None,
) -> LoanApplicationEvent:
    """Stage an event row; it is persisted by the caller's next commit."""
    event = LoanApplicationEvent(
        loan_application_id=application.id,
        key=key.value,
        value=serialize_for_audit(value or {}),
        source=source,
        message_id=message_id,
    )
    db.add(event)
    audit_logger.info(
        "loan_application.%s application=%s source=%s",
        key.value,
        application.ess_application_number,
        source or "-",
    )
    return event


async def list_events(
    db: AsyncSession,
    application: LoanApplication,
    *,
    key: LoanEventKey | None = None,
) -> list[LoanApplicationEvent]:
    stmt = select(LoanApplicationEvent).where(
        LoanApplicationEvent.loan_application_id == application.id
    )
    if key is not None:
        stmt = stmt.where(LoanApplicationEvent.key == key.value)
    stmt = stmt.order_by(LoanApplicationEvent.created_at)
    result = await db.execute(stmt)
    return list(result.scalars().all())
