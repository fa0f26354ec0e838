from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.models.outbound_message import OutboundMessage
from app.schemas.loan import (
    DeliveryOutcomeRead,
    OutboundMessageRead,
    OutboundMessageStatus,
    ResendSummary,
)
from app.services.callbacks import CallbackDispatcher

router = APIRouter(prefix="/outbound-messages", tags=["outbound-messages"])
logger = logging.getLogger(__name__)


@router.get("", response_model=list[OutboundMessageRead], summary="List stored outbound notifications")
async def list_outbound_messages(
    status: OutboundMessageStatus | None = Query(default=None),
    application_number: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    _: deps.OperatorContext = Depends(deps.get_operator_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> list[OutboundMessageRead]:
    stmt = select(OutboundMessage).order_by(OutboundMessage.created_at.desc()).limit(limit)
    if status is not None:
        stmt = stmt.where(OutboundMessage.status == status.value)
    if application_number:
        stmt = stmt.where(OutboundMessage.application_number == application_number)
    result = await db.execute(stmt)
    return [OutboundMessageRead.model_validate(row) for row in result.scalars().all()]


@router.post(
    "/resend-undelivered",
    response_model=ResendSummary,
    summary="Re-post every undelivered notification",
)
async def resend_undelivered(
    limit: int = Query(default=50, ge=1, le=500),
    operator: deps.OperatorContext = Depends(deps.get_operator_context),
    db: AsyncSession = Depends(deps.get_db_session),
    dispatcher: CallbackDispatcher = Depends(deps.get_dispatcher),
) -> ResendSummary:
    outcomes = await dispatcher.resend_undelivered(db, limit=limit)
    resent = sum(1 for outcome in outcomes if outcome.delivered)
    logger.info("Operator %s resent %s/%s undelivered notifications", operator.operator_id, resent, len(outcomes))
    return ResendSummary(
        attempted=len(outcomes),
        resent=resent,
        still_undelivered=sum(
            1 for outcome in outcomes if outcome.status is OutboundMessageStatus.UNDELIVERED
        ),
    )


@router.post(
    "/{outbound_id}/resend",
    response_model=DeliveryOutcomeRead,
    summary="Re-post one stored notification",
)
async def resend_outbound_message(
    outbound_id: UUID,
    operator: deps.OperatorContext = Depends(deps.get_operator_context),
    db: AsyncSession = Depends(deps.get_db_session),
    dispatcher: CallbackDispatcher = Depends(deps.get_dispatcher),
) -> DeliveryOutcomeRead:
    outcome = await dispatcher.resend_by_id(db, outbound_id)
    logger.info("Operator %s resent %s -> %s", operator.operator_id, outcome.message_id, outcome.status.value)
    return DeliveryOutcomeRead.model_validate(outcome)
