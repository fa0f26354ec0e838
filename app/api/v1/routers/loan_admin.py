from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api import deps
from app.schemas.loan import (
    LiquidationResult,
    LoanApplicationDetail,
    LoanApplicationEventRead,
    LoanApplicationRead,
    OperatorActionRequest,
    PipelineRunResult,
)
from app.services.application_events import list_events
from app.services.loan_applications import require_application
from app.services.loan_lifecycle import LoanLifecycle
from app.services.loan_state import Trigger

router = APIRouter(prefix="/loan-applications", tags=["loan-applications"])
logger = logging.getLogger(__name__)


@router.get(
    "/{application_number}",
    response_model=LoanApplicationDetail,
    summary="Loan application record with its event log",
)
async def get_loan_application(
    application_number: str,
    _: deps.OperatorContext = Depends(deps.get_operator_context),
    db: AsyncSession = Depends(deps.get_db_session),
) -> LoanApplicationDetail:
    application = await require_application(db, application_number)
    events = await list_events(db, application)
    return LoanApplicationDetail(
        application=LoanApplicationRead.model_validate(application),
        events=[LoanApplicationEventRead.model_validate(event) for event in events],
    )


@router.post(
    "/{application_number}/retry",
    response_model=PipelineRunResult,
    summary="Resume the CBS disbursement pipeline",
)
async def retry_pipeline(
    application_number: str,
    operator: deps.OperatorContext = Depends(deps.get_operator_context),
    lifecycle: LoanLifecycle = Depends(deps.get_lifecycle),
) -> PipelineRunResult:
    trigger = Trigger.operator(operator.operator_id, "retry")
    status = await lifecycle.retry(application_number, trigger=trigger)
    logger.info("Operator %s retried %s -> %s", operator.operator_id, application_number, status)
    return PipelineRunResult(application_number=application_number, status=status)


@router.post(
    "/{application_number}/liquidate",
    response_model=LiquidationResult,
    summary="Liquidate a disbursed loan at its current CBS outstanding balance",
)
async def liquidate_loan(
    application_number: str,
    payload: OperatorActionRequest | None = None,
    operator: deps.OperatorContext = Depends(deps.get_operator_context),
    lifecycle: LoanLifecycle = Depends(deps.get_lifecycle),
) -> LiquidationResult:
    reason = payload.reason if payload else None
    trigger = Trigger.operator(operator.operator_id, "liquidate")
    outcome = await lifecycle.liquidate(application_number, trigger=trigger, reason=reason)
    return LiquidationResult(
        application_number=application_number,
        status=outcome.application.status,
        liquidation_amount=outcome.amount,
        notification_status=outcome.delivery.status.value,
    )


@router.post(
    "/{application_number}/default",
    response_model=LoanApplicationRead,
    summary="Mark a disbursed loan as defaulted",
)
async def mark_loan_defaulted(
    application_number: str,
    payload: OperatorActionRequest | None = None,
    operator: deps.OperatorContext = Depends(deps.get_operator_context),
    lifecycle: LoanLifecycle = Depends(deps.get_lifecycle),
) -> LoanApplicationRead:
    reason = payload.reason if payload else None
    trigger = Trigger.operator(operator.operator_id, "default")
    application = await lifecycle.mark_default(application_number, trigger=trigger, reason=reason)
    return LoanApplicationRead.model_validate(application)
