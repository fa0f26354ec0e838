from __future__ import annotations

import asyncio
import logging
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from functools import partial
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core import context
from app.core.errors import (
    ApplicationNotFoundError,
    CbsError,
    CbsRetryableError,
    CbsTerminalError,
    IllegalTransitionError,
)
from app.core.settings import Settings, settings as app_settings
from app.db.session import AsyncSessionLocal
from app.models.loan_application import LoanApplication
from app.schemas.loan import LoanApplicationStatus, LoanEventKey
from app.schemas.messages import Message
from app.services import notifications
from app.services.application_events import list_events, record_event
from app.services.application_locks import ApplicationLocks, application_locks
from app.services.background import BackgroundRunner
from app.services.callbacks import CallbackDispatcher, DeliveryOutcome
from app.services.cbs_client import CbsClient
from app.services.cbs_orchestrator import CbsOrchestrator, DisbursementResult
from app.services.loan_applications import (
    find_by_loan_number,
    generate_payment_reference,
    get_by_application_number,
    require_application,
    to_date,
)
from app.services.loan_state import (
    IN_PROGRESS_STATES,
    Trigger,
    assert_transition,
    status_of,
    transition,
)

logger = logging.getLogger(__name__)

S = LoanApplicationStatus

# Loans ESS may ask a payoff balance for.
PAYOFF_STATES: frozenset[S] = frozenset({S.DISBURSED, S.DEFAULTED})

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]
CbsFactory = Callable[[], CbsClient]

BORROWER_FIELDS: tuple[tuple[str, str], ...] = (
    ("FirstName", "borrower_first_name"),
    ("MiddleName", "borrower_middle_name"),
    ("LastName", "borrower_last_name"),
    ("Sex", "borrower_sex"),
    ("DateOfBirth", "borrower_date_of_birth"),
    ("NIN", "borrower_national_id"),
    ("MobileNumber", "borrower_mobile_number"),
    ("BankAccountNumber", "borrower_disbursement_account"),
)


def borrower_changes(borrower: dict[str, Any]) -> dict[str, Any]:
    """Column values for a one-time borrower snapshot; ``borrower_captured_at`` comes last."""
    changes: dict[str, Any] = {}
    for source, column in BORROWER_FIELDS:
        value = borrower.get(source)
        if value in (None, ""):
            continue
        if column == "borrower_date_of_birth":
            value = to_date(value)
        elif column == "borrower_sex":
            value = str(value).strip()[:1].upper()
        changes[column] = value
    changes["borrower_captured_at"] = datetime.now(timezone.utc)
    return changes


@dataclass(frozen=True)
class LiquidationOutcome:
    application: LoanApplication
    amount: Decimal
    delivery: DeliveryOutcome


class LoanLifecycle:
    """Stateful steps that touch the CBS or ESS after a message was accepted.

    Every public method opens its own session and runs inside the
    application's critical section, so it is safe to call from a
    background task as well as from an operator request.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory = AsyncSessionLocal,
        cbs_factory: CbsFactory = CbsClient,
        dispatcher: CallbackDispatcher | None = None,
        locks: ApplicationLocks | None = None,
        today: Callable[[], date] = date.today,
        runner: BackgroundRunner | None = None,
        cfg: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        cfg = cfg or app_settings
        self.session_factory = session_factory
        self.cbs_factory = cbs_factory
        self.dispatcher = dispatcher or CallbackDispatcher()
        self.locks = locks or application_locks
        self.today = today
        self.runner = runner
        self.cfg = cfg
        self.max_attempts = max(1, cfg.pipeline_max_attempts)
        self.retry_base = cfg.pipeline_retry_base_seconds
        self.retry_max = cfg.pipeline_retry_max_seconds
        self._sleep = sleep

    async def send_initial_approval(
        self,
        application_number: str,
        *,
        loan_number: str,
        total_amount_to_pay: Decimal,
        other_charges: Decimal,
        reason: str | None = None,
    ) -> DeliveryOutcome | None:
        context.set_application_number(application_number)
        async with self.session_factory() as db:
            application = await get_by_application_number(db, application_number)
            if application is None or status_of(application) is not S.RECEIVED:
                logger.info("Skipping initial approval for %s", application_number)
                return None
            message = notifications.initial_approval(
                application,
                loan_number=loan_number,
                total_amount_to_pay=total_amount_to_pay,
                other_charges=other_charges,
                reason=reason,
            )
            return await self.dispatcher.deliver(db, message, application=application)

    async def run_disbursement_pipeline(
        self, application_number: str, *, trigger: Trigger
    ) -> LoanApplicationStatus | None:
        """Client -> loan -> disbursement, resuming from whatever step was last confirmed.

        A run stopped by an unavailable CBS is recorded as deferred and, when
        a runner is attached, re-run after an exponential delay. Once
        ``pipeline_max_attempts`` runs have failed that way the application
        is moved to FAILED and ESS receives a disbursement failure.
        """
        context.set_application_number(application_number)
        async with self.locks.hold(application_number):
            async with self.session_factory() as db:
                application = await get_by_application_number(db, application_number, for_update=True)
                if application is None:
                    logger.warning("Pipeline requested for unknown application %s", application_number)
                    return None
                if status_of(application) not in IN_PROGRESS_STATES:
                    logger.info(
                        "Pipeline not applicable for %s at %s", application_number, application.status
                    )
                    return status_of(application)

                async with self.cbs_factory() as cbs:
                    orchestrator = CbsOrchestrator(db, cbs, today=self.today)
                    try:
                        result = await self._advance(db, application, orchestrator, trigger)
                    except CbsRetryableError as exc:
                        return await self._defer(db, application, exc, trigger=trigger)
                    except CbsTerminalError as exc:
                        return await self._fail(
                            db, application, reason=exc.message, operation=exc.operation, trigger=trigger
                        )

                message = notifications.disbursement(
                    application,
                    total_amount_to_pay=result.total_amount_to_pay,
                    disbursed_on=result.disbursed_on,
                )
                await self.dispatcher.deliver(db, message, application=application)
                return status_of(application)

    async def _fail(
        self,
        db: AsyncSession,
        application: LoanApplication,
        *,
        reason: str,
        operation: str | None,
        trigger: Trigger,
    ) -> LoanApplicationStatus:
        await transition(
            db,
            application,
            S.FAILED,
            trigger=trigger,
            event_value={"reason": reason, "operation": operation},
        )
        message = notifications.disbursement_failure(application, reason=reason)
        await self.dispatcher.deliver(db, message, application=application)
        return S.FAILED

    async def _defer(
        self,
        db: AsyncSession,
        application: LoanApplication,
        exc: CbsRetryableError,
        *,
        trigger: Trigger,
    ) -> LoanApplicationStatus:
        number = application.ess_application_number
        attempt = len(await list_events(db, application, key=LoanEventKey.PIPELINE_DEFERRED)) + 1
        if attempt >= self.max_attempts:
            logger.error("CBS still unavailable for %s after %s attempts; failing", number, attempt)
            return await self._fail(
                db,
                application,
                reason=f"CBS unavailable after {attempt} attempts: {exc.message}",
                operation=exc.operation,
                trigger=trigger,
            )

        delay = min(self.retry_base * (2 ** (attempt - 1)), self.retry_max)
        record_event(
            db,
            application,
            LoanEventKey.PIPELINE_DEFERRED,
            {"attempt": attempt, "operation": exc.operation, "reason": exc.message, "retry_in_seconds": delay},
            source=trigger.source,
            message_id=trigger.message_id,
        )
        await db.commit()
        logger.warning(
            "CBS unavailable for %s at %s (attempt %s/%s): %s",
            number,
            application.status,
            attempt,
            self.max_attempts,
            exc,
        )
        if self.runner is None:
            logger.warning("No runner attached; %s waits for an operator retry", number)
        else:
            self.runner.spawn(
                partial(self._rerun_later, number, delay, trigger),
                name=f"pipeline-retry:{number}:{attempt}",
            )
        return status_of(application)

    async def _rerun_later(self, application_number: str, delay: float, trigger: Trigger) -> None:
        await self._sleep(delay)
        await self.run_disbursement_pipeline(application_number, trigger=trigger)

    async def _advance(
        self,
        db: AsyncSession,
        application: LoanApplication,
        orchestrator: CbsOrchestrator,
        trigger: Trigger,
    ) -> DisbursementResult:
        if status_of(application) is S.FINAL_APPROVAL_RECEIVED:
            client_id = await orchestrator.create_client(application)
            await transition(db, application, S.CLIENT_CREATED, trigger=trigger, changes={"cbs_client_id": client_id})
        if status_of(application) is S.CLIENT_CREATED:
            loan_id = await orchestrator.create_loan(application)
            await transition(db, application, S.LOAN_CREATED, trigger=trigger, changes={"cbs_loan_id": loan_id})
        result = await orchestrator.disburse(application)
        changes = {}
        if result.account_number:
            changes["cbs_loan_account_number"] = result.account_number
        await transition(
            db,
            application,
            S.DISBURSED,
            trigger=trigger,
            changes=changes,
            event_value={"already_disbursed": result.already_disbursed},
        )
        return result

    async def cancel(self, db: AsyncSession, application: LoanApplication, *, trigger: Trigger, reason: str | None) -> None:
        """Cancel before disbursement, rejecting any CBS loan first as compensation."""
        assert_transition(status_of(application), S.CANCELLED, trigger=trigger)
        if application.cbs_loan_id:
            async with self.cbs_factory() as cbs:
                orchestrator = CbsOrchestrator(db, cbs, today=self.today)
                try:
                    await orchestrator.reject_loan(application, reason=reason)
                    outcome = {"action": "reject_loan", "ok": True}
                except CbsError as exc:
                    outcome = {"action": "reject_loan", "ok": False, "reason": exc.message}
            record_event(
                db,
                application,
                LoanEventKey.COMPENSATION,
                {**outcome, "cbs_loan_id": application.cbs_loan_id},
                source=trigger.source,
                message_id=trigger.message_id,
            )
        await transition(db, application, S.CANCELLED, trigger=trigger, event_value={"reason": reason})

    async def liquidate(
        self, application_number: str, *, trigger: Trigger, reason: str | None = None
    ) -> LiquidationOutcome:
        context.set_application_number(application_number)
        async with self.locks.hold(application_number):
            async with self.session_factory() as db:
                application = await require_application(db, application_number, for_update=True)
                assert_transition(status_of(application), S.LIQUIDATED, trigger=trigger)
                async with self.cbs_factory() as cbs:
                    orchestrator = CbsOrchestrator(db, cbs, today=self.today)
                    try:
                        amount = await orchestrator.fetch_outstanding(application)
                    except CbsError:
                        await db.commit()
                        raise
                await transition(
                    db,
                    application,
                    S.LIQUIDATED,
                    trigger=trigger,
                    event_value={"liquidation_amount": amount, "reason": reason},
                )
                message = notifications.liquidation(
                    application, amount=amount, liquidated_on=self.today(), reason=reason
                )
                delivery = await self.dispatcher.deliver(db, message, application=application)
                return LiquidationOutcome(application=application, amount=amount, delivery=delivery)


    async def top_up_balance(
        self, loan_number: str, *, trigger: Trigger, receiver: str | None = None
    ) -> Message:
        """Quote the live payoff of a disbursed loan ESS wants to top up."""
        async with self.session_factory() as db:
            application = await find_by_loan_number(db, loan_number)
            if application is None or not application.cbs_loan_id or status_of(application) not in PAYOFF_STATES:
                raise ApplicationNotFoundError(
                    f"No disbursed loan {loan_number}", details={"loan_number": loan_number}
                )
            context.set_application_number(application.ess_application_number)
            async with self.cbs_factory() as cbs:
                orchestrator = CbsOrchestrator(db, cbs, today=self.today)
                try:
                    payoff = await orchestrator.fetch_payoff(application)
                except CbsError:
                    await db.commit()
                    raise

            final_payment_on = self.today() + timedelta(days=self.cfg.top_up_payoff_validity_days)
            reference = generate_payment_reference(application.cbs_loan_id)
            record_event(
                db,
                application,
                LoanEventKey.TOP_UP_BALANCE,
                {
                    "loan_number": loan_number,
                    "payment_reference": reference,
                    "total_payoff": payoff.total_payoff,
                    "principal_outstanding": payoff.principal_outstanding,
                    "valid_until": final_payment_on,
                },
                source=trigger.source,
                message_id=trigger.message_id,
            )
            await db.commit()
            logger.info("Quoted top-up payoff %s for %s", payoff.total_payoff, application.ess_application_number)
            return notifications.top_up_balance_response(
                application,
                loan_number=loan_number,
                payment_reference=reference,
                total_payoff=payoff.total_payoff,
                outstanding_balance=payoff.principal_outstanding,
                final_payment_on=final_payment_on,
                last_deduction_on=payoff.last_repayment_on,
                end_on=payoff.maturity_on,
                receiver=receiver,
            )

    async def mark_default(
        self, application_number: str, *, trigger: Trigger, reason: str | None = None
    ) -> LoanApplication:
        context.set_application_number(application_number)
        async with self.locks.hold(application_number):
            async with self.session_factory() as db:
                application = await require_application(db, application_number, for_update=True)
                return await transition(
                    db, application, S.DEFAULTED, trigger=trigger, event_value={"reason": reason}
                )

    async def retry(self, application_number: str, *, trigger: Trigger) -> LoanApplicationStatus | None:
        async with self.session_factory() as db:
            application = await require_application(db, application_number)
            status = status_of(application)
        if status not in IN_PROGRESS_STATES:
            raise IllegalTransitionError(status.value, S.DISBURSED.value, trigger=trigger.source)
        return await self.run_disbursement_pipeline(application_number, trigger=trigger)
