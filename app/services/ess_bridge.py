"""Inbound ESS message handling: decode, verify, correlate, route.

:meth:`EssBridge.process` never raises. Every outcome, failures included,
becomes a ``RESPONSE`` (or ``LOAN_CHARGES_RESPONSE``) message plus an HTTP
status. Work that talks to the CBS or back to ESS is returned as follow-ups
for the caller to run after the response has been sent.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from app.core import context, signing
from app.core.errors import (
    BridgeError,
    IllegalTransitionError,
    MalformedMessageError,
    SignatureVerificationError,
    SigningKeyError,
)
from app.core.settings import Settings, settings as app_settings
from app.models.loan_application import LoanApplication
from app.schemas.loan import LoanApplicationStatus, LoanEventKey
from app.schemas.messages import Message, MessageType, ResponseCode, UnknownMessageType
from app.services import message_codec, notifications
from app.services.affordability import (
    AffordabilityResult,
    LoanProductTerms,
    calculate_affordability,
    request_from_details,
)
from app.services.application_events import list_events, record_event, seal_pii, unseal_pii
from app.services.background import BackgroundRunner
from app.services.loan_applications import (
    create_application,
    find_for_message,
    generate_loan_number,
    get_by_application_number,
    require_application,
    to_decimal,
    to_int,
)
from app.services.loan_lifecycle import BORROWER_FIELDS, LoanLifecycle, borrower_changes
from app.services.loan_state import (
    IN_PROGRESS_STATES,
    PRE_DISBURSEMENT_STATES,
    Trigger,
    status_of,
    transition,
)

logger = logging.getLogger(__name__)

S = LoanApplicationStatus

UNSUPPORTED_DESCRIPTION = "Message type not supported; received"

FollowUp = Callable[[], Awaitable[Any]]


@dataclass
class InboundResult:
    message: Message
    status_code: int = 200
    follow_ups: list[tuple[str, FollowUp]] = field(default_factory=list)


@dataclass(frozen=True)
class SignedReply:
    body: bytes
    status_code: int


def _ack(description: str | None = None, *, receiver: str | None = None) -> InboundResult:
    return InboundResult(notifications.response_message(ResponseCode.SUCCESS, description, receiver=receiver))


def _failure(exc: BridgeError, *, status_code: int = 400, receiver: str | None = None) -> InboundResult:
    return InboundResult(
        notifications.response_message(exc.response_code, exc.message, receiver=receiver),
        status_code=status_code,
    )


class EssBridge:
    def __init__(
        self,
        *,
        lifecycle: LoanLifecycle | None = None,
        runner: BackgroundRunner | None = None,
        terms: LoanProductTerms | None = None,
        cfg: Settings | None = None,
    ) -> None:
        self.lifecycle = lifecycle or LoanLifecycle()
        self.runner = runner or BackgroundRunner()
        self.cfg = cfg or app_settings
        self.terms = terms or LoanProductTerms.from_settings(self.cfg)
        self._handlers: dict[str, Callable[[Message], Awaitable[InboundResult]]] = {
            MessageType.LOAN_CHARGES_REQUEST.value: self._handle_charges,
            MessageType.LOAN_OFFER_REQUEST.value: self._handle_offer,
            MessageType.TOP_UP_OFFER_REQUEST.value: self._handle_top_up_offer,
            MessageType.TOP_UP_PAY_0FF_BALANCE_REQUEST.value: self._handle_top_up_balance,
            MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION.value: self._handle_final_approval,
            MessageType.LOAN_CANCELLATION_NOTIFICATION.value: self._handle_cancellation,
            MessageType.PAYMENT_ACKNOWLEDGMENT_NOTIFICATION.value: self._handle_payment_acknowledgment,
        }

    @property
    def session_factory(self):
        return self.lifecycle.session_factory

    @property
    def locks(self):
        return self.lifecycle.locks

    async def handle(self, body: bytes) -> SignedReply:
        """Process, sign the reply and schedule follow-ups on the background runner."""
        result = await self.process(body)
        try:
            payload = signing.build_signed_document(result.message)
            status_code = result.status_code
        except SigningKeyError:
            logger.exception("Cannot sign reply %s", result.message.message_type)
            fallback = notifications.response_message(ResponseCode.SIGNATURE_CONFIGURATION)
            return SignedReply(message_codec.encode(fallback), 500)
        for name, follow_up in result.follow_ups:
            self.runner.spawn(follow_up, name=name)
        return SignedReply(payload, status_code)

    async def process(self, body: bytes) -> InboundResult:
        try:
            decoded = message_codec.decode_document(body)
        except MalformedMessageError as exc:
            logger.warning("Rejected malformed message: %s", exc)
            return _failure(exc)

        message = decoded.message
        context.set_message_id(message.msg_id)
        context.set_application_number(message.application_number)
        receiver = message.header.sender or None
        logger.info("Received %s %s", message.message_type, message.msg_id)

        try:
            signing.require_valid_signature(decoded)
        except SignatureVerificationError as exc:
            logger.warning("Rejected %s %s: %s", message.message_type, message.msg_id, exc)
            return _failure(exc, receiver=receiver)

        handler = self._handlers.get(message.message_type)
        if handler is None or isinstance(message, UnknownMessageType):
            logger.info("Acknowledging unsupported message type %s", message.message_type)
            return _ack(UNSUPPORTED_DESCRIPTION, receiver=receiver)

        try:
            return await handler(message)
        except IllegalTransitionError as exc:
            return _failure(exc, status_code=200, receiver=receiver)
        except BridgeError as exc:
            logger.warning("Could not process %s %s: %s", message.message_type, message.msg_id, exc)
            status_code = exc.http_status if exc.http_status >= 500 else 400
            return _failure(exc, status_code=status_code, receiver=receiver)
        except Exception:
            logger.exception("Unexpected error processing %s %s", message.message_type, message.msg_id)
            return InboundResult(
                notifications.response_message(ResponseCode.PROCESSING_ERROR, receiver=receiver),
                status_code=500,
            )

    @staticmethod
    def _require_application_number(message: Message) -> str:
        number = message.application_number
        if not number:
            raise MalformedMessageError(f"{message.message_type} requires ApplicationNumber")
        return number

    def _affordability(self, message: Message) -> AffordabilityResult:
        return calculate_affordability(request_from_details(message.details), self.terms)

    async def _handle_charges(self, message: Message) -> InboundResult:
        result = self._affordability(message)
        logger.info(
            "Charges quoted: mode=%s eligible=%s monthly=%s tenure=%s",
            result.mode.value,
            result.eligible_amount,
            result.monthly_return_amount,
            result.tenure_months,
        )
        reply = notifications.charges_response(
            result.charges_response_details(), receiver=message.header.sender or None
        )
        return InboundResult(reply)

    async def _handle_offer(self, message: Message) -> InboundResult:
        return await self._open_offer(message)

    async def _handle_top_up_offer(self, message: Message) -> InboundResult:
        existing_loan = message.get("ExistingLoanNumber") or message.get("LoanNumber")
        if not existing_loan:
            raise MalformedMessageError("TOP_UP_OFFER_REQUEST requires ExistingLoanNumber")
        return await self._open_offer(
            message,
            terms={"offer_type": "TOP_UP", "existing_loan_number": existing_loan},
            reason="Top-Up Loan Request Approved",
        )

    async def _open_offer(
        self, message: Message, *, terms: dict[str, Any] | None = None, reason: str | None = None
    ) -> InboundResult:
        number = self._require_application_number(message)
        result = self._affordability(message)
        requested = to_decimal(message.get("RequestedAmount"))
        if not requested:
            requested = result.eligible_amount
        loan_number = generate_loan_number()
        borrower = {source: message.get(source) for source, _ in BORROWER_FIELDS}

        async with self.locks.hold(number):
            async with self.session_factory() as db:
                if terms:
                    # A top-up carries the old loan's LoanNumber; only the new application number identifies it.
                    existing = await get_by_application_number(db, number, for_update=True)
                else:
                    existing = await find_for_message(db, message)
                if existing is not None:
                    await self._record_duplicate(db, existing, message)
                    return InboundResult(
                        notifications.response_message(ResponseCode.DUPLICATE, receiver=message.header.sender or None)
                    )
                await create_application(
                    db,
                    message,
                    fields={
                        "ess_check_number": message.get("CheckNumber"),
                        "product_code": message.get("ProductCode") or self.cfg.loan_default_product_code,
                        "requested_amount": requested,
                        "tenure_months": result.tenure_months,
                    },
                    events=[
                        (
                            LoanEventKey.OFFER_TERMS,
                            {
                                "proposed_loan_number": loan_number,
                                "mode": result.mode.value,
                                "eligible_amount": result.eligible_amount,
                                "monthly_return_amount": result.monthly_return_amount,
                                "total_amount_to_pay": result.charges.total_amount_to_pay,
                                "borrower": seal_pii(borrower),
                                **(terms or {}),
                            },
                        )
                    ],
                )

        follow_up = partial(
            self.lifecycle.send_initial_approval,
            number,
            loan_number=loan_number,
            total_amount_to_pay=result.charges.total_amount_to_pay,
            other_charges=result.charges.other_charges,
            reason=reason,
        )
        response = _ack(receiver=message.header.sender or None)
        response.follow_ups.append((f"initial-approval:{number}", follow_up))
        return response

    async def _record_duplicate(self, db: AsyncSession, application: LoanApplication, message: Message) -> None:
        record_event(
            db,
            application,
            LoanEventKey.DUPLICATE_MESSAGE,
            {"message_type": message.message_type, "status": application.status},
            source=message.message_type,
            message_id=message.msg_id,
        )
        await db.commit()
        logger.info(
            "Duplicate %s for %s at %s", message.message_type, application.ess_application_number, application.status
        )

    async def _offer_borrower(self, db: AsyncSession, application: LoanApplication) -> dict[str, Any]:
        events = await list_events(db, application, key=LoanEventKey.OFFER_TERMS)
        if not events:
            return {}
        return unseal_pii((events[-1].value or {}).get("borrower") or {})

    async def _borrower_for(self, db: AsyncSession, application: LoanApplication | None, message: Message) -> dict[str, Any]:
        borrower = {}
        if application is not None:
            borrower = await self._offer_borrower(db, application)
        for source, _ in BORROWER_FIELDS:
            value = message.get(source)
            if value is not None:
                borrower[source] = value
        return borrower

    @staticmethod
    def _approval_terms(message: Message) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        amount = to_decimal(message.get("LoanAmount"), default=None)
        if amount:
            changes["requested_amount"] = amount
        tenure = to_int(message.get("Tenure"))
        if tenure:
            changes["tenure_months"] = tenure
        if message.get("LoanNumber"):
            changes["ess_loan_number_alias"] = message.get("LoanNumber")
        if message.get("CheckNumber"):
            changes["ess_check_number"] = message.get("CheckNumber")
        return changes

    async def _handle_final_approval(self, message: Message) -> InboundResult:
        number = self._require_application_number(message)
        trigger = Trigger.from_message(message)
        approval = str(message.get("Approval", "APPROVED")).strip().upper()
        receiver = message.header.sender or None

        async with self.locks.hold(number):
            async with self.session_factory() as db:
                application = await find_for_message(db, message)

                if approval != "APPROVED":
                    if application is None:
                        logger.info("Final rejection for unknown application %s acknowledged", number)
                        return _ack(receiver=receiver)
                    await transition(
                        db, application, S.REJECTED, trigger=trigger, event_value={"reason": message.get("Reason")}
                    )
                    return _ack(receiver=receiver)

                if application is None:
                    borrower = await self._borrower_for(db, None, message)
                    await create_application(
                        db,
                        message,
                        fields={
                            "product_code": self.cfg.loan_default_product_code,
                            "requested_amount": to_decimal(message.get("LoanAmount")),
                            **self._approval_terms(message),
                            **borrower_changes(borrower),
                        },
                        event_value={"created_via": "final_approval_without_offer"},
                    )
                elif status_of(application) is S.RECEIVED:
                    borrower = await self._borrower_for(db, application, message)
                    changes = self._approval_terms(message)
                    if application.borrower_captured_at is None:
                        changes.update(borrower_changes(borrower))
                    await transition(db, application, S.FINAL_APPROVAL_RECEIVED, trigger=trigger, changes=changes)
                elif status_of(application) in IN_PROGRESS_STATES:
                    await self._record_duplicate(db, application, message)
                else:
                    await self._record_duplicate(db, application, message)
                    return _ack("Duplicate Request/Already received", receiver=receiver)

        response = _ack(receiver=receiver)
        response.follow_ups.append(
            (
                f"disbursement:{number}",
                partial(self.lifecycle.run_disbursement_pipeline, number, trigger=trigger),
            )
        )
        return response

    async def _handle_cancellation(self, message: Message) -> InboundResult:
        number = self._require_application_number(message)
        trigger = Trigger.from_message(message)
        async with self.locks.hold(number):
            async with self.session_factory() as db:
                application = await find_for_message(db, message)
                if application is None:
                    application = await require_application(db, number)
                if status_of(application) not in PRE_DISBURSEMENT_STATES:
                    await self._record_duplicate(db, application, message)
                    return InboundResult(
                        notifications.response_message(
                            ResponseCode.DUPLICATE,
                            f"Loan cannot be cancelled at status {application.status}",
                            receiver=message.header.sender or None,
                        )
                    )
                await self.lifecycle.cancel(db, application, trigger=trigger, reason=message.get("Reason"))
        return _ack(receiver=message.header.sender or None)

    async def _handle_payment_acknowledgment(self, message: Message) -> InboundResult:
        number = self._require_application_number(message)
        trigger = Trigger.from_message(message)
        payment_status = str(message.get("PaymentStatus", "")).strip().upper()
        async with self.locks.hold(number):
            async with self.session_factory() as db:
                application = await find_for_message(db, message)
                if application is None:
                    application = await require_application(db, number)
                record_event(
                    db,
                    application,
                    LoanEventKey.PAYMENT_ACKNOWLEDGMENT,
                    {"payment_status": payment_status, "remarks": message.get("Remarks")},
                    source=trigger.source,
                    message_id=trigger.message_id,
                )
                if payment_status == "SETTLED":
                    await transition(db, application, S.SETTLED, trigger=trigger)
                else:
                    await db.commit()
        return _ack(receiver=message.header.sender or None)

    async def _handle_top_up_balance(self, message: Message) -> InboundResult:
        loan_number = message.get("LoanNumber")
        if not loan_number:
            raise MalformedMessageError("TOP_UP_PAY_0FF_BALANCE_REQUEST requires LoanNumber")
        reply = await self.lifecycle.top_up_balance(
            str(loan_number), trigger=Trigger.from_message(message), receiver=message.header.sender or None
        )
        return InboundResult(reply)
