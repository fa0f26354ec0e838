"""Builders for the messages the FSP sends to ESS."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from app.core.settings import settings
from app.models.loan_application import LoanApplication
from app.schemas.messages import RESPONSE_DESCRIPTIONS, Header, Message, MessageType, ResponseCode
from app.services.message_ids import new_message_id


def outbound_header(message_type: MessageType | str, *, receiver: str | None = None) -> Header:
    type_value = message_type.value if isinstance(message_type, MessageType) else message_type
    return Header(
        sender=settings.fsp_name,
        receiver=receiver or settings.ess_sender_name,
        fsp_code=settings.fsp_code,
        msg_id=new_message_id(type_value),
        message_type=type_value,
    )


def response_message(
    code: ResponseCode | str,
    description: str | None = None,
    *,
    receiver: str | None = None,
) -> Message:
    code_value = code.value if isinstance(code, ResponseCode) else str(code)
    return Message(
        header=outbound_header(MessageType.RESPONSE, receiver=receiver),
        details={
            "ResponseCode": code_value,
            "Description": description or RESPONSE_DESCRIPTIONS.get(code_value, "Error on processing request"),
        },
    )


def charges_response(details: dict[str, Any], *, receiver: str | None = None) -> Message:
    return Message(header=outbound_header(MessageType.LOAN_CHARGES_RESPONSE, receiver=receiver), details=details)


def initial_approval(
    application: LoanApplication,
    *,
    loan_number: str,
    total_amount_to_pay: Decimal,
    other_charges: Decimal,
    approved: bool = True,
    reason: str | None = None,
) -> Message:
    return Message(
        header=outbound_header(MessageType.LOAN_INITIAL_APPROVAL_NOTIFICATION),
        details={
            "ApplicationNumber": application.ess_application_number,
            "Reason": reason or ("Loan Request Approved" if approved else "Loan Request Rejected"),
            "FSPReferenceNumber": application.fsp_reference_number,
            "LoanNumber": loan_number,
            "TotalAmountToPay": total_amount_to_pay,
            "OtherCharges": other_charges,
            "Approval": "APPROVED" if approved else "REJECTED",
        },
    )


def disbursement(
    application: LoanApplication,
    *,
    total_amount_to_pay: Decimal | None,
    disbursed_on: date | datetime,
) -> Message:
    return Message(
        header=outbound_header(MessageType.LOAN_DISBURSEMENT_NOTIFICATION),
        details={
            "ApplicationNumber": application.ess_application_number,
            "Reason": "Loan disbursed successfully",
            "FSPReferenceNumber": application.fsp_reference_number,
            "LoanNumber": application.ess_loan_number_alias or application.cbs_loan_account_number,
            "TotalAmountToPay": total_amount_to_pay,
            "DisbursementDate": disbursed_on,
        },
    )


def disbursement_failure(application: LoanApplication, *, reason: str) -> Message:
    return Message(
        header=outbound_header(MessageType.LOAN_DISBURSEMENT_FAILURE_NOTIFICATION),
        details={"ApplicationNumber": application.ess_application_number, "Reason": reason},
    )


def liquidation(
    application: LoanApplication,
    *,
    amount: Decimal,
    liquidated_on: date,
    reason: str | None = None,
) -> Message:
    return Message(
        header=outbound_header(MessageType.LOAN_LIQUIDATION_NOTIFICATION),
        details={
            "ApplicationNumber": application.ess_application_number,
            "LoanNumber": application.ess_loan_number_alias or application.cbs_loan_account_number,
            "CheckNumber": application.ess_check_number,
            "FSPReferenceNumber": application.fsp_reference_number,
            "FirstName": application.borrower_first_name,
            "MiddleName": application.borrower_middle_name,
            "LastName": application.borrower_last_name,
            "LiquidationAmount": amount,
            "LiquidationDate": liquidated_on,
            "Reason": reason or "Loan liquidated",
        },
    )


def top_up_balance_response(
    application: LoanApplication,
    *,
    loan_number: str,
    payment_reference: str,
    total_payoff: Decimal,
    outstanding_balance: Decimal,
    final_payment_on: date,
    last_deduction_on: date | None,
    end_on: date | None,
    receiver: str | None = None,
) -> Message:
    return Message(
        header=outbound_header(MessageType.LOAN_TOP_UP_BALANCE_RESPONSE, receiver=receiver),
        details={
            "LoanNumber": loan_number,
            "FSPReferenceNumber": application.fsp_reference_number,
            "PaymentReferenceNumber": payment_reference,
            "TotalPayoffAmount": total_payoff,
            "OutstandingBalance": outstanding_balance,
            "FinalPaymentDate": final_payment_on,
            "LastDeductionDate": last_deduction_on or final_payment_on,
            "LastPayDate": last_deduction_on or final_payment_on,
            "EndDate": end_on or final_payment_on,
        },
    )
