from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class LoanApplicationStatus(str, Enum):
    RECEIVED = "RECEIVED"
    FINAL_APPROVAL_RECEIVED = "FINAL_APPROVAL_RECEIVED"
    CLIENT_CREATED = "CLIENT_CREATED"
    LOAN_CREATED = "LOAN_CREATED"
    DISBURSED = "DISBURSED"
    LIQUIDATED = "LIQUIDATED"
    DEFAULTED = "DEFAULTED"
    SETTLED = "SETTLED"
    FAILED = "FAILED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


class LoanEventKey(str, Enum):
    INBOUND_MESSAGE = "inbound_message"
    OFFER_TERMS = "offer_terms"
    TRANSITION = "transition"
    BORROWER_SNAPSHOT = "borrower_snapshot"
    CBS_CALL = "cbs_call"
    CBS_ERROR = "cbs_error"
    COMPENSATION = "compensation"
    NOTIFICATION = "notification"
    DUPLICATE_MESSAGE = "duplicate_message"
    PAYMENT_ACKNOWLEDGMENT = "payment_acknowledgment"
    OPERATOR_ACTION = "operator_action"
    PIPELINE_DEFERRED = "pipeline_deferred"
    TOP_UP_BALANCE = "top_up_balance"


class OutboundMessageStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    REJECTED = "REJECTED"
    UNDELIVERED = "UNDELIVERED"
    RESENT = "RESENT"


class LoanApplicationEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    key: str
    value: Any
    source: str | None = None
    message_id: str | None = None
    created_at: datetime | None = None


class LoanApplicationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, json_encoders={Decimal: lambda value: str(value)})

    id: UUID
    ess_application_number: str
    ess_check_number: str | None = None
    fsp_reference_number: str
    ess_loan_number_alias: str | None = None
    product_code: str | None = None
    requested_amount: Decimal | None = None
    tenure_months: int | None = None
    cbs_client_id: str | None = None
    cbs_loan_id: str | None = None
    cbs_loan_account_number: str | None = None
    borrower_name: str | None = None
    borrower_mobile_number: str | None = None
    borrower_captured_at: datetime | None = None
    status: LoanApplicationStatus
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None
    status_changed_at: datetime | None = None


class LoanApplicationDetail(BaseModel):
    application: LoanApplicationRead
    events: list[LoanApplicationEventRead] = Field(default_factory=list)


class OperatorActionRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class LiquidationResult(BaseModel):
    model_config = ConfigDict(json_encoders={Decimal: lambda value: str(value)})

    application_number: str
    status: LoanApplicationStatus
    liquidation_amount: Decimal
    notification_status: str | None = None


class OutboundMessageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    message_id: str
    message_type: str
    application_number: str | None = None
    status: OutboundMessageStatus
    attempts: int
    last_error: str | None = None
    response_code: str | None = None
    created_at: datetime | None = None
    delivered_at: datetime | None = None


class ResendSummary(BaseModel):
    attempted: int
    resent: int
    still_undelivered: int


class DeliveryOutcomeRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    message_id: str
    status: OutboundMessageStatus
    attempts: int
    response_code: str | None = None
    error: str | None = None


class PipelineRunResult(BaseModel):
    application_number: str
    status: LoanApplicationStatus | None = None
