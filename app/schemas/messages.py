from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageType(str, Enum):
    RESPONSE = "RESPONSE"
    LOAN_CHARGES_REQUEST = "LOAN_CHARGES_REQUEST"
    LOAN_CHARGES_RESPONSE = "LOAN_CHARGES_RESPONSE"
    LOAN_OFFER_REQUEST = "LOAN_OFFER_REQUEST"
    LOAN_INITIAL_APPROVAL_NOTIFICATION = "LOAN_INITIAL_APPROVAL_NOTIFICATION"
    LOAN_FINAL_APPROVAL_NOTIFICATION = "LOAN_FINAL_APPROVAL_NOTIFICATION"
    LOAN_CANCELLATION_NOTIFICATION = "LOAN_CANCELLATION_NOTIFICATION"
    LOAN_DISBURSEMENT_NOTIFICATION = "LOAN_DISBURSEMENT_NOTIFICATION"
    LOAN_DISBURSEMENT_FAILURE_NOTIFICATION = "LOAN_DISBURSEMENT_FAILURE_NOTIFICATION"
    LOAN_LIQUIDATION_NOTIFICATION = "LOAN_LIQUIDATION_NOTIFICATION"
    PAYMENT_ACKNOWLEDGMENT_NOTIFICATION = "PAYMENT_ACKNOWLEDGMENT_NOTIFICATION"
    TOP_UP_OFFER_REQUEST = "TOP_UP_OFFER_REQUEST"
    # ESS spells this type with a zero in "0FF".
    TOP_UP_PAY_0FF_BALANCE_REQUEST = "TOP_UP_PAY_0FF_BALANCE_REQUEST"
    LOAN_TOP_UP_BALANCE_RESPONSE = "LOAN_TOP_UP_BALANCE_RESPONSE"


class ResponseCode(str, Enum):
    SUCCESS = "8000"
    MISSING_HEADER = "8001"
    UNAUTHORIZED = "8002"
    INVALID_FSP_CODE = "8003"
    GENERAL_FAILURE = "8005"
    DUPLICATE = "8006"
    INVALID_SIGNATURE = "8009"
    SIGNATURE_CONFIGURATION = "8010"
    PROCESSING_ERROR = "8011"
    TRY_LATER = "8012"
    CODE_MISMATCH = "8014"
    INVALID_PRODUCT_CODE = "8018"
    INVALID_APPLICATION_NUMBER = "8019"


RESPONSE_DESCRIPTIONS: dict[str, str] = {
    "8000": "Successful/Received",
    "8001": "Required header is not given",
    "8002": "Unauthorized",
    "8003": "No valid FSP code",
    "8005": "General Failure",
    "8006": "Duplicate Request/Already received",
    "8009": "Invalid Signature",
    "8010": "Invalid Signature Configuration",
    "8011": "Error on processing request",
    "8012": "Request cannot be completed at this time, try later",
    "8014": "Invalid code, mismatch of supplied code on information and header",
    "8018": "Invalid product code",
    "8019": "Invalid Application number",
}


@dataclass(frozen=True)
class Header:
    sender: str
    receiver: str
    fsp_code: str
    msg_id: str
    message_type: str


@dataclass
class Message:
    """A decoded ``Data`` block: header plus ordered ``MessageDetails`` fields."""

    header: Header
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def message_type(self) -> str:
        return self.header.message_type

    @property
    def msg_id(self) -> str:
        return self.header.msg_id

    def get(self, name: str, default: Any = None) -> Any:
        value = self.details.get(name)
        if value is None or value == "":
            return default
        return value

    @property
    def application_number(self) -> str | None:
        return self.get("ApplicationNumber")


@dataclass
class UnknownMessageType(Message):
    """A well-formed message whose type has no field-order table."""
