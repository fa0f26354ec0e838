"""Translation between ESS ``Document`` XML and :class:`Message` values.

ESS validates child order inside ``MessageDetails``, so encoding always walks
:data:`FIELD_ORDER` for the message type and only then appends whatever extra
fields the caller supplied.
"""

from __future__ import annotations

import logging
import re
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Mapping, NamedTuple

from lxml import etree

from app.core.errors import MalformedMessageError
from app.schemas.messages import Header, Message, MessageType, UnknownMessageType

logger = logging.getLogger(__name__)

HEADER_ORDER: tuple[tuple[str, str], ...] = (
    ("Sender", "sender"),
    ("Receiver", "receiver"),
    ("FSPCode", "fsp_code"),
    ("MsgId", "msg_id"),
    ("MessageType", "message_type"),
)

FIELD_ORDER: dict[str, tuple[str, ...]] = {
    MessageType.RESPONSE.value: ("ResponseCode", "Description"),
    MessageType.LOAN_CHARGES_REQUEST.value: (
        "CheckNumber",
        "DesignationCode",
        "DesignationName",
        "BasicSalary",
        "NetSalary",
        "OneThirdAmount",
        "RequestedAmount",
        "DeductibleAmount",
        "DesiredDeductibleAmount",
        "RetirementDate",
        "TermsOfEmployment",
        "Tenure",
        "ProductCode",
        "VoteCode",
        "TotalEmployeeDeduction",
        "JobClassCode",
    ),
    MessageType.LOAN_CHARGES_RESPONSE.value: (
        "DesiredDeductibleAmount",
        "TotalInsurance",
        "TotalProcessingFees",
        "TotalInterestRateAmount",
        "OtherCharges",
        "NetLoanAmount",
        "TotalAmountToPay",
        "Tenure",
        "EligibleAmount",
        "MonthlyReturnAmount",
    ),
    MessageType.LOAN_OFFER_REQUEST.value: (
        "CheckNumber",
        "FirstName",
        "MiddleName",
        "LastName",
        "Sex",
        "EmploymentDate",
        "MaritalStatus",
        "ConfirmationDate",
        "BankAccountNumber",
        "NearestBranchName",
        "NearestBranchCode",
        "VoteCode",
        "VoteName",
        "NIN",
        "DesignationCode",
        "DesignationName",
        "BasicSalary",
        "NetSalary",
        "OneThirdAmount",
        "TotalEmployeeDeduction",
        "RetirementDate",
        "TermsOfEmployment",
        "RequestedAmount",
        "DesiredDeductibleAmount",
        "Tenure",
        "FSPCode",
        "ProductCode",
        "InterestRate",
        "ProcessingFee",
        "Insurance",
        "PhysicalAddress",
        "TelephoneNumber",
        "EmailAddress",
        "MobileNumber",
        "ApplicationNumber",
        "LoanPurpose",
        "ContractStartDate",
        "ContractEndDate",
        "SwiftCode",
        "Funding",
    ),
    MessageType.LOAN_INITIAL_APPROVAL_NOTIFICATION.value: (
        "ApplicationNumber",
        "Reason",
        "FSPReferenceNumber",
        "LoanNumber",
        "TotalAmountToPay",
        "OtherCharges",
        "Approval",
    ),
    MessageType.LOAN_FINAL_APPROVAL_NOTIFICATION.value: (
        "ApplicationNumber",
        "Reason",
        "FSPReferenceNumber",
        "LoanNumber",
        "Approval",
        "CheckNumber",
        "FirstName",
        "MiddleName",
        "LastName",
        "NIN",
        "MobileNumber",
        "Sex",
        "DateOfBirth",
        "BankAccountNumber",
        "LoanAmount",
        "Tenure",
    ),
    MessageType.LOAN_CANCELLATION_NOTIFICATION.value: (
        "ApplicationNumber",
        "Reason",
        "FSPReferenceNumber",
        "LoanNumber",
    ),
    MessageType.LOAN_DISBURSEMENT_NOTIFICATION.value: (
        "ApplicationNumber",
        "Reason",
        "FSPReferenceNumber",
        "LoanNumber",
        "TotalAmountToPay",
        "DisbursementDate",
    ),
    MessageType.LOAN_DISBURSEMENT_FAILURE_NOTIFICATION.value: ("ApplicationNumber", "Reason"),
    MessageType.LOAN_LIQUIDATION_NOTIFICATION.value: (
        "ApplicationNumber",
        "LoanNumber",
        "CheckNumber",
        "FSPReferenceNumber",
        "FirstName",
        "MiddleName",
        "LastName",
        "LiquidationAmount",
        "LiquidationDate",
        "Reason",
    ),
    MessageType.PAYMENT_ACKNOWLEDGMENT_NOTIFICATION.value: (
        "ApplicationNumber",
        "Remarks",
        "FSPReferenceNumber",
        "LoanNumber",
        "PaymentStatus",
    ),
    MessageType.TOP_UP_PAY_0FF_BALANCE_REQUEST.value: (
        "CheckNumber",
        "LoanNumber",
        "FirstName",
        "MiddleName",
        "LastName",
        "VoteCode",
        "VoteName",
        "DeductionAmount",
        "DeductionCode",
        "DeductionName",
        "DeductionBalance",
        "PaymentOption",
    ),
    MessageType.LOAN_TOP_UP_BALANCE_RESPONSE.value: (
        "LoanNumber",
        "FSPReferenceNumber",
        "PaymentReferenceNumber",
        "TotalPayoffAmount",
        "OutstandingBalance",
        "FinalPaymentDate",
        "LastDeductionDate",
        "LastPayDate",
        "EndDate",
    ),
}

# A top-up offer carries the full offer plus the loan being topped up.
FIELD_ORDER[MessageType.TOP_UP_OFFER_REQUEST.value] = (
    *FIELD_ORDER[MessageType.LOAN_OFFER_REQUEST.value],
    "ExistingLoanNumber",
)

_TWOPLACES = Decimal("0.01")


def _parser() -> etree.XMLParser:
    return etree.XMLParser(
        remove_blank_text=True,
        resolve_entities=False,
        no_network=True,
        huge_tree=False,
    )


def format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (Decimal, float)):
        return str(Decimal(str(value)).quantize(_TWOPLACES, rounding=ROUND_HALF_UP))
    if isinstance(value, datetime):
        return value.replace(microsecond=0).isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def ordered_fields(message_type: str, details: Mapping[str, Any]) -> list[tuple[str, Any]]:
    order = FIELD_ORDER.get(message_type, ())
    known = [(name, details[name]) for name in order if name in details]
    extra = [(name, value) for name, value in details.items() if name not in order]
    return [(name, value) for name, value in known + extra if value is not None]


def _append_value(parent: etree._Element, name: str, value: Any) -> None:
    if isinstance(value, Mapping):
        child = etree.SubElement(parent, name)
        for key, nested in value.items():
            if nested is not None:
                _append_value(child, key, nested)
        return
    if isinstance(value, (list, tuple)):
        for item in value:
            _append_value(parent, name, item)
        return
    etree.SubElement(parent, name).text = format_value(value)


def build_data_element(message: Message) -> etree._Element:
    data = etree.Element("Data")
    header = etree.SubElement(data, "Header")
    for tag, attr in HEADER_ORDER:
        etree.SubElement(header, tag).text = getattr(message.header, attr) or ""
    details = etree.SubElement(data, "MessageDetails")
    for name, value in ordered_fields(message.message_type, message.details):
        _append_value(details, name, value)
    return data


def encode(message: Message) -> bytes:
    """Unsigned ``Document`` bytes; use :func:`app.core.signing.build_signed_document` for the wire."""
    document = etree.Element("Document")
    document.append(build_data_element(message))
    return etree.tostring(document, encoding="UTF-8", xml_declaration=True)


def _element_value(element: etree._Element) -> Any:
    children = list(element)
    if not children:
        return (element.text or "").strip()
    result: dict[str, Any] = {}
    for child in children:
        if not isinstance(child.tag, str):
            continue
        value = _element_value(child)
        if child.tag in result:
            existing = result[child.tag]
            if not isinstance(existing, list):
                result[child.tag] = [existing]
            result[child.tag].append(value)
        else:
            result[child.tag] = value
    return result


def _find_data(root: etree._Element) -> etree._Element:
    if root.tag == "Data":
        return root
    if root.tag == "Document":
        data = root.find("Data")
        if data is not None:
            return data
        raise MalformedMessageError("Document has no Data element")
    raise MalformedMessageError(f"Unexpected root element {root.tag!r}")


def parse_document(xml_bytes: bytes | str) -> etree._Element:
    if isinstance(xml_bytes, str):
        xml_bytes = xml_bytes.encode("utf-8")
    if not xml_bytes or not xml_bytes.strip():
        raise MalformedMessageError("Empty request body")
    try:
        return etree.fromstring(xml_bytes, parser=_parser())
    except etree.XMLSyntaxError as exc:
        raise MalformedMessageError(f"Invalid XML: {exc}") from exc


def message_from_data(data: etree._Element) -> Message:
    header_el = data.find("Header")
    if header_el is None:
        raise MalformedMessageError("Data has no Header element")
    details_el = data.find("MessageDetails")
    if details_el is None:
        raise MalformedMessageError("Data has no MessageDetails element")

    values = {tag: (header_el.findtext(tag) or "").strip() for tag, _ in HEADER_ORDER}
    if not values["MessageType"]:
        raise MalformedMessageError("Header has no MessageType")
    header = Header(**{attr: values[tag] for tag, attr in HEADER_ORDER})

    details = _element_value(details_el)
    if not isinstance(details, dict):
        details = {}

    if header.message_type not in FIELD_ORDER:
        logger.info("Decoded message of unsupported type %s", header.message_type)
        return UnknownMessageType(header=header, details=details)
    return Message(header=header, details=details)


class DecodedDocument(NamedTuple):
    """A received document; ``signed_bytes`` is its ``<Data>...</Data>`` exactly as sent."""

    message: Message
    data: etree._Element
    signature: str | None
    signed_bytes: bytes | None


_DATA_START = re.compile(rb"<Data(?:\s[^>]*)?>")
_DATA_END_TAG = b"</Data>"


def data_span(xml_bytes: bytes) -> bytes | None:
    """Slice the first ``<Data>`` start tag through the last ``</Data>`` out of the raw body."""
    start = _DATA_START.search(xml_bytes)
    if start is None:
        return None
    end = xml_bytes.rfind(_DATA_END_TAG)
    if end < start.end():
        return None
    return xml_bytes[start.start() : end + len(_DATA_END_TAG)]


def decode_document(xml_bytes: bytes | str) -> DecodedDocument:
    """Parse a received body into its message, ``Data`` element, ``Signature`` text and signed bytes."""
    if isinstance(xml_bytes, str):
        xml_bytes = xml_bytes.encode("utf-8")
    root = parse_document(xml_bytes)
    data = _find_data(root)
    signature = root.findtext("Signature") if root.tag == "Document" else None
    return DecodedDocument(
        message=message_from_data(data),
        data=data,
        signature=(signature or "").strip() or None,
        signed_bytes=data_span(xml_bytes),
    )


def decode(xml_bytes: bytes | str) -> Message:
    return decode_document(xml_bytes).message
