from datetime import date
from decimal import Decimal

import pytest
from lxml import etree

from app.core.errors import MalformedMessageError
from app.schemas.messages import Header, Message, UnknownMessageType
from app.services import message_codec
from app.services.message_codec import FIELD_ORDER


def _header(message_type: str) -> Header:
    return Header(
        sender="ESS_UTUMISHI",
        receiver="ZE DONE",
        fsp_code="FL8090",
        msg_id="ESS_ZD2601150000000100",
        message_type=message_type,
    )


@pytest.mark.parametrize("message_type", sorted(FIELD_ORDER))
def test_round_trip_preserves_every_field_and_order(message_type):
    details = {name: f"{name}-value" for name in FIELD_ORDER[message_type]}
    message = Message(header=_header(message_type), details=details)

    decoded = message_codec.decode(message_codec.encode(message))

    assert decoded == message
    assert list(decoded.details) == list(FIELD_ORDER[message_type])


def test_encode_emits_table_order_regardless_of_insertion_order():
    message = Message(
        header=_header("LOAN_INITIAL_APPROVAL_NOTIFICATION"),
        details={
            "Approval": "APPROVED",
            "LoanNumber": "LOAN1",
            "ApplicationNumber": "ESS1",
            "Reason": "ok",
        },
    )
    data = message_codec.build_data_element(message)
    tags = [child.tag for child in data.find("MessageDetails")]
    assert tags == ["ApplicationNumber", "Reason", "LoanNumber", "Approval"]


def test_extra_fields_follow_known_fields_and_none_is_dropped():
    message = Message(
        header=_header("RESPONSE"),
        details={"Custom": "x", "Description": None, "ResponseCode": "8000"},
    )
    fields = message_codec.ordered_fields("RESPONSE", message.details)
    assert fields == [("ResponseCode", "8000"), ("Custom", "x")]


def test_format_value_renders_money_dates_and_booleans():
    assert message_codec.format_value(Decimal("10")) == "10.00"
    assert message_codec.format_value(1234.565) == "1234.57"
    assert message_codec.format_value(True) == "true"
    assert message_codec.format_value(date(2026, 1, 15)) == "2026-01-15"
    assert message_codec.format_value(96) == "96"


def test_header_order_is_fixed():
    data = message_codec.build_data_element(Message(header=_header("RESPONSE"), details={}))
    assert [child.tag for child in data.find("Header")] == [
        "Sender",
        "Receiver",
        "FSPCode",
        "MsgId",
        "MessageType",
    ]


def test_encode_has_no_pretty_printing():
    message = Message(header=_header("RESPONSE"), details={"ResponseCode": "8000"})
    encoded = message_codec.encode(message)
    assert b"\n" not in encoded[encoded.index(b"<Document"):]


def test_decode_accepts_bare_data_root():
    xml = (
        b"<Data><Header><Sender>ESS_UTUMISHI</Sender><Receiver>ZE DONE</Receiver>"
        b"<FSPCode>FL8090</FSPCode><MsgId>M1</MsgId><MessageType>RESPONSE</MessageType></Header>"
        b"<MessageDetails><ResponseCode>8000</ResponseCode></MessageDetails></Data>"
    )
    message = message_codec.decode(xml)
    assert message.message_type == "RESPONSE"
    assert message.get("ResponseCode") == "8000"


def test_decode_ignores_formatting_whitespace():
    xml = b"""<?xml version="1.0" encoding="UTF-8"?>
<Document>
  <Data>
    <Header>
      <Sender>ESS_UTUMISHI</Sender>
      <Receiver>ZE DONE</Receiver>
      <FSPCode>FL8090</FSPCode>
      <MsgId>M1</MsgId>
      <MessageType>LOAN_CANCELLATION_NOTIFICATION</MessageType>
    </Header>
    <MessageDetails>
      <ApplicationNumber>ESS1</ApplicationNumber>
      <Reason>Changed mind</Reason>
    </MessageDetails>
  </Data>
  <Signature>abc</Signature>
</Document>"""
    message, data, signature, signed_bytes = message_codec.decode_document(xml)
    assert message.application_number == "ESS1"
    assert message.get("Reason") == "Changed mind"
    assert signature == "abc"
    assert b"\n" not in etree.tostring(data)
    assert signed_bytes.startswith(b"<Data>\n    <Header>")
    assert signed_bytes.endswith(b"</MessageDetails>\n  </Data>")


def test_nested_and_repeated_elements():
    xml = (
        b"<Document><Data><Header><Sender>S</Sender><Receiver>R</Receiver><FSPCode>F</FSPCode>"
        b"<MsgId>M</MsgId><MessageType>LOAN_OFFER_REQUEST</MessageType></Header>"
        b"<MessageDetails><ApplicationNumber>A1</ApplicationNumber>"
        b"<Charges><Charge>1</Charge><Charge>2</Charge></Charges></MessageDetails></Data></Document>"
    )
    message = message_codec.decode(xml)
    assert message.get("Charges") == {"Charge": ["1", "2"]}


def test_unknown_message_type_is_passed_through():
    xml = (
        b"<Document><Data><Header><Sender>S</Sender><Receiver>R</Receiver><FSPCode>F</FSPCode>"
        b"<MsgId>M</MsgId><MessageType>TAKEOVER_PAY_OFF_BALANCE_REQUEST</MessageType></Header>"
        b"<MessageDetails><LoanNumber>L1</LoanNumber></MessageDetails></Data></Document>"
    )
    message = message_codec.decode(xml)
    assert isinstance(message, UnknownMessageType)
    assert message.get("LoanNumber") == "L1"


@pytest.mark.parametrize(
    "xml",
    [
        b"",
        b"   ",
        b"<Document><Data>",
        b"<Envelope/>",
        b"<Document><Signature>x</Signature></Document>",
        b"<Document><Data><MessageDetails/></Data></Document>",
        b"<Document><Data><Header><MessageType>RESPONSE</MessageType></Header></Data></Document>",
        b"<Document><Data><Header><Sender>S</Sender></Header><MessageDetails/></Data></Document>",
    ],
)
def test_malformed_documents_raise(xml):
    with pytest.raises(MalformedMessageError):
        message_codec.decode(xml)


def test_entities_are_not_expanded():
    xml = (
        b'<?xml version="1.0"?><!DOCTYPE d [<!ENTITY x SYSTEM "file:///etc/passwd">]>'
        b"<Document><Data><Header><Sender>&x;</Sender><Receiver>R</Receiver><FSPCode>F</FSPCode>"
        b"<MsgId>M</MsgId><MessageType>RESPONSE</MessageType></Header>"
        b"<MessageDetails/></Data></Document>"
    )
    message = message_codec.decode(xml)
    assert "root:" not in message.header.sender


def test_message_get_treats_blank_as_missing():
    message = Message(header=_header("RESPONSE"), details={"Reason": "", "Tenure": "12"})
    assert message.get("Reason", "fallback") == "fallback"
    assert message.get("Tenure") == "12"


def test_data_span_keeps_received_bytes():
    xml = b'<Document><Data id="d1"><Reason></Reason></Data><Signature>x</Signature></Document>'
    assert message_codec.data_span(xml) == b'<Data id="d1"><Reason></Reason></Data>'
    assert message_codec.data_span(b"<Document><Signature>x</Signature></Document>") is None
