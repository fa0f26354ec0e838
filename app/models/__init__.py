from app.models.loan_application import LoanApplication
from app.models.loan_application_event import LoanApplicationEvent
from app.models.outbound_message import OutboundMessage

__all__ = [
    "LoanApplication",
    "LoanApplicationEvent",
    "OutboundMessage",
]
