import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID

from app.db.base import Base


class OutboundMessage(Base):
    __tablename__ = "outbound_messages"
    __table_args__ = (
        CheckConstraint(
            "status IN ('PENDING', 'SENT', 'REJECTED', 'UNDELIVERED', 'RESENT')",
            name="ck_outbound_message_status",
        ),
        CheckConstraint("attempts >= 0", name="ck_outbound_message_attempts_nonneg"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    message_id = Column(String(64), nullable=False, unique=True)
    message_type = Column(String(64), nullable=False, index=True)
    application_number = Column(String(64), nullable=True, index=True)
    payload = Column(Text, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    response_code = Column(String(10), nullable=True)
    response_body = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    delivered_at = Column(DateTime(timezone=True), nullable=True)
