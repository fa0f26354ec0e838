import uuid

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, validates

from app.db.base import Base
from app.models.types import EncryptedString

_STATUSES = (
    "RECEIVED",
    "FINAL_APPROVAL_RECEIVED",
    "CLIENT_CREATED",
    "LOAN_CREATED",
    "DISBURSED",
    "LIQUIDATED",
    "DEFAULTED",
    "SETTLED",
    "FAILED",
    "REJECTED",
    "CANCELLED",
)

_BORROWER_FIELDS = (
    "borrower_first_name",
    "borrower_middle_name",
    "borrower_last_name",
    "borrower_sex",
    "borrower_date_of_birth",
    "borrower_national_id",
    "borrower_mobile_number",
    "borrower_disbursement_account",
)


class LoanApplication(Base):
    __tablename__ = "loan_applications"
    __allow_unmapped__ = True
    __table_args__ = (
        CheckConstraint("requested_amount >= 0", name="ck_loan_app_requested_nonneg"),
        CheckConstraint("tenure_months IS NULL OR tenure_months >= 0", name="ck_loan_app_tenure_nonneg"),
        CheckConstraint("version >= 1", name="ck_loan_app_version_positive"),
        CheckConstraint(
            "status IN (" + ", ".join(f"'{status}'" for status in _STATUSES) + ")",
            name="ck_loan_app_status",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    ess_application_number = Column(String(64), nullable=False, unique=True, index=True)
    ess_check_number = Column(String(64), nullable=True, index=True)
    fsp_reference_number = Column(String(64), nullable=False, unique=True, index=True)
    ess_loan_number_alias = Column(String(64), nullable=True, unique=True)
    product_code = Column(String(32), nullable=True)
    requested_amount = Column(Numeric(18, 2), nullable=False, default=0)
    tenure_months = Column(Integer, nullable=True)
    cbs_client_id = Column(String(64), nullable=True)
    cbs_loan_id = Column(String(64), nullable=True)
    cbs_loan_account_number = Column(String(64), nullable=True)
    borrower_first_name = Column(String(100), nullable=True)
    borrower_middle_name = Column(String(100), nullable=True)
    borrower_last_name = Column(String(100), nullable=True)
    borrower_sex = Column(String(1), nullable=True)
    borrower_date_of_birth = Column(Date, nullable=True)
    borrower_national_id = Column(EncryptedString(), nullable=True)
    borrower_mobile_number = Column(String(50), nullable=True)
    borrower_disbursement_account = Column(EncryptedString(), nullable=True)
    borrower_captured_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String(40), nullable=False, default="RECEIVED", index=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    status_changed_at = Column(DateTime(timezone=True), nullable=True)

    events = relationship(
        "LoanApplicationEvent",
        back_populates="application",
        order_by="LoanApplicationEvent.created_at",
        lazy="noload",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def borrower_name(self) -> str | None:
        parts = [self.borrower_first_name, self.borrower_middle_name, self.borrower_last_name]
        name = " ".join(part for part in parts if part)
        return name or None

    @validates("cbs_loan_id")
    def _validate_cbs_loan_id(self, key, value):
        current = self.__dict__.get(key)
        if current is not None and value != current:
            raise ValueError("cbs_loan_id is immutable once assigned")
        return value

    @validates(*_BORROWER_FIELDS)
    def _validate_borrower_snapshot(self, key, value):
        if self.__dict__.get("borrower_captured_at") is not None and value != self.__dict__.get(key):
            raise ValueError("Borrower snapshot is immutable once captured")
        return value
