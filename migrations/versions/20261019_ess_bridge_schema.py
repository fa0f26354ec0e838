"""loan applications, event log and outbound messages

Revision ID: 20261019_ess_bridge_schema
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = "20261019_ess_bridge_schema"
down_revision = None
branch_labels = None
depends_on = None

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


def upgrade() -> None:
    op.create_table(
        "loan_applications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("ess_application_number", sa.String(length=64), nullable=False),
        sa.Column("ess_check_number", sa.String(length=64), nullable=True),
        sa.Column("fsp_reference_number", sa.String(length=64), nullable=False),
        sa.Column("ess_loan_number_alias", sa.String(length=64), nullable=True),
        sa.Column("product_code", sa.String(length=32), nullable=True),
        sa.Column("requested_amount", sa.Numeric(18, 2), nullable=False, server_default="0"),
        sa.Column("tenure_months", sa.Integer(), nullable=True),
        sa.Column("cbs_client_id", sa.String(length=64), nullable=True),
        sa.Column("cbs_loan_id", sa.String(length=64), nullable=True),
        sa.Column("cbs_loan_account_number", sa.String(length=64), nullable=True),
        sa.Column("borrower_first_name", sa.String(length=100), nullable=True),
        sa.Column("borrower_middle_name", sa.String(length=100), nullable=True),
        sa.Column("borrower_last_name", sa.String(length=100), nullable=True),
        sa.Column("borrower_sex", sa.String(length=1), nullable=True),
        sa.Column("borrower_date_of_birth", sa.Date(), nullable=True),
        sa.Column("borrower_national_id", sa.LargeBinary(), nullable=True),
        sa.Column("borrower_mobile_number", sa.String(length=50), nullable=True),
        sa.Column("borrower_disbursement_account", sa.LargeBinary(), nullable=True),
        sa.Column("borrower_captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.String(length=40), nullable=False, server_default="RECEIVED"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("status_changed_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("requested_amount >= 0", name="ck_loan_app_requested_nonneg"),
        sa.CheckConstraint("tenure_months IS NULL OR tenure_months >= 0", name="ck_loan_app_tenure_nonneg"),
        sa.CheckConstraint("version >= 1", name="ck_loan_app_version_positive"),
        sa.CheckConstraint(
            "status IN (" + ", ".join(f"'{status}'" for status in _STATUSES) + ")",
            name="ck_loan_app_status",
        ),
        sa.UniqueConstraint("ess_loan_number_alias", name="uq_loan_app_loan_number_alias"),
    )
    op.create_index(
        "ix_loan_applications_ess_application_number",
        "loan_applications",
        ["ess_application_number"],
        unique=True,
    )
    op.create_index("ix_loan_applications_ess_check_number", "loan_applications", ["ess_check_number"])
    op.create_index(
        "ix_loan_applications_fsp_reference_number",
        "loan_applications",
        ["fsp_reference_number"],
        unique=True,
    )
    op.create_index("ix_loan_applications_status", "loan_applications", ["status"])

    op.create_table(
        "loan_application_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("loan_application_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("key", sa.String(length=50), nullable=False),
        sa.Column("value", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("source", sa.String(length=100), nullable=True),
        sa.Column("message_id", sa.String(length=64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(["loan_application_id"], ["loan_applications.id"], ondelete="CASCADE"),
    )
    op.create_index(
        "ix_loan_application_events_loan_application_id",
        "loan_application_events",
        ["loan_application_id"],
    )
    op.create_index("ix_loan_application_events_key", "loan_application_events", ["key"])
    op.create_index("ix_loan_application_events_message_id", "loan_application_events", ["message_id"])

    op.create_table(
        "outbound_messages",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("message_id", sa.String(length=64), nullable=False),
        sa.Column("message_type", sa.String(length=64), nullable=False),
        sa.Column("application_number", sa.String(length=64), nullable=True),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("response_code", sa.String(length=10), nullable=True),
        sa.Column("response_body", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('PENDING', 'SENT', 'REJECTED', 'UNDELIVERED', 'RESENT')",
            name="ck_outbound_message_status",
        ),
        sa.CheckConstraint("attempts >= 0", name="ck_outbound_message_attempts_nonneg"),
        sa.UniqueConstraint("message_id", name="uq_outbound_messages_message_id"),
    )
    op.create_index("ix_outbound_messages_message_type", "outbound_messages", ["message_type"])
    op.create_index("ix_outbound_messages_application_number", "outbound_messages", ["application_number"])
    op.create_index("ix_outbound_messages_status", "outbound_messages", ["status"])


def downgrade() -> None:
    op.drop_index("ix_outbound_messages_status", table_name="outbound_messages")
    op.drop_index("ix_outbound_messages_application_number", table_name="outbound_messages")
    op.drop_index("ix_outbound_messages_message_type", table_name="outbound_messages")
    op.drop_table("outbound_messages")
    op.drop_index("ix_loan_application_events_message_id", table_name="loan_application_events")
    op.drop_index("ix_loan_application_events_key", table_name="loan_application_events")
    op.drop_index("ix_loan_application_events_loan_application_id", table_name="loan_application_events")
    op.drop_table("loan_application_events")
    op.drop_index("ix_loan_applications_status", table_name="loan_applications")
    op.drop_index("ix_loan_applications_fsp_reference_number", table_name="loan_applications")
    op.drop_index("ix_loan_applications_ess_check_number", table_name="loan_applications")
    op.drop_index("ix_loan_applications_ess_application_number", table_name="loan_applications")
    op.drop_table("loan_applications")
