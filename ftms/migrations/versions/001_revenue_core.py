"""Revenue core: reference data, bus-trip cache, revenue ledger, shortage loans.

Revision ID: 001
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "001"
down_revision = None
branch_labels = None
depends_on = None

installment_status = postgresql.ENUM(
    "PENDING", "PARTIAL", "PAID", "OVERPAID", "LATE",
    name="installmentstatus", create_type=False,
)
employee_role = postgresql.ENUM(
    "DRIVER", "CONDUCTOR", "OTHER", name="employeerole", create_type=False,
)
loan_status = postgresql.ENUM(
    "PENDING", "PARTIALLY_PAID", "PAID", name="loanstatus", create_type=False,
)
error_severity = postgresql.ENUM(
    "INFO", "WARNING", "ERROR", "CRITICAL", name="errorseverity", create_type=False,
)

_ENUMS = (installment_status, employee_role, loan_status, error_severity)


def _money(name: str, nullable: bool = False, **kw) -> sa.Column:
    return sa.Column(name, sa.Numeric(20, 4), nullable=nullable, **kw)


def _stamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.func.now())


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    # ── Reference data ──────────────────────────────────────
    op.create_table(
        "revenue_categories",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(100), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
    )
    op.create_table(
        "payment_methods",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("code", sa.String(30), nullable=False, unique=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
    )
    op.create_table(
        "payment_statuses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(50), nullable=False),
        sa.Column("applicable_modules", sa.JSON(), nullable=False),
    )
    op.create_table(
        "system_configuration",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("driver_share_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("conductor_share_percentage", sa.Numeric(5, 2), nullable=False),
        sa.Column("default_frequency", sa.String(20), nullable=False),
        sa.Column("default_number_of_payments", sa.Integer(), nullable=False),
        sa.Column("receivable_due_date_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("updated_by", sa.String(100), nullable=True),
        _stamp("updated_at"),
    )

    # ── Bus-trip cache ──────────────────────────────────────
    op.create_table(
        "bus_trip_cache",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("assignment_id", sa.String(50), nullable=False, index=True),
        sa.Column("bus_trip_id", sa.String(50), nullable=False, index=True),
        sa.Column("bus_plate_number", sa.String(20), nullable=True),
        sa.Column("bus_route", sa.String(200), nullable=True),
        sa.Column("assignment_type", sa.String(30), nullable=True),
        _money("assignment_value", nullable=True),
        _money("trip_revenue", nullable=True),
        _money("trip_fuel_expense", nullable=True),
        sa.Column("payment_method", sa.String(30), nullable=True),
        sa.Column("date_assigned", sa.DateTime(timezone=True), nullable=True),
        sa.Column("driver_name", sa.String(150), nullable=True),
        sa.Column("driver_employee_number", sa.String(20), nullable=True),
        sa.Column("conductor_name", sa.String(150), nullable=True),
        sa.Column("conductor_employee_number", sa.String(20), nullable=True),
        sa.Column("is_revenue_recorded", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("assignment_id", "bus_trip_id", name="uq_bus_trip_assignment"),
    )

    # ── Revenue ledger ──────────────────────────────────────
    op.create_table(
        "revenue_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("revenue_code", sa.String(20), nullable=False),
        sa.Column("assignment_id", sa.String(50), nullable=True),
        sa.Column("bus_trip_id", sa.String(50), nullable=True),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("revenue_categories.id"), nullable=False),
        _money("total_amount"),
        sa.Column("collection_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payment_method_id", sa.Integer(), sa.ForeignKey("payment_methods.id"), nullable=True),
        sa.Column("payment_status_id", sa.Integer(), sa.ForeignKey("payment_statuses.id"), nullable=False),
        sa.Column("is_receivable", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("payer_name", sa.String(150), nullable=True),
        sa.Column("interest_rate", sa.Numeric(5, 2), nullable=True),
        _money("outstanding_balance", server_default="0"),
        sa.Column("remarks", sa.String(500), nullable=False),
        sa.Column("source_ref", sa.String(100), nullable=True),
        sa.Column("created_by", sa.String(100), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default="false"),
        _stamp("created_at"),
        _stamp("updated_at"),
        sa.CheckConstraint("total_amount >= 0", name="ck_revenue_total_non_negative"),
        sa.CheckConstraint("outstanding_balance >= 0", name="ck_revenue_outstanding_non_negative"),
    )
    op.create_index("ix_revenue_records_revenue_code", "revenue_records", ["revenue_code"], unique=True)
    op.create_index("ix_revenue_records_assignment_id", "revenue_records", ["assignment_id"])
    op.create_index("ix_revenue_records_bus_trip_id", "revenue_records", ["bus_trip_id"])
    op.create_index("ix_revenue_records_payment_method_id", "revenue_records", ["payment_method_id"])
    op.create_index(
        "uq_revenue_assignment_date_category",
        "revenue_records",
        ["assignment_id", "collection_date", "category_id"],
        unique=True,
        postgresql_where=sa.text("is_deleted = false AND assignment_id IS NOT NULL"),
    )
    op.create_index(
        "uq_revenue_category_amount_date",
        "revenue_records",
        ["category_id", "total_amount", "collection_date"],
        unique=True,
        postgresql_where=sa.text("is_deleted = false AND assignment_id IS NULL"),
    )

    op.create_table(
        "revenue_installments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("revenue_id", sa.Integer(), sa.ForeignKey("revenue_records.id"), nullable=False, index=True),
        sa.Column("installment_number", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        _money("amount_due"),
        _money("amount_paid", server_default="0"),
        sa.Column("status", installment_status, nullable=False, server_default="PENDING"),
        sa.Column("payment_method_id", sa.Integer(), sa.ForeignKey("payment_methods.id"), nullable=True),
        sa.Column("payment_status_id", sa.Integer(), sa.ForeignKey("payment_statuses.id"), nullable=True),
        _stamp("created_at"),
        sa.UniqueConstraint("revenue_id", "installment_number", name="uq_revenue_installment_number"),
        sa.CheckConstraint("amount_due > 0", name="ck_installment_amount_due_positive"),
    )

    op.create_table(
        "revenue_payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("revenue_id", sa.Integer(), sa.ForeignKey("revenue_records.id"), nullable=False, index=True),
        sa.Column(
            "installment_id", sa.Integer(), sa.ForeignKey("revenue_installments.id"),
            nullable=True, index=True,
        ),
        _money("amount"),
        sa.Column("payment_method_id", sa.Integer(), sa.ForeignKey("payment_methods.id"), nullable=False),
        sa.Column("payment_status_id", sa.Integer(), sa.ForeignKey("payment_statuses.id"), nullable=False),
        sa.Column("paid_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reference_number", sa.String(50), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        _stamp("created_at"),
        sa.CheckConstraint("amount > 0", name="ck_revenue_payment_amount_positive"),
    )

    op.create_table(
        "revenue_attachments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("revenue_id", sa.Integer(), sa.ForeignKey("revenue_records.id"), nullable=False, index=True),
        sa.Column("file_id", sa.String(255), nullable=False),
        sa.Column("original_name", sa.String(255), nullable=False),
        sa.Column("mime_type", sa.String(100), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default="false"),
        _stamp("uploaded_at"),
    )

    # ── Shortage loans ──────────────────────────────────────
    op.create_table(
        "shortage_loans",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("revenue_id", sa.Integer(), sa.ForeignKey("revenue_records.id"), nullable=False, index=True),
        sa.Column("employee_role", employee_role, nullable=False),
        sa.Column("employee_key", sa.String(100), nullable=False, server_default=""),
        sa.Column("employee_name", sa.String(150), nullable=True),
        sa.Column("employee_number", sa.String(20), nullable=True),
        _money("assignment_value"),
        _money("trip_revenue"),
        _money("collected_amount"),
        _money("shortfall"),
        _money("amount"),
        _money("paid_amount", server_default="0"),
        _money("balance"),
        sa.Column("status", loan_status, nullable=False, server_default="PENDING"),
        sa.Column("frequency", sa.String(20), nullable=False),
        sa.Column("number_of_payments", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("last_payment_date", sa.Date(), nullable=True),
        _stamp("created_at"),
        _stamp("updated_at"),
        sa.UniqueConstraint("revenue_id", "employee_role", "employee_key", name="uq_loan_revenue_employee"),
        sa.CheckConstraint("amount >= 0", name="ck_loan_amount_non_negative"),
    )

    op.create_table(
        "loan_installments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "loan_id", sa.Integer(), sa.ForeignKey("shortage_loans.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column("installment_number", sa.Integer(), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
        _money("amount_due"),
        _money("amount_paid", server_default="0"),
        sa.Column("status", installment_status, nullable=False, server_default="PENDING"),
        sa.UniqueConstraint("loan_id", "installment_number", name="uq_loan_installment_number"),
    )

    op.create_table(
        "loan_payments",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "loan_id", sa.Integer(), sa.ForeignKey("shortage_loans.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        sa.Column(
            "installment_id", sa.Integer(), sa.ForeignKey("loan_installments.id", ondelete="CASCADE"),
            nullable=False, index=True,
        ),
        _money("amount"),
        sa.Column("payment_method_id", sa.Integer(), sa.ForeignKey("payment_methods.id"), nullable=False),
        sa.Column("paid_date", sa.Date(), nullable=False),
        sa.Column("reference_number", sa.String(50), nullable=True),
        sa.Column("remarks", sa.Text(), nullable=True),
        _stamp("created_at"),
        sa.CheckConstraint("amount > 0", name="ck_loan_payment_amount_positive"),
    )

    # ── Audit and error monitoring ──────────────────────────
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(50), nullable=False, index=True),
        sa.Column("entity_id", sa.Integer(), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("performed_by", sa.String(100), nullable=True),
        sa.Column("old_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        _stamp("created_at"),
    )

    op.create_table(
        "error_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("severity", error_severity, nullable=False, server_default="ERROR"),
        sa.Column("error_type", sa.String(200), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("traceback", sa.Text(), nullable=True),
        sa.Column("module", sa.String(300), nullable=True),
        sa.Column("function_name", sa.String(200), nullable=True),
        sa.Column("line_number", sa.Integer(), nullable=True),
        sa.Column("request_method", sa.String(10), nullable=True),
        sa.Column("request_path", sa.String(500), nullable=True),
        sa.Column("request_body", sa.Text(), nullable=True),
        sa.Column("status_code", sa.Integer(), nullable=True),
        sa.Column("response_time_ms", sa.Float(), nullable=True),
        sa.Column("ip_address", sa.String(45), nullable=True),
        sa.Column("revenue_code", sa.String(20), nullable=True, index=True),
        sa.Column("resolved", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_error_logs_created_at", "error_logs", ["created_at"])
    op.create_index("ix_error_logs_severity", "error_logs", ["severity"])


def downgrade() -> None:
    for table in (
        "error_logs", "audit_log", "loan_payments", "loan_installments", "shortage_loans",
        "revenue_attachments", "revenue_payments", "revenue_installments", "revenue_records",
        "bus_trip_cache", "system_configuration", "payment_statuses", "payment_methods",
        "revenue_categories",
    ):
        op.drop_table(table)
    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
