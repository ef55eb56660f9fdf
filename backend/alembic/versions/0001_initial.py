"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
    ]


def upgrade() -> None:
    op.create_table(
        "patients",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("identity", sa.String(length=64), nullable=False),
        sa.Column("display_name", sa.String(length=200), nullable=True),
        sa.Column("external_chat_id", sa.String(length=64), nullable=True),
        sa.Column("merged_into_identity", sa.String(length=64), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("identity"),
        sa.UniqueConstraint("external_chat_id"),
    )

    op.create_table(
        "reservations",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("reservation_id", sa.String(length=64), nullable=False),
        sa.Column("patient_identity", sa.String(length=64), nullable=False),
        sa.Column("reserved_date", sa.Date(), nullable=False),
        sa.Column("reserved_time", sa.String(length=5), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "completed", "canceled", name="reservation_status"),
            nullable=False,
            server_default="pending",
        ),
        *_timestamps(),
        sa.UniqueConstraint("reservation_id"),
    )
    op.create_index(
        "ix_reservations_patient_date", "reservations", ["patient_identity", "reserved_date"]
    )
    op.create_index("ix_reservations_slot", "reservations", ["reserved_date", "reserved_time"])

    op.create_table(
        "intake_records",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_identity", sa.String(length=64), nullable=False),
        sa.Column("answers", postgresql.JSONB(), nullable=True),
        sa.Column("linked_reservation_id", sa.String(length=64), nullable=True),
        sa.Column(
            "review_status",
            sa.Enum("unset", "approved", "rejected", name="intake_review_status"),
            nullable=False,
            server_default="unset",
        ),
        *_timestamps(),
    )
    op.create_index("ix_intake_records_patient_identity", "intake_records", ["patient_identity"])
    op.create_index(
        "ix_intake_records_linked_reservation_id", "intake_records", ["linked_reservation_id"]
    )

    op.create_table(
        "reorders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_identity", sa.String(length=64), nullable=False),
        sa.Column("product_code", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "pending",
                "confirmed",
                "paid",
                "rejected",
                "canceled",
                name="reorder_status",
            ),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("ledger_row_ref", sa.String(length=64), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_reorders_patient_identity", "reorders", ["patient_identity"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_identity", sa.String(length=64), nullable=False),
        sa.Column("product_code", sa.String(length=64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("shipping_date", sa.Date(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_orders_patient_identity", "orders", ["patient_identity"])

    op.create_table(
        "reconciliation_issues",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("kind", sa.String(length=40), nullable=False),
        sa.Column("entity_key", sa.String(length=255), nullable=False),
        sa.Column("patient_identity", sa.String(length=64), nullable=True),
        sa.Column("reason_code", sa.String(length=80), nullable=False),
        sa.Column("details_json", postgresql.JSONB(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default=sa.text("'open'")),
        *_timestamps(),
        sa.UniqueConstraint("kind", "entity_key", name="uq_reconciliation_issues_entity"),
    )
    op.create_index(
        "ix_reconciliation_issues_reason_code", "reconciliation_issues", ["reason_code"]
    )
    op.create_index("ix_reconciliation_issues_status", "reconciliation_issues", ["status"])

    op.create_table(
        "notification_log",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("patient_identity", sa.String(length=64), nullable=False),
        sa.Column("change_key", sa.String(length=200), nullable=False),
        sa.Column("recipient_id", sa.String(length=64), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.UniqueConstraint(
            "patient_identity",
            "change_key",
            name="uq_notification_log_identity_change",
        ),
    )

    op.create_table(
        "identity_merge_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("action", sa.String(length=40), nullable=False),
        sa.Column("from_identity", sa.String(length=64), nullable=True),
        sa.Column("to_identity", sa.String(length=64), nullable=False),
        sa.Column("external_chat_id", sa.String(length=64), nullable=True),
        sa.Column("rows_moved", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("notes", sa.Text(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("identity_merge_events")
    op.drop_table("notification_log")
    op.drop_index("ix_reconciliation_issues_status", table_name="reconciliation_issues")
    op.drop_index("ix_reconciliation_issues_reason_code", table_name="reconciliation_issues")
    op.drop_table("reconciliation_issues")
    op.drop_index("ix_orders_patient_identity", table_name="orders")
    op.drop_table("orders")
    op.drop_index("ix_reorders_patient_identity", table_name="reorders")
    op.drop_table("reorders")
    op.drop_index("ix_intake_records_linked_reservation_id", table_name="intake_records")
    op.drop_index("ix_intake_records_patient_identity", table_name="intake_records")
    op.drop_table("intake_records")
    op.drop_index("ix_reservations_slot", table_name="reservations")
    op.drop_index("ix_reservations_patient_date", table_name="reservations")
    op.drop_table("reservations")
    op.drop_table("patients")
    sa.Enum(name="reorder_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="intake_review_status").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="reservation_status").drop(op.get_bind(), checkfirst=True)
