"""Initial schema: users, trips, bookings, transactions and the audit log.

Revision ID: 001
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    ]


def upgrade() -> None:
    # ── users ─────────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(120), nullable=False),
        sa.Column("email", sa.String(255), unique=True, nullable=False),
        sa.Column("role", sa.String(32), server_default="passenger", nullable=False),
        sa.Column("is_suspended", sa.Boolean, server_default=sa.false(), nullable=False),
        sa.Column("suspended_reason", sa.Text, nullable=True),
        sa.Column("publish_ban_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("publish_ban_reason", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )

    # ── trips ─────────────────────────────────────────────────────────
    op.create_table(
        "trips",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "driver_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("origin", sa.String(255), nullable=False),
        sa.Column("destination", sa.String(255), nullable=False),
        sa.Column("departure_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "estimated_arrival_at", sa.DateTime(timezone=True), nullable=False
        ),
        sa.Column("price_per_seat", sa.Numeric(12, 2), nullable=False),
        sa.Column("total_seats", sa.Integer, nullable=False),
        sa.Column("allocated_seats", sa.Integer, server_default="0", nullable=False),
        sa.Column("status", sa.String(32), server_default="draft", nullable=False),
        sa.Column("notes", sa.Text, nullable=True),
        *_timestamps(),
        sa.CheckConstraint("allocated_seats >= 0", name="ck_trips_allocated_nonneg"),
        sa.CheckConstraint(
            "allocated_seats <= total_seats", name="ck_trips_no_oversell"
        ),
    )
    op.create_index("idx_trips_status", "trips", ["status"])
    op.create_index("idx_trips_driver", "trips", ["driver_id"])
    op.create_index("idx_trips_departure", "trips", ["departure_at"])

    # ── bookings ──────────────────────────────────────────────────────
    op.create_table(
        "bookings",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("trip_id", sa.Integer, sa.ForeignKey("trips.id"), nullable=False),
        sa.Column(
            "passenger_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("seats", sa.Integer, server_default="1", nullable=False),
        sa.Column("status", sa.String(32), server_default="pending", nullable=False),
        sa.Column("note", sa.Text, nullable=True),
        sa.Column(
            "payment_method", sa.String(32), server_default="none", nullable=False
        ),
        sa.Column(
            "payment_status", sa.String(32), server_default="none", nullable=False
        ),
        *_timestamps(),
        sa.CheckConstraint("seats > 0", name="ck_bookings_seats_positive"),
    )
    op.create_index("idx_bookings_trip", "bookings", ["trip_id"])
    op.create_index("idx_bookings_passenger", "bookings", ["passenger_id"])
    op.create_index("idx_bookings_status", "bookings", ["status"])

    # ── transactions ──────────────────────────────────────────────────
    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column(
            "booking_id", sa.Integer, sa.ForeignKey("bookings.id"), nullable=False
        ),
        sa.Column("method", sa.String(32), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("payment_intent_id", sa.String(255), unique=True, nullable=True),
        sa.Column("status", sa.String(32), server_default="pending", nullable=False),
        sa.Column(
            "refund_of_id",
            sa.Integer,
            sa.ForeignKey("transactions.id"),
            nullable=True,
        ),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index("idx_transactions_booking", "transactions", ["booking_id"])
    op.create_index("idx_transactions_intent", "transactions", ["payment_intent_id"])

    # ── admin_actions ─────────────────────────────────────────────────
    op.create_table(
        "admin_actions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("entity_type", sa.String(32), nullable=False),
        sa.Column("entity_id", sa.Integer, nullable=False),
        sa.Column("actor_id", sa.Integer, sa.ForeignKey("users.id"), nullable=False),
        sa.Column("action", sa.String(64), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("reason", sa.Text, nullable=False),
        sa.Column("details", sa.JSON, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "idx_admin_actions_entity", "admin_actions", ["entity_type", "entity_id"]
    )
    op.create_index("idx_admin_actions_actor", "admin_actions", ["actor_id"])
    op.create_index("idx_admin_actions_created", "admin_actions", ["created_at"])


def downgrade() -> None:
    op.drop_table("admin_actions")
    op.drop_table("transactions")
    op.drop_table("bookings")
    op.drop_table("trips")
    op.drop_table("users")
