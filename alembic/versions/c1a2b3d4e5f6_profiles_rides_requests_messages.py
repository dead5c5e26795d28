"""profiles, rides, ride_requests, messages

Revision ID: c1a2b3d4e5f6
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "c1a2b3d4e5f6"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("full_name", sa.String(), nullable=True),
        sa.Column("university_name", sa.String(), nullable=True),
        sa.Column("phone_number", sa.String(), nullable=True),
        sa.Column("avatar_url", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "rides",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("driver_id", sa.String(36), nullable=False),
        sa.Column("origin_location", sa.String(), nullable=False),
        sa.Column("destination_university", sa.String(), nullable=False),
        sa.Column("departure_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("return_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("available_seats", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("recurrence_pattern", sa.String(), nullable=False, server_default="One-off"),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["driver_id"], ["profiles.id"], ondelete="CASCADE"),
    )
    op.create_index(op.f("ix_rides_driver_id"), "rides", ["driver_id"], unique=False)

    op.create_table(
        "ride_requests",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("ride_id", sa.String(36), nullable=False),
        sa.Column("passenger_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("hidden_by_driver", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("hidden_by_passenger", sa.Boolean(), nullable=False, server_default="false"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["ride_id"], ["rides.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["passenger_id"], ["profiles.id"], ondelete="CASCADE"),
    )
    op.create_index(op.f("ix_ride_requests_ride_id"), "ride_requests", ["ride_id"], unique=False)
    op.create_index(op.f("ix_ride_requests_passenger_id"), "ride_requests", ["passenger_id"], unique=False)
    op.create_index(
        "uq_ride_requests_open",
        "ride_requests",
        ["ride_id", "passenger_id"],
        unique=True,
        postgresql_where=sa.text("status != 'cancelled'"),
    )

    op.create_table(
        "messages",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("ride_request_id", sa.String(36), nullable=False),
        sa.Column("sender_id", sa.String(36), nullable=False),
        sa.Column("receiver_id", sa.String(36), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=True),
        sa.Column("is_read", sa.Boolean(), nullable=False, server_default="false"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["ride_request_id"], ["ride_requests.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["sender_id"], ["profiles.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["receiver_id"], ["profiles.id"], ondelete="CASCADE"),
    )
    op.create_index(op.f("ix_messages_ride_request_id"), "messages", ["ride_request_id"], unique=False)
    op.create_index(op.f("ix_messages_sender_id"), "messages", ["sender_id"], unique=False)
    op.create_index(op.f("ix_messages_receiver_id"), "messages", ["receiver_id"], unique=False)
    op.create_index("ix_messages_receiver_unread", "messages", ["receiver_id", "is_read"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_messages_receiver_unread", table_name="messages")
    op.drop_index(op.f("ix_messages_receiver_id"), table_name="messages")
    op.drop_index(op.f("ix_messages_sender_id"), table_name="messages")
    op.drop_index(op.f("ix_messages_ride_request_id"), table_name="messages")
    op.drop_table("messages")
    op.drop_index("uq_ride_requests_open", table_name="ride_requests")
    op.drop_index(op.f("ix_ride_requests_passenger_id"), table_name="ride_requests")
    op.drop_index(op.f("ix_ride_requests_ride_id"), table_name="ride_requests")
    op.drop_table("ride_requests")
    op.drop_index(op.f("ix_rides_driver_id"), table_name="rides")
    op.drop_table("rides")
    op.drop_table("profiles")
