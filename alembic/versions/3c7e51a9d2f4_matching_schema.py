"""matching_schema

Revision ID: 3c7e51a9d2f4
Revises: 
Create Date: 2026-10-19 20:10:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c7e51a9d2f4'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create user, ride, riderequest and notification tables."""
    op.create_table(
        "user",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_table(
        "ride",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("driver_id", sa.Integer(), nullable=False),
        sa.Column("pickup_lat", sa.Float(), nullable=False),
        sa.Column("pickup_lng", sa.Float(), nullable=False),
        sa.Column("dest_lat", sa.Float(), nullable=False),
        sa.Column("dest_lng", sa.Float(), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(), nullable=False),
        sa.Column("seats_total", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("seats_available", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("route_polyline", sa.String(), nullable=True),
        sa.Column("estimated_distance_km", sa.Float(), nullable=True),
        sa.Column("estimated_duration_minutes", sa.Float(), nullable=True),
        sa.Column("current_lat", sa.Float(), nullable=True),
        sa.Column("current_lng", sa.Float(), nullable=True),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("seats_available >= 0", name="ck_ride_seats_available_non_negative"),
        sa.ForeignKeyConstraint(["driver_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ride_driver_id", "ride", ["driver_id"])
    op.create_index("ix_ride_status", "ride", ["status"])
    op.create_index("ix_ride_scheduled_time", "ride", ["scheduled_time"])
    op.create_table(
        "riderequest",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("rider_id", sa.Integer(), nullable=False),
        sa.Column("pickup_lat", sa.Float(), nullable=False),
        sa.Column("pickup_lng", sa.Float(), nullable=False),
        sa.Column("dest_lat", sa.Float(), nullable=False),
        sa.Column("dest_lng", sa.Float(), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(), nullable=False),
        sa.Column("seats_needed", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("ride_id", sa.Integer(), nullable=True),
        sa.Column("auto_match", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("max_wait_minutes", sa.Integer(), nullable=True),
        sa.Column("max_walking_distance_km", sa.Float(), nullable=True),
        sa.Column("cancel_reason", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("seats_needed >= 1", name="ck_riderequest_seats_needed_positive"),
        sa.ForeignKeyConstraint(["rider_id"], ["user.id"]),
        sa.ForeignKeyConstraint(["ride_id"], ["ride.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_riderequest_rider_id", "riderequest", ["rider_id"])
    op.create_index("ix_riderequest_status", "riderequest", ["status"])
    op.create_index("ix_riderequest_ride_id", "riderequest", ["ride_id"])
    op.create_index("ix_riderequest_scheduled_time", "riderequest", ["scheduled_time"])
    op.create_index("ix_riderequest_created_at", "riderequest", ["created_at"])
    op.create_table(
        "notification",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column("type", sa.String(), nullable=False),
        sa.Column("ride_id", sa.Integer(), nullable=True),
        sa.Column("request_id", sa.Integer(), nullable=True),
        sa.Column("read", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notification_user_id", "notification", ["user_id"])


def downgrade() -> None:
    """Drop all matching tables."""
    op.drop_index("ix_notification_user_id", table_name="notification")
    op.drop_table("notification")
    op.drop_index("ix_riderequest_created_at", table_name="riderequest")
    op.drop_index("ix_riderequest_scheduled_time", table_name="riderequest")
    op.drop_index("ix_riderequest_ride_id", table_name="riderequest")
    op.drop_index("ix_riderequest_status", table_name="riderequest")
    op.drop_index("ix_riderequest_rider_id", table_name="riderequest")
    op.drop_table("riderequest")
    op.drop_index("ix_ride_scheduled_time", table_name="ride")
    op.drop_index("ix_ride_status", table_name="ride")
    op.drop_index("ix_ride_driver_id", table_name="ride")
    op.drop_table("ride")
    op.drop_table("user")
