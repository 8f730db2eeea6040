"""Create appointments table.

Revision ID: 001
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade database schema."""
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')
    # Needed to mix uuid equality and range overlap in one GiST index
    op.execute('CREATE EXTENSION IF NOT EXISTS "btree_gist"')

    op.create_table(
        "appointments",
        sa.Column(
            "id", postgresql.UUID(), server_default=sa.text("gen_random_uuid()"), nullable=False
        ),
        sa.Column("patient_id", postgresql.UUID(), nullable=False),
        sa.Column("practitioner_id", postgresql.UUID(), nullable=False),
        sa.Column("treatment_id", postgresql.UUID(), nullable=False),
        sa.Column("original_appointment_id", postgresql.UUID(), nullable=True),
        sa.Column("start_time", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("end_time", postgresql.TIMESTAMP(timezone=True), nullable=False),
        sa.Column("state", sa.Text(), server_default="scheduled", nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("canceled_by", sa.Text(), server_default="not_applicable", nullable=False),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column(
            "notifications",
            postgresql.JSONB(),
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column(
            "created_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            postgresql.TIMESTAMP(timezone=True),
            server_default=sa.text("NOW()"),
            nullable=False,
        ),
        sa.CheckConstraint("end_time > start_time", name="appointments_window_check"),
        sa.CheckConstraint(
            "state IN ('scheduled', 'confirmed', 'in_progress', 'completed', "
            "'canceled', 'rescheduled', 'no_show')",
            name="appointments_state_check",
        ),
        sa.CheckConstraint(
            "canceled_by IN ('patient', 'practitioner', 'system', 'not_applicable')",
            name="appointments_canceled_by_check",
        ),
        sa.ForeignKeyConstraint(
            ["original_appointment_id"],
            ["appointments.id"],
            name="fk_appointments_original_appointment_id",
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_index(
        "idx_appointments_practitioner_start", "appointments", ["practitioner_id", "start_time"]
    )
    op.create_index("idx_appointments_patient_start", "appointments", ["patient_id", "start_time"])
    op.create_index("idx_appointments_state_start", "appointments", ["state", "start_time"])

    # Last line of defence against double booking when two writers race
    op.execute(
        """
        ALTER TABLE appointments
        ADD CONSTRAINT appointments_no_overlap
        EXCLUDE USING gist (
            practitioner_id WITH =,
            tstzrange(start_time, end_time, '[)') WITH &&
        )
        WHERE (state NOT IN ('canceled', 'rescheduled'))
        """
    )


def downgrade() -> None:
    """Downgrade database schema."""
    op.execute("ALTER TABLE appointments DROP CONSTRAINT IF EXISTS appointments_no_overlap")

    op.drop_index("idx_appointments_state_start", table_name="appointments")
    op.drop_index("idx_appointments_patient_start", table_name="appointments")
    op.drop_index("idx_appointments_practitioner_start", table_name="appointments")

    op.drop_table("appointments")
