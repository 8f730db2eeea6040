"""Appointments table model using SQLAlchemy Core."""

from uuid import uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    MetaData,
    Table,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB

# Metadata for all tables
metadata = MetaData()

# Appointments table
appointments = Table(
    "appointments",
    metadata,
    Column("id", Uuid(as_uuid=True), primary_key=True, default=uuid4),
    # References to collaborator-owned records
    Column("patient_id", Uuid(as_uuid=True), nullable=False),
    Column("practitioner_id", Uuid(as_uuid=True), nullable=False),
    Column("treatment_id", Uuid(as_uuid=True), nullable=False),
    # Set on the successor of a reschedule
    Column(
        "original_appointment_id",
        Uuid(as_uuid=True),
        ForeignKey("appointments.id", ondelete="RESTRICT"),
        nullable=True,
    ),
    # Time window, half-open [start_time, end_time)
    Column("start_time", DateTime(timezone=True), nullable=False),
    Column("end_time", DateTime(timezone=True), nullable=False),
    # Status management
    Column("state", Text, nullable=False, server_default="scheduled"),
    Column("notes", Text, nullable=True),
    # Cancellation metadata
    Column("canceled_by", Text, nullable=False, server_default="not_applicable"),
    Column("cancellation_reason", Text, nullable=True),
    # Append-only log written by the notifier
    Column(
        "notifications",
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
        default=list,
    ),
    # Audit fields
    Column("created_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), nullable=False, server_default=func.now()),
    # Constraints
    CheckConstraint("end_time > start_time", name="appointments_window_check"),
    CheckConstraint(
        "state IN ('scheduled', 'confirmed', 'in_progress', 'completed', "
        "'canceled', 'rescheduled', 'no_show')",
        name="appointments_state_check",
    ),
    CheckConstraint(
        "canceled_by IN ('patient', 'practitioner', 'system', 'not_applicable')",
        name="appointments_canceled_by_check",
    ),
    # Overlap candidates are looked up by practitioner and start
    Index("idx_appointments_practitioner_start", "practitioner_id", "start_time"),
    Index("idx_appointments_patient_start", "patient_id", "start_time"),
    Index("idx_appointments_state_start", "state", "start_time"),
)
