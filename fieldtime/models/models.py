import uuid
from datetime import datetime, date, time
from enum import Enum
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    Text,
    Index,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base
from ..services.time_rules import utcnow


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


class JobStatus(str, Enum):
    """Job lifecycle states. Cancelled is imposed by the scheduler, never by the workflow."""

    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TimeEntryStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    EDITED = "edited"
    DISPUTED = "disputed"


class AlertType(str, Enum):
    LATE_ARRIVAL = "late_arrival"
    NO_SHOW = "no_show"
    EARLY_CHECKOUT = "early_checkout"
    GEOFENCE_VIOLATION = "geofence_violation"


# =====================
# Sites & jobs (owned by the scheduling side; read here)
# =====================

class PropertySite(Base):
    """Serviced property with an optional geofence centre"""
    __tablename__ = "properties"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[Optional[str]] = mapped_column(String(255))
    address: Mapped[Optional[str]] = mapped_column(String(500))
    location_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))  # Latitude for geofence
    location_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))  # Longitude for geofence
    geofence_radius_meters: Mapped[int] = mapped_column(Integer, default=100)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Job(Base):
    """A scheduled visit to a property by one staff member"""
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = uuid_pk()
    property_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("properties.id", ondelete="SET NULL"), index=True)
    location: Mapped[Optional[str]] = mapped_column(String(500))  # Address snapshot
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)  # Local date
    scheduled_time: Mapped[Optional[time]] = mapped_column(Time(timezone=False))  # Local time
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=JobStatus.SCHEDULED.value)  # scheduled|in_progress|completed|cancelled
    start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    checkin_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    checkin_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    checkout_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    checkout_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    assigned_staff_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    issue_reported: Mapped[Optional[str]] = mapped_column(Text)
    actual_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    site = relationship("PropertySite", lazy="joined")

    __table_args__ = (
        Index('idx_jobs_date_status', 'scheduled_date', 'status'),
    )


# =====================
# Time ledger
# =====================

class TimeEntry(Base):
    """Clock-in/out interval for a job. Never deleted: this is the audit trail of worked time."""
    __tablename__ = "time_entries"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="RESTRICT"), nullable=False, index=True)
    staff_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    clock_in: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    clock_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    total_minutes: Mapped[Optional[int]] = mapped_column(Integer)
    break_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    billable_minutes: Mapped[Optional[int]] = mapped_column(Integer)  # max(0, total - break)
    clock_in_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_in_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_out_lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    clock_out_lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TimeEntryStatus.ACTIVE.value)  # active|completed|edited|disputed
    staff_notes: Mapped[Optional[str]] = mapped_column(Text)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text)
    edited_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    edited_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_time_entries_staff_clock_in', 'staff_id', 'clock_in'),
        # One open entry per job
        Index(
            'uq_time_entries_active_job', 'job_id', unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )


# =====================
# Pay rates
# =====================

class StaffPayRate(Base):
    """Effective-dated hourly rate. Valid over [effective_from, effective_to); open-ended when effective_to is null."""
    __tablename__ = "staff_pay_rates"

    id: Mapped[uuid.UUID] = uuid_pk()
    staff_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    hourly_rate: Mapped[float] = mapped_column(Numeric(10, 2), nullable=False)
    overtime_rate: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    overtime_threshold_hours: Mapped[float] = mapped_column(Numeric(5, 2), nullable=False, default=38)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    effective_to: Mapped[Optional[date]] = mapped_column(Date)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index('idx_pay_rates_staff_from', 'staff_id', 'effective_from'),
        # At most one open-ended record per staff member
        Index(
            'uq_pay_rates_open_staff', 'staff_id', unique=True,
            postgresql_where=text("effective_to IS NULL"),
            sqlite_where=text("effective_to IS NULL"),
        ),
    )


# =====================
# Alerts, audit, notifications
# =====================

class JobAlert(Base):
    """Advisory alert raised against a job (late arrival, no-show, geofence violation)"""
    __tablename__ = "job_alerts"

    id: Mapped[uuid.UUID] = uuid_pk()
    job_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    alert_type: Mapped[str] = mapped_column(String(50), nullable=False)  # late_arrival|no_show|early_checkout|geofence_violation
    message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)


class AuditLog(Base):
    """Append-only audit log for workflow, ledger and pay-rate actions"""
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # job|time_entry|pay_rate
    entity_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # START|COMPLETE|EDIT|FORCE_CLOCK_OUT|DISPUTE|SET_RATE
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # admin|staff|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # api|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)  # Before/after diff
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # {job_id, staff_id, gps_lat, gps_lng, ...}
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index('idx_audit_entity', 'entity_type', 'entity_id'),
        Index('idx_audit_actor', 'actor_id', 'timestamp_utc'),
    )


class Notification(Base):
    """Structured operation outcome for the UI to display"""
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = uuid_pk()
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    channel: Mapped[str] = mapped_column(String(20), nullable=False, default="in_app")
    template_key: Mapped[Optional[str]] = mapped_column(String(100))  # e.g. job_start_succeeded
    payload_json: Mapped[Optional[dict]] = mapped_column(JSON)
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|delivered
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index('idx_notifications_user_status', 'user_id', 'status'),
    )
