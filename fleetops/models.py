"""
This module contains the data models for the booking service.
"""
import enum
from datetime import datetime, date, timezone

from sqlalchemy import (Boolean, Column, DateTime, Enum, Float, ForeignKey, Integer, JSON, String,
                        Text, UniqueConstraint)

from alchemical import Model


def utcnow() -> datetime:
    """Current time as naive UTC, the form every timestamp is stored in."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class BookingStatus(str, enum.Enum):
    INQUIRY = "inquiry"
    TENTATIVE = "tentative"
    CONFIRMED = "confirmed"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TripType(str, enum.Enum):
    LOCAL = "local"
    OUTSTATION = "outstation"
    AIRPORT = "airport"
    CUSTOM = "custom"
    ONEWAY_PICKUP_DROP = "oneway_pickup_drop"


class RateType(str, enum.Enum):
    TOTAL = "total"
    PER_DAY = "per_day"
    PER_KM = "per_km"
    HYBRID = "hybrid"


class PaymentStatus(str, enum.Enum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"


class AuditAction(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    STATUS_CHANGED = "status_changed"
    VEHICLE_ASSIGNED = "vehicle_assigned"
    VEHICLE_REMOVED = "vehicle_removed"
    DATE_CHANGED = "date_changed"
    RATE_CHANGED = "rate_changed"


class Role(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    SUPERVISOR = "supervisor"


class MemberStatus(str, enum.Enum):
    PENDING = "pending"
    ACTIVE = "active"
    BLOCKED = "blocked"


class CarStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


# Order of the forward path through the lifecycle
STATUS_ORDER = [
    BookingStatus.INQUIRY,
    BookingStatus.TENTATIVE,
    BookingStatus.CONFIRMED,
    BookingStatus.ONGOING,
    BookingStatus.COMPLETED,
]

BLOCKING_STATUSES = frozenset({
    BookingStatus.INQUIRY,
    BookingStatus.TENTATIVE,
    BookingStatus.CONFIRMED,
    BookingStatus.ONGOING,
})

TERMINAL_STATUSES = frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED})


def is_blocking(status) -> bool:
    """
    Whether a booking in this status reserves its cars against other bookings.

    Args:
        status (BookingStatus | str): The status to classify. Strings are coerced
            through `BookingStatus`, so an unknown value raises `ValueError`.
    """
    return BookingStatus(status) in BLOCKING_STATUSES


def is_terminal(status) -> bool:
    return BookingStatus(status) in TERMINAL_STATUSES


def _enum(enum_cls):
    return Enum(enum_cls, native_enum=False, length=32,
                values_callable=lambda members: [m.value for m in members])


class Organization(Model):
    """
    A tenant. Every car and booking belongs to exactly one organization.

    Attributes:
        id (int): The primary key of the organization.
        name (str): Display name.
        join_code (str): Code users present to request membership.
    """
    __tablename__ = "organizations"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    join_code = Column(String(32), unique=True, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class User(Model):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    email = Column(String(200), unique=True, nullable=False)
    token_hash = Column(String(64), unique=True, nullable=False)
    is_master_admin = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class OrganizationMember(Model):
    __tablename__ = "organization_members"
    __table_args__ = (UniqueConstraint("organization_id", "user_id"),)

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    role = Column(_enum(Role), default=Role.SUPERVISOR, nullable=False)
    status = Column(_enum(MemberStatus), default=MemberStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Car(Model):
    """
    A fleet vehicle. Cars are referenced by assignments, never owned by a booking.

    `lock_version` is bumped by every write that creates or extends a blocking
    interval on the car, which serializes those writes per car.
    """
    __tablename__ = "cars"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    vehicle_number = Column(String(50), unique=True, nullable=False)
    make = Column(String(100))
    model = Column(String(100))
    seats = Column(Integer)
    status = Column(_enum(CarStatus), default=CarStatus.ACTIVE, nullable=False)
    lock_version = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Booking(Model):
    """
    Represents a booking in the database.

    Attributes:
        id (int): The primary key of the booking.
        booking_ref (str): Human readable reference, e.g. BK-20250105-4F2A9C.
        status (BookingStatus): Current lifecycle state.
        start_at (datetime): Start of the trip, naive UTC.
        end_at (datetime): End of the trip, naive UTC, exclusive.
    """
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    organization_id = Column(Integer, ForeignKey("organizations.id"), nullable=False, index=True)
    booking_ref = Column(String(32), unique=True, nullable=False)
    status = Column(_enum(BookingStatus), default=BookingStatus.INQUIRY, nullable=False, index=True)
    customer_name = Column(String(200), nullable=False)
    customer_phone = Column(String(50), nullable=False)
    trip_type = Column(_enum(TripType), default=TripType.LOCAL, nullable=False)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    pickup = Column(Text)
    dropoff = Column(Text)
    notes = Column(Text)
    created_by = Column(Integer, ForeignKey("users.id"))
    updated_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class BookingVehicle(Model):
    """A car assigned to a booking, with its driver and rate configuration."""
    __tablename__ = "booking_vehicles"
    __table_args__ = (UniqueConstraint("booking_id", "car_id"),)

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    car_id = Column(Integer, ForeignKey("cars.id"), nullable=False, index=True)
    driver_name = Column(String(200))
    driver_phone = Column(String(50))
    rate_type = Column(_enum(RateType), default=RateType.TOTAL, nullable=False)
    rate_total = Column(Float)
    rate_per_day = Column(Float)
    rate_per_km = Column(Float)
    estimated_km = Column(Float)
    final_km = Column(Float)
    computed_total = Column(Float)
    advance_amount = Column(Float, default=0, nullable=False)
    payment_status = Column(_enum(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"))
    updated_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class BookingAuditLog(Model):
    """Append-only history of accepted booking changes."""
    __tablename__ = "booking_audit_log"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    action = Column(_enum(AuditAction), nullable=False)
    before = Column(JSON)
    after = Column(JSON)
    actor_id = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow, nullable=False)


class TentativeHold(Model):
    __tablename__ = "tentative_holds"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), nullable=False, index=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class Invoice(Model):
    __tablename__ = "invoices"

    id = Column(Integer, primary_key=True)
    booking_id = Column(Integer, ForeignKey("bookings.id"), unique=True, nullable=False)
    invoice_no = Column(String(32), unique=True, nullable=False)
    amount_total = Column(Float, default=0, nullable=False)
    advance_amount = Column(Float, default=0, nullable=False)
    amount_due = Column(Float, default=0, nullable=False)
    issued_at = Column(DateTime, default=utcnow, nullable=False)
    created_by = Column(Integer, ForeignKey("users.id"))
    created_at = Column(DateTime, default=utcnow, nullable=False)


def snapshot(obj) -> dict:
    """
    JSON-safe copy of a row's column values, used for audit before/after images.
    """
    data = {}
    for column in obj.__table__.columns:
        value = getattr(obj, column.key)
        if isinstance(value, enum.Enum):
            value = value.value
        elif isinstance(value, (datetime, date)):
            value = value.isoformat()
        data[column.key] = value
    return data
