"""
This module contains the request and response models for the booking service.
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import AuditAction, BookingStatus, CarStatus, PaymentStatus, RateType, Role, TripType


class BookingCommand(BaseModel):
    """
    Represents the command for creating a booking.

    Attributes:
        customer_name (str): The name of the customer.
        customer_phone (str): The customer's phone number.
        trip_type (TripType): Kind of trip.
        start_at (datetime): Start of the trip.
        end_at (datetime): End of the trip.
    """
    customer_name: str = Field(..., min_length=2, description="Name of the customer")
    customer_phone: str = Field(..., pattern=r"^\+?[\d\-\s\(\)]{7,20}$",
                                description="Phone number of the customer")
    trip_type: TripType = TripType.LOCAL
    start_at: datetime
    end_at: datetime
    pickup: Optional[str] = None
    dropoff: Optional[str] = None
    notes: Optional[str] = None


class BookingUpdate(BaseModel):
    """Plain field edits. Dates and status have their own commands."""
    customer_name: Optional[str] = Field(None, min_length=2)
    customer_phone: Optional[str] = Field(None, pattern=r"^\+?[\d\-\s\(\)]{7,20}$")
    trip_type: Optional[TripType] = None
    pickup: Optional[str] = None
    dropoff: Optional[str] = None
    notes: Optional[str] = None


class DateChange(BaseModel):
    start_at: datetime
    end_at: datetime


class StatusChange(BaseModel):
    status: BookingStatus


class RateFields(BaseModel):
    rate_type: RateType = RateType.TOTAL
    rate_total: Optional[float] = Field(None, ge=0)
    rate_per_day: Optional[float] = Field(None, ge=0)
    rate_per_km: Optional[float] = Field(None, ge=0)
    estimated_km: Optional[float] = Field(None, ge=0)
    final_km: Optional[float] = Field(None, ge=0)
    advance_amount: float = Field(0, ge=0)


class VehicleAssignmentCommand(RateFields):
    car_id: int
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None


class AvailabilityQuery(BaseModel):
    """
    Desired range plus the cars to classify. An empty `car_ids` means every active car.
    """
    start_at: datetime
    end_at: datetime
    car_ids: list[int] = Field(default_factory=list)
    gap_minutes: Optional[int] = Field(None, ge=0)
    exclude_booking_id: Optional[int] = None


class CarAvailability(BaseModel):
    car_id: int
    vehicle_number: Optional[str] = None
    model: Optional[str] = None
    seats: Optional[int] = None
    is_available: bool
    conflict_booking_ref: Optional[str] = None
    conflict_start: Optional[datetime] = None
    conflict_end: Optional[datetime] = None
    conflict_booked_by: Optional[str] = None
    error: Optional[str] = None


class CarCommand(BaseModel):
    vehicle_number: str = Field(..., min_length=2, max_length=50)
    make: Optional[str] = None
    model: Optional[str] = None
    seats: Optional[int] = Field(None, ge=1)
    status: CarStatus = CarStatus.ACTIVE


class OrganizationCommand(BaseModel):
    name: str = Field(..., min_length=2)
    admin_user_id: Optional[int] = None


class UserCommand(BaseModel):
    name: str = Field(..., min_length=2)
    email: str = Field(..., pattern=r"^[\w\.-]+@[\w\.-]+\.\w+$")
    role: Role = Role.SUPERVISOR
    organization_id: Optional[int] = None


class JoinCommand(BaseModel):
    join_code: str = Field(..., min_length=4)


class MembershipReview(BaseModel):
    action: Literal["approve", "block"]
    role: Role = Role.SUPERVISOR


class MemberActive(BaseModel):
    active: bool


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    booking_ref: str
    status: BookingStatus
    customer_name: str
    customer_phone: str
    trip_type: TripType
    start_at: datetime
    end_at: datetime
    pickup: Optional[str] = None
    dropoff: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[int] = None
    updated_by: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class BookingVehicleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    car_id: int
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    rate_type: RateType
    rate_total: Optional[float] = None
    rate_per_day: Optional[float] = None
    rate_per_km: Optional[float] = None
    estimated_km: Optional[float] = None
    final_km: Optional[float] = None
    computed_total: Optional[float] = None
    advance_amount: float
    payment_status: PaymentStatus


class BookingDetailOut(BookingOut):
    vehicles: list[BookingVehicleOut] = Field(default_factory=list)


class CarOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    organization_id: int
    vehicle_number: str
    make: Optional[str] = None
    model: Optional[str] = None
    seats: Optional[int] = None
    status: CarStatus


class AuditEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    action: AuditAction
    before: Optional[dict] = None
    after: Optional[dict] = None
    actor_id: Optional[int] = None
    actor_name: Optional[str] = None
    created_at: datetime


class InvoiceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: int
    invoice_no: str
    amount_total: float
    advance_amount: float
    amount_due: float
    issued_at: datetime
