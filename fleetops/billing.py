"""
This module contains the rate arithmetic and invoice generation for bookings.
"""
import logging
import math
import secrets
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import BookingNotFoundError
from .models import Booking, BookingVehicle, Invoice, RateType, utcnow

logger = logging.getLogger(__name__)


def rental_days(start: datetime, end: datetime) -> int:
    """Whole days billed for a trip: the duration rounded up, never less than one."""
    days = math.ceil((end - start).total_seconds() / 86400)
    return days if days > 0 else 1


def compute_total(rate_type, rate_total=None, rate_per_day=None, rate_per_km=None,
                  days: int = 1, km=None) -> float:
    """
    Computes the amount owed for one car.

    Args:
        rate_type (RateType): How the car is charged.
        rate_total (float | None): Flat amount for `total`.
        rate_per_day (float | None): Day rate for `per_day` and `hybrid`.
        rate_per_km (float | None): Distance rate for `per_km` and `hybrid`.
        days (int): Billed days.
        km (float | None): Distance driven (final or estimated).

    Returns:
        float: The total, rounded to two decimals. Missing rates count as zero.
    """
    rate_type = RateType(rate_type)
    day_amount = (rate_per_day or 0) * days
    km_amount = (rate_per_km or 0) * (km or 0)

    if rate_type == RateType.TOTAL:
        total = rate_total or 0
    elif rate_type == RateType.PER_DAY:
        total = day_amount
    elif rate_type == RateType.PER_KM:
        total = km_amount
    else:
        total = day_amount + km_amount
    return round(total, 2)


def compute_assignment_total(assignment: BookingVehicle, booking: Booking) -> float:
    km = assignment.final_km if assignment.final_km is not None else assignment.estimated_km
    return compute_total(
        assignment.rate_type,
        rate_total=assignment.rate_total,
        rate_per_day=assignment.rate_per_day,
        rate_per_km=assignment.rate_per_km,
        days=rental_days(booking.start_at, booking.end_at),
        km=km,
    )


def generate_reference(prefix: str) -> str:
    """References look like BK-20250105-4F2A9C."""
    return f"{prefix}-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


async def generate_invoice(session: AsyncSession, booking_id: int, actor) -> Invoice:
    """
    Creates the invoice for a booking, or refreshes the amounts of the existing one.

    Args:
        session (AsyncSession): The database session.
        booking_id (int): The booking to invoice.
        actor (Actor): The acting user; the booking must belong to their organization.

    Returns:
        Invoice: The saved invoice.
    """
    booking = await session.get(Booking, booking_id)
    if booking is None or booking.organization_id != actor.organization_id:
        raise BookingNotFoundError(booking_id)

    result = await session.execute(select(BookingVehicle).where(BookingVehicle.booking_id == booking_id))
    vehicles = result.scalars().all()
    amount_total = round(sum(v.computed_total or v.rate_total or 0 for v in vehicles), 2)
    advance_amount = round(sum(v.advance_amount or 0 for v in vehicles), 2)

    invoice = (await session.execute(
        select(Invoice).where(Invoice.booking_id == booking_id)
    )).scalar_one_or_none()
    if invoice is None:
        invoice = Invoice(booking_id=booking_id, invoice_no=generate_reference("INV"),
                          created_by=actor.user_id)
        session.add(invoice)

    invoice.amount_total = amount_total
    invoice.advance_amount = advance_amount
    invoice.amount_due = round(amount_total - advance_amount, 2)
    await session.commit()
    await session.refresh(invoice)
    logger.info(f"Invoice {invoice.invoice_no} for booking {booking.booking_ref}: due {invoice.amount_due}")
    return invoice
