"""
This module contains the per-car interval index.

It answers one question: which blocking bookings of a car intersect a given
date range once each booking is padded by the gap buffer on both ends.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .config import BOOKING_GAP_MINUTES
from .models import BLOCKING_STATUSES, Booking, BookingVehicle, User

logger = logging.getLogger(__name__)

DEFAULT_GAP = timedelta(minutes=BOOKING_GAP_MINUTES)


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC. Naive values are taken as UTC already."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass(frozen=True)
class Interval:
    """A half-open time range [start, end)."""
    start: datetime
    end: datetime

    def padded(self, gap: timedelta) -> "Interval":
        return Interval(self.start - gap, self.end + gap)

    def intersects(self, other: "Interval") -> bool:
        # Half-open: touching endpoints do not intersect
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class BlockingInterval:
    """
    A range during which a car is reserved by a booking in a blocking status.

    Attributes:
        booking_id (int): The booking holding the car.
        booking_ref (str): Its human readable reference.
        car_id (int): The reserved car.
        interval (Interval): The unpadded booking range.
        created_by (int | None): User who created the booking.
        created_by_name (str | None): That user's display name.
    """
    booking_id: int
    booking_ref: str
    car_id: int
    interval: Interval
    created_by: Optional[int] = None
    created_by_name: Optional[str] = None


async def find_blocking_intervals(session: AsyncSession, car_id: int, start: datetime, end: datetime,
                                  gap: timedelta = DEFAULT_GAP,
                                  exclude_booking_id: Optional[int] = None) -> list[BlockingInterval]:
    """
    Returns the blocking intervals of a car whose padded range intersects [start, end).

    Args:
        session (AsyncSession): The database session.
        car_id (int): The car to look up.
        start (datetime): Start of the queried range.
        end (datetime): End of the queried range (exclusive).
        gap (timedelta): Buffer added to both ends of every stored booking.
        exclude_booking_id (int | None): Booking to ignore, used when a booking is
            checked against everything but itself.

    Returns:
        list[BlockingInterval]: Matches ordered by start time, earliest first.
    """
    start, end = to_utc(start), to_utc(end)
    query_range = Interval(start, end)

    # [s - gap, e + gap) intersects [start, end)  <=>  s < end + gap and e > start - gap
    stmt = (
        select(Booking, BookingVehicle.car_id, User.name)
        .join(BookingVehicle, BookingVehicle.booking_id == Booking.id)
        .outerjoin(User, User.id == Booking.created_by)
        .where(
            BookingVehicle.car_id == car_id,
            Booking.status.in_(sorted(BLOCKING_STATUSES)),
            Booking.start_at < end + gap,
            Booking.end_at > start - gap,
        )
        .order_by(Booking.start_at, Booking.booking_ref)
    )
    if exclude_booking_id is not None:
        stmt = stmt.where(Booking.id != exclude_booking_id)

    result = await session.execute(stmt)
    intervals = []
    for booking, row_car_id, creator_name in result.all():
        interval = Interval(booking.start_at, booking.end_at)
        if not interval.padded(gap).intersects(query_range):
            continue
        intervals.append(BlockingInterval(
            booking_id=booking.id,
            booking_ref=booking.booking_ref,
            car_id=row_car_id,
            interval=interval,
            created_by=booking.created_by,
            created_by_name=creator_name,
        ))
    logger.debug(f"Car {car_id}: {len(intervals)} blocking intervals intersect {start} - {end}")
    return intervals
