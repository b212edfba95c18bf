"""
This module contains the availability checker.

Given a desired range it classifies cars as available or conflicting. It never
writes, so running the same check twice without intervening writes gives the
same answer.
"""
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InvalidRangeError, VehicleNotFoundError
from .intervals import DEFAULT_GAP, find_blocking_intervals, to_utc
from .models import Car, CarStatus
from .schemas import CarAvailability

logger = logging.getLogger(__name__)


def validate_range(start: datetime, end: datetime):
    """
    Raises InvalidRangeError unless start is strictly before end.

    Returns:
        tuple[datetime, datetime]: The range normalized to naive UTC.
    """
    start, end = to_utc(start), to_utc(end)
    if start >= end:
        raise InvalidRangeError(f"Start {start.isoformat()} must be before end {end.isoformat()}")
    return start, end


async def _load_cars(session: AsyncSession, organization_id: int, car_ids: Optional[Iterable[int]]):
    if not car_ids:
        result = await session.execute(
            select(Car)
            .where(Car.organization_id == organization_id, Car.status == CarStatus.ACTIVE)
            .order_by(Car.vehicle_number)
        )
        return [(car.id, car) for car in result.scalars().all()]

    ids = list(dict.fromkeys(car_ids))
    result = await session.execute(
        select(Car).where(Car.organization_id == organization_id, Car.id.in_(ids))
    )
    found = {car.id: car for car in result.scalars().all()}
    return [(car_id, found.get(car_id)) for car_id in ids]


async def check_availability(session: AsyncSession, organization_id: int, start: datetime, end: datetime,
                             car_ids: Optional[Iterable[int]] = None,
                             gap: Optional[timedelta] = None,
                             exclude_booking_id: Optional[int] = None) -> list[CarAvailability]:
    """
    Classifies each candidate car as available or conflicting for [start, end).

    Args:
        session (AsyncSession): The database session.
        organization_id (int): Tenant the cars must belong to.
        start (datetime): Desired start.
        end (datetime): Desired end (exclusive).
        car_ids (Iterable[int] | None): Candidate cars. Empty or None means every
            active car of the organization.
        gap (timedelta | None): Buffer between bookings, defaults to the configured gap.
        exclude_booking_id (int | None): Booking whose own assignments are ignored.

    Returns:
        list[CarAvailability]: One entry per candidate, in request order. When a car
            conflicts, the entry describes the earliest-starting conflicting booking.
            A car that does not exist, or is inactive, carries an error instead of
            aborting the batch.

    Raises:
        InvalidRangeError: If start is not before end.
    """
    start, end = validate_range(start, end)
    if gap is None:
        gap = DEFAULT_GAP

    results = []
    for car_id, car in await _load_cars(session, organization_id, car_ids):
        if car is None:
            error = VehicleNotFoundError(car_id)
            logger.info(f"Availability check skipped unknown car {car_id}")
            results.append(CarAvailability(car_id=car_id, is_available=False, error=str(error)))
            continue
        if car.status != CarStatus.ACTIVE:
            results.append(CarAvailability(car_id=car.id, vehicle_number=car.vehicle_number, model=car.model,
                                           seats=car.seats, is_available=False,
                                           error=f"Vehicle {car.id} is inactive"))
            continue

        intervals = await find_blocking_intervals(session, car.id, start, end, gap=gap,
                                                  exclude_booking_id=exclude_booking_id)
        entry = CarAvailability(
            car_id=car.id,
            vehicle_number=car.vehicle_number,
            model=car.model,
            seats=car.seats,
            is_available=not intervals,
        )
        if intervals:
            first = intervals[0]
            entry.conflict_booking_ref = first.booking_ref
            entry.conflict_start = first.interval.start
            entry.conflict_end = first.interval.end
            entry.conflict_booked_by = first.created_by_name
        results.append(entry)
    return results


def conflicts_of(results: list[CarAvailability]) -> list[dict]:
    """Conflict details of the unavailable entries, as carried by BookingConflictError."""
    return [
        r.model_dump(mode="json", exclude={"error"})
        for r in results
        if not r.is_available and r.error is None
    ]
