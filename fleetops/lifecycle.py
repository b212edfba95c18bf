"""
This module contains the booking lifecycle manager.

It owns the status state machine and gates every write that creates or extends
a blocking interval through the availability checker. Those writes lock the
affected car rows first and re-run the check inside the same transaction, so
two requests racing for the same car cannot both pass.
"""
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Iterable, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import Actor, require_organization
from .availability import check_availability, conflicts_of, validate_range
from .billing import compute_assignment_total, generate_reference
from .config import TENTATIVE_HOLD_HOURS
from .errors import (AssignmentExistsError, BookingConflictError, BookingNotFoundError, FleetOpsError,
                     InvalidTransitionError, VehicleNotFoundError)
from .models import (STATUS_ORDER, AuditAction, Booking, BookingAuditLog, BookingStatus, BookingVehicle, Car,
                     CarStatus, TentativeHold, User, is_blocking, is_terminal, snapshot, utcnow)
from .schemas import BookingCommand, BookingUpdate, RateFields, VehicleAssignmentCommand

logger = logging.getLogger(__name__)

RATE_FIELDS = ("rate_type", "rate_total", "rate_per_day", "rate_per_km", "estimated_km", "final_km",
               "advance_amount")

# SQLSTATEs for serialization failure and deadlock
RACE_SQLSTATES = {"40001", "40P01"}


def validate_transition(current: BookingStatus, target: BookingStatus):
    """
    Raises InvalidTransitionError unless `current -> target` is a legal move.

    Moves go forward along inquiry, tentative, confirmed, ongoing, completed
    (skipping ahead is allowed); cancelled is reachable from any non-terminal
    state; nothing leaves completed or cancelled.
    """
    current, target = BookingStatus(current), BookingStatus(target)
    if is_terminal(current):
        raise InvalidTransitionError(f"Booking is {current.value}; no further transitions are allowed")
    if target == current:
        raise InvalidTransitionError(f"Booking is already {current.value}")
    if target == BookingStatus.CANCELLED:
        return
    if STATUS_ORDER.index(target) < STATUS_ORDER.index(current):
        raise InvalidTransitionError(f"Cannot move a booking back from {current.value} to {target.value}")


def _lost_race(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code in RACE_SQLSTATES:
        return True
    return "database is locked" in str(orig)


def _audit(session: AsyncSession, booking_id: int, action: AuditAction, actor: Optional[Actor],
           before: Optional[dict] = None, after: Optional[dict] = None):
    session.add(BookingAuditLog(
        booking_id=booking_id,
        action=action,
        before=before,
        after=after,
        actor_id=actor.user_id if actor else None,
    ))


async def get_booking(session: AsyncSession, booking_id: int, actor: Actor) -> Booking:
    """Loads a booking of the actor's organization or raises BookingNotFoundError."""
    booking = await session.get(Booking, booking_id)
    if booking is None or booking.organization_id != actor.organization_id:
        raise BookingNotFoundError(booking_id)
    return booking


async def get_assignments(session: AsyncSession, booking_id: int) -> list[BookingVehicle]:
    result = await session.execute(
        select(BookingVehicle).where(BookingVehicle.booking_id == booking_id).order_by(BookingVehicle.id)
    )
    return list(result.scalars().all())


async def list_bookings(session: AsyncSession, actor: Actor, status: Optional[BookingStatus] = None):
    stmt = select(Booking).where(Booking.organization_id == actor.organization_id)
    if status is not None:
        stmt = stmt.where(Booking.status == status)
    result = await session.execute(stmt.order_by(Booking.start_at.desc()))
    return result.scalars().all()


async def _lock_cars(session: AsyncSession, car_ids: Iterable[int]):
    """
    Bumps `lock_version` on the cars, taking a row lock (PostgreSQL) or the
    database write lock (SQLite) until the transaction ends.
    """
    ids = sorted(set(car_ids))
    if ids:
        await session.execute(
            update(Car).where(Car.id.in_(ids)).values(lock_version=Car.lock_version + 1)
        )


async def _blocking_write(session: AsyncSession, booking: Booking, car_ids: list[int], start, end,
                          apply: Callable[[], Awaitable[Any]]):
    """
    Runs `apply` and commits only if every car is free for [start, end).

    The cars are locked, then checked against the committed state (excluding the
    booking itself), then `apply` performs the writes. Any rejection rolls the
    whole transaction back.
    """
    organization_id, booking_id = booking.organization_id, booking.id
    if not car_ids:
        # Nothing reserved, nothing to check
        outcome = await apply()
        await session.commit()
        return outcome
    try:
        await _lock_cars(session, car_ids)
        results = await check_availability(session, organization_id, start, end,
                                           car_ids=car_ids, exclude_booking_id=booking_id)
        missing = [r for r in results if r.error is not None]
        if missing:
            raise VehicleNotFoundError(missing[0].car_id)
        conflicts = conflicts_of(results)
        if conflicts:
            logger.warning(f"Booking {booking.booking_ref} conflicts on cars {[c['car_id'] for c in conflicts]}")
            raise BookingConflictError(conflicts)
        outcome = await apply()
        await session.commit()
        return outcome
    except FleetOpsError:
        await session.rollback()
        raise
    except DBAPIError as exc:
        await session.rollback()
        if not _lost_race(exc):
            raise
        logger.warning(f"Booking {booking_id} lost a concurrent write on cars {car_ids}")
        results = await check_availability(session, organization_id, start, end,
                                           car_ids=car_ids, exclude_booking_id=booking_id)
        conflicts = conflicts_of(results) or [{"car_id": car_id} for car_id in car_ids]
        raise BookingConflictError(conflicts, "Vehicle was booked by a concurrent request") from exc


async def create_booking(session: AsyncSession, command: BookingCommand, actor: Actor) -> Booking:
    """
    Creates a booking in `inquiry`. No car is reserved until one is assigned.

    Args:
        session (AsyncSession): The database session.
        command (BookingCommand): The booking details.
        actor (Actor): The acting user.

    Returns:
        Booking: The saved booking.
    """
    start, end = validate_range(command.start_at, command.end_at)
    booking = Booking(
        **command.model_dump(exclude={"start_at", "end_at"}),
        start_at=start,
        end_at=end,
        organization_id=require_organization(actor),
        booking_ref=generate_reference("BK"),
        status=BookingStatus.INQUIRY,
        created_by=actor.user_id,
        updated_by=actor.user_id,
    )
    session.add(booking)
    await session.flush()
    _audit(session, booking.id, AuditAction.CREATED, actor, after=snapshot(booking))
    await session.commit()
    await session.refresh(booking)
    logger.info(f"Booking {booking.booking_ref} created by user {actor.user_id}")
    return booking


async def update_booking(session: AsyncSession, booking_id: int, changes: BookingUpdate, actor: Actor) -> Booking:
    booking = await get_booking(session, booking_id, actor)
    if is_terminal(booking.status):
        raise InvalidTransitionError(f"Booking is {booking.status.value} and can no longer be edited")

    before = snapshot(booking)
    for field, value in changes.model_dump(exclude_unset=True).items():
        setattr(booking, field, value)
    booking.updated_by = actor.user_id
    await session.flush()
    _audit(session, booking.id, AuditAction.UPDATED, actor, before=before, after=snapshot(booking))
    await session.commit()
    await session.refresh(booking)
    return booking


async def change_dates(session: AsyncSession, booking_id: int, start, end, actor: Actor) -> Booking:
    """
    Moves a booking to a new range, re-checking every assigned car first.

    Raises:
        InvalidRangeError: If start is not before end.
        BookingConflictError: If any assigned car is taken in the new range.
    """
    start, end = validate_range(start, end)
    booking = await get_booking(session, booking_id, actor)
    if is_terminal(booking.status):
        raise InvalidTransitionError(f"Booking is {booking.status.value}; its dates are final")

    before = snapshot(booking)

    async def apply():
        booking.start_at = start
        booking.end_at = end
        booking.updated_by = actor.user_id
        for assignment in await get_assignments(session, booking.id):
            assignment.computed_total = compute_assignment_total(assignment, booking)
        await session.flush()
        _audit(session, booking.id, AuditAction.DATE_CHANGED, actor, before=before, after=snapshot(booking))

    car_ids = [a.car_id for a in await get_assignments(session, booking.id)]
    await _blocking_write(session, booking, car_ids, start, end, apply)
    await session.refresh(booking)
    logger.info(f"Booking {booking.booking_ref} moved to {start} - {end}")
    return booking


async def transition(session: AsyncSession, booking_id: int, new_status, actor: Optional[Actor],
                     booking: Optional[Booking] = None) -> Booking:
    """
    Moves a booking to `new_status`.

    Moving into a blocking status re-checks every assigned car. Entering
    `tentative` opens a tentative hold; leaving it drops the hold.

    Args:
        session (AsyncSession): The database session.
        booking_id (int): The booking to move.
        new_status (BookingStatus): Target status.
        actor (Actor | None): The acting user, None for system sweeps.
        booking (Booking | None): Already loaded booking, skips the tenant lookup.

    Raises:
        InvalidTransitionError: For illegal moves, including any move out of a terminal state.
        BookingConflictError: If a car is no longer free for the booking's range.
    """
    new_status = BookingStatus(new_status)
    if booking is None:
        booking = await get_booking(session, booking_id, actor)
    validate_transition(booking.status, new_status)

    assignments = await get_assignments(session, booking.id)
    if new_status != BookingStatus.CANCELLED and not assignments:
        raise InvalidTransitionError("Assign at least one vehicle before leaving inquiry")

    before = snapshot(booking)
    old_status = booking.status

    async def apply():
        booking.status = new_status
        if actor is not None:
            booking.updated_by = actor.user_id
        if old_status == BookingStatus.TENTATIVE:
            await session.execute(delete(TentativeHold).where(TentativeHold.booking_id == booking.id))
        if new_status == BookingStatus.TENTATIVE:
            session.add(TentativeHold(booking_id=booking.id,
                                      expires_at=utcnow() + timedelta(hours=TENTATIVE_HOLD_HOURS)))
        await session.flush()
        _audit(session, booking.id, AuditAction.STATUS_CHANGED, actor, before=before, after=snapshot(booking))

    if is_blocking(new_status):
        car_ids = [a.car_id for a in assignments]
        await _blocking_write(session, booking, car_ids, booking.start_at, booking.end_at, apply)
    else:
        await apply()
        await session.commit()

    await session.refresh(booking)
    logger.info(f"Booking {booking.booking_ref}: {old_status.value} -> {new_status.value}")
    return booking


async def assign_vehicle(session: AsyncSession, booking_id: int, command: VehicleAssignmentCommand,
                         actor: Actor) -> BookingVehicle:
    """
    Assigns a car to a booking once it is confirmed free for the booking's range.

    Raises:
        VehicleNotFoundError: If the car is unknown to the organization or inactive.
        AssignmentExistsError: If the car is already on this booking.
        BookingConflictError: If another blocking booking holds the car.
    """
    booking = await get_booking(session, booking_id, actor)
    if is_terminal(booking.status):
        raise InvalidTransitionError(f"Cannot assign vehicles to a {booking.status.value} booking")

    car = await session.get(Car, command.car_id)
    if car is None or car.organization_id != booking.organization_id or car.status != CarStatus.ACTIVE:
        raise VehicleNotFoundError(command.car_id)

    existing = await session.execute(
        select(BookingVehicle.id).where(BookingVehicle.booking_id == booking.id,
                                        BookingVehicle.car_id == car.id)
    )
    # A rollback expires every loaded instance, so keep what the messages need
    vehicle_number, booking_ref = car.vehicle_number, booking.booking_ref
    if existing.first() is not None:
        raise AssignmentExistsError(f"Vehicle {vehicle_number} is already assigned to {booking_ref}")

    assignment = BookingVehicle(
        **command.model_dump(),
        booking_id=booking.id,
        created_by=actor.user_id,
        updated_by=actor.user_id,
    )

    async def apply():
        assignment.computed_total = compute_assignment_total(assignment, booking)
        session.add(assignment)
        await session.flush()
        _audit(session, booking.id, AuditAction.VEHICLE_ASSIGNED, actor, after=snapshot(assignment))

    try:
        await _blocking_write(session, booking, [car.id], booking.start_at, booking.end_at, apply)
    except IntegrityError as exc:
        raise AssignmentExistsError(
            f"Vehicle {vehicle_number} is already assigned to {booking_ref}") from exc
    await session.refresh(assignment)
    logger.info(f"Vehicle {vehicle_number} assigned to booking {booking_ref}")
    return assignment


async def _get_assignment(session: AsyncSession, booking: Booking, assignment_id: int) -> BookingVehicle:
    assignment = await session.get(BookingVehicle, assignment_id)
    if assignment is None or assignment.booking_id != booking.id:
        raise VehicleNotFoundError(assignment_id)
    return assignment


async def remove_vehicle(session: AsyncSession, booking_id: int, assignment_id: int, actor: Actor):
    booking = await get_booking(session, booking_id, actor)
    if is_terminal(booking.status):
        raise InvalidTransitionError(f"Cannot remove vehicles from a {booking.status.value} booking")
    assignment = await _get_assignment(session, booking, assignment_id)

    remaining = [a for a in await get_assignments(session, booking.id) if a.id != assignment.id]
    if not remaining and booking.status != BookingStatus.INQUIRY:
        raise InvalidTransitionError("Only an inquiry may have no vehicles; cancel the booking instead")

    before = snapshot(assignment)
    await session.delete(assignment)
    _audit(session, booking.id, AuditAction.VEHICLE_REMOVED, actor, before=before)
    await session.commit()
    logger.info(f"Assignment {assignment_id} removed from booking {booking.booking_ref}")


async def update_rates(session: AsyncSession, booking_id: int, assignment_id: int, rates: RateFields,
                       actor: Actor) -> BookingVehicle:
    """Changes the rate configuration of one assignment and recomputes its total."""
    booking = await get_booking(session, booking_id, actor)
    if booking.status == BookingStatus.CANCELLED:
        raise InvalidTransitionError("Cannot change rates of a cancelled booking")
    assignment = await _get_assignment(session, booking, assignment_id)

    before = snapshot(assignment)
    for field, value in rates.model_dump(include=set(RATE_FIELDS), exclude_unset=True).items():
        setattr(assignment, field, value)
    assignment.computed_total = compute_assignment_total(assignment, booking)
    assignment.updated_by = actor.user_id
    await session.flush()
    _audit(session, booking.id, AuditAction.RATE_CHANGED, actor, before=before, after=snapshot(assignment))
    await session.commit()
    await session.refresh(assignment)
    return assignment


async def audit_log(session: AsyncSession, booking_id: int, actor: Actor) -> list[dict]:
    """
    Returns the audit history of a booking, newest first, with actor names.
    """
    await get_booking(session, booking_id, actor)
    result = await session.execute(
        select(BookingAuditLog, User.name)
        .outerjoin(User, User.id == BookingAuditLog.actor_id)
        .where(BookingAuditLog.booking_id == booking_id)
        .order_by(BookingAuditLog.created_at.desc(), BookingAuditLog.id.desc())
    )
    entries = []
    for entry, actor_name in result.all():
        data = snapshot(entry)
        data["actor_name"] = actor_name
        entries.append(data)
    return entries
