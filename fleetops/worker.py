"""
This module contains the Celery worker and tasks for the booking service.
"""
import logging

import anyio
from celery import Celery, Task
from sqlalchemy import select

from .config import CELERY_BROKER_URL, CELERY_RESULT_BACKEND, HOLD_SWEEP_SECONDS
from .db import db
from .errors import FleetOpsError
from .lifecycle import transition
from .models import Booking, BookingStatus, TentativeHold, utcnow

# Configure logging
logger = logging.getLogger(__name__)

app = Celery('fleetops',
             broker=CELERY_BROKER_URL,
             backend=CELERY_RESULT_BACKEND,
             include=["fleetops.worker"])

app.conf.beat_schedule = {
    "expire-tentative-holds": {
        "task": "fleetops.worker.expire_tentative_holds",
        "schedule": float(HOLD_SWEEP_SECONDS),
    },
}


class BaseTaskWithRetry(Task):
    """
    Base task with automatic retry mechanism.
    """
    autoretry_for = (Exception,)
    retry_kwargs = {'max_retries': 5}
    retry_backoff = True


async def _get_expired_holds(database=db, now=None):
    """
    Helper function to list bookings still tentative whose hold has run out.

    Args:
        database (Alchemical): Database to read from.
        now (datetime | None): Reference time, defaults to the current UTC time.

    Returns:
        list[int]: Ids of the expired bookings.
    """
    now = now or utcnow()
    async with database.Session() as session:
        result = await session.execute(
            select(Booking.id)
            .join(TentativeHold, TentativeHold.booking_id == Booking.id)
            .where(Booking.status == BookingStatus.TENTATIVE, TentativeHold.expires_at <= now)
            .distinct()
            .order_by(Booking.id)
        )
        return list(result.scalars().all())


async def _expire_tentative_holds(database=db, now=None):
    """
    Helper function to cancel every booking whose tentative hold expired.

    A booking that changed status since it was listed is skipped.

    Returns:
        list[int]: Ids of the bookings that were cancelled.
    """
    cancelled = []
    for booking_id in await _get_expired_holds(database, now):
        async with database.Session() as session:
            booking = await session.get(Booking, booking_id)
            if booking is None or booking.status != BookingStatus.TENTATIVE:
                continue
            try:
                await transition(session, booking_id, BookingStatus.CANCELLED, None, booking=booking)
            except FleetOpsError as exc:
                logger.error(f"Could not expire hold of booking {booking_id}: {exc}")
                continue
            logger.warning(f"Tentative hold of booking {booking.booking_ref} expired; booking cancelled.")
            cancelled.append(booking_id)
    return cancelled


@app.task(bind=True, base=BaseTaskWithRetry)
def expire_tentative_holds(self):
    """
    Celery task that cancels bookings whose tentative hold expired, run by beat.
    """
    logger.info(f"{type(self)} -- Sweeping expired tentative holds")
    cancelled = anyio.run(_expire_tentative_holds)
    logger.info(f"Cancelled {len(cancelled)} expired tentative bookings: {cancelled}")
    return cancelled


@app.task
def get_expired_holds():
    """
    Celery task to list bookings whose tentative hold expired without touching them.
    """
    logger.info("Checking for expired tentative holds.")
    booking_ids = anyio.run(_get_expired_holds)
    logger.info(f"Found {len(booking_ids)} expired holds: {booking_ids}")
    return booking_ids
