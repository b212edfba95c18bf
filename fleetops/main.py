"""
This module contains the main FastAPI application for the booking service.
"""
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from . import admin, lifecycle
from .auth import Actor, Capability, authorize, get_current_actor, require_organization
from .availability import check_availability
from .billing import generate_invoice
from .db import create_db_and_tables, get_db_session
from .errors import FleetOpsError
from .models import BookingStatus
from .schemas import (AuditEntryOut, AvailabilityQuery, BookingCommand, BookingDetailOut, BookingOut,
                      BookingUpdate, BookingVehicleOut, CarAvailability, CarCommand, CarOut, DateChange,
                      InvoiceOut, JoinCommand, MemberActive, MembershipReview, OrganizationCommand, RateFields,
                      StatusChange, UserCommand, VehicleAssignmentCommand)


@asynccontextmanager
async def lifespan(api_app: FastAPI):
    """
    Asynchronous context manager for the lifespan of the FastAPI application.
    It creates the database and tables on startup.

    Args:
        api_app (FastAPI): The FastAPI application instance.
    """
    await create_db_and_tables()
    yield

app = FastAPI(title="fleetops", lifespan=lifespan)


@app.exception_handler(FleetOpsError)
async def fleetops_error_handler(request: Request, exc: FleetOpsError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def booking_manager(actor: Actor = Depends(get_current_actor)) -> Actor:
    """
    Dependency that requires the booking capability in the actor's organization.
    """
    authorize(actor, Capability.MANAGE_BOOKINGS)
    require_organization(actor)
    return actor


@app.get("/")
async def root():
    """
    Root endpoint for the API.
    """
    return {"message": "fleetops booking service"}


@app.post("/bookings", response_model=BookingOut, status_code=201)
async def create_booking(booking_cmd: BookingCommand, db: AsyncSession = Depends(get_db_session),
                         actor: Actor = Depends(booking_manager)):
    """
    Creates a new booking in the inquiry state.

    Args:
        booking_cmd (BookingCommand): The booking command with the booking details.
        db (AsyncSession): The database session.
        actor (Actor): The acting user.

    Returns:
        BookingOut: The created booking.
    """
    return await lifecycle.create_booking(db, booking_cmd, actor)


@app.get("/bookings", response_model=list[BookingOut])
async def list_bookings(status: Optional[BookingStatus] = None, db: AsyncSession = Depends(get_db_session),
                        actor: Actor = Depends(booking_manager)):
    return await lifecycle.list_bookings(db, actor, status)


@app.get("/bookings/{booking_id}", response_model=BookingDetailOut)
async def get_booking(booking_id: int, db: AsyncSession = Depends(get_db_session),
                      actor: Actor = Depends(booking_manager)):
    """
    Retrieves a booking with its vehicle assignments.
    """
    booking = await lifecycle.get_booking(db, booking_id, actor)
    vehicles = await lifecycle.get_assignments(db, booking.id)
    detail = BookingDetailOut.model_validate(booking)
    detail.vehicles = [BookingVehicleOut.model_validate(v) for v in vehicles]
    return detail


@app.patch("/bookings/{booking_id}", response_model=BookingOut)
async def update_booking(booking_id: int, changes: BookingUpdate, db: AsyncSession = Depends(get_db_session),
                         actor: Actor = Depends(booking_manager)):
    return await lifecycle.update_booking(db, booking_id, changes, actor)


@app.put("/bookings/{booking_id}/dates", response_model=BookingOut)
async def change_dates(booking_id: int, dates: DateChange, db: AsyncSession = Depends(get_db_session),
                       actor: Actor = Depends(booking_manager)):
    return await lifecycle.change_dates(db, booking_id, dates.start_at, dates.end_at, actor)


@app.post("/bookings/{booking_id}/status", response_model=BookingOut)
async def change_status(booking_id: int, change: StatusChange, db: AsyncSession = Depends(get_db_session),
                        actor: Actor = Depends(booking_manager)):
    """
    Moves a booking through its lifecycle. Conflicts answer 409 with the conflicting bookings.
    """
    return await lifecycle.transition(db, booking_id, change.status, actor)


@app.post("/bookings/{booking_id}/vehicles", response_model=BookingVehicleOut, status_code=201)
async def assign_vehicle(booking_id: int, assignment: VehicleAssignmentCommand,
                         db: AsyncSession = Depends(get_db_session), actor: Actor = Depends(booking_manager)):
    return await lifecycle.assign_vehicle(db, booking_id, assignment, actor)


@app.patch("/bookings/{booking_id}/vehicles/{assignment_id}", response_model=BookingVehicleOut)
async def update_rates(booking_id: int, assignment_id: int, rates: RateFields,
                       db: AsyncSession = Depends(get_db_session), actor: Actor = Depends(booking_manager)):
    return await lifecycle.update_rates(db, booking_id, assignment_id, rates, actor)


@app.delete("/bookings/{booking_id}/vehicles/{assignment_id}", status_code=204)
async def remove_vehicle(booking_id: int, assignment_id: int, db: AsyncSession = Depends(get_db_session),
                         actor: Actor = Depends(booking_manager)):
    await lifecycle.remove_vehicle(db, booking_id, assignment_id, actor)


@app.get("/bookings/{booking_id}/audit", response_model=list[AuditEntryOut])
async def booking_audit(booking_id: int, db: AsyncSession = Depends(get_db_session),
                        actor: Actor = Depends(booking_manager)):
    return await lifecycle.audit_log(db, booking_id, actor)


@app.post("/bookings/{booking_id}/invoice", response_model=InvoiceOut)
async def booking_invoice(booking_id: int, db: AsyncSession = Depends(get_db_session),
                          actor: Actor = Depends(booking_manager)):
    return await generate_invoice(db, booking_id, actor)


@app.post("/availability", response_model=list[CarAvailability])
async def availability(query: AvailabilityQuery, db: AsyncSession = Depends(get_db_session),
                       actor: Actor = Depends(booking_manager)):
    """
    Classifies cars as available or conflicting for a desired range.
    """
    gap = timedelta(minutes=query.gap_minutes) if query.gap_minutes is not None else None
    return await check_availability(db, actor.organization_id, query.start_at, query.end_at,
                                    car_ids=query.car_ids, gap=gap,
                                    exclude_booking_id=query.exclude_booking_id)


@app.post("/cars", response_model=CarOut, status_code=201)
async def create_car(car_cmd: CarCommand, db: AsyncSession = Depends(get_db_session),
                     actor: Actor = Depends(get_current_actor)):
    return await admin.create_car(db, car_cmd, actor)


@app.get("/cars", response_model=list[CarOut])
async def list_cars(db: AsyncSession = Depends(get_db_session), actor: Actor = Depends(booking_manager)):
    return await admin.list_cars(db, actor)


@app.post("/admin/organizations")
async def create_organization(org_cmd: OrganizationCommand, db: AsyncSession = Depends(get_db_session),
                              actor: Actor = Depends(get_current_actor)):
    return await admin.create_organization(db, org_cmd, actor)


@app.post("/admin/users")
async def provision_user(user_cmd: UserCommand, db: AsyncSession = Depends(get_db_session),
                         actor: Actor = Depends(get_current_actor)):
    return await admin.provision_user(db, user_cmd, actor)


@app.post("/admin/users/{user_id}/reset-token")
async def reset_user_token(user_id: int, db: AsyncSession = Depends(get_db_session),
                           actor: Actor = Depends(get_current_actor)):
    return await admin.reset_user_token(db, user_id, actor)


@app.post("/organizations/join")
async def join_organization(join_cmd: JoinCommand, db: AsyncSession = Depends(get_db_session),
                            actor: Actor = Depends(get_current_actor)):
    return await admin.join_organization(db, join_cmd.join_code, actor)


@app.post("/admin/memberships/{member_id}/review")
async def review_membership(member_id: int, review: MembershipReview, db: AsyncSession = Depends(get_db_session),
                            actor: Actor = Depends(get_current_actor)):
    return await admin.review_membership(db, member_id, review.action, actor, role=review.role)


@app.post("/admin/memberships/{member_id}/active")
async def set_member_active(member_id: int, body: MemberActive, db: AsyncSession = Depends(get_db_session),
                            actor: Actor = Depends(get_current_actor)):
    return await admin.set_member_active(db, member_id, body.active, actor)
