"""
This module contains the exceptions raised by the booking service.

Every exception carries the HTTP status code the API answers with, so the
FastAPI app can translate them with a single handler.
"""


class FleetOpsError(Exception):
    """Base class for expected, user-facing failures."""
    status_code = 400

    def to_dict(self):
        return {"error": type(self).__name__, "detail": str(self)}


class InvalidRangeError(FleetOpsError):
    """The requested start is not strictly before the requested end."""
    status_code = 422


class VehicleNotFoundError(FleetOpsError):
    """The car does not exist in the acting organization (or is inactive)."""
    status_code = 404

    def __init__(self, car_id):
        super().__init__(f"Vehicle {car_id} not found")
        self.car_id = car_id


class BookingNotFoundError(FleetOpsError):
    status_code = 404

    def __init__(self, booking_id):
        super().__init__(f"Booking {booking_id} not found")
        self.booking_id = booking_id


class BookingConflictError(FleetOpsError):
    """
    One or more cars are already reserved for an overlapping (padded) range.

    Attributes:
        conflicts (list[dict]): One entry per conflicting car with the booking
            reference, interval and creator of the conflicting booking.
    """
    status_code = 409

    def __init__(self, conflicts, message=None):
        if message is None:
            refs = ", ".join(sorted({str(c.get("conflict_booking_ref")) for c in conflicts}))
            message = f"Vehicle already booked (conflicts with {refs})"
        super().__init__(message)
        self.conflicts = conflicts

    def to_dict(self):
        payload = super().to_dict()
        payload["conflicts"] = self.conflicts
        return payload


class InvalidTransitionError(FleetOpsError):
    status_code = 422


class AssignmentExistsError(FleetOpsError):
    status_code = 409


class AuthenticationError(FleetOpsError):
    status_code = 401


class PermissionDeniedError(FleetOpsError):
    status_code = 403


class NotFoundError(FleetOpsError):
    status_code = 404


class AlreadyExistsError(FleetOpsError):
    status_code = 409


class OrganizationRequiredError(FleetOpsError):
    """The request acts on tenant data but is not scoped to an organization."""
    status_code = 422

    def __init__(self):
        super().__init__("Select an organization with the X-Organization-Id header")
