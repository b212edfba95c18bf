"""
This module contains the privileged operations: creating organizations,
provisioning users, resetting their tokens and reviewing memberships.

Every operation calls `authorize` before touching anything and answers with a
structured payload: `{"success": True, ...}` on success.
"""
import logging
import secrets
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import Actor, Capability, authorize, hash_token, new_token, require_organization
from .errors import AlreadyExistsError, FleetOpsError, NotFoundError, PermissionDeniedError
from .models import Car, MemberStatus, Organization, OrganizationMember, Role, User
from .schemas import CarCommand, OrganizationCommand, UserCommand

logger = logging.getLogger(__name__)


def _member_payload(member: OrganizationMember) -> dict:
    return {
        "id": member.id,
        "organization_id": member.organization_id,
        "user_id": member.user_id,
        "role": member.role.value,
        "status": member.status.value,
    }


async def create_organization(session: AsyncSession, command: OrganizationCommand, actor: Actor) -> dict:
    """
    Creates an organization, optionally with an initial admin.

    Args:
        session (AsyncSession): The database session.
        command (OrganizationCommand): Name and optional admin user id.
        actor (Actor): Must be a master admin.

    Returns:
        dict: The new organization including its join code.
    """
    authorize(actor, Capability.CREATE_ORGANIZATION)
    organization = Organization(name=command.name, join_code=secrets.token_hex(4).upper(),
                                created_by=actor.user_id)
    session.add(organization)
    await session.flush()

    if command.admin_user_id is not None:
        if await session.get(User, command.admin_user_id) is None:
            await session.rollback()
            raise NotFoundError(f"User {command.admin_user_id} not found")
        session.add(OrganizationMember(organization_id=organization.id, user_id=command.admin_user_id,
                                       role=Role.ADMIN, status=MemberStatus.ACTIVE))
    await session.commit()
    logger.info(f"Organization {organization.name} ({organization.id}) created by user {actor.user_id}")
    return {"success": True, "organization": {"id": organization.id, "name": organization.name,
                                              "join_code": organization.join_code}}


async def provision_user(session: AsyncSession, command: UserCommand, actor: Actor) -> dict:
    """
    Creates a user and, when an organization is given, an active membership.

    The bearer token is returned once and only its hash is stored.
    """
    organization_id = command.organization_id if command.organization_id is not None else actor.organization_id
    authorize(actor, Capability.PROVISION_USERS, organization_id)
    if command.role == Role.ADMIN and not actor.is_master_admin and actor.role != Role.ADMIN:
        raise PermissionDeniedError("Only an admin can provision another admin")

    existing = await session.execute(select(User.id).where(User.email == command.email.lower()))
    if existing.first() is not None:
        raise AlreadyExistsError(f"User {command.email} already exists")

    token = new_token()
    user = User(name=command.name, email=command.email.lower(), token_hash=hash_token(token))
    session.add(user)
    await session.flush()
    if organization_id is not None:
        session.add(OrganizationMember(organization_id=organization_id, user_id=user.id,
                                       role=command.role, status=MemberStatus.ACTIVE))
    await session.commit()
    logger.info(f"User {user.id} provisioned in organization {organization_id} by user {actor.user_id}")
    return {"success": True, "user": {"id": user.id, "name": user.name, "email": user.email}, "token": token}


async def join_organization(session: AsyncSession, join_code: str, actor: Actor) -> dict:
    """Requests membership of the organization behind a join code; starts as pending."""
    organization = (await session.execute(
        select(Organization).where(Organization.join_code == join_code.strip().upper())
    )).scalar_one_or_none()
    if organization is None:
        raise NotFoundError("Invalid join code")

    member = (await session.execute(
        select(OrganizationMember).where(OrganizationMember.organization_id == organization.id,
                                         OrganizationMember.user_id == actor.user_id)
    )).scalar_one_or_none()
    if member is not None:
        return {"success": True, "membership": _member_payload(member), "already_member": True}

    member = OrganizationMember(organization_id=organization.id, user_id=actor.user_id,
                                role=Role.SUPERVISOR, status=MemberStatus.PENDING)
    session.add(member)
    await session.commit()
    logger.info(f"User {actor.user_id} requested to join organization {organization.id}")
    return {"success": True, "membership": _member_payload(member)}


async def _get_member(session: AsyncSession, member_id: int) -> OrganizationMember:
    member = await session.get(OrganizationMember, member_id)
    if member is None:
        raise NotFoundError("Membership not found")
    return member


async def review_membership(session: AsyncSession, member_id: int, action: str, actor: Actor,
                            role: Optional[Role] = None) -> dict:
    """
    Approves (with a role) or blocks a membership.

    Args:
        session (AsyncSession): The database session.
        member_id (int): The membership to review.
        action (str): `approve` or `block`.
        actor (Actor): An admin or manager of the membership's organization, or a master admin.
        role (Role | None): Role granted on approval, supervisor by default.
    """
    member = await _get_member(session, member_id)
    authorize(actor, Capability.MANAGE_MEMBERS, member.organization_id)

    if action == "approve":
        if member.status == MemberStatus.ACTIVE:
            raise AlreadyExistsError("Already approved")
        member.status = MemberStatus.ACTIVE
        member.role = role or Role.SUPERVISOR
    elif action == "block":
        member.status = MemberStatus.BLOCKED
    else:
        raise FleetOpsError("action must be approve or block")

    await session.commit()
    logger.info(f"Membership {member.id} {action}d by user {actor.user_id}")
    return {"success": True, "action": action, "membership": _member_payload(member)}


async def set_member_active(session: AsyncSession, member_id: int, active: bool, actor: Actor) -> dict:
    member = await _get_member(session, member_id)
    authorize(actor, Capability.MANAGE_MEMBERS, member.organization_id)
    if member.user_id == actor.user_id and not active:
        raise PermissionDeniedError("You cannot deactivate yourself")
    member.status = MemberStatus.ACTIVE if active else MemberStatus.BLOCKED
    await session.commit()
    return {"success": True, "membership": _member_payload(member)}


async def create_car(session: AsyncSession, command: CarCommand, actor: Actor) -> Car:
    authorize(actor, Capability.MANAGE_FLEET)
    organization_id = require_organization(actor)
    existing = await session.execute(select(Car.id).where(Car.vehicle_number == command.vehicle_number))
    if existing.first() is not None:
        raise AlreadyExistsError(f"Vehicle {command.vehicle_number} already exists")
    car = Car(**command.model_dump(), organization_id=organization_id)
    session.add(car)
    await session.commit()
    await session.refresh(car)
    logger.info(f"Vehicle {car.vehicle_number} added to organization {car.organization_id}")
    return car


async def list_cars(session: AsyncSession, actor: Actor):
    organization_id = require_organization(actor)
    result = await session.execute(
        select(Car).where(Car.organization_id == organization_id).order_by(Car.vehicle_number)
    )
    return result.scalars().all()


async def reset_user_token(session: AsyncSession, user_id: int, actor: Actor) -> dict:
    """
    Rotates a user's bearer token. The old token stops working at once.

    Args:
        session (AsyncSession): The database session.
        user_id (int): The user whose token is reset.
        actor (Actor): An admin or manager of the user's organization, or a master admin.

    Returns:
        dict: The user and the new token, which is only ever returned here.
    """
    authorize(actor, Capability.PROVISION_USERS)
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError(f"User {user_id} not found")

    if not actor.is_master_admin:
        if user.is_master_admin:
            raise PermissionDeniedError("Only a master admin can reset a master admin")
        member = (await session.execute(
            select(OrganizationMember.id).where(OrganizationMember.organization_id == actor.organization_id,
                                                OrganizationMember.user_id == user.id)
        )).first()
        if member is None:
            raise NotFoundError(f"User {user_id} not found in organization {actor.organization_id}")

    token = new_token()
    user.token_hash = hash_token(token)
    await session.commit()
    logger.info(f"Token of user {user.id} reset by user {actor.user_id}")
    return {"success": True, "user": {"id": user.id, "name": user.name, "email": user.email}, "token": token}
