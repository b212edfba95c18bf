"""
This module contains the acting-user resolution and the capability checks
shared by every privileged operation.
"""
import enum
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import get_db_session
from .errors import AuthenticationError, OrganizationRequiredError, PermissionDeniedError
from .models import MemberStatus, OrganizationMember, Role, User

logger = logging.getLogger(__name__)


class Capability(str, enum.Enum):
    CREATE_ORGANIZATION = "create_organization"
    PROVISION_USERS = "provision_users"
    MANAGE_MEMBERS = "manage_members"
    MANAGE_FLEET = "manage_fleet"
    MANAGE_BOOKINGS = "manage_bookings"


# Capabilities granted by each organization role. Master admins hold all of them.
ROLE_CAPABILITIES = {
    Role.ADMIN: {Capability.PROVISION_USERS, Capability.MANAGE_MEMBERS,
                 Capability.MANAGE_FLEET, Capability.MANAGE_BOOKINGS},
    Role.MANAGER: {Capability.PROVISION_USERS, Capability.MANAGE_MEMBERS,
                   Capability.MANAGE_FLEET, Capability.MANAGE_BOOKINGS},
    Role.SUPERVISOR: {Capability.MANAGE_BOOKINGS},
}


@dataclass(frozen=True)
class Actor:
    """
    The user a request acts on behalf of.

    Attributes:
        user_id (int): The acting user.
        name (str): Display name, used in audit views.
        organization_id (int | None): The organization the request is scoped to.
        role (Role | None): The user's role in that organization.
        is_master_admin (bool): Platform-wide administrator.
    """
    user_id: int
    name: str
    organization_id: Optional[int] = None
    role: Optional[Role] = None
    is_master_admin: bool = False


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def new_token() -> str:
    return secrets.token_urlsafe(32)


def authorize(actor: Actor, capability: Capability, organization_id: Optional[int] = None):
    """
    Raises PermissionDeniedError unless the actor holds the capability.

    Args:
        actor (Actor): The acting user.
        capability (Capability): What the caller is about to do.
        organization_id (int | None): Organization the action targets. Defaults to
            the actor's own; an org role never reaches into another organization.
    """
    if actor.is_master_admin:
        return
    target = organization_id if organization_id is not None else actor.organization_id
    if target is None or target != actor.organization_id or actor.role is None:
        raise PermissionDeniedError(f"{capability.value} requires membership in organization {target}")
    if capability not in ROLE_CAPABILITIES.get(actor.role, set()):
        logger.warning(f"User {actor.user_id} ({actor.role.value}) denied {capability.value}")
        raise PermissionDeniedError(f"{capability.value} requires an elevated role")


def require_organization(actor: Actor) -> int:
    """Returns the organization the actor is scoped to, which tenant data needs."""
    if actor.organization_id is None:
        raise OrganizationRequiredError()
    return actor.organization_id


async def resolve_actor(session: AsyncSession, token: str, organization_id: Optional[int] = None) -> Actor:
    """
    Looks up the user behind a bearer token and their membership.

    When no organization is given, the user's first active membership is used.
    """
    user = (await session.execute(
        select(User).where(User.token_hash == hash_token(token))
    )).scalar_one_or_none()
    if user is None:
        raise AuthenticationError("invalid_or_expired_token")

    stmt = select(OrganizationMember).where(
        OrganizationMember.user_id == user.id,
        OrganizationMember.status == MemberStatus.ACTIVE,
    )
    if organization_id is not None:
        stmt = stmt.where(OrganizationMember.organization_id == organization_id)
    member = (await session.execute(stmt.order_by(OrganizationMember.id))).scalars().first()

    if member is None:
        if organization_id is not None and not user.is_master_admin:
            raise PermissionDeniedError(f"No active membership in organization {organization_id}")
        return Actor(user_id=user.id, name=user.name, organization_id=organization_id,
                     is_master_admin=user.is_master_admin)

    return Actor(user_id=user.id, name=user.name, organization_id=member.organization_id,
                 role=member.role, is_master_admin=user.is_master_admin)


async def get_current_actor(authorization: str = Header(default=""),
                            x_organization_id: Optional[int] = Header(default=None),
                            db: AsyncSession = Depends(get_db_session)) -> Actor:
    """
    Dependency that resolves the acting user from the `Authorization: Bearer` header.
    """
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("missing_bearer_token")
    return await resolve_actor(db, token.strip(), x_organization_id)
