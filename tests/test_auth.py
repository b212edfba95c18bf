import pytest
from sqlalchemy import select

from fleetops import admin
from fleetops.auth import Actor, Capability, authorize, resolve_actor
from fleetops.errors import (AlreadyExistsError, AuthenticationError, NotFoundError, OrganizationRequiredError,
                             PermissionDeniedError)
from fleetops.models import MemberStatus, OrganizationMember, Role
from fleetops.schemas import CarCommand, OrganizationCommand, UserCommand

pytestmark = pytest.mark.anyio


@pytest.mark.parametrize("role, capability, allowed", [
    (Role.ADMIN, Capability.MANAGE_MEMBERS, True),
    (Role.MANAGER, Capability.PROVISION_USERS, True),
    (Role.MANAGER, Capability.MANAGE_FLEET, True),
    (Role.SUPERVISOR, Capability.MANAGE_BOOKINGS, True),
    (Role.SUPERVISOR, Capability.MANAGE_MEMBERS, False),
    (Role.SUPERVISOR, Capability.MANAGE_FLEET, False),
    (Role.ADMIN, Capability.CREATE_ORGANIZATION, False),
])
def test_role_capabilities(role, capability, allowed):
    actor = Actor(user_id=1, name="Someone", organization_id=7, role=role)
    if allowed:
        authorize(actor, capability)
    else:
        with pytest.raises(PermissionDeniedError):
            authorize(actor, capability)


def test_roles_do_not_reach_into_other_organizations():
    actor = Actor(user_id=1, name="Someone", organization_id=7, role=Role.ADMIN)
    with pytest.raises(PermissionDeniedError):
        authorize(actor, Capability.MANAGE_MEMBERS, organization_id=8)


def test_master_admin_holds_every_capability():
    master = Actor(user_id=1, name="Root", is_master_admin=True)
    for capability in Capability:
        authorize(master, capability, organization_id=42)


async def test_resolve_actor(database, seed):
    async with database.Session() as session:
        actor = await resolve_actor(session, "sam-token")
        assert actor.user_id == seed.supervisor.user_id
        assert actor.organization_id == seed.org_id
        assert actor.role == Role.SUPERVISOR

        with pytest.raises(AuthenticationError):
            await resolve_actor(session, "nope")
        with pytest.raises(PermissionDeniedError):
            await resolve_actor(session, "sam-token", organization_id=seed.other_org_id)

        master = await resolve_actor(session, "root-token", organization_id=seed.org_id)
        assert master.is_master_admin and master.organization_id == seed.org_id


async def test_create_organization_requires_master_admin(database, seed):
    async with database.Session() as session:
        with pytest.raises(PermissionDeniedError):
            await admin.create_organization(session, OrganizationCommand(name="Sneaky Co"), seed.admin)

        result = await admin.create_organization(
            session, OrganizationCommand(name="New Wheels", admin_user_id=seed.supervisor.user_id), seed.master)
        assert result["success"] is True
        org_id = result["organization"]["id"]

        member = (await session.execute(
            select(OrganizationMember).where(OrganizationMember.organization_id == org_id)
        )).scalar_one()
        assert member.user_id == seed.supervisor.user_id
        assert member.role == Role.ADMIN

        with pytest.raises(NotFoundError):
            await admin.create_organization(session, OrganizationCommand(name="Ghost Co", admin_user_id=999),
                                            seed.master)


async def test_provision_user_returns_working_token(database, seed):
    async with database.Session() as session:
        result = await admin.provision_user(
            session, UserCommand(name="Dev Driver Desk", email="Desk@Acme.test"), seed.admin)
        assert result["user"]["email"] == "desk@acme.test"

        actor = await resolve_actor(session, result["token"])
        assert actor.organization_id == seed.org_id
        assert actor.role == Role.SUPERVISOR

        with pytest.raises(AlreadyExistsError):
            await admin.provision_user(session, UserCommand(name="Again", email="desk@acme.test"), seed.admin)
        with pytest.raises(PermissionDeniedError):
            await admin.provision_user(session, UserCommand(name="Nope", email="n@acme.test"), seed.supervisor)


async def test_join_and_review_membership(database, seed):
    async with database.Session() as session:
        joined = await admin.join_organization(session, seed.join_code.lower(), seed.outsider)
        member_id = joined["membership"]["id"]
        assert joined["membership"]["status"] == "pending"

        with pytest.raises(PermissionDeniedError):
            await admin.review_membership(session, member_id, "approve", seed.supervisor)
        with pytest.raises(PermissionDeniedError):
            await admin.review_membership(session, member_id, "approve", seed.outsider)

        approved = await admin.review_membership(session, member_id, "approve", seed.admin, role=Role.MANAGER)
        assert approved["membership"]["status"] == "active"
        assert approved["membership"]["role"] == "manager"

        with pytest.raises(AlreadyExistsError):
            await admin.review_membership(session, member_id, "approve", seed.admin)

        blocked = await admin.set_member_active(session, member_id, False, seed.admin)
        assert blocked["membership"]["status"] == MemberStatus.BLOCKED.value

        with pytest.raises(NotFoundError):
            await admin.join_organization(session, "WRONG-CODE", seed.outsider)


async def test_fleet_management_requires_elevated_role(database, seed):
    async with database.Session() as session:
        with pytest.raises(PermissionDeniedError):
            await admin.create_car(session, CarCommand(vehicle_number="KA05ZZ0001"), seed.supervisor)
        car = await admin.create_car(session, CarCommand(vehicle_number="KA05ZZ0001", model="Dzire"), seed.admin)
        assert car.organization_id == seed.org_id
        with pytest.raises(AlreadyExistsError):
            await admin.create_car(session, CarCommand(vehicle_number="KA05ZZ0001"), seed.admin)
        cars = await admin.list_cars(session, seed.admin)
    assert "KA05ZZ0001" in [c.vehicle_number for c in cars]


async def test_fleet_needs_an_organization(database, seed):
    async with database.Session() as session:
        with pytest.raises(OrganizationRequiredError):
            await admin.create_car(session, CarCommand(vehicle_number="KA05ZZ0002"), seed.master)
        with pytest.raises(OrganizationRequiredError):
            await admin.list_cars(session, seed.master)


async def test_set_member_active(database, seed):
    async with database.Session() as session:
        members = {m.user_id: m.id for m in (await session.execute(
            select(OrganizationMember).where(OrganizationMember.organization_id == seed.org_id)
        )).scalars().all()}

        with pytest.raises(PermissionDeniedError):
            await admin.set_member_active(session, members[seed.admin.user_id], False, seed.admin)
        with pytest.raises(PermissionDeniedError):
            await admin.set_member_active(session, members[seed.admin.user_id], False, seed.supervisor)
        with pytest.raises(PermissionDeniedError):
            await admin.set_member_active(session, members[seed.supervisor.user_id], False, seed.outsider)

        blocked = await admin.set_member_active(session, members[seed.supervisor.user_id], False, seed.admin)
        assert blocked["success"] is True
        assert blocked["membership"]["status"] == "blocked"
        # A blocked member no longer resolves into the organization
        with pytest.raises(PermissionDeniedError):
            await resolve_actor(session, "sam-token", organization_id=seed.org_id)

        restored = await admin.set_member_active(session, members[seed.supervisor.user_id], True, seed.admin)
        assert restored["membership"]["status"] == "active"
        actor = await resolve_actor(session, "sam-token", organization_id=seed.org_id)
        assert actor.role == Role.SUPERVISOR

        with pytest.raises(NotFoundError):
            await admin.set_member_active(session, 9999, True, seed.admin)


async def test_reset_user_token_rotates_token(database, seed):
    async with database.Session() as session:
        result = await admin.reset_user_token(session, seed.supervisor.user_id, seed.admin)
        assert result["success"] is True
        assert result["user"]["id"] == seed.supervisor.user_id

        with pytest.raises(AuthenticationError):
            await resolve_actor(session, "sam-token")
        actor = await resolve_actor(session, result["token"])
        assert actor.user_id == seed.supervisor.user_id

        again = await admin.reset_user_token(session, seed.supervisor.user_id, seed.master)
        assert again["token"] != result["token"]


async def test_reset_user_token_stays_inside_the_organization(database, seed):
    async with database.Session() as session:
        with pytest.raises(PermissionDeniedError):
            await admin.reset_user_token(session, seed.admin.user_id, seed.supervisor)
        with pytest.raises(NotFoundError):
            await admin.reset_user_token(session, seed.outsider.user_id, seed.admin)
        with pytest.raises(PermissionDeniedError):
            await admin.reset_user_token(session, seed.master.user_id, seed.admin)
        with pytest.raises(NotFoundError):
            await admin.reset_user_token(session, 9999, seed.admin)

        # Nothing was rotated
        assert (await resolve_actor(session, "olga-token")).user_id == seed.outsider.user_id
        assert (await resolve_actor(session, "admin-token")).user_id == seed.admin.user_id
