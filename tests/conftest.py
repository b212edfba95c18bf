from types import SimpleNamespace

import pytest

from fleetops.auth import Actor, hash_token
from fleetops.db import connect
from fleetops.lifecycle import assign_vehicle, create_booking, transition
from fleetops.models import Car, CarStatus, MemberStatus, Organization, OrganizationMember, Role, User
from fleetops.schemas import BookingCommand, VehicleAssignmentCommand


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def database(tmp_path):
    database = connect(f"sqlite+aiosqlite:///{tmp_path / 'fleetops-test.db'}")
    await database.create_all()
    yield database
    await database.drop_all()
    await database.get_engine().dispose()


@pytest.fixture
async def seed(database):
    async with database.Session() as session:
        acme = Organization(name="Acme Travels", join_code="ACME1234")
        other = Organization(name="Other Cabs", join_code="OTHER123")
        session.add_all([acme, other])
        await session.flush()

        admin = User(name="Asha Admin", email="admin@acme.test", token_hash=hash_token("admin-token"))
        supervisor = User(name="Sam Supervisor", email="sam@acme.test", token_hash=hash_token("sam-token"))
        master = User(name="Root", email="root@fleetops.test", token_hash=hash_token("root-token"),
                      is_master_admin=True)
        outsider = User(name="Olga", email="olga@other.test", token_hash=hash_token("olga-token"))
        session.add_all([admin, supervisor, master, outsider])
        await session.flush()

        session.add_all([
            OrganizationMember(organization_id=acme.id, user_id=admin.id, role=Role.ADMIN,
                               status=MemberStatus.ACTIVE),
            OrganizationMember(organization_id=acme.id, user_id=supervisor.id, role=Role.SUPERVISOR,
                               status=MemberStatus.ACTIVE),
            OrganizationMember(organization_id=other.id, user_id=outsider.id, role=Role.ADMIN,
                               status=MemberStatus.ACTIVE),
        ])
        innova = Car(organization_id=acme.id, vehicle_number="KA01AB1234", make="Toyota", model="Innova", seats=7)
        ertiga = Car(organization_id=acme.id, vehicle_number="KA01AB5678", make="Maruti", model="Ertiga", seats=7)
        retired = Car(organization_id=acme.id, vehicle_number="KA01AB9999", make="Tata", model="Indica",
                      seats=4, status=CarStatus.INACTIVE)
        foreign = Car(organization_id=other.id, vehicle_number="MH02CD0001", make="Honda", model="City", seats=5)
        session.add_all([innova, ertiga, retired, foreign])
        await session.commit()

        return SimpleNamespace(
            org_id=acme.id,
            other_org_id=other.id,
            join_code=acme.join_code,
            admin=Actor(user_id=admin.id, name=admin.name, organization_id=acme.id, role=Role.ADMIN),
            supervisor=Actor(user_id=supervisor.id, name=supervisor.name, organization_id=acme.id,
                             role=Role.SUPERVISOR),
            master=Actor(user_id=master.id, name=master.name, is_master_admin=True),
            outsider=Actor(user_id=outsider.id, name=outsider.name, organization_id=other.id, role=Role.ADMIN),
            innova=innova.id,
            ertiga=ertiga.id,
            retired=retired.id,
            foreign=foreign.id,
        )


@pytest.fixture
def make_booking(database, seed):
    """
    Factory that creates a booking, assigns cars and moves it to a status.
    """
    async def _make(start, end, car_ids=(), status=None, actor=None):
        actor = actor or seed.admin
        async with database.Session() as session:
            booking = await create_booking(session, BookingCommand(
                customer_name="Ravi Kumar", customer_phone="+91 98450 12345",
                start_at=start, end_at=end), actor)
            for car_id in car_ids:
                await assign_vehicle(session, booking.id,
                                     VehicleAssignmentCommand(car_id=car_id, rate_type="total", rate_total=4500),
                                     actor)
            if status is not None:
                booking = await transition(session, booking.id, status, actor)
            return booking
    return _make
