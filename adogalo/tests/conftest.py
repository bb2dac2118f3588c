"""
Shared fixtures: an in-memory Motor database (mongomock-motor), a clock the
tests can move, the escrow services and a few project builders.
"""
from datetime import datetime, timedelta

import pytest
from mongomock_motor import AsyncMongoMockClient

from adogalo.core.access import ROLE_ADMIN, ROLE_MANAGER, ROLE_USER
from adogalo.core.services import build_services
from adogalo.core.transaction import DomainEventEmitter

CLIENT_EMAIL = "client@example.com"
VENDOR_EMAIL = "vendor@example.com"


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 3, 3, 8, 0, 0))


@pytest.fixture
def db():
    return AsyncMongoMockClient()["adogalo_test"]


@pytest.fixture
def events():
    return DomainEventEmitter()


@pytest.fixture
def services(db, clock, events):
    return build_services(db, client=None, use_transactions=False, clock=clock, events=events)


@pytest.fixture
def admin():
    return {"email": "admin@adogalo.example.com", "role": ROLE_ADMIN, "user_id": "admin-1"}


@pytest.fixture
def client_user():
    return {"email": CLIENT_EMAIL, "role": ROLE_USER, "user_id": None}


@pytest.fixture
def vendor():
    return {"email": VENDOR_EMAIL, "role": ROLE_USER, "user_id": None}


@pytest.fixture
def outsider():
    return {"email": "someone@else.com", "role": ROLE_USER, "user_id": None}


@pytest.fixture
def make_manager(services, admin):
    async def _make(project_ids, email="manager@adogalo.example.com"):
        result = await services.managers.create_manager(admin, "Manager", email, project_ids)
        manager = result["manager"]
        return {"email": manager["email"], "role": ROLE_MANAGER, "user_id": str(manager["_id"])}
    return _make


@pytest.fixture
def make_project(services, admin):
    async def _make(budget=10_000_000, milestones=None, **overrides):
        data = {
            "judul": "Rumah Tinggal Type 45",
            "client_name": "Budi",
            "client_email": CLIENT_EMAIL,
            "vendor_name": "CV Bangun Jaya",
            "vendor_email": VENDOR_EMAIL,
            "budget": budget,
            "client_fee_percent": 1,
            "vendor_fee_percent": 2,
            "retensi_percent": 0,
            "retensi_days": 0,
            "milestones": milestones or [{"judul": "Pekerjaan Utama", "persentase": 100}],
        }
        data.update(overrides)
        result = await services.projects.create_project(admin, data)
        return str(result["project"]["_id"])
    return _make


@pytest.fixture
def fund_project(services, admin, client_user):
    """Replace the unpaid main termins by one deposit termin and get it paid."""
    async def _fund(project_id, base_amount):
        result = await services.termins.reconfigure(
            project_id, [{"judul": "Deposit", "base_amount": base_amount}], admin
        )
        termin_id = str(result["termins"][0]["_id"])
        await services.termins.perform(project_id, termin_id, "request_payment", client_user)
        await services.termins.perform(project_id, termin_id, "confirm_payment", admin)
        return await services.ctx.ledger.get(project_id)
    return _fund


@pytest.fixture
def milestone_ids(services):
    async def _ids(project_id):
        return [str(m["_id"]) for m in await services.ctx.get_project_milestones(project_id)]
    return _ids


@pytest.fixture
def complete_milestone(services, admin, client_user, vendor):
    """Drive a milestone from pending to completed; returns the confirm-payment result."""
    async def _complete(milestone_id):
        await services.milestones.perform(milestone_id, "start", vendor)
        await services.milestones.perform(milestone_id, "finish", vendor, catatan="Selesai", files=["selesai.jpg"])
        await services.milestones.perform(milestone_id, "approve", client_user)
        return await services.milestones.perform(milestone_id, "confirm-payment", admin)
    return _complete
