"""Shared fixtures: an in-memory Motor database and fake athenahealth clients."""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

from intake_workflow.alerts import EmailAlerter
from intake_workflow.athena import closest_appointment
from intake_workflow.config import WorkflowSettings
from intake_workflow.dependencies import build_container
from intake_workflow.main import create_app
from intake_workflow.schemas import IntakePayload

ADMIN_KEY = "test-admin-key"


class FakeAthena:
    """Records calls; set ``create_error`` / ``book_error`` to make the next call fail."""

    def __init__(self):
        self.created = []
        self.booked = []
        self.open_slots = []
        self.next_patient_id = "900001"
        self.create_error = None
        self.book_error = None

    async def create_patient(self, fields, credential):
        if self.create_error:
            raise self.create_error
        self.created.append(fields)
        return self.next_patient_id

    async def book_appointment(self, appointment_id, patient_id, appointment_type_id, credential):
        if self.book_error:
            raise self.book_error
        self.booked.append((appointment_id, patient_id, appointment_type_id))
        return {"appointmentid": appointment_id, "patientid": patient_id, "date": "11/05/2026", "starttime": "09:30"}

    async def find_matching_appointment(self, preferred_date, preferred_time, credential):
        return closest_appointment(self.open_slots, preferred_time)


class FakeTokenProvider:
    def __init__(self):
        self.calls = 0
        self.error = None

    async def fetch_token(self):
        self.calls += 1
        if self.error:
            raise self.error
        return {"access_token": f"token-{self.calls}", "expires_in": 3600, "scope": "athena/service/Athenanet.MDP.*"}


@pytest.fixture
def settings():
    return WorkflowSettings(
        env="test",
        athena_base_url="https://api.preview.platform.athenahealth.com",
        athena_practice_id="195900",
        athena_department_id="1",
        admin_api_key=ADMIN_KEY,
    )


@pytest.fixture
def db():
    return AsyncMongoMockClient()["intake_workflow_test"]


@pytest.fixture
def fake_athena():
    return FakeAthena()


@pytest.fixture
def fake_token_provider():
    return FakeTokenProvider()


@pytest.fixture
def container(settings, db, fake_athena, fake_token_provider):
    return build_container(
        settings, db, athena=fake_athena, token_provider=fake_token_provider, alerter=EmailAlerter()
    )


@pytest_asyncio.fixture
async def credential(container):
    return await container.token_store.store("valid-token", expires_in=3600)


@pytest_asyncio.fixture
async def client(container):
    app = create_app(container)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def make_payload(**overrides) -> IntakePayload:
    data = {
        "first_name": "Maria",
        "last_name": "Lopez",
        "date_of_birth": "1985-04-12",
        "phone": "(555) 234-5678",
        "email": "maria.lopez@example.com",
        "house_number": "one twenty three",
        "street": "Main Street",
        "city": "Austin",
        "state": "texas",
        "zip": "78701",
        "call_id": None,
    }
    data.update(overrides)
    return IntakePayload(**data)


def webhook_body(status="completed", call_id="call-001", **variables):
    base = {
        "first_name": "Maria",
        "last_name": "Lopez",
        "date_of_birth": "April 12th, 1985",
        "phone": "+1 555 234 5678",
        "email": "Maria.Lopez@Example.com",
        "house_number": "one twenty three",
        "street": "Main Street",
        "city": "Austin",
        "state": "Texas",
        "zip": "78701",
    }
    base.update(variables)
    return {
        "call_id": call_id,
        "pathway_id": "pathway-intake",
        "status": status,
        "call_length": 4.2,
        "last_node_id": "node-confirm",
        "variables": {k: v for k, v in base.items() if v is not None},
    }


async def drain_all(container, rounds: int = 10):
    """Deliver every due message on every channel until the workflow settles."""
    for _ in range(rounds):
        delivered = 0
        for stage in container.channel_stages:
            delivered += len(await container.dispatcher.drain(stage))
        if not delivered:
            return
