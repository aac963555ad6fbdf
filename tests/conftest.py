import os

# Settings are read at import time; force the in-process backends for tests.
os.environ["STORE_BACKEND"] = "memory"
os.environ["PRESENCE_BACKEND"] = "memory"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PUSH_ENABLED"] = "false"
os.environ.pop("JWT_JWKS_URL", None)
os.environ.pop("JWT_AUDIENCE", None)

import asyncio  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any  # noqa: E402

import jwt  # noqa: E402
import pytest  # noqa: E402

from app.config import settings  # noqa: E402
from app.features.job_lifecycle.container import build_services  # noqa: E402
from app.features.job_lifecycle.domain.models import (  # noqa: E402
    JobLocation,
    JobStatus,
    QuoteBreakdown,
)
from app.features.job_lifecycle.realtime.presence import InMemoryPresenceStore  # noqa: E402
from app.features.job_lifecycle.repository.memory_store import InMemoryEntityStore  # noqa: E402
from app.features.job_lifecycle.services.payment_gateway import PaymentIntent  # noqa: E402
from app.features.job_lifecycle.services.push_sender import PushResult  # noqa: E402
from app.models.domain.user_domain import Role, UserAccount  # noqa: E402

CUSTOMER_ID = "cust-1"
OTHER_CUSTOMER_ID = "cust-2"
MECHANIC_ID = "mech-1"
OTHER_MECHANIC_ID = "mech-2"
ADMIN_ID = "admin-1"


def make_token(user_id: str, role: str) -> str:
    return jwt.encode({"sub": user_id, "role": role}, "test-secret", algorithm="HS256")


def auth_header(user_id: str, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id, role)}"}


class FakePushSender:
    def __init__(self, delivered: bool = True, error: Exception | None = None):
        self.delivered = delivered
        self.error = error
        self.sent: list[dict[str, Any]] = []

    async def send_to_user(self, user_id, title, body, data):
        if self.error is not None:
            raise self.error
        self.sent.append({"user_id": user_id, "title": title, "body": body, "data": data})
        return PushResult(delivered=self.delivered)


class FakePaymentGateway:
    def __init__(self):
        self.created: list[dict[str, Any]] = []

    async def create_payment_intent(self, amount, currency, metadata):
        intent_id = f"pi_{len(self.created) + 1}"
        self.created.append({"amount": amount, "currency": currency, "metadata": metadata})
        return PaymentIntent(intent_id=intent_id, client_secret=f"{intent_id}_secret")


def seed_users(store: InMemoryEntityStore) -> None:
    store.add_user(UserAccount(id=CUSTOMER_ID, role=Role.CUSTOMER, email="c1@example.com", first_name="Carla", last_name="Diaz"))
    store.add_user(UserAccount(id=OTHER_CUSTOMER_ID, role=Role.CUSTOMER, email="c2@example.com", first_name="Omar", last_name="Reyes"))
    store.add_user(UserAccount(id=MECHANIC_ID, role=Role.MECHANIC, email="m1@example.com", first_name="Mina", last_name="Park"))
    store.add_user(UserAccount(id=OTHER_MECHANIC_ID, role=Role.MECHANIC, email="m2@example.com", first_name="Tom", last_name="Berg"))
    store.add_user(UserAccount(id=ADMIN_ID, role=Role.ADMIN, email="admin@example.com", first_name="Ada", last_name="Stone"))


@pytest.fixture
def store():
    memory_store = InMemoryEntityStore()
    seed_users(memory_store)
    return memory_store


@pytest.fixture
def presence():
    return InMemoryPresenceStore()


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def services(store, presence, push_sender, payment_gateway):
    return build_services(
        settings,
        store=store,
        presence=presence,
        push_sender=push_sender,
        payment_gateway=payment_gateway,
    )


class JobFlow:
    """Drives a job through the engine to a requested status."""

    def __init__(self, services):
        self.services = services
        self.engine = services.engine

    async def create_job(self, customer_id: str = CUSTOMER_ID):
        outcome = await self.engine.create_service_request(
            customer_id,
            "brake_repair",
            "Squeaking front brakes",
            JobLocation(address="1 Main St", latitude=40.0, longitude=-74.0),
        )
        return outcome.unwrap()

    async def quote(self, job_id: str, mechanic_id: str = MECHANIC_ID, labor="50.00", parts="30.00", **kwargs):
        outcome = await self.engine.create_quote(
            job_id,
            mechanic_id,
            QuoteBreakdown(labor=Decimal(labor), parts=Decimal(parts)),
            "Replace front pads",
            **kwargs,
        )
        return outcome.unwrap()

    async def accepted(self, customer_id: str = CUSTOMER_ID, mechanic_id: str = MECHANIC_ID):
        job = await self.create_job(customer_id)
        quote = await self.quote(job.id, mechanic_id)
        result = (await self.engine.accept_quote(quote.id, customer_id)).unwrap()
        return result.job, result.quote

    async def active(self):
        job, quote = await self.accepted()
        job = (await self.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.ACTIVE)).unwrap()
        return job, quote

    async def completed(self):
        job, quote = await self.active()
        job = (await self.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.COMPLETED)).unwrap()
        return job, quote


@pytest.fixture
def flow(services):
    return JobFlow(services)


class ReadBarrier:
    """Parks the first `parties` readers until all of them have read."""

    def __init__(self, parties: int = 2):
        self.parties = parties
        self.enabled = False
        self._arrived = 0
        self._all_read = asyncio.Event()

    async def wait(self) -> None:
        if not self.enabled or self._arrived >= self.parties:
            return
        self._arrived += 1
        if self._arrived == self.parties:
            self._all_read.set()
        await self._all_read.wait()


def build_with_store(store, presence, push_sender, payment_gateway):
    seed_users(store)
    return build_services(
        settings, store=store, presence=presence, push_sender=push_sender, payment_gateway=payment_gateway
    )


def drain(queue) -> list:
    """Everything currently waiting in an outbound connection queue."""
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items
