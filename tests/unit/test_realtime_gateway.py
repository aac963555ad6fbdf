"""
Tests for the real-time gateway: connection lifecycle, job rooms and
event handling.
"""

import pytest
from conftest import (
    ADMIN_ID,
    CUSTOMER_ID,
    MECHANIC_ID,
    OTHER_CUSTOMER_ID,
    drain,
    make_token,
)

from app.auth.verify import AuthenticationError
from app.features.job_lifecycle.domain.models import JobStatus
from app.features.job_lifecycle.realtime import events
from app.features.job_lifecycle.realtime.gateway import ConnectionState


async def _connect(services, user_id, role):
    return await services.gateway.connect(make_token(user_id, role))


async def _joined(services, job_id, user_id, role):
    conn = await _connect(services, user_id, role)
    assert await services.gateway.handle(conn, events.JOB_JOIN, {"jobId": job_id})
    drain(conn.queue)
    return conn


def _names(conn) -> list[str]:
    return [e.name for e in drain(conn.queue)]


@pytest.mark.asyncio
async def test_connect_places_user_in_personal_and_role_rooms(services, presence):
    conn = await _connect(services, MECHANIC_ID, "mechanic")

    assert conn.state is ConnectionState.CONNECTED
    assert services.broadcaster.rooms_of(conn.id) == {f"user:{MECHANIC_ID}", "role:MECHANIC"}
    assert await presence.is_online(MECHANIC_ID)


@pytest.mark.asyncio
async def test_connect_rejects_bad_token(services):
    with pytest.raises(AuthenticationError):
        await services.gateway.connect("not-a-jwt")
    with pytest.raises(AuthenticationError):
        await services.gateway.connect(None)


@pytest.mark.asyncio
async def test_connect_rejects_unknown_user(services):
    with pytest.raises(AuthenticationError):
        await services.gateway.connect(make_token("ghost", "customer"))


@pytest.mark.asyncio
async def test_new_job_reaches_mechanic_role_room(services, flow):
    conn = await _connect(services, MECHANIC_ID, "mechanic")

    job = await flow.create_job()

    [event] = drain(conn.queue)
    assert event.name == events.JOB_CREATED
    assert event.data["job"]["id"] == job.id


@pytest.mark.asyncio
async def test_join_announces_to_other_members(services, flow):
    job, _ = await flow.accepted()
    customer = await _joined(services, job.id, CUSTOMER_ID, "customer")

    mechanic = await _connect(services, MECHANIC_ID, "mechanic")
    assert await services.gateway.handle(mechanic, events.JOB_JOIN, {"jobId": job.id})

    [joined] = drain(mechanic.queue)
    assert joined.name == events.JOB_JOINED
    assert joined.data["job"]["status"] == JobStatus.ACCEPTED.value
    [announced] = drain(customer.queue)
    assert announced.name == events.JOB_USER_JOINED
    assert announced.data["userId"] == MECHANIC_ID
    assert announced.data["role"] == "MECHANIC"


@pytest.mark.asyncio
async def test_outsider_join_gets_error_only(services, flow):
    job, _ = await flow.accepted()
    customer = await _joined(services, job.id, CUSTOMER_ID, "customer")
    outsider = await _connect(services, OTHER_CUSTOMER_ID, "customer")

    assert not await services.gateway.handle(outsider, events.JOB_JOIN, {"jobId": job.id})

    [error] = drain(outsider.queue)
    assert error.name == events.ERROR
    assert error.data["code"] == "FORBIDDEN"
    assert drain(customer.queue) == []
    assert f"job:{job.id}" not in services.broadcaster.rooms_of(outsider.id)


@pytest.mark.asyncio
async def test_admin_may_join_any_job(services, flow):
    job, _ = await flow.accepted()
    admin = await _connect(services, ADMIN_ID, "admin")

    assert await services.gateway.handle(admin, events.JOB_JOIN, {"jobId": job.id})


@pytest.mark.asyncio
async def test_join_unknown_job_is_not_found(services):
    conn = await _connect(services, CUSTOMER_ID, "customer")

    await services.gateway.handle(conn, events.JOB_JOIN, {"jobId": "missing"})

    [error] = drain(conn.queue)
    assert error.data["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_status_update_reaches_every_member_including_sender(services, flow):
    job, _ = await flow.accepted()
    customer = await _joined(services, job.id, CUSTOMER_ID, "customer")
    mechanic = await _joined(services, job.id, MECHANIC_ID, "mechanic")
    drain(customer.queue)

    assert await services.gateway.handle(
        mechanic, events.JOB_UPDATE_STATUS, {"jobId": job.id, "status": "in-progress"}
    )

    for conn in (customer, mechanic):
        [event] = drain(conn.queue)
        assert event.name == events.JOB_STATUS_UPDATED
        assert event.data["job"]["status"] == JobStatus.ACTIVE.value
        assert event.data["updatedBy"] == MECHANIC_ID


@pytest.mark.asyncio
async def test_rejected_update_errors_requester_only(services, flow):
    job, _ = await flow.accepted()
    customer = await _joined(services, job.id, CUSTOMER_ID, "customer")
    mechanic = await _joined(services, job.id, MECHANIC_ID, "mechanic")
    drain(customer.queue)

    await services.gateway.handle(mechanic, events.JOB_UPDATE_STATUS, {"jobId": job.id, "status": "completed"})

    [error] = drain(mechanic.queue)
    assert error.name == events.ERROR
    assert error.data["code"] == "INVALID_TRANSITION"
    assert drain(customer.queue) == []


@pytest.mark.asyncio
async def test_location_updates_arrive_in_order(services, flow):
    job, _ = await flow.accepted()
    customer = await _joined(services, job.id, CUSTOMER_ID, "customer")
    mechanic = await _connect(services, MECHANIC_ID, "mechanic")

    for lat in (40.1, 40.2, 40.3):
        assert await services.gateway.handle(
            mechanic, events.JOB_UPDATE_LOCATION, {"jobId": job.id, "lat": lat, "lng": -74.0}
        )

    received = drain(customer.queue)
    assert [e.name for e in received] == [events.JOB_LOCATION_UPDATED] * 3
    assert [e.data["location"]["lat"] for e in received] == [40.1, 40.2, 40.3]


@pytest.mark.asyncio
async def test_invalid_payload_reports_validation_details(services, flow):
    job, _ = await flow.accepted()
    mechanic = await _connect(services, MECHANIC_ID, "mechanic")

    await services.gateway.handle(mechanic, events.JOB_UPDATE_LOCATION, {"jobId": job.id, "lat": 123, "lng": 0})

    [error] = drain(mechanic.queue)
    assert error.data["code"] == "VALIDATION_ERROR"
    assert error.data["details"]["errors"]


@pytest.mark.asyncio
async def test_unknown_event_is_rejected(services):
    conn = await _connect(services, CUSTOMER_ID, "customer")

    assert not await services.gateway.handle(conn, "job:teleport", {})

    [error] = drain(conn.queue)
    assert error.data["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_chat_message_is_broadcast_to_job_room(services, flow):
    job, _ = await flow.accepted()
    customer = await _joined(services, job.id, CUSTOMER_ID, "customer")
    mechanic = await _joined(services, job.id, MECHANIC_ID, "mechanic")
    drain(customer.queue)

    assert await services.gateway.handle(customer, events.MESSAGE_SEND, {"jobId": job.id, "content": "Gate code 1234"})

    for conn in (customer, mechanic):
        [event] = drain(conn.queue)
        assert event.name == events.MESSAGE_NEW
        assert event.data["message"]["content"] == "Gate code 1234"


@pytest.mark.asyncio
async def test_leave_stops_job_events(services, flow):
    job, _ = await flow.accepted()
    customer = await _joined(services, job.id, CUSTOMER_ID, "customer")

    await services.gateway.handle(customer, events.JOB_LEAVE, {"jobId": job.id})
    assert _names(customer) == [events.JOB_LEFT]

    await services.engine.update_job_status(job.id, MECHANIC_ID, JobStatus.ACTIVE)
    assert _names(customer) == []


@pytest.mark.asyncio
async def test_disconnect_announces_departure_and_clears_presence(services, presence, flow):
    job, _ = await flow.accepted()
    customer = await _joined(services, job.id, CUSTOMER_ID, "customer")
    mechanic = await _joined(services, job.id, MECHANIC_ID, "mechanic")
    drain(customer.queue)

    await services.gateway.disconnect(mechanic)

    assert mechanic.state is ConnectionState.CLOSED
    assert not await presence.is_online(MECHANIC_ID)
    [left] = drain(customer.queue)
    assert left.name == events.JOB_USER_LEFT
    assert left.data["userId"] == MECHANIC_ID
    assert not await services.gateway.handle(mechanic, events.JOB_JOIN, {"jobId": job.id})


@pytest.mark.asyncio
async def test_presence_survives_while_another_connection_is_open(services, presence):
    first = await _connect(services, CUSTOMER_ID, "customer")
    await _connect(services, CUSTOMER_ID, "customer")

    await services.gateway.disconnect(first)

    assert await presence.is_online(CUSTOMER_ID)
