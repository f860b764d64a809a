"""Transport tests."""

import pytest

from stepwise.contracts import JobMessage
from stepwise.errors import QueueUnavailableError
from stepwise.transports.inmemory import InMemoryTransport
from stepwise.transports.rabbitmq import amqp_priority
from stepwise.transports.redis import RedisTransport, job_score


def _job(run_id, priority=0):
    return JobMessage(run_id=run_id, workflow_id="wf", tenant_id="t1", priority=priority)


async def _drain(transport, topic, count):
    received = []
    async for raw, message in transport.subscribe(topic, lifespan=1.0):
        received.append(message.run_id)
        await transport.ack(raw)
        if len(received) == count:
            break
    return received


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    transport = InMemoryTransport()
    job = JobMessage(run_id="run-1", workflow_id="wf", tenant_id="t1", trigger_data={"a": 1})
    await transport.publish("jobs", job)

    async for raw, received in transport.subscribe("jobs"):
        assert received.run_id == "run-1"
        assert received.trigger_data == {"a": 1}
        await transport.ack(raw)
        break

    assert transport.acked == [job.job_id]
    assert transport.pending("jobs") == 0


@pytest.mark.asyncio
async def test_lower_priority_number_is_served_first_fifo_within_priority():
    transport = InMemoryTransport()
    for run_id, priority in [("low-1", 5), ("high-1", 0), ("mid", 1), ("high-2", 0), ("low-2", 5)]:
        await transport.publish("jobs", _job(run_id, priority))

    assert await _drain(transport, "jobs", 5) == ["high-1", "high-2", "mid", "low-1", "low-2"]


@pytest.mark.asyncio
async def test_unavailable_transport_refuses_jobs():
    transport = InMemoryTransport()
    transport.available = False
    assert await transport.is_available() is False
    with pytest.raises(QueueUnavailableError):
        await transport.publish("jobs", _job("r"))


@pytest.mark.asyncio
async def test_nack_requeues():
    transport = InMemoryTransport()
    await transport.publish("jobs", _job("r"))
    async for raw, message in transport.subscribe("jobs", lifespan=1.0):
        await transport.nack(raw)
        break
    assert transport.pending("jobs") == 1
    assert transport.nacked == [message.job_id]


@pytest.mark.asyncio
async def test_subscribe_stops_after_lifespan():
    transport = InMemoryTransport(poll_interval=0.01)
    received = [m async for _, m in transport.subscribe("empty", lifespan=0.05)]
    assert received == []


def test_job_message_round_trip_and_retry_bump():
    job = _job("run-1", priority=2)
    assert JobMessage.from_json(job.to_json()) == job
    assert job.can_retry
    retry = job.bump_attempt("run-2")
    assert retry.attempt == 2
    assert retry.run_id == "run-2"
    assert retry.job_id != job.job_id
    assert retry.priority == 2


def test_priority_mappings():
    assert job_score(0, 1_000) < job_score(0, 2_000) < job_score(1, 0)
    assert amqp_priority(0, 10) == 10
    assert amqp_priority(3, 10) == 7
    assert amqp_priority(50, 10) == 0
    assert amqp_priority(-5, 10) == 10


def test_redis_transport_settings():
    transport = RedisTransport(host="cache", port=6390, db=2)
    assert transport.host == "cache"
    assert transport.port == 6390
    assert transport.db == 2
