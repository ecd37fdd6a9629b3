"""Transport tests."""

from datetime import timedelta

import pytest

from flowkeeper.contracts import JobMessage, QueueConfig
from flowkeeper.transports.inmemory import InMemoryTransport


def _message(**kwargs) -> JobMessage:
    data = dict(job_uuid="job-1", job_name="charge_card", workflow_id="wf-1", step_key="charge")
    data.update(kwargs)
    return JobMessage(**data)


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    """Test basic InMemoryTransport publish/subscribe."""
    transport = InMemoryTransport()
    await transport.publish("payments", _message(arguments={"amount": 10}))

    message_received = False
    async for raw_msg, received_msg in transport.subscribe("payments"):
        assert received_msg.job_uuid == "job-1"
        assert received_msg.arguments["amount"] == 10
        await transport.ack(raw_msg)
        message_received = True
        break

    assert message_received
    assert transport.pending("payments") == []


@pytest.mark.asyncio
async def test_inmemory_subscribe_respects_lifespan():
    transport = InMemoryTransport()
    received = [m async for _, m in transport.subscribe("empty", lifespan=0.2)]
    assert received == []


@pytest.mark.asyncio
async def test_drain_keeps_topics_apart():
    transport = InMemoryTransport()
    await transport.publish("a", _message(job_uuid="1"))
    await transport.publish("b", _message(job_uuid="2"))
    await transport.publish("a", _message(job_uuid="3"))

    assert [m.job_uuid for m in await transport.drain("a")] == ["1", "3"]
    assert [m.job_uuid for m in transport.pending("b")] == ["2"]


def test_job_message_json_round_trip():
    message = _message(kind="compensation", compensation_run_id="comp-1", delay_seconds=5)
    restored = JobMessage.from_json(message.to_json())
    assert restored == message


def test_queue_config_topic():
    assert QueueConfig().topic("default") == "default"
    assert QueueConfig(queue="payments").topic("default") == "payments"


@pytest.mark.asyncio
async def test_redis_transport_import():
    """Redis transport is importable even without the redis extra."""
    from flowkeeper.transports import redis as redis_module

    if redis_module.redis is None:
        with pytest.raises(ImportError):
            redis_module.RedisTransport()
    else:
        transport = redis_module.RedisTransport()
        assert transport.host == "localhost"
        assert transport.port == 6379


@pytest.mark.asyncio
async def test_delayed_message_is_withheld_until_due():
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish("payments", _message(job_uuid="later", delay_seconds=3600))
    await transport.publish("payments", _message(job_uuid="now"))

    received = [m.job_uuid async for _, m in transport.subscribe("payments", lifespan=0.1)]
    assert received == ["now"]
    assert [m.job_uuid for m in transport.pending("payments")] == ["later"]


@pytest.mark.asyncio
async def test_nack_requeues_at_head():
    transport = InMemoryTransport(poll_interval=0.01)
    await transport.publish("payments", _message(job_uuid="1"))
    await transport.publish("payments", _message(job_uuid="2"))

    async for raw, message in transport.subscribe("payments"):
        await transport.nack(raw)
        break
    assert [m.job_uuid for m in transport.pending("payments")] == ["1", "2"]

    async for raw, message in transport.subscribe("payments"):
        await transport.nack(raw, requeue=False)
        break
    assert [m.job_uuid for m in transport.pending("payments")] == ["2"]


def test_due_time_follows_delay():
    message = _message(delay_seconds=30)
    assert InMemoryTransport.available_at(message) == message.timestamp + timedelta(seconds=30)
    assert not InMemoryTransport.is_due(message, now=message.timestamp)
    assert InMemoryTransport.is_due(message, now=message.timestamp + timedelta(seconds=30))
