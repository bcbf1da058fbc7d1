"""Transport tests."""

import asyncio

import pytest

from onboardflow.contracts import SignalKind, WorkflowSignal
from onboardflow.dispatch import SignalDispatcher
from onboardflow.transports.inmemory import InMemoryTransport
from onboardflow.transports.redis import RedisTransport


class FakeRedis:
    def __init__(self):
        self.lists = {}

    async def ping(self):
        return True

    async def lpush(self, name, value):
        self.lists.setdefault(name, []).insert(0, value)

    async def rpush(self, name, value):
        self.lists.setdefault(name, []).append(value)

    async def brpop(self, name, timeout=0):
        items = self.lists.get(name)
        if items:
            return name, items.pop()
        await asyncio.sleep(0)
        return None

    async def aclose(self):
        pass


@pytest.mark.asyncio
async def test_inmemory_transport_basic():
    transport = InMemoryTransport()
    signal = WorkflowSignal(workflow_id="wf-1", kind=SignalKind.ADVANCE)
    await transport.publish("onboarding", signal)

    received = []
    async for raw, message in transport.subscribe("onboarding", lifespan=1.0):
        received.append(message)
        await transport.ack(raw)
        break

    assert received == [signal]
    assert transport.pending("onboarding") == 0


@pytest.mark.asyncio
async def test_inmemory_nack_requeues():
    transport = InMemoryTransport()
    await transport.publish("onboarding", WorkflowSignal(workflow_id="wf-1", kind=SignalKind.ADVANCE))
    async for raw, _ in transport.subscribe("onboarding", lifespan=1.0):
        await transport.nack(raw)
        break
    assert transport.pending("onboarding") == 1


@pytest.mark.asyncio
async def test_inmemory_subscribe_respects_lifespan():
    transport = InMemoryTransport(poll_interval=0.01)
    received = [m async for _, m in transport.subscribe("empty", lifespan=0.05)]
    assert received == []


@pytest.mark.asyncio
async def test_redis_transport_roundtrip():
    fake = FakeRedis()
    transport = RedisTransport(client=fake)
    dispatcher = SignalDispatcher(transport)
    await dispatcher.terminate("wf-1", "fraud", actor_id="ops")
    assert len(fake.lists["onboardflow:onboarding"]) == 1

    async for raw, signal in transport.subscribe("onboarding", lifespan=1.0):
        assert signal.kind == SignalKind.TERMINATE
        assert signal.payload == {"reason": "fraud"}
        assert signal.actor_id == "ops"
        await transport.nack(raw)
        break
    assert len(fake.lists["onboardflow:onboarding"]) == 1


@pytest.mark.asyncio
async def test_redis_transport_skips_malformed():
    fake = FakeRedis()
    fake.lists["onboardflow:onboarding"] = [
        WorkflowSignal(workflow_id="wf-2", kind=SignalKind.ADVANCE).to_json(),
        "{not json",
    ]
    transport = RedisTransport(client=fake)
    async for _, signal in transport.subscribe("onboarding", lifespan=1.0):
        assert signal.workflow_id == "wf-2"
        break


def test_redis_transport_defaults():
    transport = RedisTransport()
    assert transport.host == "localhost"
    assert transport.port == 6379


@pytest.mark.asyncio
async def test_dispatcher_builds_signals():
    transport = InMemoryTransport()
    dispatcher = SignalDispatcher(transport)
    workflow_id = await dispatcher.start(42, {"name": "Acme"})
    await dispatcher.decision(workflow_id, "quote_approval", {"action": "approve"}, "u1")
    await dispatcher.quote_callback(workflow_id, {"quoteId": "Q-1", "amount": 10})

    kinds = []
    async for _, signal in transport.subscribe("onboarding", lifespan=0.5):
        kinds.append(signal.kind)
        assert signal.workflow_id == workflow_id
        if len(kinds) == 3:
            break
    assert kinds == [SignalKind.START, SignalKind.DECISION, SignalKind.QUOTE_CALLBACK]
