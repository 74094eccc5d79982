"""
Tests for fleetlink.provisioning sessions and events.
"""

import asyncio

import pytest

from fleetlink.provisioning.events import EVENT_LOG, SessionEventHub
from fleetlink.provisioning.sessions import SessionStore
from fleetlink.store.models import EnrollmentMode


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestSessionStore:
    """Tests for SessionStore."""

    def test_start_and_get(self):
        sessions = SessionStore()
        token = sessions.start("t1", "alice", "Router1", EnrollmentMode.RADIUS)

        session = sessions.get(token)
        assert session.tenant_id == "t1"
        assert session.operator_id == "alice"
        assert session.is_radius
        assert len(sessions) == 1

    def test_unknown_token(self):
        sessions = SessionStore()
        assert sessions.get("nope") is None
        assert sessions.get(None) is None
        assert sessions.update("nope", host="10.10.10.2") is None

    def test_expiry(self):
        clock = FakeClock()
        sessions = SessionStore(ttl_seconds=60, clock=clock)
        token = sessions.start("t1")

        clock.now += 59
        assert sessions.get(token) is not None
        clock.now += 2
        assert sessions.get(token) is None
        assert len(sessions) == 0

    def test_purge_expired(self):
        clock = FakeClock()
        sessions = SessionStore(ttl_seconds=60, clock=clock)
        sessions.start("t1")
        clock.now += 30
        fresh = sessions.start("t1")
        clock.now += 40

        assert sessions.purge_expired() == 1
        assert sessions.get(fresh) is not None

    def test_update(self):
        sessions = SessionStore()
        token = sessions.start("t1")
        session = sessions.update(token, host="10.10.10.2", api_user="fleet-abc")
        assert session.host == "10.10.10.2"
        assert sessions.get(token).api_user == "fleet-abc"

        with pytest.raises(AttributeError):
            sessions.update(token, colour="blue")

    def test_hosts_in_use(self):
        clock = FakeClock()
        sessions = SessionStore(ttl_seconds=60, clock=clock)
        stale = sessions.start("t1")
        sessions.update(stale, host="10.10.10.2")
        clock.now += 30
        first = sessions.start("t1")
        second = sessions.start("t2")
        sessions.update(first, host="10.10.10.3")
        sessions.update(second, host="10.10.10.4")
        sessions.start("t1")
        clock.now += 40

        assert sorted(sessions.hosts_in_use()) == ["10.10.10.3", "10.10.10.4"]
        assert sessions.hosts_in_use(exclude=first) == ["10.10.10.4"]

    def test_remove(self):
        sessions = SessionStore()
        token = sessions.start("t1")
        assert sessions.remove(token) is True
        assert sessions.remove(token) is False


class TestSessionEventHub:
    """Tests for SessionEventHub."""

    @pytest.mark.asyncio
    async def test_emit_to_subscribers(self):
        hub = SessionEventHub()
        first = hub.subscribe("tok")
        second = hub.subscribe("tok")
        hub.subscribe("other")

        assert hub.emit("tok", EVENT_LOG, {"message": "start"}) == 2
        message = await asyncio.wait_for(first.get(), timeout=1)
        assert message["event"] == "log"
        assert message["data"]["message"] == "start"
        assert message["data"]["token"] == "tok"
        assert isinstance(message["data"]["timestamp"], int)
        assert second.qsize() == 1

    @pytest.mark.asyncio
    async def test_full_queue_drops(self):
        hub = SessionEventHub(max_queue=1)
        queue = hub.subscribe("tok")
        assert hub.emit("tok", EVENT_LOG, {"message": "a"}) == 1
        assert hub.emit("tok", EVENT_LOG, {"message": "b"}) == 0
        assert (await queue.get())["data"]["message"] == "a"

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        hub = SessionEventHub()
        queue = hub.subscribe("tok")
        hub.unsubscribe("tok", queue)
        hub.unsubscribe("tok", queue)
        assert hub.subscriber_count("tok") == 0
        assert hub.emit("tok", EVENT_LOG, {}) == 0
