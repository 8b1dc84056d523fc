"""Shared pytest fixtures for AquaControl tests."""

from datetime import datetime, timedelta, timezone

import pytest
import redis

from aquacontrol.exceptions import CameraError
from aquacontrol.models import Member
from aquacontrol.repositories import InMemoryEventStore
from aquacontrol.scanner import CameraBackend
from aquacontrol.services import EventLedger, IdentityResolver, MemberRegistry


ALICE = Member("m_a", "Alicia", "#3B82F6")
BRUNO = Member("m_b", "Bruno", "#10B981")
CARLA = Member("m_c", "Carla", "#F59E0B")


class FakeClock:
    """Returns a new UTC timestamp one minute later on every call."""

    def __init__(self, start=datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc),
                 step=timedelta(minutes=1)):
        self.now = start
        self.step = step

    def __call__(self):
        current = self.now
        self.now = self.now + self.step
        return current


class FrozenClock:
    """Always returns the same timestamp."""

    def __init__(self, moment=datetime(2025, 3, 10, 15, 0, tzinfo=timezone.utc)):
        self.moment = moment

    def __call__(self):
        return self.moment


class FakeCamera(CameraBackend):
    """Camera double whose facing modes can be made to fail."""

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.attempts = []
        self.stop_calls = 0
        self.active = False
        self.facing_mode = None
        self.on_success = None
        self.on_failure = None

    def start(self, facing_mode, frame_config, on_decode_success, on_decode_failure):
        self.attempts.append(facing_mode)
        if facing_mode in self.failing:
            raise CameraError(facing_mode.value, "permission denied")
        self.active = True
        self.facing_mode = facing_mode
        self.on_success = on_decode_success
        self.on_failure = on_decode_failure

    def stop(self):
        self.stop_calls += 1
        self.active = False

    def show(self, payload):
        """Simulate a frame in which a QR payload was decoded."""
        self.on_success(payload)

    def show_empty_frame(self):
        self.on_failure(None)


class FakePubSub:
    def __init__(self, server):
        self.server = server
        self.handlers = {}
        self.exception_handler = None
        self.closed = False
        self.thread = None

    def subscribe(self, **handlers):
        if self.server.fail_subscribe:
            raise redis.ConnectionError("connection refused")
        self.handlers.update(handlers)
        self.server.pubsubs.append(self)

    def run_in_thread(self, sleep_time=0, daemon=False, exception_handler=None):
        self.exception_handler = exception_handler
        self.thread = FakePubSubThread()
        return self.thread

    def close(self):
        self.closed = True
        if self in self.server.pubsubs:
            self.server.pubsubs.remove(self)

    def break_connection(self, error):
        self.exception_handler(error, self, self.thread)


class FakePubSubThread:
    def __init__(self):
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeRedis:
    """In-process stand-in for the handful of Redis commands the store uses."""

    def __init__(self):
        self.hashes = {}
        self.counters = {}
        self.pubsubs = []
        self.fail_writes = False
        self.fail_subscribe = False

    def _check(self):
        if self.fail_writes:
            raise redis.ConnectionError("connection lost")

    def incr(self, key):
        self._check()
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def hset(self, key, field, value):
        self._check()
        self.hashes.setdefault(key, {})[field] = value
        return 1

    def hdel(self, key, field):
        self._check()
        return 1 if self.hashes.get(key, {}).pop(field, None) is not None else 0

    def hgetall(self, key):
        self._check()
        return dict(self.hashes.get(key, {}))

    def publish(self, channel, message):
        self._check()
        receivers = 0
        for pubsub in list(self.pubsubs):
            handler = pubsub.handlers.get(channel)
            if handler is not None:
                handler({'type': 'message', 'channel': channel, 'data': message})
                receivers += 1
        return receivers

    def pubsub(self, ignore_subscribe_messages=False):
        return FakePubSub(self)


@pytest.fixture
def registry():
    return MemberRegistry([ALICE, BRUNO, CARLA])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryEventStore()


@pytest.fixture
def ledger(store, registry, clock):
    return EventLedger(store, registry, tz=timezone.utc, clock=clock)


@pytest.fixture
def resolver(registry):
    return IdentityResolver(registry)


@pytest.fixture
def camera():
    return FakeCamera()


@pytest.fixture
def fake_redis():
    return FakeRedis()
