import asyncio
import fnmatch
import inspect
import math
import os
import sys
from pathlib import Path

# Settle the environment before any otpgate import reads it
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.pop("REDIS_URL", None)
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402
from redis.exceptions import ConnectionError as RedisConnectionError  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


TEST_JWT_SECRET = os.environ["JWT_SECRET"]


class FakeClock:
    """Manually advanced wall clock in seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeScript:
    def __init__(self, client: "FakeRedis", source: str):
        self.client = client
        self.source = source

    async def __call__(self, keys=None, args=None, client=None):
        self.client._maybe_fail("evalsha")
        keys = keys or []
        args = args or []
        if "local limit" in self.source:
            return self.client._hit_counter(keys[0], int(args[0]), int(args[1]))
        if "INCR" in self.source:
            return self.client._increment(keys[0], int(args[0]))
        return self.client._compare_and_delete(keys[0], str(args[0]))


class FakeRedis:
    """In-test stand-in for ``redis.asyncio.Redis`` with ``decode_responses=True``.

    Implements the handful of commands the key-value store issues, the
    registered scripts, and key expiry against an injectable clock. Set
    ``fail`` to make every command raise a connection error.
    """

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.data = {}
        self.expiry = {}
        self.fail = False
        self.closed = False
        self.commands = []

    def _maybe_fail(self, command):
        self.commands.append(command)
        if self.fail:
            raise RedisConnectionError(f"{command}: connection refused")

    def _purge(self, key):
        expires_at = self.expiry.get(key)
        if expires_at is not None and self.clock() >= expires_at:
            self.data.pop(key, None)
            self.expiry.pop(key, None)

    async def ping(self):
        self._maybe_fail("ping")
        return True

    async def get(self, key):
        self._maybe_fail("get")
        self._purge(key)
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._maybe_fail("set")
        self.data[key] = str(value)
        if ex is not None:
            self.expiry[key] = self.clock() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys):
        self._maybe_fail("delete")
        removed = 0
        for key in keys:
            self._purge(key)
            if key in self.data:
                removed += 1
            self.data.pop(key, None)
            self.expiry.pop(key, None)
        return removed

    def _ttl(self, key):
        self._purge(key)
        if key not in self.data:
            return -2
        expires_at = self.expiry.get(key)
        if expires_at is None:
            return -1
        return math.ceil(expires_at - self.clock())

    async def ttl(self, key):
        self._maybe_fail("ttl")
        return self._ttl(key)

    async def scan(self, cursor=0, match=None, count=None):
        self._maybe_fail("scan")
        for key in list(self.data):
            self._purge(key)
        keys = sorted(self.data)
        if match:
            keys = [key for key in keys if fnmatch.fnmatchcase(key, match)]
        batch = count or 10
        start = int(cursor)
        chunk = keys[start:start + batch]
        next_cursor = start + batch
        return (next_cursor if next_cursor < len(keys) else 0), chunk

    def register_script(self, source):
        return FakeScript(self, source)

    async def aclose(self):
        self.closed = True

    def _compare_and_delete(self, key, expected):
        self._purge(key)
        current = self.data.get(key)
        if current is None:
            return -1
        if current == expected:
            self.data.pop(key, None)
            self.expiry.pop(key, None)
            return 1
        return 0

    def _increment(self, key, ttl):
        self._purge(key)
        current = int(self.data.get(key, 0)) + 1
        self.data[key] = str(current)
        if current == 1 or self._ttl(key) < 0:
            self.expiry[key] = self.clock() + ttl
        return current

    def _hit_counter(self, key, limit, window):
        self._purge(key)
        current = int(self.data.get(key, 0))
        if current >= limit:
            ttl = self._ttl(key)
            return [0, current, ttl if ttl >= 0 else window]
        current += 1
        self.data[key] = str(current)
        if current == 1 or self._ttl(key) < 0:
            self.expiry[key] = self.clock() + window
        return [1, current, self._ttl(key)]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_redis(clock):
    return FakeRedis(clock)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
