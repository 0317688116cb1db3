# tests/conftest.py
"""Shared fakes: Playwright objects, a browser launcher, Redis and a manual clock."""

import fnmatch
from typing import List

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from core.exceptions import BrowserLaunchError
from services.browser.instance import BrowserInstance


class FakeClosable:
    def __init__(self):
        self.closed = False

    async def close(self):
        self.closed = True


class FakePage:
    def __init__(self, html: str = "<html><body></body></html>"):
        self.html = html
        self.alive = True
        self.visited: List[str] = []

    async def evaluate(self, script):
        if not self.alive:
            raise RuntimeError("Target page, context or browser has been closed")
        return True

    async def goto(self, url, **kwargs):
        self.visited.append(url)

    async def content(self):
        return self.html

    async def title(self):
        return "Fake"


class FakeLauncher:
    def __init__(self, html: str = "<html><body></body></html>"):
        self.html = html
        self.fail = False
        self.stopped = False
        self.launched: List[BrowserInstance] = []

    async def launch(self) -> BrowserInstance:
        if self.fail:
            raise BrowserLaunchError("Executable doesn't exist")
        instance = BrowserInstance(FakeClosable(), FakeClosable(), FakePage(self.html))
        self.launched.append(instance)
        return instance

    async def stop(self) -> None:
        self.stopped = True


class FakeRedis:
    """In-process stand-in for a decoded-responses ``redis.asyncio.Redis``."""

    def __init__(self, clock=None):
        self.clock = clock or FakeClock()
        self.reachable = True
        self.data = {}
        self.expiry = {}
        self.expires_at = {}
        self.closed = False

    def _check(self):
        if not self.reachable:
            raise RedisConnectionError("Connection refused")
        now = self.clock()
        for key, deadline in list(self.expires_at.items()):
            if deadline <= now:
                self.data.pop(key, None)
                del self.expires_at[key]

    async def ping(self):
        self._check()
        return True

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.expiry[key] = ex
        if ex is None:
            self.expires_at.pop(key, None)
        else:
            self.expires_at[key] = self.clock() + ex
        return True

    async def pttl(self, key):
        self._check()
        if key not in self.data:
            return -2
        if key not in self.expires_at:
            return -1
        return int((self.expires_at[key] - self.clock()) * 1000)

    async def delete(self, *keys):
        self._check()
        return sum(1 for key in keys if self.data.pop(key, None) is not None)

    async def scan_iter(self, match="*", count=None):
        self._check()
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def info(self, section=None):
        self._check()
        return {"used_memory_human": "1.5M"}

    async def aclose(self):
        self.closed = True


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def redis_client(clock):
    return FakeRedis(clock)
