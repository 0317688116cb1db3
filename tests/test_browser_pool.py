# tests/test_browser_pool.py
import asyncio

import pytest

from core.exceptions import BrowserLaunchError, BrowserPoolTimeoutError, PoolClosedError
from services.browser.browser_pool import BrowserPool


async def spin(times: int = 10):
    for _ in range(times):
        await asyncio.sleep(0)


def make_pool(launcher, clock=None, **kwargs) -> BrowserPool:
    kwargs.setdefault("max_browsers", 2)
    kwargs.setdefault("acquire_timeout", 5)
    if clock is not None:
        kwargs["clock"] = clock
    return BrowserPool(launcher=launcher, **kwargs)


# ----------------------------------------------------------------------
# Capacity
# ----------------------------------------------------------------------
async def test_third_acquire_waits_for_release(launcher):
    """Two browsers at max 2: a third acquire suspends until one is released."""
    pool = make_pool(launcher)
    first = await pool.acquire()
    second = await pool.acquire()
    assert first is not second

    waiter = asyncio.create_task(pool.acquire())
    await spin()
    assert not waiter.done()
    assert len(launcher.launched) == 2

    await pool.release(first)
    third = await asyncio.wait_for(waiter, timeout=1)
    assert third is first
    assert third.in_use
    assert pool.stats().to_dict() == {"total": 2, "inUse": 2, "available": 0, "maxBrowsers": 2}


async def test_acquire_times_out_when_exhausted(launcher):
    pool = make_pool(launcher, max_browsers=1, acquire_timeout=0.05)
    await pool.acquire()
    with pytest.raises(BrowserPoolTimeoutError) as excinfo:
        await pool.acquire()
    assert excinfo.value.retryable
    assert len(launcher.launched) == 1


async def test_never_leases_more_than_max(launcher):
    pool = make_pool(launcher, max_browsers=2)
    leased = await asyncio.gather(pool.acquire(), pool.acquire())
    waiters = [asyncio.create_task(pool.acquire()) for _ in range(3)]
    await spin()

    assert len(launcher.launched) == 2
    assert pool.stats().in_use == 2
    for instance in leased:
        await pool.release(instance)
    done, pending = await asyncio.wait(waiters, timeout=0.2)
    assert len(done) == 2
    assert len(launcher.launched) == 2
    for w in pending:
        w.cancel()


async def test_idle_instance_is_reused(launcher):
    pool = make_pool(launcher)
    async with pool.lease() as first:
        pass
    async with pool.lease() as second:
        assert second is first
    assert len(launcher.launched) == 1


# ----------------------------------------------------------------------
# Liveness
# ----------------------------------------------------------------------
async def test_dead_instance_is_discarded(launcher):
    pool = make_pool(launcher)
    dead = await pool.acquire()
    await pool.release(dead)
    dead.page.alive = False

    fresh = await pool.acquire()
    assert fresh is not dead
    assert dead.context.closed and dead.browser.closed
    assert pool.stats().total == 1


async def test_launch_failure_is_fatal_and_frees_the_slot(launcher):
    pool = make_pool(launcher, max_browsers=1)
    launcher.fail = True
    with pytest.raises(BrowserLaunchError):
        await pool.acquire()

    launcher.fail = False
    instance = await pool.acquire()
    assert pool.stats().total == 1
    assert instance.in_use


# ----------------------------------------------------------------------
# Release & lease
# ----------------------------------------------------------------------
async def test_release_never_closes(launcher):
    pool = make_pool(launcher)
    instance = await pool.acquire()
    await pool.release(instance)
    assert not instance.in_use
    assert not instance.browser.closed


async def test_release_unknown_instance_is_ignored(launcher):
    pool = make_pool(launcher)
    other = await make_pool(launcher).acquire()
    await pool.release(other)
    assert pool.stats().total == 0


async def test_lease_releases_on_error(launcher):
    pool = make_pool(launcher)
    with pytest.raises(RuntimeError):
        async with pool.lease():
            raise RuntimeError("navigation blew up")
    assert pool.stats().in_use == 0
    assert pool.stats().available == 1


async def test_release_stamps_last_used(launcher, clock):
    pool = make_pool(launcher, clock)
    instance = await pool.acquire()
    clock.advance(5)
    await pool.release(instance)
    assert instance.last_used_at == clock.now


# ----------------------------------------------------------------------
# Recycling
# ----------------------------------------------------------------------
async def test_reaper_closes_idle_instances(launcher, clock):
    pool = make_pool(launcher, clock, max_idle=120, max_lifetime=600)
    idle = await pool.acquire()
    busy = await pool.acquire()
    await pool.release(idle)

    clock.advance(121)
    assert await pool.reap_idle() == 1
    assert idle.browser.closed
    assert not busy.browser.closed
    assert pool.stats().total == 1


async def test_reaper_closes_instances_past_lifetime(launcher, clock):
    pool = make_pool(launcher, clock, max_idle=120, max_lifetime=600)
    instance = await pool.acquire()
    for _ in range(7):
        clock.advance(100)
        await pool.release(instance)
        assert await pool.acquire() is instance
    await pool.release(instance)

    assert await pool.reap_idle() == 1
    assert instance.browser.closed


async def test_reaper_keeps_fresh_instances(launcher, clock):
    pool = make_pool(launcher, clock)
    instance = await pool.acquire()
    await pool.release(instance)
    clock.advance(30)
    assert await pool.reap_idle() == 0


async def test_background_reaper_runs_on_interval(launcher, clock):
    pool = make_pool(launcher, clock, reap_interval=0.01, max_idle=1)
    instance = await pool.acquire()
    await pool.release(instance)
    clock.advance(10)
    pool.start()
    await asyncio.sleep(0.05)
    assert instance.browser.closed
    await pool.close_all()


# ----------------------------------------------------------------------
# Shutdown
# ----------------------------------------------------------------------
async def test_close_all_closes_everything(launcher):
    pool = make_pool(launcher, max_browsers=1)
    pool.start()
    leased = await pool.acquire()
    waiter = asyncio.create_task(pool.acquire())
    await spin()

    await pool.close_all()
    assert leased.browser.closed
    assert launcher.stopped
    assert pool.stats().total == 0
    with pytest.raises(PoolClosedError):
        await waiter
    with pytest.raises(PoolClosedError):
        await pool.acquire()

