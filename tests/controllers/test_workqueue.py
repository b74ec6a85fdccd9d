"""Tests for the rate limiting work queue."""

import asyncio

import pytest

from kraan.controller.controllers.workqueue import RateLimitingQueue


@pytest.mark.unit
class TestRateLimitingQueue:
    @pytest.mark.asyncio
    async def test_add_deduplicates_waiting_keys(self):
        queue = RateLimitingQueue()

        queue.add("apps")
        queue.add("apps")
        queue.add("mgmt")

        assert len(queue) == 2
        assert await queue.get() == "apps"
        assert await queue.get() == "mgmt"

    @pytest.mark.asyncio
    async def test_key_is_single_flight(self):
        queue = RateLimitingQueue()
        queue.add("apps")
        key = await queue.get()

        queue.add("apps")
        assert len(queue) == 0

        queue.done(key)
        assert len(queue) == 1
        assert await queue.get() == "apps"

    @pytest.mark.asyncio
    async def test_done_without_readd_does_not_requeue(self):
        queue = RateLimitingQueue()
        queue.add("apps")
        queue.done(await queue.get())

        assert len(queue) == 0

    @pytest.mark.asyncio
    async def test_get_waits_for_add(self):
        queue = RateLimitingQueue()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        assert not waiter.done()

        queue.add("apps")

        assert await asyncio.wait_for(waiter, timeout=1) == "apps"

    @pytest.mark.asyncio
    async def test_add_after(self):
        queue = RateLimitingQueue()

        queue.add_after("apps", 0.01)
        assert len(queue) == 0

        assert await asyncio.wait_for(queue.get(), timeout=1) == "apps"

    @pytest.mark.asyncio
    async def test_add_after_non_positive_adds_now(self):
        queue = RateLimitingQueue()

        queue.add_after("apps", 0)

        assert len(queue) == 1

    def test_backoff_doubles_and_caps(self):
        queue = RateLimitingQueue(base_delay=0.005, max_delay=0.02)

        assert queue.when("apps") == 0.005
        queue._failures["apps"] = 1
        assert queue.when("apps") == 0.01
        queue._failures["apps"] = 10
        assert queue.when("apps") == 0.02

    @pytest.mark.asyncio
    async def test_rate_limited_requeue_and_forget(self):
        queue = RateLimitingQueue(base_delay=0.001)

        queue.add_rate_limited("apps")
        queue.add_rate_limited("apps")
        assert queue.num_requeues("apps") == 2
        assert await asyncio.wait_for(queue.get(), timeout=1) == "apps"

        queue.forget("apps")
        assert queue.num_requeues("apps") == 0
        assert queue.when("apps") == 0.001

    @pytest.mark.asyncio
    async def test_shutdown_releases_waiters_and_drops_timers(self):
        queue = RateLimitingQueue()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)
        queue.add_after("apps", 10)

        queue.shutdown()

        assert await asyncio.wait_for(waiter, timeout=1) is None
        assert queue.shutting_down
        queue.add("apps")
        assert len(queue) == 0
