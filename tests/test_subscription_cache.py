"""Unit tests for webhook_service.services.subscription_cache."""
from __future__ import annotations

import asyncio

import pytest

from webhook_service.domain.enums import SubscriptionStatus
from webhook_service.services.subscription_cache import SubscriptionCache

from fakes import FakeSubscriptionRepository


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def repo():
    return FakeSubscriptionRepository()


@pytest.mark.asyncio
async def test_returns_only_active_subscriptions_for_event(repo):
    wanted = repo.add(events=["patient.created", "patient.updated"])
    repo.add(events=["claim.approved"])
    repo.add(events=["patient.created"], status=SubscriptionStatus.INACTIVE)

    cache = SubscriptionCache(repo, clock=Clock())
    found = await cache.get_subscriptions_for_event("patient.created")

    assert [s.id for s in found] == [wanted.id]


@pytest.mark.asyncio
async def test_second_lookup_is_served_from_cache(repo):
    repo.add()
    cache = SubscriptionCache(repo, ttl_seconds=300, clock=Clock())

    await cache.get_subscriptions_for_event("patient.created")
    await cache.get_subscriptions_for_event("patient.created")

    assert repo.active_queries == 1
    assert len(cache) == 1


@pytest.mark.asyncio
async def test_expired_cache_reloads(repo):
    repo.add()
    clock = Clock()
    cache = SubscriptionCache(repo, ttl_seconds=300, clock=clock)

    await cache.get_subscriptions_for_event("patient.created")
    clock.now += 301
    await cache.get_subscriptions_for_event("patient.created")

    assert repo.active_queries == 2


@pytest.mark.asyncio
async def test_invalidate_forces_reload(repo):
    cache = SubscriptionCache(repo, clock=Clock())
    assert await cache.get_subscriptions_for_event("patient.created") == []

    added = repo.add()
    cache.invalidate()

    found = await cache.get_subscriptions_for_event("patient.created")
    assert [s.id for s in found] == [added.id]


@pytest.mark.asyncio
async def test_callers_cannot_mutate_cached_list(repo):
    repo.add()
    cache = SubscriptionCache(repo, clock=Clock())

    first = await cache.get_subscriptions_for_event("patient.created")
    first.clear()

    assert len(await cache.get_subscriptions_for_event("patient.created")) == 1


@pytest.mark.asyncio
async def test_load_racing_invalidate_is_not_cached(repo):
    repo.add()
    gate = asyncio.Event()

    class SlowSource:
        async def list_active_containing_event(self, event_name):
            await gate.wait()
            return await repo.list_active_containing_event(event_name)

    cache = SubscriptionCache(SlowSource(), clock=Clock())
    pending = asyncio.create_task(cache.get_subscriptions_for_event("patient.created"))
    await asyncio.sleep(0)
    cache.invalidate()
    gate.set()
    await pending

    assert len(cache) == 0
