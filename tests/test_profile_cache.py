import pytest

from temporal_memory.services.profile_cache import ProfileCache
from temporal_memory.utils.config import CacheConfig


class FakeClock:

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


def test_entries_expire_after_ttl(clock):
    cache = ProfileCache(CacheConfig(ttl_seconds=60, max_entries=10), clock)
    cache.put('alice', 'doc')

    clock.now += 59
    assert cache.get('alice') == 'doc'

    clock.now += 1
    assert cache.get('alice') is None
    assert len(cache) == 0
    assert cache.stats() == {'entries': 0, 'hits': 1, 'misses': 1}


def test_least_recently_used_entry_is_evicted(clock):
    cache = ProfileCache(CacheConfig(ttl_seconds=60, max_entries=2), clock)
    cache.put('alice', 'a')
    cache.put('bob', 'b')
    cache.get('alice')

    cache.put('carol', 'c')

    assert cache.get('bob') is None
    assert cache.get('alice') == 'a'
    assert cache.get('carol') == 'c'


def test_invalidate_drops_every_variant_for_one_user(clock):
    cache = ProfileCache(CacheConfig(), clock)
    cache.put('alice', 'full', variant='markdown::24000')
    cache.put('alice', 'short', variant='compact::24000')
    cache.put('bob', 'full', variant='markdown::24000')

    assert cache.invalidate('alice') == 2
    assert cache.get('alice', variant='markdown::24000') is None
    assert cache.get('bob', variant='markdown::24000') == 'full'
    assert cache.invalidate('nobody') == 0


@pytest.mark.asyncio
async def test_async_invalidation_hook(clock):
    cache = ProfileCache(CacheConfig(), clock)
    cache.put('alice', 'doc')

    await cache.invalidate_async('alice')

    assert len(cache) == 0


def test_clear(clock):
    cache = ProfileCache(CacheConfig(), clock)
    cache.put('alice', 'doc')
    cache.put('bob', 'doc')

    cache.clear()

    assert len(cache) == 0
