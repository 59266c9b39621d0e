'''Contains caching logic for partner requests.

This is the one place in rates_wrapper that has an actual recovery
strategy for partner failures: if we've seen a good answer for the exact
same call before, we can (optionally) serve that instead of failing. Any
caller that can't tolerate slightly stale data passes best_effort=False,
and gets the failure instead.

A few assumptions, code-wise:
+   cacheable coroutines return a single value (not an async iterator)
+   each distinct set of call arguments is a separate cache entry, so
    arguments must be hashable
+   the number of distinct calls can be capped with max_entries; once
    full, the entry refreshed longest ago is evicted first

Side note: yes, we could have gone with an API that added a @cache
decorator to the request coroutine and done the caching transparently.
However, that makes it really difficult to test the low-level requests,
since you would need to "peel" the decorator away for those tests. Put
simply: explicit cache use is better than implicit!

Note that this is also a single-server cache. Depending on application,
it might be more appropriate to implement a distributed cache.
'''
import logging
import time

from rates_wrapper.exceptions import PartnerUnavailable

logger = logging.getLogger(__name__)
_CACHE_TYPE_ATTR = '__request_cache__'


def _make_key(args, kwargs):
    return (tuple(args), frozenset(kwargs.items()))


def cacheable(cache_type, *, default_ttl, **cache_kwargs):
    '''Decorator for marking a coroutine as cacheable. Adds an instance
    of the desired cache_type to the coroutine, with a default ttl as
    specified (in seconds). Any other keyword arguments are passed
    through to the cache_type constructor.

    Use like this:

        @cacheable(StaleFallbackCache, default_ttl=60)
        async def request_something(base, quote):
            ...
    '''
    def decorator(coro):
        setattr(
            coro, _CACHE_TYPE_ATTR,
            cache_type(default_ttl=default_ttl, **cache_kwargs))
        return coro

    return decorator


class StaleFallbackCache:
    '''Keyed cache that remembers when each entry was last refreshed,
    so that we can tell apart "fresh", "stale but usable", and "never
    seen".
    '''

    def __init__(self, *, default_ttl, max_entries=None):
        self.default_ttl = default_ttl
        self.max_entries = max_entries
        # key -> (monotonic timestamp of last update, value). We *could*
        # subclass dict, but we want every mutation to go through update()
        # so the timestamps can't drift from the values
        self._entries = {}

    def __len__(self):
        return len(self._entries)

    def needs_update(self, key, ttl=None):
        '''Checks to see if we need to refresh the entry for key.
        Returns bool. Pass an optional ttl to override the default.
        '''
        entry = self._entries.get(key)
        if entry is None:
            return True

        elif ttl is None:
            use_ttl = self.default_ttl

        else:
            use_ttl = ttl

        last_update, __ = entry
        return time.monotonic() - last_update >= use_ttl

    def update(self, key, value):
        # Re-inserting keeps the dict ordered from least to most recently
        # refreshed, so eviction is just popping from the front
        self._entries.pop(key, None)
        self._entries[key] = (time.monotonic(), value)

        if self.max_entries is not None:
            while len(self._entries) > self.max_entries:
                del self._entries[next(iter(self._entries))]

    def get(self, key, default=None):
        entry = self._entries.get(key)
        if entry is None:
            return default
        return entry[1]

    def can_fallback_to_stale(self, key):
        '''Returns boolean indicating whether or not we have a stale
        result for key that we could fall back on.
        '''
        return key in self._entries

    def clear(self):
        self._entries.clear()


def get_cache(cacheable_coro):
    cache = getattr(cacheable_coro, _CACHE_TYPE_ATTR, None)
    if cache is None:
        raise TypeError('Must decorate with @cacheable to get_cache!')
    return cache


async def request_through_cache(
    cacheable_coro, *args, best_effort=True, ttl=None, **kwargs
):
    '''Gets the result of cacheable_coro(*args, **kwargs); the coroutine
    must be decorated with @cacheable. If that exact call has been made
    within the cache's default_ttl (or within an explicit ttl provided
    here), serves completely from the cache. Otherwise, performs an
    upstream request and updates the cache.

    If best_effort and we have *some* earlier result for the call, then
    upstream failures are logged and the stale result is served instead.
    In every other case the failure propagates, unlogged; logging it is
    the job of whoever finally handles it.
    '''
    cache = get_cache(cacheable_coro)
    key = _make_key(args, kwargs)

    if not cache.needs_update(key, ttl):
        return cache.get(key)

    try:
        value = await cacheable_coro(*args, **kwargs)

    except PartnerUnavailable as exc:
        if best_effort and cache.can_fallback_to_stale(key):
            log_once = getattr(exc, 'log_once', None)
            if log_once is None:
                logger.warning(
                    'Partner unavailable for %s! Using stale cache.',
                    cacheable_coro.__qualname__, exc_info=exc)
            else:
                log_once(logger, logging.WARNING)
            return cache.get(key)

        # Either we explicitly said best_effort=False (and therefore, we
        # never want stale results), or we've never made a successful
        # upstream request for this key. Either way there's nothing sane
        # to return.
        raise

    cache.update(key, value)
    return value
