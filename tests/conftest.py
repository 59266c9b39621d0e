import json

import httpx
import pytest

from rates_wrapper import rates
from rates_wrapper.cache import get_cache
from rates_wrapper.rates import RatesClient

TEST_BASE_URL = 'https://rates.test'


class PartnerPlayback:
    '''Stands in for the partner's servers. Register canned responses
    per path; every request that comes in is recorded so tests can
    assert on exactly what we sent.

    We used to play back recorded cassettes for this, but for a partner
    this small, canned responses are a lot easier to read (and a lot
    easier to make misbehave on purpose).
    '''

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add_json(self, path, payload, status_code=200):
        self.routes[path] = lambda request: httpx.Response(
            status_code, content=json.dumps(payload).encode(),
            headers={'Content-Type': 'application/json'})

    def add_raw(self, path, content, status_code=200):
        self.routes[path] = lambda request: httpx.Response(
            status_code, content=content)

    def add_error(self, path, exc_type):
        def raiser(request):
            raise exc_type('Simulated transport failure', request=request)

        self.routes[path] = raiser

    def __call__(self, request):
        self.requests.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, content=b'{"message": "not found"}')
        return handler(request)

    @property
    def transport(self):
        return httpx.MockTransport(self)


@pytest.fixture
def partner():
    return PartnerPlayback()


@pytest.fixture
def make_client(partner):
    def factory():
        return RatesClient(
            TEST_BASE_URL, timeout=1, retries=0,
            transport=partner.transport)

    return factory


@pytest.fixture
def patched_partner(partner, make_client, monkeypatch):
    '''Point the module-level fetch_* coroutines at the playback
    partner instead of the real one.
    '''
    monkeypatch.setattr(rates, '_make_client', make_client)
    return partner


@pytest.fixture(autouse=True)
def clear_fetch_caches():
    '''The fetch_* caches are module-level, so they would otherwise
    leak between tests.
    '''
    cached = [rates.fetch_rate, rates.fetch_currencies]
    for coro in cached:
        get_cache(coro).clear()

    yield

    for coro in cached:
        get_cache(coro).clear()
