'''This module contains pythonic wrappers for the exchange rate partner
API. The client implements no caching, it simply performs requests.
Only call it directly when you know you need to hit their servers;
otherwise, go through the cacheable fetch_* coroutines at the bottom.

Every public coroutine here either returns exactly what it says it
returns, or raises PartnerApiFailure. None of them will ever hand back
None, -1, or an empty dict to mean "something went wrong", so a caller
holding a value can trust it.
'''
import dataclasses
import datetime
import functools
import json
import string
from decimal import Decimal
from decimal import InvalidOperation
from typing import Dict

import httpx
import pydantic

from rates_wrapper.cache import cacheable
from rates_wrapper.cache import StaleFallbackCache
from rates_wrapper.config import settings
from rates_wrapper.exceptions import PartnerApiFailure

_CURRENCY_LETTERS = frozenset(string.ascii_uppercase)
_PositiveDecimal = pydantic.condecimal(gt=0)


@dataclasses.dataclass(frozen=True)
class ExchangeRate:
    base: str
    quote: str
    date: datetime.date
    rate: Decimal


@dataclasses.dataclass(frozen=True)
class Conversion:
    base: str
    quote: str
    date: datetime.date
    amount: Decimal
    result: Decimal


@pydantic.dataclasses.dataclass(frozen=True)
class _RatesRecord:
    amount: Decimal
    base: str
    date: datetime.date
    rates: Dict[str, _PositiveDecimal]

    @classmethod
    def from_payload(cls, payload):
        # A list (or anything else that isn't a mapping) blows up on the
        # splat with a TypeError, which the caller treats as a bad shape
        return cls(**payload)


_CURRENCIES_ADAPTER = pydantic.TypeAdapter(Dict[str, str])


def normalize_currency(code):
    '''Fail fast on currency codes that can't possibly be valid. This
    is a caller bug, not a partner failure, so it's a plain ValueError.
    '''
    if not isinstance(code, str):
        raise TypeError('Currency code must be a string!', code)

    normalized = code.strip().upper()
    if (
        len(normalized) != 3 or
        not _CURRENCY_LETTERS.issuperset(normalized)
    ):
        raise ValueError('Not a three-letter currency code!', code)

    return normalized


def normalize_amount(amount):
    try:
        normalized = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValueError('Amount must be a number!', amount) from exc

    if not normalized.is_finite() or normalized <= 0:
        raise ValueError('Amount must be positive and finite!', amount)

    return normalized


def _endpoint_for(on_date):
    if on_date is None:
        return '/latest'

    if not isinstance(on_date, datetime.date):
        raise TypeError('on_date must be a date!', on_date)

    return f'/{on_date.strftime("%Y-%m-%d")}'


def _identity_date():
    # A same-currency rate never touches the partner, so there's no partner
    # date to report. The partner dates its rates in UTC terms, so use that
    # rather than whatever the server's local date happens to be.
    return datetime.datetime.now(datetime.timezone.utc).date()


def _normalize_params(params):
    '''Normalize lists into comma-separated strings, and drop anything
    that's None. We want this to fail fast for anything else, since
    httpx would happily str() it into something the partner 500s on.
    '''
    normalized = {}
    for key, value in params.items():
        if value is None:
            continue

        if isinstance(value, str):
            normalized[key] = value
            continue

        try:
            iter(value)
        except TypeError as exc:
            raise TypeError(
                'Cannot convert to query string!', key, value) from exc
        else:
            normalized[key] = ','.join(value)

    return normalized


def _adapt_rates(base, quotes, amount, record):
    '''Turn a validated rates record into the result we promised. Any
    mismatch between what we asked for and what we got is an error;
    the wrapping request converts it into a PartnerApiFailure.
    '''
    if record.base != base:
        raise ValueError(f'Asked for base {base}, got {record.base}')

    if record.amount != amount:
        raise ValueError(f'Asked for amount {amount}, got {record.amount}')

    missing = [quote for quote in quotes if quote not in record.rates]
    if missing:
        raise ValueError(f'Response is missing quotes {missing}')

    return {quote: record.rates[quote] for quote in quotes}, record.date


def _adapt_currencies(currencies):
    if not currencies:
        raise ValueError('Partner returned no currencies at all')

    return dict(currencies)


class RatesClient:
    '''Thin async client for the exchange rate partner. Use as an async
    context manager so the underlying connection pool gets closed:

        async with RatesClient.from_settings(settings) as client:
            rate = await client.get_rate('USD', 'EUR')
    '''

    def __init__(self, base_url, *, timeout, retries, transport=None):
        # This happens once per client, so there's no per-request cost
        if transport is None:
            transport = httpx.AsyncHTTPTransport(retries=retries)

        self.base_url = base_url.rstrip('/')
        self._http = httpx.AsyncClient(transport=transport, timeout=timeout)

    @classmethod
    def from_settings(cls, settings, transport=None):
        return cls(
            settings.base_url,
            timeout=settings.timeout_seconds,
            retries=settings.retries,
            transport=transport)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()

    async def aclose(self):
        await self._http.aclose()

    async def _request(self, endpoint, params, parse, adapt):
        '''Performs a single GET against the partner and funnels every
        possible way it can go wrong into a PartnerApiFailure that
        carries the full URL and the params we sent.

        parse turns the decoded JSON into a validated record; adapt turns
        that record into the final result.
        '''
        # We don't want developers spelling out the whole URL in each of the
        # endpoints in case the base URL changes!
        if endpoint.startswith(self.base_url) or '://' in endpoint:
            raise ValueError('Endpoints should exclude the base URL!')

        url = f'{self.base_url}{endpoint}'
        params = _normalize_params(params)

        try:
            response = await self._http.get(
                url,
                params=params,
                headers={'Accept': 'application/json'}
            )
        except httpx.HTTPError as exc:
            raise PartnerApiFailure(
                url, params, reason=type(exc).__name__) from exc

        if response.status_code != 200:
            raise PartnerApiFailure(
                url, params, status_code=response.status_code,
                body=response.text)

        try:
            # Floats are money here; never let them round-trip through binary
            payload = response.json(parse_float=Decimal)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise PartnerApiFailure(
                url, params, status_code=response.status_code,
                body=response.content, reason='Response is not JSON'
            ) from exc

        try:
            record = parse(payload)
        except (TypeError, pydantic.ValidationError) as exc:
            raise PartnerApiFailure(
                url, params, status_code=response.status_code,
                body=response.text, reason='Unexpected response shape'
            ) from exc

        try:
            return adapt(record)

        # Somebody below us already built a failure with full context.
        # Wrapping it again would only bury it.
        except PartnerApiFailure:
            raise

        except Exception as exc:
            raise PartnerApiFailure(
                url, params, status_code=response.status_code,
                body=response.text, reason=f'Unusable response: {exc}'
            ) from exc

    async def _fetch_rates(self, base, quotes, on_date, amount):
        endpoint = _endpoint_for(on_date)
        params = {'from': base, 'to': quotes}
        if amount != 1:
            params['amount'] = str(amount)

        return await self._request(
            endpoint, params, _RatesRecord.from_payload,
            functools.partial(_adapt_rates, base, quotes, amount))

    async def get_rates(self, base, quotes, on_date=None):
        '''Get the rates from base into every one of quotes, on
        on_date (or the latest available). Returns a dict of quote ->
        ExchangeRate containing *every* requested quote.
        '''
        base = normalize_currency(base)
        # dict.fromkeys is an ordered de-dupe
        quotes = list(dict.fromkeys(normalize_currency(q) for q in quotes))
        if not quotes:
            raise ValueError('Need at least one quote currency!')

        # The partner refuses from == to, and the answer is 1 anyways
        remote_quotes = [quote for quote in quotes if quote != base]
        if remote_quotes:
            rates, rates_date = await self._fetch_rates(
                base, remote_quotes, on_date, Decimal(1))
        else:
            rates = {}
            rates_date = on_date or _identity_date()

        rates[base] = Decimal(1)
        return {
            quote: ExchangeRate(
                base=base, quote=quote, date=rates_date, rate=rates[quote])
            for quote in quotes
        }

    async def get_rate(self, base, quote, on_date=None):
        '''Get a single exchange rate. Returns an ExchangeRate.'''
        rates = await self.get_rates(base, [quote], on_date)
        return rates[normalize_currency(quote)]

    async def convert(self, amount, base, quote, on_date=None):
        '''Convert amount of base into quote. Returns a Conversion.'''
        amount = normalize_amount(amount)
        base = normalize_currency(base)
        quote = normalize_currency(quote)

        if base == quote:
            return Conversion(
                base=base, quote=quote, date=on_date or _identity_date(),
                amount=amount, result=amount)

        rates, rates_date = await self._fetch_rates(
            base, [quote], on_date, amount)
        return Conversion(
            base=base, quote=quote, date=rates_date, amount=amount,
            result=rates[quote])

    async def get_currencies(self):
        '''Get every currency the partner knows about, as a dict of
        code -> human-readable name.
        '''
        return await self._request(
            '/currencies', {}, _CURRENCIES_ADAPTER.validate_python,
            _adapt_currencies)


def apply_rate(amount, rate):
    '''Convert amount using an ExchangeRate we already trust. Conversions
    are derived from cached rates instead of being cached themselves, so
    that every distinct amount a client sends doesn't become a cache
    entry of its own.
    '''
    amount = normalize_amount(amount)
    return Conversion(
        base=rate.base, quote=rate.quote, date=rate.date, amount=amount,
        result=amount * rate.rate)


def _make_client():
    return RatesClient.from_settings(settings)


# Callers should normalize currency codes before going through the cache, so
# that 'usd' and 'USD' share one entry
@cacheable(
    StaleFallbackCache, default_ttl=settings.cache_ttl_seconds,
    max_entries=settings.cache_max_entries)
async def fetch_rate(base, quote, on_date=None):
    async with _make_client() as client:
        return await client.get_rate(base, quote, on_date)


@cacheable(StaleFallbackCache, default_ttl=settings.cache_ttl_seconds)
async def fetch_currencies():
    async with _make_client() as client:
        return await client.get_currencies()
