import dataclasses
import datetime
import logging
from decimal import Decimal
from typing import Optional

from fastapi import FastAPI
from fastapi import HTTPException
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.responses import PlainTextResponse

from rates_wrapper.cache import request_through_cache
from rates_wrapper.exceptions import PartnerUnavailable
from rates_wrapper.rates import apply_rate
from rates_wrapper.rates import fetch_currencies
from rates_wrapper.rates import fetch_rate
from rates_wrapper.rates import normalize_amount
from rates_wrapper.rates import normalize_currency

logger = logging.getLogger(__name__)

app = FastAPI()


@app.exception_handler(PartnerUnavailable)
async def partner_unavailable_handler(request: Request, exc):
    '''This is the *only* place partner failures get logged when
    nobody upstream could recover from them. Everything below us just
    raises.
    '''
    log_once = getattr(exc, 'log_once', None)
    if log_once is None:
        logger.error(
            'Partner unavailable while serving %s', request.url.path,
            exc_info=exc)
    else:
        log_once(logger)

    return JSONResponse(
        status_code=502,
        content={'detail': 'Exchange rate partner unavailable'})


@app.get('/api/health', response_class=PlainTextResponse)
async def root():
    return 'Hello world!'


async def _cached_rate(base, quote, on_date):
    '''Normalize before we touch the cache, so that every spelling of a
    currency pair shares one entry.
    '''
    try:
        base = normalize_currency(base)
        quote = normalize_currency(quote)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    # A stale exchange rate is exactly the kind of unreliable data we'd
    # rather fail on, so no best effort here
    return await request_through_cache(
        fetch_rate, base, quote, on_date, best_effort=False)


@app.get('/api/rates/{base}/{quote}')
async def api_get_rate(
    base: str, quote: str, on_date: Optional[datetime.date] = None
):
    rate = await _cached_rate(base, quote, on_date)
    # Money goes out as strings; a JSON float would throw away the precision
    # we so carefully kept on the way in
    return DisplayRate(
        base=rate.base, quote=rate.quote, date=rate.date, rate=str(rate.rate))


@app.get('/api/convert/{base}/{quote}')
async def api_convert(
    base: str, quote: str, amount: Decimal,
    on_date: Optional[datetime.date] = None
):
    # Validate before hitting the partner, even through the cache
    try:
        amount = normalize_amount(amount)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    conversion = apply_rate(amount, await _cached_rate(base, quote, on_date))
    return DisplayConversion(
        base=conversion.base, quote=conversion.quote, date=conversion.date,
        amount=str(conversion.amount), result=str(conversion.result))


@app.get('/api/currencies')
async def api_get_currencies():
    # The list of currencies basically never changes, so stale is fine
    return await request_through_cache(fetch_currencies)


@dataclasses.dataclass
class DisplayRate:
    base: str
    quote: str
    date: datetime.date
    rate: str


@dataclasses.dataclass
class DisplayConversion:
    base: str
    quote: str
    date: datetime.date
    amount: str
    result: str
