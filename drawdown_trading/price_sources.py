# drawdown_trading/price_sources.py
"""
Public BTC/EUR ticker endpoints and their response parsers.

Each parser receives the decoded JSON body and returns a dict with 'price' and,
when the venue reports them, 'volume', 'high_24h' and 'low_24h'. Parsers raise
SourceParseError on a missing or non-positive price or an unexpected shape.
"""

import time
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from .errors import SourceFetchError, SourceParseError
from .models import PriceSample

logger = logging.getLogger(__name__)

USER_AGENT = 'Mozilla/5.0 (compatible; TradingBot/1.0)'


@dataclass(frozen=True)
class PriceSource:
    name: str
    url: str
    parser: Callable[[Any], Dict[str, Optional[float]]]
    timeout: Optional[float] = None


def _to_float(source: str, value: Any, field_name: str) -> Optional[float]:
    if value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise SourceParseError(source, f"{field_name} is not a number: {value!r}")


def _result(source: str, price: Any, volume: Any = None,
            high: Any = None, low: Any = None) -> Dict[str, Optional[float]]:
    parsed_price = _to_float(source, price, 'price')
    if parsed_price is None or parsed_price <= 0:
        raise SourceParseError(source, f"Invalid or missing price: {price!r}")

    return {
        'price': parsed_price,
        'volume': _to_float(source, volume, 'volume'),
        'high_24h': _to_float(source, high, 'high'),
        'low_24h': _to_float(source, low, 'low')
    }


# =============================================================================
# PARSERS
# =============================================================================

def parse_bitfinex(data: Any) -> Dict[str, Optional[float]]:
    # [BID, BID_SIZE, ASK, ASK_SIZE, DAILY_CHANGE, DAILY_CHANGE_RELATIVE, LAST_PRICE, VOLUME, HIGH, LOW]
    if not isinstance(data, list) or len(data) < 7:
        raise SourceParseError('bitfinex', 'Invalid ticker array')
    return _result(
        'bitfinex',
        data[6],
        data[7] if len(data) > 7 else None,
        data[8] if len(data) > 8 else None,
        data[9] if len(data) > 9 else None
    )


def parse_bitstamp(data: Any) -> Dict[str, Optional[float]]:
    if not isinstance(data, dict):
        raise SourceParseError('bitstamp', 'Invalid ticker object')
    return _result('bitstamp', data.get('last'), data.get('volume'),
                   data.get('high'), data.get('low'))


def parse_kraken(data: Any) -> Dict[str, Optional[float]]:
    ticker = (data.get('result') or {}).get('XXBTZEUR') if isinstance(data, dict) else None
    if not ticker:
        raise SourceParseError('kraken', 'Missing result.XXBTZEUR')
    try:
        return _result('kraken', ticker['c'][0], ticker['v'][1],
                       ticker['h'][1], ticker['l'][1])
    except (KeyError, IndexError, TypeError) as e:
        raise SourceParseError('kraken', f"Unexpected ticker shape: {e}")


def parse_coinbase(data: Any) -> Dict[str, Optional[float]]:
    amount = (data.get('data') or {}).get('amount') if isinstance(data, dict) else None
    if not amount:
        raise SourceParseError('coinbase', 'Missing data.amount')
    return _result('coinbase', amount)


def parse_binance(data: Any) -> Dict[str, Optional[float]]:
    if not isinstance(data, dict) or not data.get('price'):
        raise SourceParseError('binance', 'Missing price')
    return _result('binance', data['price'])


def parse_cryptocompare(data: Any) -> Dict[str, Optional[float]]:
    if not isinstance(data, dict) or not data.get('EUR'):
        raise SourceParseError('cryptocompare', 'Missing EUR')
    return _result('cryptocompare', data['EUR'])


DEFAULT_SOURCES: List[PriceSource] = [
    PriceSource('bitfinex', 'https://api-pub.bitfinex.com/v2/ticker/tBTCEUR', parse_bitfinex),
    PriceSource('bitstamp', 'https://www.bitstamp.net/api/v2/ticker/btceur/', parse_bitstamp),
    PriceSource('kraken', 'https://api.kraken.com/0/public/Ticker?pair=XBTEUR', parse_kraken),
    PriceSource('coinbase', 'https://api.coinbase.com/v2/prices/BTC-EUR/spot', parse_coinbase),
    PriceSource('binance', 'https://data-api.binance.vision/api/v3/ticker/price?symbol=BTCEUR', parse_binance),
    PriceSource('cryptocompare', 'https://min-api.cryptocompare.com/data/price?fsym=BTC&tsyms=EUR', parse_cryptocompare),
]


# =============================================================================
# FETCHING
# =============================================================================

def fetch_quote(
    session: requests.Session,
    source: PriceSource,
    default_timeout: float
) -> Dict[str, Optional[float]]:
    """
    Fetch and parse one source.

    Raises:
        SourceFetchError: network/HTTP failure
        SourceParseError: unusable payload
    """
    timeout = source.timeout or default_timeout
    try:
        response = session.get(source.url, timeout=timeout, headers={'User-Agent': USER_AGENT})
        response.raise_for_status()
        data = response.json()
    except requests.exceptions.RequestException as e:
        raise SourceFetchError(source.name, f"Request failed: {e}")
    except ValueError as e:
        raise SourceParseError(source.name, f"Invalid JSON: {e}")

    return source.parser(data)


def fetch_sample(
    session: requests.Session,
    source: PriceSource,
    default_timeout: float,
    clock: Callable[[], float] = time.monotonic
) -> PriceSample:
    """
    Query one source and turn the outcome into an independent PriceSample.

    Never raises: any failure becomes an unsuccessful sample.
    """
    start = clock()
    try:
        quote = fetch_quote(session, source, default_timeout)
    except Exception as e:
        latency = clock() - start
        logger.warning(f"❌ Source {source.name} unavailable: {e}")
        return PriceSample(
            source=source.name,
            success=False,
            error=str(e),
            latency_seconds=latency
        )

    latency = clock() - start
    logger.info(f"✅ {source.name}: {quote['price']:.2f} EUR ({latency:.2f}s)")
    return PriceSample(
        source=source.name,
        success=True,
        price=quote['price'],
        volume=quote.get('volume'),
        high_24h=quote.get('high_24h'),
        low_24h=quote.get('low_24h'),
        latency_seconds=latency
    )
