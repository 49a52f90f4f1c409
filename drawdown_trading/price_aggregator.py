# drawdown_trading/price_aggregator.py
"""
Multi-source price consensus.

Sources are queried concurrently; each query yields an independent PriceSample.
Consolidation is a separate pure reduction over the samples (median, mean,
first-available in source order), so the result does not depend on which
request finished first.
"""

import logging
import statistics
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Sequence, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .config import TradingConfig
from .errors import DataUnavailable, InsufficientSources, PriceDataError, PriceOutOfBounds
from .models import ConsolidatedPrice, PriceSample
from .price_sources import DEFAULT_SOURCES, PriceSource, fetch_sample

logger = logging.getLogger(__name__)

MAX_PARALLEL_WORKERS = 6


class ReferenceExtremumProvider:
    """Supplies the reference high/low the drawdown is measured against."""

    def extremes(self, price: float) -> Tuple[float, float]:
        raise NotImplementedError


class ApproximateExtremumProvider(ReferenceExtremumProvider):
    """
    Six-month high/low approximated as +30%/-30% of the current price.

    This is not a rolling historical extremum: with it the drawdown is always
    about -23%. Swap in a provider backed by real history when one exists.
    """

    def __init__(self, high_factor: float = 1.3, low_factor: float = 0.7):
        self.high_factor = high_factor
        self.low_factor = low_factor

    def extremes(self, price: float) -> Tuple[float, float]:
        return price * self.high_factor, price * self.low_factor


class FixedExtremumProvider(ReferenceExtremumProvider):
    """Reference high/low supplied by the caller (e.g. from a history store)."""

    def __init__(self, high: float, low: float):
        self.high = high
        self.low = low

    def extremes(self, price: float) -> Tuple[float, float]:
        return self.high, self.low


def median_price(prices: Sequence[float]) -> float:
    """
    Median of the successful prices.

    For an even count the upper middle element is used.
    """
    if not prices:
        raise ValueError("median of an empty price list")
    return statistics.median_high(prices)


def consolidate(
    samples: Sequence[PriceSample],
    source_order: Sequence[str],
    extremum_provider: ReferenceExtremumProvider,
    min_sources: int = 2,
    min_sane_price: float = 10_000.0,
    max_sane_price: float = 100_000.0
) -> ConsolidatedPrice:
    """
    Reduce a cycle's samples into one ConsolidatedPrice.

    Raises:
        InsufficientSources: fewer than min_sources successful samples
        PriceOutOfBounds: median outside the sanity range
    """
    rank = {name: i for i, name in enumerate(source_order)}
    ordered = sorted(samples, key=lambda s: rank.get(s.source, len(rank)))
    successes = [s for s in ordered if s.success]

    if len(successes) < min_sources:
        raise InsufficientSources(len(successes), len(samples), min_sources)

    price = median_price([s.price for s in successes])

    if price < min_sane_price or price > max_sane_price:
        raise PriceOutOfBounds(price, min_sane_price, max_sane_price)

    volumes = [s.volume for s in successes if s.volume]
    high_24h = next((s.high_24h for s in successes if s.high_24h), None)
    low_24h = next((s.low_24h for s in successes if s.low_24h), None)
    six_months_high, six_months_low = extremum_provider.extremes(price)

    return ConsolidatedPrice(
        price=price,
        six_months_high=six_months_high,
        six_months_low=six_months_low,
        sources_used=len(successes),
        total_sources=len(samples),
        volume=sum(volumes) / len(volumes) if volumes else 0.0,
        high_24h=high_24h or price * 1.05,
        low_24h=low_24h or price * 0.95,
        samples=list(ordered)
    )


class PriceAggregator:
    """
    Queries every configured source and builds the cycle's trusted price.

    On InsufficientSources or PriceOutOfBounds exactly one fallback call is
    made to the designated source; if that fails too, DataUnavailable.
    """

    def __init__(
        self,
        cfg: TradingConfig,
        sources: Optional[List[PriceSource]] = None,
        extremum_provider: Optional[ReferenceExtremumProvider] = None,
        session: Optional[requests.Session] = None
    ):
        self.cfg = cfg
        self.sources = list(sources if sources is not None else DEFAULT_SOURCES)
        self.extremum_provider = extremum_provider or ApproximateExtremumProvider()
        self.session = session or self._create_session()

        if isinstance(self.extremum_provider, ApproximateExtremumProvider):
            logger.warning(
                "Using approximate six-month high/low (+/-30% of price); "
                "drawdown does not reflect real price history"
            )

    def _create_session(self) -> requests.Session:
        """Create requests session with retry logic for transient HTTP errors."""
        session = requests.Session()

        retry_strategy = Retry(
            total=1,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("https://", adapter)
        session.mount("http://", adapter)

        return session

    def _fallback_source(self) -> PriceSource:
        for source in self.sources:
            if source.name == self.cfg.fallback_source:
                return source
        raise DataUnavailable(f"Fallback source '{self.cfg.fallback_source}' is not configured")

    def fetch_samples(self) -> List[PriceSample]:
        """Query every source concurrently; one PriceSample per source."""
        samples: Dict[str, PriceSample] = {}

        with ThreadPoolExecutor(max_workers=min(MAX_PARALLEL_WORKERS, len(self.sources) or 1)) as executor:
            future_to_source = {
                executor.submit(fetch_sample, self.session, source, self.cfg.source_timeout): source
                for source in self.sources
            }

            for future in as_completed(future_to_source):
                source = future_to_source[future]
                samples[source.name] = future.result()

        return [samples[s.name] for s in self.sources]

    def collect(self) -> ConsolidatedPrice:
        """
        Collect and consolidate one trusted price point.

        Raises:
            DataUnavailable: consensus and fallback both failed
        """
        samples = self.fetch_samples()

        try:
            consolidated = consolidate(
                samples,
                [s.name for s in self.sources],
                self.extremum_provider,
                min_sources=self.cfg.min_successful_sources,
                min_sane_price=self.cfg.min_sane_price,
                max_sane_price=self.cfg.max_sane_price
            )
        except PriceDataError as e:
            logger.error(f"❌ Price consensus failed: {e}")
            return self._collect_fallback(samples, e)

        logger.info(
            f"📊 Consolidated price: {consolidated.price:.2f} EUR "
            f"({consolidated.sources_used}/{consolidated.total_sources} sources)"
        )
        return consolidated

    def _collect_fallback(self, samples: List[PriceSample], cause: PriceDataError) -> ConsolidatedPrice:
        source = self._fallback_source()
        logger.info(f"🔄 Trying fallback source: {source.name}")

        sample = fetch_sample(self.session, source, self.cfg.source_timeout)
        if not sample.success:
            raise DataUnavailable(
                f"Price data unavailable even from fallback ({cause}; fallback: {sample.error})"
            ) from cause

        if sample.price < self.cfg.min_sane_price or sample.price > self.cfg.max_sane_price:
            raise DataUnavailable(
                f"Fallback price {sample.price:.2f} outside sanity range ({cause})"
            ) from cause

        six_months_high, six_months_low = self.extremum_provider.extremes(sample.price)
        fallback_sample = PriceSample(
            source=f"{source.name}_fallback",
            success=True,
            price=sample.price,
            latency_seconds=sample.latency_seconds
        )

        logger.info(f"📊 Fallback price: {sample.price:.2f} EUR ({source.name})")

        return ConsolidatedPrice(
            price=sample.price,
            six_months_high=six_months_high,
            six_months_low=six_months_low,
            sources_used=1,
            total_sources=1,
            fallback_used=True,
            high_24h=sample.price * 1.05,
            low_24h=sample.price * 0.95,
            samples=list(samples) + [fallback_sample]
        )
