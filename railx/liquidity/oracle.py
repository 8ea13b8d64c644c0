"""
Reference rate feeds for ORACLE_RELATIVE strategies.

A feed is anything with rate(pair) -> float, pair written "BASE/QUOTE" and the
rate expressed in QUOTE per 1 BASE. 0 means unavailable; the quote engine
then treats oracle-priced strategies as inactive.
"""

import math
import time
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Dict, Callable, Tuple

import httpx

log = logging.getLogger(__name__)

# Reference table (QUOTE per 1 BASE)
BASE_RATES: Dict[str, float] = {
    "USDC/KRWK": 1350.50,
    "USDT/KRWK": 1352.00,
    "RLUSD/KRWK": 1348.80,
    "JPYC/KRWK": 9.12,
    "XSGD/KRWK": 1015.40,
}

# Drift step and amplitude of the reference feed
NOISE_STEP_SECONDS = 10
NOISE_AMPLITUDE = 0.002


def split_pair(pair: str) -> Tuple[str, str]:
    base, _, quote = pair.partition("/")
    if not base or not quote:
        raise ValueError(f"Invalid pair: {pair}")
    return base, quote


class OracleFeed:
    """Interface: rate(pair) -> float (0 = unavailable)."""

    def rate(self, pair: str) -> float:
        raise NotImplementedError


class StaticOracle(OracleFeed):
    """Fixed rates, inverse pairs derived. Used for tests and dry runs."""

    def __init__(self, rates: Dict[str, float] = None):
        self.rates: Dict[str, float] = dict(rates or {})

    def set_rate(self, pair: str, rate: float):
        self.rates[pair] = rate

    def rate(self, pair: str) -> float:
        if pair in self.rates:
            return float(self.rates[pair])
        base, quote = split_pair(pair)
        reverse = self.rates.get(f"{quote}/{base}")
        if reverse:
            return 1.0 / float(reverse)
        return 0.0


class MockOracle(StaticOracle):
    """
    Reference table with a deterministic drift.

    rate = base * (1 + sin(floor(now / 10s)) * 0.002), so every reader in the
    same 10-second window sees the same value.
    """

    def __init__(self, rates: Dict[str, float] = None, clock: Callable[[], float] = time.time):
        super().__init__(rates or BASE_RATES)
        self.clock = clock

    def rate(self, pair: str) -> float:
        base = super().rate(pair)
        if not base:
            return 0.0
        step = math.floor(self.clock() / NOISE_STEP_SECONDS)
        return base * (1 + math.sin(step) * NOISE_AMPLITUDE)


@dataclass
class OracleConfig:
    """Live oracle configuration."""
    url_template: str = ""          # e.g. "https://rates.example/v1/{base}/{quote}"
    json_path: str = "rate"         # dot path into the response body
    cache_ttl: int = 10             # seconds
    timeout: float = 5.0


def extract_json_path(data: dict, path: str):
    """Extract value from nested dict using dot notation path."""
    keys = path.replace('[', '.').replace(']', '').split('.')
    result = data
    for key in keys:
        if key.isdigit() and isinstance(result, list):
            index = int(key)
            if index >= len(result):
                return None
            result = result[index]
        elif isinstance(result, dict):
            result = result.get(key)
        else:
            return None
        if result is None:
            return None
    return result


class HttpOracle(OracleFeed):
    """
    Live rates over HTTP with a per-pair TTL cache.

    On fetch failure the last good value is returned; with no history the
    pair reads as 0 (unavailable).
    """

    def __init__(self, config: OracleConfig, client: httpx.Client = None,
                 clock: Callable[[], float] = time.time):
        self.config = config
        self.clock = clock
        self._client = client
        self._cache: Dict[str, Tuple[float, float]] = {}   # pair -> (rate, fetched_at)
        self._lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        """Lazy-load httpx client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.Client(timeout=self.config.timeout)
        return self._client

    def close(self):
        if self._client is not None and not self._client.is_closed:
            self._client.close()

    def rate(self, pair: str) -> float:
        now = self.clock()
        with self._lock:
            cached = self._cache.get(pair)
        if cached and now - cached[1] < self.config.cache_ttl:
            return cached[0]

        fetched = self._fetch(pair)
        if fetched is None:
            return cached[0] if cached else 0.0

        with self._lock:
            self._cache[pair] = (fetched, now)
        return fetched

    def _fetch(self, pair: str) -> Optional[float]:
        base, quote = split_pair(pair)
        url = self.config.url_template.format(base=base, quote=quote)
        try:
            response = self.client.get(url)
            response.raise_for_status()
            value = extract_json_path(response.json(), self.config.json_path)
            rate = float(value) if value is not None else 0.0
        except (httpx.HTTPError, ValueError, TypeError) as e:
            log.warning(f"Oracle fetch failed for {pair}: {e}")
            return None
        if rate <= 0:
            log.warning(f"Oracle returned no rate for {pair}")
            return None
        log.info(f"Oracle {pair} = {rate}")
        return rate
