"""
Price factor sources.

A price factor scales a plan's initial amount on every tick after the
first one: 1.0 is neutral, values below 1.0 buy less, values above buy
more. get_price_factor() always returns a factor in [0, 2]; any internal
failure degrades to 1.0.
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiohttp

from .config import OracleProvider, OracleSettings
from .exceptions import ConfigurationError, OracleError

logger = logging.getLogger(__name__)

NEUTRAL_FACTOR = 1.0
MIN_FACTOR = 0.0
MAX_FACTOR = 2.0

# (low %, high %, factor at low, factor at high), by magnitude of the move
_RISING_BANDS = (
    (0.0, 3.0, 1.0, 1.3),
    (3.0, 10.0, 1.3, 1.7),
    (10.0, 20.0, 1.7, 1.9),
)
_FALLING_BANDS = (
    (0.0, 3.0, 1.0, 0.7),
    (3.0, 10.0, 0.7, 0.3),
    (10.0, 30.0, 0.3, 0.0),
)


def clamp_factor(factor: Any) -> float:
    """Coerce to a finite float in [MIN_FACTOR, MAX_FACTOR]; junk becomes neutral."""
    try:
        value = float(factor)
    except (TypeError, ValueError):
        return NEUTRAL_FACTOR
    if not math.isfinite(value):
        return NEUTRAL_FACTOR
    return min(MAX_FACTOR, max(MIN_FACTOR, value))


# =============================================================================
# TREND MATH
# =============================================================================

def daily_closes(prices: Sequence[Sequence[float]]) -> List[Tuple[date, float]]:
    """
    Collapse ``[timestamp_ms, price]`` points into one close per UTC day.

    The close of a day is its latest point. Output is ordered by day.
    """
    closes: Dict[date, Tuple[float, float]] = {}
    for point in prices:
        timestamp_ms, price = float(point[0]), float(point[1])
        day = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).date()
        current = closes.get(day)
        if current is None or timestamp_ms >= current[0]:
            closes[day] = (timestamp_ms, price)
    return [(day, closes[day][1]) for day in sorted(closes)]


def moving_average(values: Sequence[float], window: int) -> float:
    if len(values) < window:
        raise OracleError(
            f"Need {window} points for moving average, have {len(values)}",
            context={"window": window, "points": len(values)},
        )
    recent = values[-window:]
    return sum(recent) / window


def day_over_day_change(closes: Sequence[Tuple[date, float]]) -> float:
    """Percent change between the closes of the last two calendar days present."""
    if len(closes) < 2:
        raise OracleError("Not enough days of price data for day-over-day change")
    previous = closes[-2][1]
    current = closes[-1][1]
    if previous <= 0:
        raise OracleError(f"Non-positive reference price: {previous}")
    return (current - previous) / previous * 100


def band_factor(change_pct: float, dampen: bool = False) -> float:
    """
    Map a day-over-day percent change onto the factor bands.

    With ``dampen`` the position inside the band is halved, pulling the
    factor toward the band's edge nearer to neutral. The result never
    leaves the band of ``change_pct``.
    """
    bands = _RISING_BANDS if change_pct >= 0 else _FALLING_BANDS
    magnitude = abs(change_pct)
    for low, high, at_low, at_high in bands:
        if magnitude <= high:
            position = (magnitude - low) / (high - low)
            break
    else:
        _, _, at_low, at_high = bands[-1]
        position = 1.0
    if dampen:
        position /= 2
    return at_low + (at_high - at_low) * position


def crossover_disagrees(short_ma: float, long_ma: float, change_pct: float) -> bool:
    """True when the short/long average crossover points against the daily move."""
    return (change_pct > 0 and short_ma < long_ma) or (change_pct < 0 and short_ma > long_ma)


@dataclass
class TrendAnalysis:
    """Inputs and result of one trend evaluation."""
    asset_id: str
    short_ma: float
    long_ma: float
    change_pct: float
    price_factor: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "shortMovingAverage": self.short_ma,
            "longMovingAverage": self.long_ma,
            "priceChangePercentage": self.change_pct,
            "priceFactor": self.price_factor,
        }


def analyze_prices(
    asset_id: str,
    prices: Sequence[Sequence[float]],
    short_window: int = 7,
    long_window: int = 30,
) -> TrendAnalysis:
    closes = daily_closes(prices)
    values = [price for _, price in closes]

    short_ma = moving_average(values, short_window)
    long_ma = moving_average(values, long_window)
    change_pct = day_over_day_change(closes)

    factor = band_factor(change_pct, dampen=crossover_disagrees(short_ma, long_ma, change_pct))
    return TrendAnalysis(
        asset_id=asset_id,
        short_ma=short_ma,
        long_ma=long_ma,
        change_pct=change_pct,
        price_factor=round(clamp_factor(factor), 4),
    )


# =============================================================================
# ORACLES
# =============================================================================

class PriceOracle(ABC):
    """Source of per-tick price factors."""

    def __init__(self, default_asset_id: str = "solana"):
        self.default_asset_id = default_asset_id
        self.last_analysis: Optional[TrendAnalysis] = None

    async def get_price_factor(self, asset_id: Optional[str] = None) -> float:
        asset_id = asset_id or self.default_asset_id
        try:
            factor = await self._compute_factor(asset_id)
        except OracleError as e:
            logger.warning(f"Price factor unavailable for {asset_id}, using neutral: {e}")
            return NEUTRAL_FACTOR
        except Exception as e:
            logger.error(f"Unexpected price oracle failure for {asset_id}, using neutral: {e}")
            return NEUTRAL_FACTOR
        return clamp_factor(factor)

    @abstractmethod
    async def _compute_factor(self, asset_id: str) -> float:
        """Produce a factor or raise OracleError."""

    async def close(self) -> None:
        """Release network resources."""


class FixedPriceOracle(PriceOracle):
    """Constant factor, for dry runs and tests."""

    def __init__(self, factor: float = NEUTRAL_FACTOR, default_asset_id: str = "solana"):
        super().__init__(default_asset_id)
        self.factor = factor

    async def _compute_factor(self, asset_id: str) -> float:
        return self.factor


class TrendPriceOracle(PriceOracle):
    """
    Factor from recent market trend.

    Pulls the market chart of the asset, reduces it to daily closes and
    bands the latest day-over-day move; a disagreeing moving average
    crossover damps the factor inside its band.
    """

    def __init__(
        self,
        api_url: str = "https://api.coingecko.com/api/v3",
        api_key: Optional[str] = None,
        default_asset_id: str = "solana",
        short_window: int = 7,
        long_window: int = 30,
        timeout: float = 20.0,
    ):
        super().__init__(default_asset_id)
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.short_window = short_window
        self.long_window = long_window
        self.timeout = timeout

        self._session: Optional[aiohttp.ClientSession] = None
        self._session_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: OracleSettings) -> "TrendPriceOracle":
        return cls(
            api_url=settings.api_url,
            api_key=settings.api_key.get_secret_value() if settings.api_key else None,
            default_asset_id=settings.asset_id,
            short_window=settings.short_window,
            long_window=settings.long_window,
            timeout=settings.timeout,
        )

    async def _ensure_session(self) -> aiohttp.ClientSession:
        async with self._session_lock:
            if self._session is None or self._session.closed:
                headers = {"Accept": "application/json"}
                if self.api_key:
                    headers["x-cg-demo-api-key"] = self.api_key
                self._session = aiohttp.ClientSession(
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                    headers=headers,
                )
            return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def fetch_prices(self, asset_id: str) -> List[List[float]]:
        """Raw ``[timestamp_ms, price]`` points covering the long window."""
        session = await self._ensure_session()
        url = f"{self.api_url}/coins/{asset_id}/market_chart"
        params = {"vs_currency": "usd", "days": str(self.long_window + 1)}

        try:
            async with session.get(url, params=params) as response:
                if response.status >= 400:
                    raise OracleError(
                        f"Market data request failed with HTTP {response.status}",
                        asset_id=asset_id,
                        context={"status": response.status},
                    )
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise OracleError(f"Market data request failed: {e}", asset_id=asset_id) from e

        prices = data.get("prices") if isinstance(data, dict) else None
        if not isinstance(prices, list) or not prices:
            raise OracleError("Market data response has no prices", asset_id=asset_id)
        return prices

    async def analyze(self, asset_id: Optional[str] = None) -> TrendAnalysis:
        asset_id = asset_id or self.default_asset_id
        prices = await self.fetch_prices(asset_id)
        try:
            analysis = analyze_prices(asset_id, prices, self.short_window, self.long_window)
        except (TypeError, ValueError, IndexError) as e:
            raise OracleError(f"Malformed price series: {e}", asset_id=asset_id) from e

        self.last_analysis = analysis
        logger.info(
            f"Trend for {asset_id}: MA{self.short_window}={analysis.short_ma:.4f} "
            f"MA{self.long_window}={analysis.long_ma:.4f} "
            f"change={analysis.change_pct:.2f}% factor={analysis.price_factor}"
        )
        return analysis

    async def _compute_factor(self, asset_id: str) -> float:
        analysis = await self.analyze(asset_id)
        return analysis.price_factor


def create_oracle(settings: OracleSettings) -> PriceOracle:
    if settings.provider == OracleProvider.TREND:
        return TrendPriceOracle.from_settings(settings)
    if settings.provider == OracleProvider.FIXED:
        return FixedPriceOracle(settings.fixed_factor, default_asset_id=settings.asset_id)
    raise ConfigurationError(f"Unknown oracle provider: {settings.provider}")
