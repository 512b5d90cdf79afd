"""Price domain models: timeframes, intervals, output points"""

from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel

# (timestamp ms, price)
Series = List[Tuple[int, float]]


class Timeframe(str, Enum):
    """Coarse bucket deciding how long a fetched series stays fresh"""

    HOUR = "1h"
    DAY = "24h"
    WEEK = "7d"

    @property
    def days(self) -> int:
        """`days` query value sent upstream"""
        return 7 if self is Timeframe.WEEK else 1


class Interval(str, Enum):
    """Resampling granularity applied after fetch"""

    M15 = "15m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"

    @property
    def minutes(self) -> int:
        return _INTERVAL_MINUTES[self]

    @property
    def milliseconds(self) -> int:
        return self.minutes * 60 * 1000


_INTERVAL_MINUTES = {
    Interval.M15: 15,
    Interval.H1: 60,
    Interval.H4: 240,
    Interval.D1: 1440,
}


class PricePoint(BaseModel):
    timestamp: int
    price: float


class Quote(BaseModel):
    """Spot price of a single token"""
    symbol: str
    usd: float
    usd_24h_change: Optional[float] = None
    last_updated: int
