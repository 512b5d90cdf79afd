"""
Layer 5 – Processing layer
Cleans raw upstream series and thins them out to the requested interval.
"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import pandas as pd

from price_service.models.price import Interval, Series

logger = logging.getLogger(__name__)


class ProcessingLayer:
    """Normalisation + resampling"""

    def normalize_series(self, raw: Sequence[Sequence[Any]]) -> Series:
        """
        Coerce raw [timestamp, price] pairs into a clean series

        Non-numeric and non-finite points are dropped, the result is sorted by timestamp and
        duplicate timestamps keep the last value.
        """
        if not raw:
            return []

        df = pd.DataFrame([list(p[:2]) for p in raw], columns=["timestamp", "price"])
        df["timestamp"] = pd.to_numeric(df["timestamp"], errors="coerce")
        df["price"] = pd.to_numeric(df["price"], errors="coerce")

        df = df.replace([float("inf"), float("-inf")], float("nan"))
        dropped = int(df.isna().any(axis=1).sum())
        if dropped:
            logger.debug(f"Dropped {dropped} malformed price points")
        df = df.dropna()

        df["timestamp"] = df["timestamp"].astype("int64")
        df = df.drop_duplicates(subset=["timestamp"], keep="last")
        df = df.sort_values("timestamp", kind="stable").reset_index(drop=True)

        return [(int(ts), float(price)) for ts, price in zip(df["timestamp"], df["price"])]

    def resample(self, series: Series, interval: Union[Interval, int]) -> Series:
        """
        Keep a point only if it lies at least `interval` after the last kept one

        The first point is always kept. A greedy one-pass filter, not binning:
        running it again with the same interval returns the same series.
        `interval` is an Interval or a width in milliseconds.
        """
        step = interval.milliseconds if isinstance(interval, Interval) else int(interval)
        kept: Series = []
        for ts, price in series:
            if not kept or ts - kept[-1][0] >= step:
                kept.append((ts, price))
        return kept

    def to_points(self, series: Series) -> List[Dict[str, Union[int, float]]]:
        """Output shape: [{"timestamp": ms, "price": usd}, ...]"""
        return [{"timestamp": int(ts), "price": float(price)} for ts, price in series]


# ── Module-level singleton ───────────────────────────────
_processor: Optional[ProcessingLayer] = None


def get_processing_layer() -> ProcessingLayer:
    global _processor
    if _processor is None:
        _processor = ProcessingLayer()
    return _processor
