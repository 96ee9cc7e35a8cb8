"""
Trend Classifier module for cln-feeder

Turns an evaluation window of samples into a trend profile and a trend
label for each metric (fee and revenue).

Window layout (most-recent-first, index 0 = the current observation):

    index:    0 .. (L-1)//3        ...        2L//3 .. L-1
              [--- present ---]            [--- past ---]
              [-------------- overall (all L) --------------]

For short windows the present and past slices overlap. That is intended:
with little history, present, past and overall converge and the
classifier degrades toward "flat".

All arithmetic is integer. Averages truncate toward zero.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Sequence


# A window needs the current observation plus at least one stored sample
MIN_WINDOW_LENGTH = 2


@dataclass(frozen=True)
class Sample:
    """
    One observation for one channel.

    Attributes:
        channel_id: Short channel id (e.g. "123x456x0")
        fee: Fee rate in PPM in effect at observation time
        revenue: Forwarding revenue in msat earned since the epoch started
        observed_at: Unix timestamp (seconds)
    """
    channel_id: str
    fee: int
    revenue: int
    observed_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "fee_ppm": self.fee,
            "revenue_msat": self.revenue,
            "observed_at": self.observed_at,
        }


class Trend(Enum):
    """Shape of a metric across past, overall and present averages."""
    RISING = "rising"
    FALLING = "falling"
    HUMP = "hump"      # overall above present, past not above overall
    DIP = "dip"        # overall below present, past not below overall
    FLAT = "flat"


@dataclass(frozen=True)
class Aggregate:
    """Sums and truncated averages over one slice of the window."""
    count: int
    fee_sum: int
    revenue_sum: int

    @property
    def fee_avg(self) -> int:
        return _truncating_div(self.fee_sum, self.count)

    @property
    def revenue_avg(self) -> int:
        return _truncating_div(self.revenue_sum, self.count)

    def to_dict(self) -> Dict[str, int]:
        return {
            "count": self.count,
            "fee_sum": self.fee_sum,
            "fee_avg": self.fee_avg,
            "revenue_sum": self.revenue_sum,
            "revenue_avg": self.revenue_avg,
        }


@dataclass(frozen=True)
class TrendProfile:
    """Present, overall and past aggregates of one evaluation window."""
    present: Aggregate
    overall: Aggregate
    past: Aggregate

    @property
    def fee_trend(self) -> Trend:
        return classify(self.past.fee_avg, self.overall.fee_avg, self.present.fee_avg)

    @property
    def revenue_trend(self) -> Trend:
        return classify(self.past.revenue_avg, self.overall.revenue_avg,
                        self.present.revenue_avg)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "present": self.present.to_dict(),
            "overall": self.overall.to_dict(),
            "past": self.past.to_dict(),
            "fee_trend": self.fee_trend.value,
            "revenue_trend": self.revenue_trend.value,
        }


def _truncating_div(numerator: int, denominator: int) -> int:
    """Integer division rounding toward zero (// rounds toward -inf)."""
    quotient = abs(numerator) // abs(denominator)
    return quotient if (numerator >= 0) == (denominator > 0) else -quotient


def _aggregate(window: Sequence[Sample]) -> Aggregate:
    return Aggregate(
        count=len(window),
        fee_sum=sum(s.fee for s in window),
        revenue_sum=sum(s.revenue for s in window),
    )


def partition_bounds(length: int) -> Dict[str, range]:
    """
    Index ranges of the present and past slices for a window of `length`.

    present: 0 .. (L-1)//3 inclusive; past: 2L//3 .. L-1 inclusive.
    Both are non-empty for any L >= 1.
    """
    return {
        "present": range(0, (length - 1) // 3 + 1),
        "past": range((2 * length) // 3, length),
    }


def build_profile(window: Sequence[Sample]) -> Optional[TrendProfile]:
    """
    Partition a most-recent-first window into present/overall/past.

    Returns:
        TrendProfile, or None when the window is shorter than
        MIN_WINDOW_LENGTH (insufficient history)
    """
    if len(window) < MIN_WINDOW_LENGTH:
        return None

    bounds = partition_bounds(len(window))
    present = bounds["present"]
    past = bounds["past"]

    return TrendProfile(
        present=_aggregate(window[present.start:present.stop]),
        overall=_aggregate(window),
        past=_aggregate(window[past.start:past.stop]),
    )


def classify(past: int, overall: int, present: int) -> Trend:
    """Classify one metric from its past, overall and present averages."""
    if past < overall < present:
        return Trend.RISING
    if past > overall > present:
        return Trend.FALLING
    if past <= overall and overall > present:
        return Trend.HUMP
    if past >= overall and overall < present:
        return Trend.DIP
    return Trend.FLAT
