"""
Decision Table module for cln-feeder

Combines the revenue trend and the fee trend of one evaluation window
into exactly one FeeAction, then computes the candidate fee.

Actions:
- STEP_UP / STEP_DOWN: move by adj = current // adjustment_divisor (min 1)
- ADJUST_UP / ADJUST_DOWN: move by half the gap between current and the
  present-average fee
- RUN_DOWN: move down by twice the gap between current and present
- HALVE: the window earned nothing at all; search downward for a fee
  that routes anything
- HOLD: leave the fee alone

A candidate fee of zero or less is clamped to 1 ppm.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, Optional, Sequence, Tuple

from .trend import Sample, Trend, TrendProfile, build_profile


MIN_FEE_PPM = 1


class FeeAction(Enum):
    STEP_UP = "step+"
    STEP_DOWN = "step-"
    ADJUST_UP = "adjust+"
    ADJUST_DOWN = "adjust-"
    RUN_DOWN = "run-"
    HALVE = "halve"
    HOLD = "hold"


# (revenue trend, fee trend) -> action
DECISION_TABLE: Dict[Tuple[Trend, Trend], FeeAction] = {
    (Trend.RISING, Trend.RISING): FeeAction.STEP_UP,
    (Trend.RISING, Trend.FALLING): FeeAction.STEP_DOWN,
    (Trend.RISING, Trend.HUMP): FeeAction.ADJUST_UP,
    (Trend.RISING, Trend.DIP): FeeAction.ADJUST_UP,
    (Trend.RISING, Trend.FLAT): FeeAction.STEP_UP,

    (Trend.FALLING, Trend.RISING): FeeAction.ADJUST_DOWN,
    (Trend.FALLING, Trend.FALLING): FeeAction.RUN_DOWN,
    (Trend.FALLING, Trend.HUMP): FeeAction.STEP_DOWN,
    (Trend.FALLING, Trend.DIP): FeeAction.ADJUST_DOWN,
    (Trend.FALLING, Trend.FLAT): FeeAction.STEP_DOWN,

    (Trend.HUMP, Trend.RISING): FeeAction.ADJUST_DOWN,
    (Trend.HUMP, Trend.FALLING): FeeAction.ADJUST_UP,
    (Trend.HUMP, Trend.HUMP): FeeAction.ADJUST_UP,
    (Trend.HUMP, Trend.DIP): FeeAction.ADJUST_DOWN,
    (Trend.HUMP, Trend.FLAT): FeeAction.HOLD,

    (Trend.DIP, Trend.RISING): FeeAction.HOLD,
    (Trend.DIP, Trend.FALLING): FeeAction.ADJUST_UP,
    (Trend.DIP, Trend.HUMP): FeeAction.STEP_DOWN,
    (Trend.DIP, Trend.DIP): FeeAction.STEP_UP,
    (Trend.DIP, Trend.FLAT): FeeAction.HOLD,

    (Trend.FLAT, Trend.RISING): FeeAction.HOLD,
    (Trend.FLAT, Trend.FALLING): FeeAction.HOLD,
    (Trend.FLAT, Trend.HUMP): FeeAction.HOLD,
    (Trend.FLAT, Trend.DIP): FeeAction.HOLD,
    (Trend.FLAT, Trend.FLAT): FeeAction.HOLD,
}


@dataclass(frozen=True)
class FeeDecision:
    """
    Outcome of one channel's evaluation.

    new_fee_ppm is None for HOLD.
    """
    action: FeeAction
    current_fee_ppm: int
    new_fee_ppm: Optional[int]
    revenue_trend: Optional[Trend] = None
    fee_trend: Optional[Trend] = None
    profile: Optional[TrendProfile] = None

    @property
    def changes_fee(self) -> bool:
        return self.new_fee_ppm is not None and self.new_fee_ppm != self.current_fee_ppm

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action.value,
            "current_fee_ppm": self.current_fee_ppm,
            "new_fee_ppm": self.new_fee_ppm,
            "revenue_trend": self.revenue_trend.value if self.revenue_trend else None,
            "fee_trend": self.fee_trend.value if self.fee_trend else None,
            "profile": self.profile.to_dict() if self.profile else None,
        }


def step_size(current_fee: int, adjustment_divisor: int) -> int:
    """current // divisor, but never less than 1 so low fees still move."""
    return max(1, current_fee // adjustment_divisor)


def compute_new_fee(action: FeeAction, current_fee: int, present_fee: int,
                    adjustment_divisor: int) -> Optional[int]:
    """
    Apply an action to the current fee.

    Returns:
        The new fee (>= MIN_FEE_PPM), or None for HOLD
    """
    if action is FeeAction.HOLD:
        return None

    gap = abs(present_fee - current_fee)

    if action is FeeAction.HALVE:
        new_fee = current_fee // 2
    elif action is FeeAction.STEP_UP:
        new_fee = current_fee + step_size(current_fee, adjustment_divisor)
    elif action is FeeAction.STEP_DOWN:
        new_fee = current_fee - step_size(current_fee, adjustment_divisor)
    elif action is FeeAction.ADJUST_UP:
        new_fee = current_fee + gap // 2
    elif action is FeeAction.ADJUST_DOWN:
        new_fee = current_fee - gap // 2
    elif action is FeeAction.RUN_DOWN:
        new_fee = current_fee - 2 * gap
    else:
        raise ValueError(f"Unknown fee action: {action}")

    return max(MIN_FEE_PPM, new_fee)


def decide_from_profile(profile: TrendProfile, current_fee: int,
                        adjustment_divisor: int) -> FeeDecision:
    """Pick and apply an action for an already partitioned window."""
    revenue_trend = profile.revenue_trend
    fee_trend = profile.fee_trend

    if profile.overall.revenue_avg == 0:
        action = FeeAction.HALVE
    else:
        action = DECISION_TABLE[(revenue_trend, fee_trend)]

    return FeeDecision(
        action=action,
        current_fee_ppm=current_fee,
        new_fee_ppm=compute_new_fee(action, current_fee, profile.present.fee_avg,
                                    adjustment_divisor),
        revenue_trend=revenue_trend,
        fee_trend=fee_trend,
        profile=profile,
    )


def decide(window: Sequence[Sample], adjustment_divisor: int) -> Optional[FeeDecision]:
    """
    Decide the next fee for a channel.

    Args:
        window: Current observation followed by stored samples, most-recent-first
        adjustment_divisor: Positive step divisor (validated at startup)

    Returns:
        FeeDecision, or None when the window is too short to classify
    """
    profile = build_profile(window)
    if profile is None:
        return None
    return decide_from_profile(profile, window[0].fee, adjustment_divisor)
