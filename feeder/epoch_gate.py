"""
Epoch Gate for cln-feeder

A channel is re-evaluated only once its current epoch has closed, so
revenue accrued over a partial epoch is never compared against revenue
accrued over full ones.
"""

from enum import Enum
from typing import Optional


class GateDecision(Enum):
    PROCEED = "proceed"
    SKIP = "skip"


def check_epoch(last_observed_at: Optional[int], now: int, epoch_length: int) -> GateDecision:
    """
    Decide whether a channel's epoch has elapsed.

    Args:
        last_observed_at: Timestamp of the newest stored sample, None if the
            channel has no history yet
        now: Current unix time
        epoch_length: Epoch duration in seconds

    Returns:
        PROCEED when there is no history or now >= last_observed_at + epoch_length,
        SKIP otherwise
    """
    if last_observed_at is None:
        return GateDecision.PROCEED
    if now - epoch_length < last_observed_at:
        return GateDecision.SKIP
    return GateDecision.PROCEED


def epoch_start(last_observed_at: Optional[int], now: int, epoch_length: int) -> int:
    """
    Start of the epoch a new observation at `now` closes.

    Revenue for the observation is counted from here: the previous sample
    if there is one, otherwise one epoch back from now.
    """
    if last_observed_at is None:
        return now - epoch_length
    return last_observed_at
