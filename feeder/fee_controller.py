"""
Fee Controller module for cln-feeder

Runs one controller tick: every active channel is observed, gated on its
epoch, classified and decided on, in sequence.

Per channel:
1. Read the current fee (node) and the newest stored sample (store)
2. Epoch Gate: skip the channel if its epoch is still open
3. Read the revenue earned since the epoch started (node)
4. Build the evaluation window (current observation + recent samples)
   and run the trend classifier and decision table
5. Apply the new fee, if any (node); failures are logged, not raised
6. Persist the current observation (store)

A channel skipped by the Epoch Gate is not persisted: its epoch stays
anchored to the previous sample until it closes.

Collaborator failures (RpcError, RPC timeouts, StoreError) abandon the
channel for this tick only; the next channel is processed normally and the
failed one is retried on the next tick.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any

from pyln.client import Plugin, RpcError

from .config import Config, ConfigSnapshot
from .database import Database, StoreError
from .decision import FeeDecision, decide
from .epoch_gate import GateDecision, check_epoch, epoch_start
from .node import NodeClient
from .trend import Sample


# Outcomes of one channel's evaluation
OUTCOME_SKIPPED = "skipped"
OUTCOME_NO_DECISION = "no_decision"
OUTCOME_HELD = "held"
OUTCOME_ADJUSTED = "adjusted"
OUTCOME_FAILED = "failed"


@dataclass
class FeeAdjustment:
    """
    Record of a fee adjustment.

    Attributes:
        channel_id: Channel that was adjusted
        old_fee_ppm: Fee in effect during the epoch just closed
        new_fee_ppm: Fee chosen for the next epoch
        action: Decision table action that produced it
        reason: Human readable trend summary
        applied: True if setchannel succeeded (always False in dry run)
        dry_run: True if the change was only logged
    """
    channel_id: str
    old_fee_ppm: int
    new_fee_ppm: int
    action: str
    reason: str
    applied: bool = False
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel_id": self.channel_id,
            "old_fee_ppm": self.old_fee_ppm,
            "new_fee_ppm": self.new_fee_ppm,
            "action": self.action,
            "reason": self.reason,
            "applied": self.applied,
            "dry_run": self.dry_run,
        }


@dataclass
class TickSummary:
    """Counters for one controller tick."""
    started_at: int
    finished_at: int = 0
    channels: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    adjustments: List[FeeAdjustment] = field(default_factory=list)

    def count(self, outcome: str):
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "channels": self.channels,
            "outcomes": dict(self.outcomes),
            "adjustments": [a.to_dict() for a in self.adjustments],
        }


class FeeController:
    """
    Trend-following fee controller.

    Holds no per-channel state of its own: everything it knows about a
    channel's past lives in the sample store, so restarts lose nothing.
    """

    def __init__(self, plugin: Plugin, config: Config, database: Database,
                 node: NodeClient, stop_event: Optional[threading.Event] = None):
        """
        Initialize the fee controller.

        Args:
            plugin: Reference to the pyln Plugin (for logging)
            config: Configuration object (snapshotted at each tick)
            database: Sample store
            node: Node RPC client
            stop_event: When set, a running tick stops before the next channel
        """
        self.plugin = plugin
        self.config = config
        self.database = database
        self.node = node
        self.stop_event = stop_event

        # Only one tick at a time: the scheduled loop and feeder-run share it
        self._tick_lock = threading.Lock()
        self.last_tick: Optional[TickSummary] = None

    def run_tick(self, now: Optional[int] = None) -> Optional[TickSummary]:
        """
        Evaluate every active channel once.

        This is the main entry point, called periodically by the timer.

        Returns:
            TickSummary, or None if another tick is already running

        Raises:
            RpcError: if the channel list itself cannot be fetched
        """
        if not self._tick_lock.acquire(blocking=False):
            self.plugin.log("Fee tick already in progress, not starting another", level='warn')
            return None

        try:
            cfg = self.config.snapshot()
            if now is None:
                now = int(time.time())
            summary = self._run_tick(cfg, now)
            self.last_tick = summary
            return summary
        finally:
            self._tick_lock.release()

    def _run_tick(self, cfg: ConfigSnapshot, now: int) -> TickSummary:
        summary = TickSummary(started_at=now)

        channels = self.node.list_active_channels()
        summary.channels = len(channels)

        if not channels:
            self.plugin.log("No active channels to evaluate")

        for channel_id, current_fee in channels:
            if self.stop_event is not None and self.stop_event.is_set():
                self.plugin.log("Shutdown requested, ending fee tick early", level='info')
                break
            try:
                outcome = self._process_channel(cfg, channel_id, current_fee, now, summary)
            except (RpcError, StoreError) as e:
                self.plugin.log(
                    f"Skipping {channel_id} this tick: {e}", level='warn'
                )
                outcome = OUTCOME_FAILED
            summary.count(outcome)

        summary.finished_at = int(time.time())
        self.plugin.log(
            f"Fee tick complete: {summary.channels} channels, "
            + ", ".join(f"{k}={v}" for k, v in sorted(summary.outcomes.items()))
        )
        return summary

    def _process_channel(self, cfg: ConfigSnapshot, channel_id: str, current_fee: int,
                         now: int, summary: TickSummary) -> str:
        last = self.database.get_last_sample(channel_id)
        last_observed_at = last.observed_at if last else None

        if check_epoch(last_observed_at, now, cfg.epoch_length) is GateDecision.SKIP:
            self.plugin.log(
                f"{channel_id}: epoch open until {last_observed_at + cfg.epoch_length}, skipping",
                level='debug'
            )
            return OUTCOME_SKIPPED

        decision, current = self._evaluate(cfg, channel_id, current_fee, now, last_observed_at)

        if decision is None:
            self.plugin.log(f"{channel_id}: insufficient history, recording first sample",
                            level='debug')
            outcome = OUTCOME_NO_DECISION
        elif decision.changes_fee:
            summary.adjustments.append(self._apply_decision(cfg, channel_id, decision))
            outcome = OUTCOME_ADJUSTED
        else:
            self.plugin.log(
                f"{channel_id}: {self._describe(decision)}, keeping {current_fee} PPM",
                level='debug'
            )
            outcome = OUTCOME_HELD

        self.database.append_sample(channel_id, current.fee, current.revenue, current.observed_at)
        return outcome

    def _evaluate(self, cfg: ConfigSnapshot, channel_id: str, current_fee: int, now: int,
                  last_observed_at: Optional[int]):
        """Observe the channel and run the classifier; no side effects."""
        since = epoch_start(last_observed_at, now, cfg.epoch_length)
        revenue = self.node.revenue_since(channel_id, since)

        current = Sample(channel_id=channel_id, fee=current_fee, revenue=revenue,
                         observed_at=now)
        history = self.database.get_recent_samples(channel_id, cfg.epochs)
        return decide([current] + history, cfg.adjustment_divisor), current

    def _apply_decision(self, cfg: ConfigSnapshot, channel_id: str,
                        decision: FeeDecision) -> FeeAdjustment:
        adjustment = FeeAdjustment(
            channel_id=channel_id,
            old_fee_ppm=decision.current_fee_ppm,
            new_fee_ppm=decision.new_fee_ppm,
            action=decision.action.value,
            reason=self._describe(decision),
            dry_run=cfg.dry_run,
        )

        if cfg.dry_run:
            self.plugin.log(
                f"[DRY RUN] Would set fee for {channel_id} to {adjustment.new_fee_ppm} PPM "
                f"({adjustment.reason})"
            )
        else:
            try:
                self.node.set_fee(channel_id, adjustment.new_fee_ppm)
            except RpcError as e:
                self.plugin.log(f"Failed to set fee for {channel_id}: {e}", level='error')
                return adjustment

            adjustment.applied = True
            self.plugin.log(
                f"Set fee for {channel_id}: {adjustment.old_fee_ppm} -> "
                f"{adjustment.new_fee_ppm} PPM ({adjustment.reason})"
            )

        # The fee is already set; losing the audit row must not lose the sample
        try:
            self.database.record_fee_change(
                channel_id=channel_id,
                old_fee_ppm=adjustment.old_fee_ppm,
                new_fee_ppm=adjustment.new_fee_ppm,
                action=adjustment.action,
                reason=adjustment.reason,
                dry_run=cfg.dry_run,
            )
        except StoreError as e:
            self.plugin.log(f"Could not record fee change for {channel_id}: {e}", level='warn')
        return adjustment

    @staticmethod
    def _describe(decision: FeeDecision) -> str:
        if decision.profile is not None and decision.profile.overall.revenue_avg == 0:
            return f"{decision.action.value}: no revenue in window"
        return (f"{decision.action.value}: revenue {decision.revenue_trend.value}, "
                f"fee {decision.fee_trend.value}")

    def explain_channel(self, channel_id: str, now: Optional[int] = None) -> Dict[str, Any]:
        """
        Classify a channel as the next tick would, without applying or persisting.

        Returns:
            Dict with the gate result, the current observation and the decision
        """
        cfg = self.config.snapshot()
        if now is None:
            now = int(time.time())

        current_fee = dict(self.node.list_active_channels()).get(channel_id)
        if current_fee is None:
            return {"error": f"Channel {channel_id} is not active"}

        last = self.database.get_last_sample(channel_id)
        last_observed_at = last.observed_at if last else None
        gate = check_epoch(last_observed_at, now, cfg.epoch_length)

        decision, current = self._evaluate(cfg, channel_id, current_fee, now, last_observed_at)

        return {
            "channel_id": channel_id,
            "gate": gate.value,
            "epoch_closes_at": (last_observed_at + cfg.epoch_length
                                if last_observed_at is not None else None),
            "current": current.to_dict(),
            "window_length": (1 + min(cfg.epochs,
                                      self.database.get_sample_count(channel_id))),
            "decision": decision.to_dict() if decision else None,
        }
