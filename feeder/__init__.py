"""
cln-feeder package

This package contains the modules for the fee controller plugin:
- trend: Evaluation window partitioning and trend classification
- decision: Decision table mapping (revenue, fee) trends to fee actions
- epoch_gate: Decides whether a channel's epoch has elapsed
- fee_controller: Per-tick orchestration over all active channels
- node: lightningd RPC calls (channels, forwards, setchannel)
- rpc: RPC broker with hard timeouts and circuit breakers
- config: Configuration and validation
- database: SQLite sample store and fee change log
"""

from .trend import Sample, Trend, TrendProfile, build_profile, classify
from .decision import FeeAction, FeeDecision, DECISION_TABLE, decide
from .epoch_gate import GateDecision, check_epoch
from .fee_controller import FeeController, FeeAdjustment, TickSummary
from .node import NodeClient
from .config import Config, ConfigSnapshot, ConfigError
from .database import Database, StoreError

__all__ = [
    'Sample',
    'Trend',
    'TrendProfile',
    'build_profile',
    'classify',
    'FeeAction',
    'FeeDecision',
    'DECISION_TABLE',
    'decide',
    'GateDecision',
    'check_epoch',
    'FeeController',
    'FeeAdjustment',
    'TickSummary',
    'NodeClient',
    'Config',
    'ConfigSnapshot',
    'ConfigError',
    'Database',
    'StoreError',
]
