"""
Configuration module for cln-feeder

Contains the Config dataclass that holds all tunable parameters
for the fee controller, and the immutable ConfigSnapshot that each
controller tick works from.

Validation happens once, at plugin startup. A configuration that fails
validation is fatal: the plugin disables itself instead of running.
"""

import os
from dataclasses import dataclass, fields
from typing import Dict, Any


# Value used for db_path when the operator asks for a throwaway database
MEMORY_DB_PATH = ':memory:'

# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'db_path': str,
    'temp_database': bool,
    'epochs': int,
    'epoch_length': int,
    'adjustment_divisor': int,
    'tick_interval': int,
    'rpc_timeout_seconds': int,
    'rpc_circuit_breaker_seconds': int,
    'dry_run': bool,
}

# Range constraints for numeric fields (inclusive)
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'epochs': (1, 1000),
    'epoch_length': (1, 365 * 86400),
    'adjustment_divisor': (1, 1_000_000),
    'tick_interval': (1, 7 * 86400),
    'rpc_timeout_seconds': (1, 300),
    'rpc_circuit_breaker_seconds': (0, 3600),
}


class ConfigError(ValueError):
    """Raised when the configuration cannot be used. Always fatal."""


def parse_bool(value: Any) -> bool:
    """Parse a plugin option string the way lightningd users write them."""
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('true', '1', 'yes', 'on')


@dataclass
class Config:
    """
    Configuration container for the fee controller.

    All values can be set via plugin options at startup.
    """

    # Sample database
    db_path: str = '~/.config/cln-feeder/feeder.sqlite'
    temp_database: bool = False    # Keep samples in memory only (lost on restart)

    # Evaluation window
    epochs: int = 6                # Historical samples joined to the current one
    epoch_length: int = 86400      # Seconds of revenue attributed per sample

    # Fee steps
    adjustment_divisor: int = 10   # step = current_fee // divisor (min 1 ppm)

    # Timer interval (in seconds)
    tick_interval: int = 1200      # 20 minutes

    # RPC hardening
    rpc_timeout_seconds: int = 15
    rpc_circuit_breaker_seconds: int = 60

    # Safety flags
    dry_run: bool = False          # If True, log but don't execute

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> 'Config':
        """
        Build a Config from the plugin's `feeder-*` options.

        Raises:
            ConfigError: if a numeric option is not an integer
        """
        try:
            config = cls(
                db_path=options['feeder-db-path'],
                temp_database=parse_bool(options['feeder-temp-database']),
                epochs=int(options['feeder-epochs']),
                epoch_length=int(options['feeder-epoch-length']),
                adjustment_divisor=int(options['feeder-adjustment-divisor']),
                tick_interval=int(options['feeder-interval']),
                rpc_timeout_seconds=int(options['feeder-rpc-timeout-seconds']),
                rpc_circuit_breaker_seconds=int(options['feeder-rpc-circuit-breaker-seconds']),
                dry_run=parse_bool(options['feeder-dry-run']),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Invalid plugin option: {e}") from e

        config.validate()
        return config

    @property
    def database_path(self) -> str:
        """Path handed to sqlite3, honouring temp_database."""
        if self.temp_database:
            return MEMORY_DB_PATH
        return os.path.expanduser(self.db_path)

    def validate(self) -> None:
        """
        Check every field against its declared type and range.

        Raises:
            ConfigError: on the first field that does not fit
        """
        for f in fields(self):
            expected = CONFIG_FIELD_TYPES.get(f.name)
            if expected is None:
                continue
            value = getattr(self, f.name)
            # bool is an int subclass; don't let True pass as a divisor
            if expected is int and isinstance(value, bool):
                raise ConfigError(f"{f.name} must be an integer, got {value!r}")
            if not isinstance(value, expected):
                raise ConfigError(
                    f"{f.name} must be {expected.__name__}, got {type(value).__name__}"
                )

        if self.adjustment_divisor == 0:
            raise ConfigError("adjustment_divisor must not be zero")

        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key)
            if not (min_val <= value <= max_val):
                raise ConfigError(
                    f"Value {value} out of range [{min_val}, {max_val}] for {key}"
                )

        if not self.temp_database and not self.db_path:
            raise ConfigError("db_path must be set unless temp_database is enabled")

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for tick execution.

        The controller captures a snapshot at tick start and uses only
        that snapshot for the duration of the tick.
        """
        return ConfigSnapshot.from_config(self)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable view of Config for one controller tick."""
    epochs: int
    epoch_length: int
    adjustment_divisor: int
    tick_interval: int
    dry_run: bool

    @classmethod
    def from_config(cls, config: Config) -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(
            epochs=config.epochs,
            epoch_length=config.epoch_length,
            adjustment_divisor=config.adjustment_divisor,
            tick_interval=config.tick_interval,
            dry_run=config.dry_run,
        )
