#!/usr/bin/env python3
"""
cln-feeder: A self-tuning fee plugin for Core Lightning

Once per epoch, for every active channel, this plugin records the fee that
was in effect and the forwarding revenue it earned, compares recent epochs
against older ones, and nudges the fee toward whatever direction has been
paying off.

TREND FOLLOWING:
----------------
The last `feeder-epochs` samples plus the current observation are split
into present, overall and past averages. Fee and revenue each get a trend
(rising, falling, hump, dip, flat) and a fixed decision table turns the
pair into a step, a half-gap adjustment, a run, or a hold. A channel that
earned nothing over the whole window has its fee halved.

Dependencies:
- pyln-client: Core Lightning plugin framework

License: MIT
"""

import os
import random
import signal
import threading
from typing import Any, Dict, Optional

from pyln.client import Plugin, RpcError

from feeder.config import Config, ConfigError
from feeder.database import Database, StoreError
from feeder.fee_controller import FeeController
from feeder.node import NodeClient
from feeder.rpc import PluginProxy, RpcBroker, TimeoutRpcProxy


# Initialize the plugin
plugin = Plugin()

# =============================================================================
# GRACEFUL SHUTDOWN SUPPORT
# =============================================================================
# `lightning-cli plugin stop cln-feeder` sends SIGTERM. The handler sets this
# event so the controller loop exits at once instead of finishing its sleep.

shutdown_event = threading.Event()

# Global instances (initialized in init)
config: Optional[Config] = None
database: Optional[Database] = None
fee_controller: Optional[FeeController] = None
rpc_broker: Optional[RpcBroker] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='feeder-db-path',
    default='~/.config/cln-feeder/feeder.sqlite',
    description='Path to the SQLite database for storing fee/revenue samples'
)

plugin.add_option(
    name='feeder-temp-database',
    default='false',
    description='Keep samples in an in-memory database (lost on restart)'
)

plugin.add_option(
    name='feeder-epochs',
    default='6',
    description='Number of past epochs compared against the current one (default: 6)'
)

plugin.add_option(
    name='feeder-epoch-length',
    default='86400',
    description='Length of one epoch in seconds (default: 1 day)'
)

plugin.add_option(
    name='feeder-adjustment-divisor',
    default='10',
    description='Fee step is current_fee / divisor, at least 1 PPM (default: 10)'
)

plugin.add_option(
    name='feeder-interval',
    default='1200',
    description='Interval in seconds between controller ticks (default: 20 min)'
)

plugin.add_option(
    name='feeder-rpc-timeout-seconds',
    default='15',
    description='Timeout for each lightningd RPC call made by the controller (default: 15)'
)

plugin.add_option(
    name='feeder-rpc-circuit-breaker-seconds',
    default='60',
    description='Cooldown period after an RPC timeout for that method group (default: 60)'
)

plugin.add_option(
    name='feeder-dry-run',
    default='false',
    description='If true, log fee decisions but never call setchannel'
)


# =============================================================================
# INITIALIZATION
# =============================================================================

def _rpc_socket_path(configuration: Dict[str, Any]) -> str:
    """Locate lightningd's RPC socket from the init configuration."""
    socket_path = getattr(plugin.rpc, "socket_path", None)
    if socket_path:
        return str(socket_path)

    ldir = configuration.get("lightning-dir") or "~/.lightning"
    rpcfile = configuration.get("rpc-file") or "lightning-rpc"
    if os.path.isabs(rpcfile):
        return rpcfile
    return os.path.expanduser(os.path.join(ldir, rpcfile))


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the fee controller plugin.

    1. Parse and validate options (invalid configuration disables the plugin)
    2. Start the RPC broker
    3. Open the sample database
    4. Start the controller loop
    """
    global config, database, fee_controller, rpc_broker

    plugin.log("Initializing cln-feeder plugin...")

    try:
        config = Config.from_options(options)
    except ConfigError as e:
        plugin.log(f"Invalid configuration: {e}", level='error')
        return {"disable": f"Invalid configuration: {e}"}

    plugin.log(f"Configuration loaded: epochs={config.epochs}, "
               f"epoch_length={config.epoch_length}s, "
               f"adjustment_divisor={config.adjustment_divisor}, "
               f"interval={config.tick_interval}s, dry_run={config.dry_run}")

    socket_path = _rpc_socket_path(configuration)
    rpc_broker = RpcBroker(socket_path, plugin)
    safe_plugin = PluginProxy(
        plugin,
        TimeoutRpcProxy(
            rpc_broker, plugin,
            timeout_seconds=config.rpc_timeout_seconds,
            breaker_seconds=config.rpc_circuit_breaker_seconds,
        ),
    )
    plugin.log(f"RPC broker initialized (socket={socket_path})")

    database = Database(config.database_path, safe_plugin)
    try:
        database.initialize()
    except Exception as e:
        plugin.log(f"Cannot open sample database {config.database_path}: {e}", level='error')
        rpc_broker.stop()
        return {"disable": f"Cannot open sample database: {e}"}

    if config.temp_database:
        plugin.log("Using in-memory sample database; history is lost on restart", level='warn')

    fee_controller = FeeController(safe_plugin, config, database, NodeClient(safe_plugin),
                                   stop_event=shutdown_event)

    def fee_controller_loop():
        """Background loop for fee ticks."""
        # Initial delay to let lightningd finish starting (interruptible)
        if shutdown_event.wait(30):
            plugin.log("Fee controller loop cancelled during startup delay")
            return

        while not shutdown_event.is_set():
            try:
                plugin.log("Running scheduled fee tick...")
                fee_controller.run_tick()
            except RpcError as e:
                plugin.log(f"RPC degraded in fee tick: {e}. Skipping this cycle.", level='warn')
            except StoreError as e:
                plugin.log(f"Sample store error in fee tick: {e}", level='error')
            except Exception as e:
                plugin.log(f"Error in fee tick: {e}", level='error')

            # Calculate +/- 10% jitter
            jitter_seconds = int(config.tick_interval * 0.1)
            sleep_time = config.tick_interval + random.randint(-jitter_seconds, jitter_seconds)
            plugin.log(f"Fee controller sleeping for {sleep_time}s", level='debug')

            # Interruptible sleep: wait for timeout OR shutdown signal
            if shutdown_event.wait(sleep_time):
                plugin.log("Fee controller loop stopping due to shutdown signal")
                break

    def handle_shutdown_signal(signum, frame):
        """Set the shutdown event and release the broker and database."""
        plugin.log("Received SIGTERM, initiating clean shutdown...")
        shutdown_event.set()

        if rpc_broker:
            rpc_broker.stop()

        if database:
            try:
                database.close()
            except Exception as e:
                plugin.log(f"Error closing database: {e}", level='warn')

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    # daemon=True so the thread never blocks shutdown
    threading.Thread(target=fee_controller_loop, daemon=True, name="fee-controller").start()

    plugin.log("cln-feeder plugin initialized successfully!")
    return None


# =============================================================================
# RPC COMMANDS
# =============================================================================

@plugin.method("feeder-status")
def feeder_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current status of the fee controller.

    Usage: lightning-cli feeder-status
    """
    if database is None or fee_controller is None:
        return {"error": "Plugin not fully initialized"}

    try:
        tracked = database.get_tracked_channels()
        total_samples = database.get_sample_count()
        recent_changes = database.get_recent_fee_changes(limit=10)
    except StoreError as e:
        return {"status": "error", "error": str(e)}

    last_tick = fee_controller.last_tick
    return {
        "status": "running" if not shutdown_event.is_set() else "stopping",
        "config": config.to_dict(),
        "tracked_channels": len(tracked),
        "total_samples": total_samples,
        "last_tick": last_tick.to_dict() if last_tick else None,
        "recent_fee_changes": recent_changes,
    }


@plugin.method("feeder-history")
def feeder_history(plugin: Plugin, channel_id: str, limit: int = 50) -> Dict[str, Any]:
    """
    Get stored samples for a channel, newest first.

    Usage: lightning-cli feeder-history channel_id [limit]
    """
    if database is None:
        return {"error": "Plugin not fully initialized"}

    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return {"status": "error", "error": "limit must be an integer"}

    try:
        samples = database.get_recent_samples(channel_id, limit)
        fee_changes = database.get_recent_fee_changes(limit=limit, channel_id=channel_id)
    except StoreError as e:
        return {"status": "error", "error": str(e)}

    return {
        "channel_id": channel_id,
        "samples": [s.to_dict() for s in samples],
        "fee_changes": fee_changes,
    }


@plugin.method("feeder-explain")
def feeder_explain(plugin: Plugin, channel_id: str) -> Dict[str, Any]:
    """
    Show how the controller would classify a channel right now.

    Nothing is applied or stored.

    Usage: lightning-cli feeder-explain channel_id
    """
    if fee_controller is None:
        return {"error": "Plugin not fully initialized"}

    try:
        return fee_controller.explain_channel(channel_id)
    except (RpcError, StoreError) as e:
        return {"status": "error", "error": str(e)}


@plugin.method("feeder-run")
def feeder_run(plugin: Plugin) -> Dict[str, Any]:
    """
    Run one controller tick immediately.

    Channels whose epoch is still open are skipped as usual.

    Usage: lightning-cli feeder-run
    """
    if fee_controller is None:
        return {"error": "Plugin not fully initialized"}

    try:
        summary = fee_controller.run_tick()
    except RpcError as e:
        return {"status": "error", "error": str(e)}

    if summary is None:
        return {"status": "busy", "message": "A fee tick is already running"}
    return {"status": "success", **summary.to_dict()}


if __name__ == "__main__":
    plugin.run()
