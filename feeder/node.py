"""
Node client for cln-feeder

Thin wrapper over the lightningd RPC calls the controller needs:
- listpeerchannels: active channels and their current fee
- listforwards: settled forwarding revenue per outgoing channel
- setchannel: apply a new proportional fee

Callers get plain Python values back; RpcError (including timeouts from
the RPC broker) propagates to the controller, which skips the channel.
"""

from typing import Any, List, Tuple

from pyln.client import Plugin


ACTIVE_CHANNEL_STATE = "CHANNELD_NORMAL"


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, bool):
        return 0
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0


class NodeClient:
    """RPC operations against the local Core Lightning node."""

    def __init__(self, plugin: Plugin):
        """
        Args:
            plugin: pyln Plugin (or PluginProxy) providing .rpc and .log
        """
        self.plugin = plugin

    def list_active_channels(self) -> List[Tuple[str, int]]:
        """
        List (short_channel_id, fee_ppm) for channels that can route.

        Only CHANNELD_NORMAL channels with a connected peer and a short
        channel id are returned, sorted by channel id.
        """
        result = self.plugin.rpc.listpeerchannels()
        channels = []

        for channel in result.get("channels", []):
            if channel.get("state") != ACTIVE_CHANNEL_STATE:
                continue
            if not channel.get("peer_connected", False):
                continue
            scid = channel.get("short_channel_id")
            if not scid:
                continue

            # Newer CLN reports our fee under updates.local
            local_updates = channel.get("updates", {}).get("local", {})
            fee_ppm = local_updates.get("fee_proportional_millionths")
            if fee_ppm is None:
                fee_ppm = channel.get("fee_proportional_millionths", 0)

            channels.append((scid, int(fee_ppm or 0)))

        channels.sort()
        return channels

    def revenue_since(self, channel_id: str, since_timestamp: int) -> int:
        """
        Sum of fees (msat) from settled forwards leaving through channel_id
        that were received after since_timestamp.
        """
        result = self.plugin.rpc.listforwards(status="settled", out_channel=channel_id)
        revenue_msat = 0

        for fwd in result.get("forwards", []):
            if fwd.get("out_channel") not in (None, channel_id):
                continue
            received_time = fwd.get("received_time", 0) or 0
            if received_time <= since_timestamp:
                continue
            revenue_msat += parse_msat(fwd.get("fee_msat", fwd.get("fee")))

        return revenue_msat

    def set_fee(self, channel_id: str, fee_ppm: int):
        """
        Set the proportional fee for a channel.

        Raises:
            RpcError: if lightningd rejects the update or the call times out
        """
        # Base fee and HTLC limits are left as the operator configured them
        return self.plugin.rpc.setchannel(channel_id, feeppm=fee_ppm)
