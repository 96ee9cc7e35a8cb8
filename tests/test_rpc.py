"""
Tests for the RPC proxy - timeouts and circuit breakers.

The broker process itself is replaced by a MagicMock; only the proxy's
bookkeeping is exercised here.
"""

from unittest.mock import MagicMock

import pytest
from pyln.client import RpcError

from feeder.rpc import PluginProxy, RPCBreakerOpen, RPCTimeoutError, TimeoutRpcProxy


@pytest.fixture
def broker():
    broker = MagicMock()
    broker.request.return_value = {"channels": []}
    return broker


class TestTimeoutRpcProxy:

    def test_attribute_call_goes_through_broker(self, broker, mock_plugin):
        proxy = TimeoutRpcProxy(broker, mock_plugin, timeout_seconds=7)

        result = proxy.listforwards(status="settled", out_channel="1x1x0")

        assert result == {"channels": []}
        broker.request.assert_called_once_with(
            "listforwards",
            args=[],
            kwargs={"status": "settled", "out_channel": "1x1x0"},
            timeout=7,
        )

    def test_positional_args(self, broker, mock_plugin):
        proxy = TimeoutRpcProxy(broker, mock_plugin)

        proxy.setchannel("1x1x0", feeppm=10)

        args = broker.request.call_args
        assert args.args == ("setchannel",)
        assert args.kwargs["args"] == ["1x1x0"]
        assert args.kwargs["kwargs"] == {"feeppm": 10}

    def test_timeout_raises_rpc_error_and_trips_breaker(self, broker, mock_plugin):
        broker.request.side_effect = TimeoutError("hung")
        proxy = TimeoutRpcProxy(broker, mock_plugin, breaker_seconds=60)

        with pytest.raises(RPCTimeoutError) as exc:
            proxy.listforwards(status="settled")
        assert isinstance(exc.value, RpcError)

        # Same group now fails fast without touching the broker
        broker.request.reset_mock()
        with pytest.raises(RPCBreakerOpen):
            proxy.listforwards(status="settled")
        broker.request.assert_not_called()

    def test_breaker_is_per_group(self, broker, mock_plugin):
        proxy = TimeoutRpcProxy(broker, mock_plugin, breaker_seconds=60)
        broker.request.side_effect = TimeoutError("hung")
        with pytest.raises(RPCTimeoutError):
            proxy.listforwards()

        broker.request.side_effect = None
        assert proxy.listpeerchannels() == {"channels": []}

    def test_zero_breaker_window_retries_immediately(self, broker, mock_plugin):
        proxy = TimeoutRpcProxy(broker, mock_plugin, breaker_seconds=0)
        broker.request.side_effect = [TimeoutError("hung"), {"forwards": []}]

        with pytest.raises(RPCTimeoutError):
            proxy.listforwards()
        assert proxy.listforwards() == {"forwards": []}

    def test_rpc_errors_pass_through(self, broker, mock_plugin):
        broker.request.side_effect = RpcError("setchannel", {}, {"message": "bad"})
        proxy = TimeoutRpcProxy(broker, mock_plugin)

        with pytest.raises(RpcError):
            proxy.setchannel("1x1x0", feeppm=10)


class TestPluginProxy:

    def test_log_and_attributes_delegate(self, broker, mock_plugin):
        rpc = TimeoutRpcProxy(broker, mock_plugin)
        mock_plugin.rpc_filename = "lightning-rpc"
        proxy = PluginProxy(mock_plugin, rpc)

        proxy.log("hello", level="debug")

        mock_plugin.log.assert_called_once_with("hello", level="debug")
        assert proxy.rpc is rpc
        assert proxy.rpc_filename == "lightning-rpc"
