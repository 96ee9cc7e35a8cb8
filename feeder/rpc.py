"""
RPC hardening for cln-feeder

pyln-client's RPC can hang indefinitely on certain transport / plugin
interactions, and a thread timeout does not stop a hung call. Calls made by
the controller therefore run in a separate broker process; on timeout the
broker is terminated and restarted, which bounds how long any caller waits.

A per-method-group circuit breaker trips on timeout so the rest of a tick
fails fast instead of waiting out one timeout per channel.
"""

import multiprocessing
import queue
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pyln.client import Plugin, RpcError


class RPCTimeoutError(RpcError):
    """Exception raised when an RPC call times out."""
    def __init__(self, method):
        self.method = method
        super().__init__(method, {}, f"RPC timeout for method: {method}")


class RPCBreakerOpen(RpcError):
    """Exception raised when the circuit breaker is open for a method group."""
    def __init__(self, group, until_ts):
        self.group = group
        self.until_ts = until_ts
        until_str = datetime.fromtimestamp(until_ts).strftime('%H:%M:%S')
        super().__init__(group, {}, f"RPC circuit breaker open for group '{group}' until {until_str}")


class RpcBroker:
    """
    Executes lightningd RPC calls in a separate process.

    One broker process, one request queue, one response queue. Calls are
    serialized. On timeout the broker is terminated, the queues recreated,
    the broker restarted, and TimeoutError raised.
    """

    def __init__(self, socket_path: str, plugin_instance: Plugin):
        self.socket_path = socket_path
        self._plugin = plugin_instance

        # spawn: never fork a process after threads have started
        self._ctx = multiprocessing.get_context("spawn")

        self._proc: Optional[multiprocessing.Process] = None
        self._req_q: Any = None
        self._resp_q: Any = None

        self._call_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()

        self.start()

    @staticmethod
    def _broker_main(socket_path: str, req_q, resp_q):
        # NOTE: Runs in a separate process.
        from pyln.client import LightningRpc, RpcError as _RpcError
        import traceback as _traceback

        rpc = LightningRpc(socket_path)

        while True:
            req = req_q.get()
            if not req:
                continue
            if req.get("op") == "stop":
                break

            req_id = req.get("id")
            method = req.get("method")
            args = req.get("args") or []
            kwargs = req.get("kwargs") or {}

            try:
                # E.g. listpeerchannels(), listforwards(status="settled", out_channel=scid)
                result = getattr(rpc, method)(*args, **kwargs)
                resp_q.put({"id": req_id, "ok": True, "result": result})
            except _RpcError as e:
                # Caller reconstructs a compatible RpcError
                resp_q.put({
                    "id": req_id,
                    "ok": False,
                    "error": getattr(e, "error", None),
                    "message": str(e),
                })
            except Exception as e:
                resp_q.put({
                    "id": req_id,
                    "ok": False,
                    "message": str(e),
                    "traceback": _traceback.format_exc(),
                })

    def start(self):
        with self._lifecycle_lock:
            # Fresh queues each start to avoid stale messages after restarts.
            self._req_q = self._ctx.Queue()
            self._resp_q = self._ctx.Queue()

            self._proc = self._ctx.Process(
                target=RpcBroker._broker_main,
                args=(self.socket_path, self._req_q, self._resp_q),
                daemon=True,
                name="feeder_rpc_broker",
            )
            self._proc.start()

    def stop(self):
        with self._lifecycle_lock:
            if self._proc is None:
                return
            try:
                if self._req_q:
                    self._req_q.put_nowait({"op": "stop"})
            except (queue.Full, ValueError, OSError):
                pass

            try:
                if self._proc.is_alive():
                    self._proc.terminate()
                    self._proc.join(timeout=1.0)
            except (ValueError, OSError) as e:
                self._plugin.log(f"Error stopping RPC broker: {e}", level="warn")

            self._proc = None
            self._req_q = None
            self._resp_q = None

    def restart(self, reason: str):
        self._plugin.log(f"RPC broker restart: {reason}", level="warn")
        self.stop()
        self.start()

    def request(self, method: str, args: Optional[List[Any]] = None,
                kwargs: Optional[Dict[str, Any]] = None, timeout: int = 15):
        """
        Perform a single RPC request through the broker.

        Raises:
            TimeoutError: if the broker does not return within timeout.
            RpcError: reconstructed from broker error payload.
        """
        if not method:
            raise RpcError("request", {}, "Empty RPC method")

        with self._call_lock:
            if self._proc is None or not self._proc.is_alive():
                self.restart("broker not running")

            req_id = uuid.uuid4().hex
            self._req_q.put({
                "id": req_id,
                "method": method,
                "args": args or [],
                "kwargs": kwargs or {},
            })

            try:
                resp = self._resp_q.get(timeout=timeout)
                # Drain stale responses left over from an earlier timeout
                while resp and resp.get("id") != req_id:
                    resp = self._resp_q.get(timeout=timeout)
            except queue.Empty:
                self.restart(f"timeout waiting for RPC response ({timeout}s) on {method}")
                raise TimeoutError(f"RPC broker timeout on {method}")

            if resp.get("ok"):
                return resp.get("result")

            if resp.get("traceback"):
                self._plugin.log(
                    f"RPC broker exception in {method}: {resp.get('message')}\n{resp.get('traceback')}",
                    level="error"
                )

            err = resp.get("error")
            msg = resp.get("message") or "RPC error"
            raise RpcError(method, kwargs or {}, err if err is not None else msg)


class TimeoutRpcProxy:
    """
    Drop-in stand-in for plugin.rpc with per-call timeouts and circuit breakers.

    Attribute calls such as proxy.listpeerchannels() are forwarded to the
    broker as getattr(LightningRpc, name)(*args, **kwargs).
    """

    def __init__(self, broker: RpcBroker, plugin_instance: Plugin,
                 timeout_seconds: int = 15, breaker_seconds: int = 60):
        self._broker = broker
        self._plugin = plugin_instance
        self._timeout = timeout_seconds
        self._breaker_window = breaker_seconds
        self._breakers: Dict[str, float] = {}
        self._log_history: Dict[Tuple[str, str], float] = {}

    def _get_group(self, method_name: str) -> str:
        """Determine method group for circuit breaking."""
        if method_name == "listforwards":
            return "listforwards"
        if method_name == "setchannel":
            return "setchannel"
        return "general"

    def _should_log(self, group: str, msg_type: str, cooldown: int = 60) -> bool:
        """Rate-limit logs to once per cooldown window."""
        now = time.time()
        key = (group, msg_type)
        if now - self._log_history.get(key, 0) > cooldown:
            self._log_history[key] = now
            return True
        return False

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)

        def wrapper(*args, **kwargs):
            return self.call(name, *args, **kwargs)

        return wrapper

    def call(self, method_name: str, *args, **kwargs):
        """Run one RPC method through the broker, honouring breaker and timeout."""
        group = self._get_group(method_name)
        now = time.time()

        until = self._breakers.get(group, 0)
        if until > now:
            if self._should_log(group, "breaker_open"):
                self._plugin.log(
                    f"RPC Circuit Breaker OPEN for group '{group}' until "
                    f"{datetime.fromtimestamp(until).strftime('%H:%M:%S')}. Skipping call.",
                    level="warn",
                )
            raise RPCBreakerOpen(group, until)

        try:
            return self._broker.request(
                method_name,
                args=list(args),
                kwargs=kwargs,
                timeout=self._timeout,
            )
        except TimeoutError:
            self._breakers[group] = time.time() + self._breaker_window
            self._plugin.log(
                f"RPC TIMEOUT after {self._timeout}s on {method_name}. "
                f"Group '{group}' breaker tripped for {self._breaker_window}s.",
                level="warn",
            )
            raise RPCTimeoutError(method_name)


class PluginProxy:
    """
    A proxy for the Plugin object whose rpc attribute is a TimeoutRpcProxy.

    Logging and every other attribute go to the wrapped plugin.
    """

    def __init__(self, plugin_instance: Plugin, rpc_proxy: TimeoutRpcProxy):
        self._plugin = plugin_instance
        self.rpc = rpc_proxy

    def log(self, message, level='info'):
        """Delegate logging to the original plugin."""
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        return getattr(self._plugin, name)
