"""Client for the serial monitor WebSocket and device reservations of a node."""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

import httpx
import websocket
from websocket import ABNF

log = logging.getLogger(__name__)

DEFAULT_BAUD = 115200
DEFAULT_TIMEOUT = 10.0

_GO_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


class MonitorError(Exception):
    """The monitor connection or a monitor request failed."""


def device_name(device_path: str) -> str:
    """Return the last element of a device path, e.g. 'ttyUSB0' for '/dev/ttyUSB0'."""
    if not device_path:
        return ""
    stripped = device_path.rstrip("/")
    if not stripped:
        return "/"
    return stripped.rsplit("/", 1)[-1]


def _json_escape(text: str) -> str:
    encoded = json.dumps(text, ensure_ascii=False)[1:-1]
    return "".join(_GO_JSON_ESCAPES.get(char, char) for char in encoded)


@dataclass(frozen=True)
class MonitorMessage:
    """One message from the monitor stream.

    type is one of "data", "error", "monitor_start", "reset_complete" or "exit".
    """

    type: str
    data: str = ""  # base64 encoded payload of "data" messages
    port: str = ""
    baud: int = 0
    message: str = ""

    @classmethod
    def from_dict(cls, payload: Any) -> MonitorMessage:
        if not isinstance(payload, dict):
            raise MonitorError("read error: expected a JSON object")
        return cls(
            type=payload.get("type") or "",
            data=payload.get("data") or "",
            port=payload.get("port") or "",
            baud=payload.get("baud") or 0,
            message=payload.get("message") or "",
        )


@dataclass
class MonitorConfig:
    """Options of a monitor session."""

    baud: int = DEFAULT_BAUD
    reset: bool = False
    exit_on: str = ""
    exit_on_error: str = ""
    duration: timedelta = timedelta(0)


def _default_connect(url: str, timeout: float) -> Any:
    conn = websocket.create_connection(url, timeout=timeout)
    # The timeout bounds the handshake only; streaming waits indefinitely.
    conn.settimeout(None)
    return conn


class MonitorClient:
    """Streams serial output of a device through a cluster node."""

    def __init__(
        self,
        base_url: str,
        device_path: str,
        config: MonitorConfig | None = None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        connect: Callable[[str, float], Any] | None = None,
    ) -> None:
        config = config if config is not None else MonitorConfig()
        self.base_url = base_url
        self.device_path = device_path
        self.baud = config.baud
        self.reset_on_start = config.reset
        self.exit_on = config.exit_on
        self.timeout = timeout
        self._connect = connect if connect is not None else _default_connect
        self._conn: Any = None
        self._lock = threading.Lock()
        self._closed = threading.Event()

    def __enter__(self) -> MonitorClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def websocket_url(self) -> str:
        """WebSocket URL of the monitor with the session's query parameters."""
        url = self.base_url
        if url.startswith("http"):
            url = "ws" + url[4:]
        params = []
        if self.baud != DEFAULT_BAUD:
            params.append(f"baud={self.baud}")
        if self.exit_on:
            params.append(f"exit_on={_json_escape(self.exit_on)}")
        if self.reset_on_start:
            params.append("reset=1")
        query = "?" + "&".join(params) if params else ""
        return f"{url}/api/v1/monitor/{device_name(self.device_path)}{query}"

    def stream(self) -> Iterator[bytes]:
        """Connect and return an iterator over the bytes the device writes.

        Connecting fails at once with MonitorError. The iterator raises
        MonitorError on read errors, server errors and server-side exits, and
        ends quietly once close() is called.
        """
        url = self.websocket_url()
        log.debug("Connecting to monitor WebSocket %s", url)
        try:
            conn = self._connect(url, self.timeout)
        except (websocket.WebSocketException, OSError) as exc:
            raise MonitorError(f"dial websocket: {exc}") from exc
        with self._lock:
            self._conn = conn
            self._closed.clear()
        return self._read_loop(conn)

    def _read_message(self, conn: Any) -> MonitorMessage:
        try:
            opcode, data = conn.recv_data()
        except (websocket.WebSocketException, OSError) as exc:
            raise MonitorError(f"read error: {exc}") from exc
        if opcode == ABNF.OPCODE_CLOSE:
            code = int.from_bytes(data[:2], "big") if len(data) >= 2 else None
            raise MonitorError(f"read error: connection closed with code {code}")
        try:
            payload = json.loads(data)
        except ValueError as exc:
            raise MonitorError(f"read error: {exc}") from exc
        return MonitorMessage.from_dict(payload)

    def _read_loop(self, conn: Any) -> Iterator[bytes]:
        while not self._closed.is_set():
            try:
                msg = self._read_message(conn)
            except MonitorError:
                if self._closed.is_set():
                    return
                raise
            log.debug("Monitor message %s", msg.type)

            if msg.type == "data":
                if not msg.data:
                    continue
                try:
                    chunk = base64.b64decode(msg.data, validate=True)
                except (binascii.Error, ValueError) as exc:
                    log.warning("Failed to decode base64 data %r: %s", msg.data, exc)
                    continue
                log.debug("Received %d bytes from server", len(chunk))
                yield chunk
            elif msg.type == "error":
                raise MonitorError(f"monitor error: {msg.message}")
            elif msg.type == "exit":
                raise MonitorError(f"server exit: {msg.message}")
            elif msg.type == "reset_complete":
                log.debug("Device reset completed")
            elif msg.type == "monitor_start":
                log.info("Monitor started on %s at %d baud", msg.port, msg.baud)

    def _write(self, msg_type: str, data: Any) -> None:
        with self._lock:
            if self._conn is None:
                raise MonitorError("not connected")
            self._conn.send(json.dumps({"type": msg_type, "data": data}))

    def reset(self) -> None:
        """Ask the server to reset the device."""
        self._write("reset", None)

    def close(self) -> None:
        """Tell the server the session ends and close the connection."""
        with self._lock:
            self._closed.set()
            conn, self._conn = self._conn, None
            if conn is None:
                return
            try:
                conn.send(json.dumps({"type": "close"}))
            except (websocket.WebSocketException, OSError) as exc:
                log.debug("Sending close message failed: %s", exc)
            conn.close()

    def _reserve_url(self) -> str:
        return f"{self.base_url}/api/v1/devices/{device_name(self.device_path)}/reserve"

    def reserve_device(self, client_id: str, ttl: int) -> None:
        """Reserve the device for client_id for ttl seconds."""
        body = {"client_id": client_id, "ttl": ttl}
        try:
            with httpx.Client(timeout=self.timeout) as http:
                response = http.post(self._reserve_url(), json=body)
        except httpx.HTTPError as exc:
            raise MonitorError(f"reserve request: {exc}") from exc
        if response.status_code != 200:
            raise MonitorError(
                f"reserve failed: status {response.status_code}: {response.text}"
            )

    def release_device(self, client_id: str) -> None:
        """Release client_id's reservation; a missing reservation is not an error."""
        body = {"client_id": client_id}
        try:
            with httpx.Client(timeout=self.timeout) as http:
                response = http.request("DELETE", self._reserve_url(), json=body)
        except httpx.HTTPError as exc:
            raise MonitorError(f"release request: {exc}") from exc
        if response.status_code not in (200, 404):
            raise MonitorError(
                f"release failed: status {response.status_code}: {response.text}"
            )