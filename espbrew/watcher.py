"""Polling watcher that reports serial devices appearing and disappearing."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Iterable, Iterator
from typing import Protocol

from espbrew.device import ESP_PID_S3, ESP_VID, DeviceEvent, DeviceInfo, EventType
from espbrew.serial_scan import Port, Scanner

log = logging.getLogger(__name__)

_EVENT_CAPACITY = 10

_ESP_PATTERNS = (
    "usbmodem",
    "usbserial",
    "ttyUSB",
    "ttyACM",
    "tty.wchusb",
    "SLAB",
    "CP21",
    "FTDI",
    "CH340",
)


class _PortSource(Protocol):
    def scan(self) -> list[Port]: ...


def is_likely_esp(path: str) -> bool:
    """Guess from the port name whether it is an ESP device."""
    lower = path.lower()
    return any(pattern.lower() in lower for pattern in _ESP_PATTERNS)


def device_base_name(path: str) -> str:
    """Return the name of a macOS /dev/cu.* or /dev/tty.* device, else ''."""
    if path.startswith("/dev/cu."):
        return path.removeprefix("/dev/cu.")
    if path.startswith("/dev/tty.") and "ttyUSB" not in path and "ttyACM" not in path:
        return path.removeprefix("/dev/tty.")
    return ""


def deduplicate_ports(ports: Iterable[Port]) -> list[Port]:
    """Keep one port per macOS device pair, preferring the cu.* variant."""
    ports = list(ports)
    groups: dict[str, list[Port]] = {}
    for port in ports:
        base = device_base_name(port.path)
        if base:
            groups.setdefault(base, []).append(port)

    result: list[Port] = []
    done: set[str] = set()
    for port in ports:
        base = device_base_name(port.path)
        if not base:
            result.append(port)
            continue
        if base in done:
            continue
        done.add(base)
        group = groups[base]
        preferred = next(
            (cand for cand in group if cand.path.startswith("/dev/cu.")), group[0]
        )
        if preferred.path:
            result.append(preferred)
    return result


class Watcher:
    """Polls for serial devices and queues added/removed events."""

    def __init__(
        self,
        scanner: _PortSource | None = None,
        interval: float = 2.0,
        autostart: bool = True,
    ) -> None:
        self._scanner = scanner if scanner is not None else Scanner()
        self._interval = interval
        self._queue: queue.Queue[DeviceEvent] = queue.Queue(maxsize=_EVENT_CAPACITY)
        self._seen: dict[str, DeviceInfo] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._closed = threading.Event()
        self._thread: threading.Thread | None = None
        if autostart:
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()
            log.info("Device watcher started")

    def __enter__(self) -> Watcher:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def events(self) -> Iterator[DeviceEvent]:
        """Yield events as they arrive until the watcher is closed and drained."""
        while True:
            try:
                yield self._queue.get(timeout=0.05)
            except queue.Empty:
                if self._closed.is_set():
                    return

    def close(self) -> None:
        """Stop polling; pending events can still be read."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join()
        self._closed.set()

    def _run(self) -> None:
        self.scan_once()
        while not self._stop.wait(self._interval):
            self.scan_once()

    def _send(self, event: DeviceEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            log.warning("Event queue full, dropping event for %s", event.path)

    def scan_once(self) -> list[DeviceEvent]:
        """Scan once, queue the changes found and return them."""
        try:
            ports = self._scanner.scan()
        except Exception as exc:  # noqa: BLE001 - a failed scan is retried next tick
            log.debug("Device scan failed: %s", exc)
            return []

        current = {port.path: port for port in deduplicate_ports(ports)}
        emitted: list[DeviceEvent] = []
        with self._lock:
            for path in current:
                if path in self._seen or not is_likely_esp(path):
                    continue
                self._seen[path] = DeviceInfo(path=path, vid=ESP_VID, pid=ESP_PID_S3)
                event = DeviceEvent(
                    type=EventType.ADDED, path=path, vid=ESP_VID, pid=ESP_PID_S3
                )
                self._send(event)
                emitted.append(event)
                log.info("Device added: %s", path)

            for path in [p for p in self._seen if p not in current]:
                del self._seen[path]
                event = DeviceEvent(type=EventType.REMOVED, path=path)
                self._send(event)
                emitted.append(event)
                log.info("Device removed: %s", path)
        return emitted