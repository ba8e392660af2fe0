"""Reservation and ownership of devices shared by cluster jobs and clients."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from enum import Enum

log = logging.getLogger(__name__)


class DeviceState(str, Enum):
    """Lock state of a device."""

    AVAILABLE = "available"
    RESERVED = "reserved"
    BUSY = "busy"
    ERROR = "error"


class DeviceLock:
    """Lock guarding one device; the owner is a job or client id."""

    def __init__(self, state: DeviceState = DeviceState.AVAILABLE, owner: str = "") -> None:
        self._state = DeviceState(state)
        self._owner = owner
        self._reserved_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> DeviceState:
        with self._lock:
            return self._state

    @property
    def owner(self) -> str:
        with self._lock:
            return self._owner

    @property
    def reserved_at(self) -> float:
        """Wall-clock time of the last reservation, 0.0 if never reserved."""
        with self._lock:
            return self._reserved_at

    def reserve(self, owner: str) -> bool:
        """Reserve an available device for owner."""
        with self._lock:
            if self._state is not DeviceState.AVAILABLE:
                log.debug(
                    "Device not available for reservation (owner=%s, state=%s)",
                    self._owner,
                    self._state.value,
                )
                return False
            self._state = DeviceState.RESERVED
            self._owner = owner
            self._reserved_at = time.time()
            log.debug("Device reserved by %s", owner)
            return True

    def release(self, owner: str) -> bool:
        """Make the device available again if owner holds it."""
        with self._lock:
            if self._owner != owner:
                log.warning("Release denied: %s is not owner %s", owner, self._owner)
                return False
            self._state = DeviceState.AVAILABLE
            self._owner = ""
            log.debug("Device released")
            return True

    def acquire(self, owner: str) -> bool:
        """Turn owner's reservation into exclusive use; owners may reacquire."""
        with self._lock:
            if self._state is DeviceState.ERROR:
                return False
            if self._state is DeviceState.BUSY and self._owner == owner:
                return True
            if self._state is not DeviceState.RESERVED or self._owner != owner:
                log.debug(
                    "Device not available for acquisition (state=%s, owner=%s)",
                    self._state.value,
                    self._owner,
                )
                return False
            self._state = DeviceState.BUSY
            log.debug("Device acquired by %s", owner)
            return True

    def force_release(self) -> str:
        """Release regardless of owner and return the previous owner."""
        with self._lock:
            previous = self._owner
            self._state = DeviceState.AVAILABLE
            self._owner = ""
            log.warning("Device force released (previous owner %s)", previous)
            return previous

    def _expire_before(self, cutoff: float) -> str | None:
        with self._lock:
            if self._state not in (DeviceState.RESERVED, DeviceState.BUSY):
                return None
            if self._reserved_at >= cutoff:
                return None
            previous = self._owner
            self._state = DeviceState.AVAILABLE
            self._owner = ""
            return previous


class DeviceRegistry:
    """Locks of all known devices, keyed by path."""

    def __init__(self) -> None:
        self._devices: dict[str, DeviceLock] = {}
        self._lock = threading.Lock()

    def _get(self, path: str) -> DeviceLock | None:
        with self._lock:
            return self._devices.get(path)

    def register(self, path: str) -> None:
        """Add a device as available; registering twice keeps the existing lock."""
        with self._lock:
            if path not in self._devices:
                self._devices[path] = DeviceLock()
                log.debug("Device registered: %s", path)

    def unregister(self, path: str) -> None:
        with self._lock:
            self._devices.pop(path, None)
            log.debug("Device unregistered: %s", path)

    def reserve(self, path: str, owner: str) -> bool:
        dev = self._get(path)
        return dev is not None and dev.reserve(owner)

    def release(self, path: str, owner: str) -> bool:
        dev = self._get(path)
        return dev is not None and dev.release(owner)

    def get_state(self, path: str) -> DeviceState:
        """State of the device, ERROR if it is unknown."""
        dev = self._get(path)
        return dev.state if dev is not None else DeviceState.ERROR

    def list_devices(self) -> dict[str, DeviceState]:
        with self._lock:
            return {path: dev.state for path, dev in self._devices.items()}

    def available_devices(self) -> list[str]:
        with self._lock:
            return [
                path
                for path, dev in self._devices.items()
                if dev.state is DeviceState.AVAILABLE
            ]

    def get_owner(self, path: str) -> str:
        dev = self._get(path)
        return dev.owner if dev is not None else ""

    def cleanup_stale_reservations(self, max_age: timedelta | float) -> int:
        """Free reservations older than max_age (seconds or timedelta); return count."""
        seconds = max_age.total_seconds() if isinstance(max_age, timedelta) else max_age
        cutoff = time.time() - seconds
        cleaned = 0
        with self._lock:
            for path, dev in self._devices.items():
                previous = dev._expire_before(cutoff)
                if previous is not None:
                    log.info(
                        "Cleaned up stale device reservation %s (previous owner %s)",
                        path,
                        previous,
                    )
                    cleaned += 1
        return cleaned