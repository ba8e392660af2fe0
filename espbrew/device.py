"""Device events and identification of ESP serial devices."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

ESP_VID = 0x4348
ESP_PID_S2 = 0x0027
ESP_PID_S3 = 0x0028
ESP_PID_C3 = 0x0029
ESP_PID_C6 = 0x002A

_KNOWN_ESP_PIDS = frozenset({ESP_PID_S2, ESP_PID_S3, ESP_PID_C3, ESP_PID_C6})


class EventType(str, Enum):
    """Kind of hot-plug event."""

    ADDED = "added"
    REMOVED = "removed"


@dataclass(frozen=True)
class DeviceEvent:
    """A device appearing on or disappearing from the host."""

    type: EventType
    path: str
    vid: int = 0
    pid: int = 0
    serial: str = ""


@dataclass(frozen=True)
class DeviceInfo:
    """A serial device found on the host."""

    path: str
    vid: int = 0
    pid: int = 0
    serial_number: str = ""


def is_esp_device(vid: int, pid: int) -> bool:
    """Return True if the USB vendor id belongs to an ESP device.

    Every product id under the ESP vendor id is accepted, known or not.
    """
    return vid == ESP_VID


def event_to_protocol(event: DeviceEvent, node_id: str) -> dict[str, Any]:
    """Describe the device of an event as the cluster reports it."""
    return {
        "path": event.path,
        "vid": event.vid,
        "pid": event.pid,
        "serial_number": event.serial,
        "node_id": node_id,
        "status": "available",
    }