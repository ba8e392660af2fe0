"""Discovery of serial ports that may hold ESP devices."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import serial
from serial.tools import list_ports

from espbrew.device import ESP_PID_S3, ESP_VID, DeviceInfo

log = logging.getLogger(__name__)

_ESP_PATTERNS = (
    "usb",
    "UART",
    "SLAB",
    "CP21",
    "FTDI",
    "CH340",
    "ttyUSB",
    "ttyACM",
    "cu.usb",
    "cu.usbserial",
)


@dataclass(frozen=True)
class Port:
    """A serial port on the host."""

    path: str


class Scanner:
    """Finds USB serial devices."""

    def scan(self) -> list[Port]:
        """Return every serial port present on the host."""
        return [Port(path=info.device) for info in list_ports.comports()]

    def scan_esp(self) -> list[DeviceInfo]:
        """Return the ports that can be opened and look like ESP devices."""
        found = []
        for port in self.scan():
            info = self._identify_esp(port.path)
            if info is not None:
                found.append(info)
        return found

    def _identify_esp(self, path: str) -> DeviceInfo | None:
        try:
            with serial.Serial(path, baudrate=115200):
                pass
        except (serial.SerialException, OSError, ValueError) as exc:
            log.debug("cannot open %s: %s", path, exc)
            return None
        if not self.is_likely_esp(path):
            return None
        return DeviceInfo(path=path, vid=ESP_VID, pid=ESP_PID_S3)

    def is_likely_esp(self, path: str) -> bool:
        """Guess from the port name whether it is an ESP device."""
        lower = path.lower()
        return any(pattern.lower() in lower for pattern in _ESP_PATTERNS)