from types import SimpleNamespace
from unittest import mock

import pytest
import serial

from espbrew.device import ESP_PID_S3, ESP_VID
from espbrew.serial_scan import Port, Scanner


def _comports(*paths):
    return [SimpleNamespace(device=p) for p in paths]


def test_scan_lists_ports():
    with mock.patch(
        "serial.tools.list_ports.comports",
        return_value=_comports("/dev/ttyUSB0", "/dev/ttyS0"),
    ):
        ports = Scanner().scan()
    assert ports == [Port("/dev/ttyUSB0"), Port("/dev/ttyS0")]


def test_scan_empty():
    with mock.patch("serial.tools.list_ports.comports", return_value=[]):
        assert Scanner().scan() == []


def test_scan_esp_filters_and_skips_unopenable():
    def fake_serial(path, baudrate):
        if path == "/dev/ttyACM0":
            raise serial.SerialException("busy")
        return mock.MagicMock()

    with mock.patch(
        "serial.tools.list_ports.comports",
        return_value=_comports("/dev/ttyUSB0", "/dev/ttyS0", "/dev/ttyACM0"),
    ), mock.patch("serial.Serial", side_effect=fake_serial):
        devices = Scanner().scan_esp()

    assert [d.path for d in devices] == ["/dev/ttyUSB0"]
    assert devices[0].vid == ESP_VID
    assert devices[0].pid == ESP_PID_S3


@pytest.mark.parametrize(
    "path, want",
    [
        ("/dev/ttyUSB0", True),
        ("/dev/ttyACM0", True),
        ("/dev/cu.usbserial", True),
        ("/dev/cu.usbmodem", True),
        ("/dev/cu.SLAB_USBtoUART", True),
        ("/dev/ttyS0", False),
        ("/dev/pts/0", False),
        ("/dev/null", False),
    ],
)
def test_scanner_is_likely_esp(path, want):
    assert Scanner().is_likely_esp(path) is want