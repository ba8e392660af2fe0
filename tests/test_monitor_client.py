import base64
import json

import httpx
import pytest
import respx
from websocket import ABNF

from espbrew.monitor_client import (
    MonitorClient,
    MonitorConfig,
    MonitorError,
    MonitorMessage,
    device_name,
)

BASE = "http://leader:8080"
RESERVE_URL = f"{BASE}/api/v1/devices/ttyUSB0/reserve"


@pytest.fixture
def api():
    with respx.mock(assert_all_called=False) as router:
        yield router


class FakeConn:
    def __init__(self, messages):
        self.frames = [
            (ABNF.OPCODE_TEXT, json.dumps(m).encode()) if isinstance(m, dict) else m
            for m in messages
        ]
        self.sent = []
        self.closed = False

    def recv_data(self):
        if not self.frames:
            return (ABNF.OPCODE_CLOSE, (1000).to_bytes(2, "big"))
        return self.frames.pop(0)

    def send(self, text):
        self.sent.append(json.loads(text))

    def close(self):
        self.closed = True


def make_client(conn, config=None, urls=None):
    def connect(url, timeout):
        if urls is not None:
            urls.append((url, timeout))
        return conn

    return MonitorClient(BASE, "/dev/ttyUSB0", config, connect=connect)


def b64(text):
    return base64.b64encode(text.encode()).decode()


@pytest.mark.parametrize(
    "path, expected",
    [
        ("/dev/cu.usbmodem1401", "cu.usbmodem1401"),
        ("/dev/ttyUSB0", "ttyUSB0"),
        ("cu.usbmodem1401", "cu.usbmodem1401"),
        ("ttyUSB0", "ttyUSB0"),
        ("", ""),
    ],
)
def test_device_name(path, expected):
    assert device_name(path) == expected


def test_websocket_url_default():
    client = MonitorClient(BASE, "/dev/ttyUSB0", MonitorConfig())
    assert client.websocket_url() == "ws://leader:8080/api/v1/monitor/ttyUSB0"


def test_websocket_url_with_all_options():
    cfg = MonitorConfig(baud=9600, exit_on='a"b', reset=True)
    client = MonitorClient("https://leader", "/dev/ttyACM0", cfg)
    assert (
        client.websocket_url()
        == 'wss://leader/api/v1/monitor/ttyACM0?baud=9600&exit_on=a\\"b&reset=1'
    )


def test_websocket_url_reset_only():
    client = MonitorClient(BASE, "ttyUSB0", MonitorConfig(reset=True))
    assert client.websocket_url().endswith("/api/v1/monitor/ttyUSB0?reset=1")


def test_websocket_url_escapes_html_characters():
    client = MonitorClient(BASE, "ttyUSB0", MonitorConfig(exit_on="<ok>"))
    assert client.websocket_url().endswith("?exit_on=\\u003cok\\u003e")


def test_stream_yields_decoded_data_and_skips_others():
    conn = FakeConn(
        [
            {"type": "monitor_start", "port": "/dev/ttyUSB0", "baud": 115200},
            {"type": "data", "data": b64("ESP-ROM:")},
            {"type": "data", "data": "%%not base64%%"},
            {"type": "data", "data": ""},
            {"type": "reset_complete"},
            {"type": "data", "data": b64("boot")},
            {"type": "exit", "message": "pattern matched"},
        ]
    )
    urls = []
    client = make_client(conn, urls=urls)
    chunks = []
    with pytest.raises(MonitorError, match="server exit: pattern matched"):
        for chunk in client.stream():
            chunks.append(chunk)
    assert chunks == [b"ESP-ROM:", b"boot"]
    assert urls == [("ws://leader:8080/api/v1/monitor/ttyUSB0", 10.0)]


def test_stream_error_message_raises():
    client = make_client(FakeConn([{"type": "error", "message": "port busy"}]))
    with pytest.raises(MonitorError, match="monitor error: port busy"):
        list(client.stream())


def test_stream_close_frame_is_read_error():
    client = make_client(FakeConn([]))
    with pytest.raises(MonitorError, match="read error"):
        list(client.stream())


def test_stream_ends_quietly_after_close():
    conn = FakeConn([{"type": "data", "data": b64("x")}])
    client = make_client(conn)
    chunks = []
    for chunk in client.stream():
        chunks.append(chunk)
        client.close()
    assert chunks == [b"x"]
    assert conn.closed is True
    assert conn.sent == [{"type": "close"}]


def test_dial_failure_raises():
    def connect(url, timeout):
        raise OSError("refused")

    client = MonitorClient(BASE, "/dev/ttyUSB0", connect=connect)
    with pytest.raises(MonitorError, match="dial websocket: refused"):
        client.stream()


def test_reset_sends_message():
    conn = FakeConn([])
    client = make_client(conn)
    client.stream()
    client.reset()
    assert conn.sent == [{"type": "reset", "data": None}]


def test_reset_without_connection_raises():
    client = MonitorClient(BASE, "/dev/ttyUSB0")
    with pytest.raises(MonitorError, match="not connected"):
        client.reset()


def test_monitor_message_from_dict():
    msg = MonitorMessage.from_dict({"type": "monitor_start", "port": "p", "baud": 9600})
    assert msg == MonitorMessage(type="monitor_start", port="p", baud=9600)


def test_reserve_device_sends_body(api):
    route = api.post(RESERVE_URL).mock(return_value=httpx.Response(200))
    result = MonitorClient(BASE, "/dev/ttyUSB0").reserve_device("client-1", 60)
    assert result is None
    assert route.call_count == 1
    assert json.loads(route.calls.last.request.content) == {"client_id": "client-1", "ttl": 60}


def test_reserve_device_failure(api):
    api.post(RESERVE_URL).mock(return_value=httpx.Response(409, text="taken"))
    with pytest.raises(MonitorError, match="reserve failed: status 409: taken"):
        MonitorClient(BASE, "/dev/ttyUSB0").reserve_device("client-1", 60)


@pytest.mark.parametrize("code", [200, 404])
def test_release_device_accepts_ok_and_not_found(api, code):
    route = api.delete(RESERVE_URL).mock(return_value=httpx.Response(code))
    result = MonitorClient(BASE, "/dev/ttyUSB0").release_device("client-1")
    assert result is None
    assert route.call_count == 1
    assert json.loads(route.calls.last.request.content) == {"client_id": "client-1"}


def test_release_device_failure(api):
    api.delete(RESERVE_URL).mock(return_value=httpx.Response(500, text="boom"))
    with pytest.raises(MonitorError, match="release failed: status 500: boom"):
        MonitorClient(BASE, "/dev/ttyUSB0").release_device("client-1")


def test_reserve_transport_error(api):
    api.post(RESERVE_URL).mock(side_effect=httpx.ConnectError("down"))
    with pytest.raises(MonitorError, match="reserve request"):
        MonitorClient(BASE, "/dev/ttyUSB0").reserve_device("client-1", 5)