"""HTTP and WebSocket client for the cluster API."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import httpx
import websocket
from websocket import ABNF

from espbrew.device_lock import DeviceState

log = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0
DEFAULT_HTTP_TIMEOUT = 10.0

_NORMAL_CLOSE_CODES = frozenset({1000, 1001})


class ClientError(Exception):
    """A request to the cluster failed."""

    def __init__(self, message: str, status_code: int | None = None, body: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RetryableError(ClientError):
    """A transport failure that is worth retrying."""


def _seconds(value: timedelta | float) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


def _device_state(value: Any) -> DeviceState | str:
    try:
        return DeviceState(value)
    except ValueError:
        return str(value)


def _mapping(payload: Any) -> dict[str, Any]:
    if not isinstance(payload, dict):
        raise ClientError(f"decode response: expected an object, got {type(payload).__name__}")
    return payload


@dataclass(frozen=True)
class RemoteDevice:
    """A device as listed by the cluster."""

    path: str
    state: DeviceState | str
    vid: str = ""
    pid: str = ""
    node_id: str = ""
    chip_type: str = ""
    reserved_by: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> RemoteDevice:
        data = _mapping(data)
        return cls(
            path=data.get("path", ""),
            state=_device_state(data.get("status", "")),
            vid=data.get("vid", ""),
            pid=data.get("pid", ""),
            node_id=data.get("node_id", ""),
            chip_type=data.get("chip_type", ""),
            reserved_by=data.get("reserved_by", ""),
        )


@dataclass(frozen=True)
class ClusterStatus:
    """Summary counts reported by the cluster."""

    nodes_count: int = 0
    devices_count: int = 0
    jobs_count: int = 0
    role: str = ""
    queue_size: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> ClusterStatus:
        data = _mapping(data)
        return cls(
            nodes_count=data.get("nodes_count", 0),
            devices_count=data.get("devices_count", 0),
            jobs_count=data.get("jobs_count", 0),
            role=data.get("role", ""),
            queue_size=data.get("queue_size", 0),
        )


@dataclass(frozen=True)
class FlashUploadResponse:
    """Identifier of an uploaded firmware image."""

    file_id: str
    size: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> FlashUploadResponse:
        data = _mapping(data)
        return cls(file_id=data.get("file_id", ""), size=data.get("size", 0))


@dataclass
class FlashSubmitRequest:
    """Request to flash an uploaded image onto a device."""

    device_path: str
    file_id: str
    firmware_url: str = ""
    options: dict[str, Any] = field(default_factory=dict)
    client_id: str = ""
    offset: int = 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"device_path": self.device_path, "file_id": self.file_id}
        if self.firmware_url:
            result["firmware_url"] = self.firmware_url
        if self.options:
            result["options"] = self.options
        if self.client_id:
            result["client_id"] = self.client_id
        if self.offset:
            result["offset"] = self.offset
        return result


@dataclass(frozen=True)
class FlashSubmitResponse:
    """The job created for a flash request."""

    job_id: str
    status: str = ""
    device_path: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> FlashSubmitResponse:
        data = _mapping(data)
        return cls(
            job_id=data.get("job_id", ""),
            status=data.get("status", ""),
            device_path=data.get("device_path", ""),
        )


@dataclass
class EraseSubmitRequest:
    """Request to erase the whole flash or a region of it."""

    device_path: str
    address: int = 0
    size: int = 0
    erase_all: bool = False
    client_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"device_path": self.device_path}
        if self.address:
            result["address"] = self.address
        if self.size:
            result["size"] = self.size
        result["erase_all"] = self.erase_all
        if self.client_id:
            result["client_id"] = self.client_id
        return result


@dataclass(frozen=True)
class EraseSubmitResponse:
    """The job created for an erase request."""

    job_id: str
    status: str = ""
    device_path: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> EraseSubmitResponse:
        data = _mapping(data)
        return cls(
            job_id=data.get("job_id", ""),
            status=data.get("status", ""),
            device_path=data.get("device_path", ""),
        )


@dataclass
class ReadFlashRequest:
    """Request to read a region of a device's flash."""

    device_path: str
    address: int
    size: int
    client_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "device_path": self.device_path,
            "address": self.address,
            "size": self.size,
        }
        if self.client_id:
            result["client_id"] = self.client_id
        return result


@dataclass(frozen=True)
class ReadFlashResponse:
    """State of a flash read job: pending, running, completed or failed."""

    job_id: str
    status: str = ""
    size: int = 0
    download_url: str = ""
    error: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> ReadFlashResponse:
        data = _mapping(data)
        return cls(
            job_id=data.get("job_id", ""),
            status=data.get("status", ""),
            size=data.get("size", 0),
            download_url=data.get("download_url", ""),
            error=data.get("error", ""),
        )


@dataclass(frozen=True)
class ProgressMessage:
    """One progress update of a job."""

    type: str
    job_id: str = ""
    progress: int = 0
    status: str = ""
    error: str = ""

    @classmethod
    def from_dict(cls, data: Any) -> ProgressMessage:
        data = _mapping(data)
        return cls(
            type=data.get("type", ""),
            job_id=data.get("job_id", ""),
            progress=data.get("progress", 0),
            status=data.get("status", ""),
            error=data.get("error", ""),
        )


class ProgressClient:
    """Open WebSocket delivering progress of one job."""

    def __init__(self, conn: Any, url: str, job_id: str) -> None:
        self._conn = conn
        self.url = url
        self.job_id = job_id
        self._lock = threading.Lock()

    def __enter__(self) -> ProgressClient:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _read(self) -> ProgressMessage | None:
        try:
            opcode, data = self._conn.recv_data()
        except (websocket.WebSocketException, OSError) as exc:
            raise ClientError(f"read message: {exc}") from exc
        if opcode == ABNF.OPCODE_CLOSE:
            code = int.from_bytes(data[:2], "big") if len(data) >= 2 else None
            if code in _NORMAL_CLOSE_CODES:
                return None
            raise ClientError(f"read message: connection closed with code {code}")
        try:
            payload = json.loads(data)
        except ValueError as exc:
            raise ClientError(f"read message: {exc}") from exc
        return ProgressMessage.from_dict(payload)

    def stream(self, callback: Callable[[ProgressMessage], None] | None = None) -> None:
        """Pass updates to callback until the job completes or the socket closes.

        Raises ClientError when the job fails or the connection breaks.
        """
        try:
            while True:
                message = self._read()
                if message is None:
                    return
                log.debug("Progress update %s: %d", message.type, message.progress)
                if callback is not None:
                    callback(message)
                if message.type == "complete":
                    if message.status == "failed":
                        raise ClientError(f"job failed: {message.error}")
                    return
        finally:
            self.close()

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None


class Client:
    """Client of a cluster leader's HTTP API, retrying transient failures."""

    def __init__(self, base_url: str, timeout: timedelta | float = DEFAULT_HTTP_TIMEOUT) -> None:
        self.base_url = base_url
        self.max_retries = DEFAULT_MAX_RETRIES
        self.retry_delay = DEFAULT_RETRY_DELAY
        self.timeout = _seconds(timeout)
        self._http = httpx.Client(timeout=self.timeout)

    def __enter__(self) -> Client:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def set_retry_policy(self, max_retries: int, retry_delay: timedelta | float) -> None:
        """Set how many retries follow a failure and the base delay between them."""
        self.max_retries = max_retries
        self.retry_delay = _seconds(retry_delay)

    def set_timeout(self, timeout: timedelta | float) -> None:
        """Set the timeout of HTTP requests and WebSocket handshakes."""
        self.timeout = _seconds(timeout)
        self._http.timeout = httpx.Timeout(self.timeout)

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self.base_url + path
        last: ClientError | None = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                log.debug("Retrying %s (attempt %d of %d)", url, attempt, self.max_retries)
                time.sleep(self.retry_delay * attempt)
            try:
                response = self._http.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                last = RetryableError(str(exc) or type(exc).__name__)
                last.__cause__ = exc
                continue
            code = response.status_code
            if 200 <= code < 300:
                return response
            if not _is_retryable(code):
                raise ClientError(f"status {code}: {response.text}", code, response.text)
            last = ClientError(f"status {code}", code)
        raise ClientError(
            f"max retries exceeded: {last}",
            status_code=last.status_code if last is not None else None,
        ) from last

    @staticmethod
    def _expect(response: httpx.Response, *codes: int) -> None:
        if response.status_code not in codes:
            text = response.text
            raise ClientError(f"status {response.status_code}: {text}", response.status_code, text)

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise ClientError(f"decode response: {exc}") from exc

    def list_devices(self) -> list[RemoteDevice]:
        """Return all devices known to the cluster."""
        payload = self._json(self._request("GET", "/api/v1/devices"))
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise ClientError("decode response: expected a list of devices")
        return [RemoteDevice.from_dict(item) for item in payload]

    def get_status(self) -> ClusterStatus:
        response = self._request("GET", "/api/v1/status")
        self._expect(response, 200)
        return ClusterStatus.from_dict(self._json(response))

    def upload_firmware(self, file_path: str | Path) -> FlashUploadResponse:
        """Upload a firmware image; raises OSError if the file cannot be read."""
        name = str(file_path)
        content = Path(file_path).read_bytes()
        files = {"firmware": (name, content, "application/octet-stream")}
        response = self._request("POST", "/api/v1/flash/upload", files=files)
        self._expect(response, 200)
        return FlashUploadResponse.from_dict(self._json(response))

    def submit_flash(self, request: FlashSubmitRequest) -> FlashSubmitResponse:
        response = self._request("POST", "/api/v1/flash", json=request.to_dict())
        self._expect(response, 200)
        return FlashSubmitResponse.from_dict(self._json(response))

    def submit_erase(self, request: EraseSubmitRequest) -> EraseSubmitResponse:
        response = self._request("POST", "/api/v1/flash/erase", json=request.to_dict())
        self._expect(response, 200)
        return EraseSubmitResponse.from_dict(self._json(response))

    def read_flash(self, request: ReadFlashRequest) -> ReadFlashResponse:
        """Submit a flash read job."""
        response = self._request("POST", "/api/v1/flash/read", json=request.to_dict())
        self._expect(response, 200)
        return ReadFlashResponse.from_dict(self._json(response))

    def get_read_flash_status(self, job_id: str) -> ReadFlashResponse:
        response = self._request("GET", f"/api/v1/flash/read/{job_id}")
        self._expect(response, 200)
        return ReadFlashResponse.from_dict(self._json(response))

    def download_read_flash(self, job_id: str) -> bytes:
        """Return the data read by a finished flash read job."""
        response = self._request("GET", f"/api/v1/flash/download/{job_id}")
        self._expect(response, 200)
        return response.content

    def cancel_job(self, job_id: str) -> None:
        response = self._request("DELETE", f"/api/v1/jobs/{job_id}")
        self._expect(response, 200, 204)

    def progress_url(self, job_id: str) -> str:
        """WebSocket URL of a job's progress stream."""
        url = self.base_url
        if url.startswith("http"):
            url = "ws" + url[4:]
        return f"{url}/api/v1/flash/{job_id}/progress"

    def connect_progress(self, job_id: str) -> ProgressClient:
        """Open the progress stream of a job, retrying failed handshakes."""
        url = self.progress_url(job_id)
        last: Exception | None = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                log.debug("Retrying WebSocket connection to %s (attempt %d)", url, attempt)
                time.sleep(self.retry_delay * attempt)
            try:
                conn = websocket.create_connection(url, timeout=self.timeout)
            except (websocket.WebSocketException, OSError) as exc:
                last = exc
                continue
            return ProgressClient(conn, url, job_id)
        raise ClientError(f"dial websocket: {last}") from last