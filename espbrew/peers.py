"""Tracking of cluster peers announced over mDNS, and local address lookup."""

from __future__ import annotations

import ipaddress
import logging
import socket
import threading
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import timedelta

log = logging.getLogger(__name__)

SERVICE_NAME = "_espbrew._tcp"
SERVICE_DOMAIN = "local."
DEFAULT_PEER_TIMEOUT = timedelta(minutes=2)

_NODE_PREFIX = "node_id="
_ROLE_PREFIX = "role="


@dataclass(frozen=True)
class PeerInfo:
    """A cluster node seen on the network."""

    node_id: str
    role: str
    address: str
    port: int
    last_seen: float


class PeerTracker:
    """Remembers peers from service announcements, ignoring this node itself."""

    def __init__(self, node_id: str, clock: Callable[[], float] = time.monotonic) -> None:
        self.node_id = node_id
        self._clock = clock
        self._peers: dict[str, PeerInfo] = {}
        self._lock = threading.Lock()

    def process_entry(
        self, info_fields: Iterable[str], address: str, port: int
    ) -> PeerInfo | None:
        """Record the peer described by TXT fields; return it, or None if skipped."""
        info_fields = list(info_fields)
        if len(info_fields) < 2:
            return None

        node_id = ""
        role = ""
        for text in info_fields:
            if len(text) > len(_NODE_PREFIX) and text.startswith(_NODE_PREFIX):
                node_id = text[len(_NODE_PREFIX):]
            if len(text) > len(_ROLE_PREFIX) and text.startswith(_ROLE_PREFIX):
                role = text[len(_ROLE_PREFIX):]

        if not node_id or node_id == self.node_id:
            return None

        peer = PeerInfo(
            node_id=node_id, role=role, address=address, port=port, last_seen=self._clock()
        )
        with self._lock:
            self._peers[node_id] = peer
        log.info("Peer discovered: %s (role=%s, address=%s)", node_id, role, address)
        return peer

    def peers(self) -> list[PeerInfo]:
        with self._lock:
            return list(self._peers.values())

    def cleanup_stale(self, timeout: timedelta | float = DEFAULT_PEER_TIMEOUT) -> int:
        """Forget peers not seen for longer than timeout; return how many."""
        seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else timeout
        now = self._clock()
        with self._lock:
            stale = [pid for pid, p in self._peers.items() if now - p.last_seen > seconds]
            for pid in stale:
                del self._peers[pid]
                log.info("Peer timed out: %s", pid)
        return len(stale)


def _usable(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return ip.version == 4 and not ip.is_loopback and not ip.is_unspecified


def local_ip() -> str:
    """Return a non-loopback IPv4 address of this host.

    Raises OSError when none is found.
    """
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except OSError:
        infos = []
    for info in infos:
        address = info[4][0]
        if _usable(address):
            return address

    # Ask the routing table which address would be used; no packet is sent.
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.connect(("10.255.255.255", 1))
            address = sock.getsockname()[0]
        finally:
            sock.close()
    except OSError:
        address = ""
    if _usable(address):
        return address
    raise OSError("no local IP found")