"""ESP board discovery, device locking, job queueing, peer tracking and cluster clients."""

__version__ = "0.1.0"

__all__ = [
    "client",
    "config",
    "device",
    "device_lock",
    "jobqueue",
    "monitor_client",
    "peers",
    "serial_scan",
    "watcher",
]