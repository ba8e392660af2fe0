# espbrew

Building blocks for running a small farm of ESP development boards: find the
boards attached over USB serial, hand them out to jobs without collisions,
queue flash and erase jobs, keep track of peer nodes, and talk to a cluster
leader over HTTP and WebSocket.

Install with `pip install .`; add the `test` extra for the test suite.

## Modules

| Module | Purpose |
| --- | --- |
| `espbrew.device` | `EventType`, `DeviceEvent`, `DeviceInfo`, `is_esp_device`, `event_to_protocol` |
| `espbrew.serial_scan` | `Scanner` lists serial ports (`Port`) and picks out likely ESP boards |
| `espbrew.watcher` | `Watcher` polls for hot-plugged boards; `deduplicate_ports`, `device_base_name`, `is_likely_esp` |
| `espbrew.config` | `ClusterConfig`, `default()`, `load()`, `parse_duration` |
| `espbrew.device_lock` | `DeviceState`, `DeviceLock`, `DeviceRegistry` |
| `espbrew.jobqueue` | `JobQueue` of flash and erase `Job`s with `JobStatus` and `JobType` |
| `espbrew.peers` | `PeerTracker` and `PeerInfo` for announced cluster nodes; `local_ip` |
| `espbrew.client` | `Client` for the cluster HTTP API, `ProgressClient` for job progress streams |
| `espbrew.monitor_client` | `MonitorClient` for remote serial monitoring; `device_name` |

## Configuration

`load(cfg_path)` starts from `default()`, applies a configuration file when a
path is given (`.yaml`/`.yml`, `.json` or `.toml`, holding a mapping), and then
environment variables named `ESPBREW_` plus the upper-cased field name, such as
`ESPBREW_HTTP_PORT` or `ESPBREW_HEARTBEAT_INTERVAL`. Environment variables win
over the file.

Durations are written as `300ms`, `5s`, `1m30s` or `-1.5h`; `parse_duration`
turns them into a `datetime.timedelta`. A bare number in a file counts
nanoseconds.

```python
from datetime import timedelta
from espbrew.config import load, parse_duration

cfg = load("cluster.yaml")
print(cfg.role, cfg.http_port)
assert parse_duration("1m30s") == timedelta(seconds=90)
```

The defaults are a `standalone` node named `espbrew-cluster`, bound to
`0.0.0.0:8080`, with a 5 s heartbeat interval, a 30 s node timeout and `info`
log level.

## Locking devices

A device goes from `available` to `reserved` when an owner reserves it, to
`busy` when that owner acquires it, and back to `available` when the owner
releases it. Only the owner may release; `force_release` ignores ownership and
returns the previous owner. Unknown devices report `DeviceState.ERROR`.

```python
from espbrew.device_lock import DeviceRegistry, DeviceState

registry = DeviceRegistry()
registry.register("/dev/ttyUSB0")
registry.register("/dev/ttyUSB1")

assert registry.reserve("/dev/ttyUSB0", "job-1")
assert not registry.reserve("/dev/ttyUSB0", "job-2")
assert registry.get_state("/dev/ttyUSB0") is DeviceState.RESERVED
assert registry.get_owner("/dev/ttyUSB0") == "job-1"
assert registry.available_devices() == ["/dev/ttyUSB1"]

registry.release("/dev/ttyUSB0", "job-1")
```

`cleanup_stale_reservations(max_age)` frees reserved or busy devices whose
reservation is older than `max_age` (a `timedelta` or seconds) and returns how
many it freed.

## Queueing jobs

```python
from espbrew.jobqueue import JobQueue, JobStatus

queue = JobQueue()
job = queue.enqueue("app.bin", "/dev/ttyUSB0", 0x10000)
erase = queue.enqueue_erase("/dev/ttyUSB1", True, 0, 0)

first = queue.dequeue("node-1")        # jobs come out in submission order
queue.update_progress(first.id, 50)
queue.complete(first.id, None)          # pass an exception or message to mark it failed

queue.cancel(erase.id)
assert queue.get(erase.id).status is JobStatus.CANCELLED
```

`cancel` and `timeout` raise `KeyError` for an unknown job and `ValueError`
for a job that is already completed, failed or cancelled. `cleanup_old(age)`
forgets finished jobs completed more than `age` ago; pending and running jobs
are never removed. `Job.to_dict()` describes a job as the API reports it.

## Talking to a cluster leader

```python
from espbrew.client import Client, FlashSubmitRequest

with Client("http://localhost:8080") as client:
    for device in client.list_devices():
        print(device.path, device.state)

    upload = client.upload_firmware("build/app.bin")
    submitted = client.submit_flash(
        FlashSubmitRequest(device_path="/dev/ttyUSB0", file_id=upload.file_id)
    )

    progress = client.connect_progress(submitted.job_id)
    progress.stream(lambda message: print(message.type, message.progress))
```

The client also has `get_status`, `submit_erase`, `read_flash`,
`get_read_flash_status`, `download_read_flash` and `cancel_job`. Requests that
fail with a connection error, a 5xx status or 429 are retried (three retries by
default, the delay growing with each attempt); change this with
`set_retry_policy` and `set_timeout`. Other failures raise `ClientError`.
`ProgressClient.stream` returns when the job completes or the socket closes
normally, and raises `ClientError` when the job fails.

## Watching a serial port remotely

```python
from espbrew.monitor_client import MonitorClient, MonitorConfig, device_name

assert device_name("/dev/cu.usbmodem1401") == "cu.usbmodem1401"

monitor = MonitorClient("http://localhost:8080", "/dev/ttyUSB0", MonitorConfig(reset=True))
with monitor:
    for chunk in monitor.stream():
        print(chunk.decode(errors="replace"), end="")
```

`stream()` connects to the leader's monitor endpoint for the device and yields
the bytes the board prints. It raises `MonitorError` on read errors, on server
errors and when the server ends the session (for example when the `exit_on`
pattern matched), and ends quietly after `close()`. `reset()` asks the server
to reset the board; `reserve_device` and `release_device` hold the board for a
client while it is watched.

## Finding boards locally

```python
from espbrew.serial_scan import Port, Scanner
from espbrew.watcher import Watcher, deduplicate_ports

ports = [Port("/dev/cu.usbmodem1401"), Port("/dev/tty.usbmodem1401")]
assert [p.path for p in deduplicate_ports(ports)] == ["/dev/cu.usbmodem1401"]

print(Scanner().scan_esp())

with Watcher() as watcher:
    for event in watcher.events():
        print(event.type.value, event.path)
```

`Watcher` polls the serial ports every two seconds (set `interval` to change
it) and queues `added` and `removed` events for ports whose names look like ESP
boards, preferring the macOS `cu.*` entry when `cu.*` and `tty.*` exist for the
same board. `scan_once()` runs a single scan and returns the events it queued.
Boards are recognised by port name only; vendor and product ids reported are
fixed ESP values, not read from USB.

## Peers

`PeerTracker(node_id)` records peers from service TXT fields
(`node_id=...`, `role=...`) with `process_entry`, ignores its own node id,
lists them with `peers()` and forgets those not seen for two minutes with
`cleanup_stale()`. `local_ip()` returns a non-loopback IPv4 address of the host
or raises `OSError`.

## What this package does not do

- It does not announce or browse mDNS services; `PeerTracker` only keeps the
  peers it is given.
- It has no leader or peer node, no HTTP server and no job executor: the
  clients talk to a leader that runs elsewhere.
- It does not flash, erase or read boards itself, and stores nothing on disk.
- It installs no command-line program.