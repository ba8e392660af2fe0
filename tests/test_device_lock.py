import threading
import time
from datetime import timedelta
from unittest import mock

from espbrew.device_lock import DeviceLock, DeviceRegistry, DeviceState


def test_reserve_available():
    lock = DeviceLock(state=DeviceState.AVAILABLE)
    assert lock.reserve("job1") is True
    assert lock.state is DeviceState.RESERVED
    assert lock.owner == "job1"


def test_reserve_busy():
    lock = DeviceLock(state=DeviceState.BUSY, owner="job1")
    assert lock.reserve("job2") is False
    assert lock.owner == "job1"


def test_release():
    lock = DeviceLock(state=DeviceState.RESERVED, owner="job1")
    assert lock.release("job1") is True
    assert lock.state is DeviceState.AVAILABLE


def test_release_wrong_owner():
    lock = DeviceLock(state=DeviceState.RESERVED, owner="job1")
    assert lock.release("job2") is False
    assert lock.state is DeviceState.RESERVED


def test_acquire():
    lock = DeviceLock(state=DeviceState.RESERVED, owner="job1")
    assert lock.acquire("job1") is True
    assert lock.state is DeviceState.BUSY


def test_acquire_rules():
    busy = DeviceLock(state=DeviceState.BUSY, owner="job1")
    assert busy.acquire("job1") is True
    assert busy.acquire("job2") is False
    assert DeviceLock(state=DeviceState.ERROR, owner="job1").acquire("job1") is False
    assert DeviceLock(state=DeviceState.AVAILABLE).acquire("job1") is False


def test_force_release():
    lock = DeviceLock(state=DeviceState.BUSY, owner="job1")
    assert lock.force_release() == "job1"
    assert lock.state is DeviceState.AVAILABLE
    assert lock.owner == ""


def test_concurrent_access():
    lock = DeviceLock()

    def worker(owner):
        if lock.reserve(owner):
            time.sleep(0.01)
            lock.release(owner)

    threads = [threading.Thread(target=worker, args=(chr(ord("a") + i),)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert lock.state is DeviceState.AVAILABLE


def test_reserve_timestamp():
    lock = DeviceLock()
    before = time.time()
    lock.reserve("client1")
    after = time.time()
    assert before <= lock.reserved_at <= after


def test_registry_register():
    reg = DeviceRegistry()
    reg.register("/dev/ttyUSB0")
    reg.register("/dev/ttyUSB0")
    assert reg.list_devices() == {"/dev/ttyUSB0": DeviceState.AVAILABLE}


def test_registry_reserve():
    reg = DeviceRegistry()
    reg.register("/dev/ttyUSB0")
    assert reg.reserve("/dev/ttyUSB0", "job1") is True
    assert reg.reserve("/dev/ttyUSB0", "job2") is False
    assert reg.get_state("/dev/ttyUSB0") is DeviceState.RESERVED


def test_registry_unknown_device():
    reg = DeviceRegistry()
    assert reg.reserve("/dev/none", "job1") is False
    assert reg.release("/dev/none", "job1") is False
    assert reg.get_state("/dev/none") is DeviceState.ERROR


def test_registry_unregister():
    reg = DeviceRegistry()
    reg.register("/dev/ttyUSB0")
    reg.unregister("/dev/ttyUSB0")
    assert reg.list_devices() == {}


def test_registry_available_devices():
    reg = DeviceRegistry()
    reg.register("/dev/ttyUSB0")
    reg.register("/dev/ttyUSB1")
    reg.reserve("/dev/ttyUSB0", "job1")
    assert reg.available_devices() == ["/dev/ttyUSB1"]


def test_registry_release_returns_device():
    reg = DeviceRegistry()
    reg.register("/dev/ttyUSB0")
    reg.reserve("/dev/ttyUSB0", "job1")
    assert reg.release("/dev/ttyUSB0", "job1") is True
    assert reg.get_state("/dev/ttyUSB0") is DeviceState.AVAILABLE


def test_cleanup_stale_reservations():
    reg = DeviceRegistry()
    for path in ("/dev/ttyUSB0", "/dev/ttyUSB1", "/dev/ttyUSB2"):
        reg.register(path)

    with mock.patch("time.time", return_value=time.time() - 2 * 3600):
        reg.reserve("/dev/ttyUSB0", "client1")
    reg.reserve("/dev/ttyUSB1", "client2")

    assert reg.cleanup_stale_reservations(timedelta(hours=1)) == 1
    assert reg.get_state("/dev/ttyUSB0") is DeviceState.AVAILABLE
    assert reg.get_state("/dev/ttyUSB1") is DeviceState.RESERVED
    assert reg.get_state("/dev/ttyUSB2") is DeviceState.AVAILABLE


def test_cleanup_stale_reservations_none():
    reg = DeviceRegistry()
    reg.register("/dev/ttyUSB0")
    reg.reserve("/dev/ttyUSB0", "client1")
    assert reg.cleanup_stale_reservations(1) == 0
    assert reg.get_state("/dev/ttyUSB0") is DeviceState.RESERVED


def test_get_owner():
    reg = DeviceRegistry()
    reg.register("/dev/ttyUSB0")
    assert reg.get_owner("/dev/ttyUSB0") == ""
    reg.reserve("/dev/ttyUSB0", "client1")
    assert reg.get_owner("/dev/ttyUSB0") == "client1"


def test_get_owner_not_found():
    assert DeviceRegistry().get_owner("/dev/nonexistent") == ""