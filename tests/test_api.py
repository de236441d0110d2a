"""
Test the module-level API (default device).
"""

import numpy as np
import pytest

import rtensor
from conftest import wait_until


@pytest.fixture
def default_device(zmq_server, monkeypatch):
    monkeypatch.setenv('REMOTE_BACKEND_URL', zmq_server.endpoint)
    monkeypatch.delenv('RTENSOR_CONFIG', raising=False)
    rtensor.disconnect()
    yield
    rtensor.disconnect()


def test_default_device_connects_lazily(default_device, zmq_server):
    a = rtensor.ones((2, 2))
    b = rtensor.full((2, 2), 3.0)
    assert (a + b).numpy().tolist() == [[4.0, 4.0], [4.0, 4.0]]
    assert a.device is rtensor.default_device()
    assert a.device.endpoint == zmq_server.endpoint


def test_module_level_creation(default_device):
    assert rtensor.zeros(3, dtype=rtensor.int32).dtype == 'int32'
    assert rtensor.tensor([1.5, 2.5]).dtype == 'float32'
    np.testing.assert_array_equal(rtensor.from_numpy(np.eye(2)).numpy(), np.eye(2))
    sample = rtensor.random((50,), rtensor.Distribution.uniform(2.0, 3.0)).numpy()
    assert np.all((sample >= 2.0) & (sample <= 3.0))


def test_connect_twice_is_an_error(default_device, zmq_server):
    device = rtensor.connect(zmq_server.endpoint)
    assert rtensor.default_device() is device
    with pytest.raises(RuntimeError):
        rtensor.connect(zmq_server.endpoint)


def test_disconnect_releases_remote_tensors(default_device, zmq_server):
    kept = [rtensor.ones((4,)) for _ in range(3)]
    assert zmq_server.live_tensors() == 3
    rtensor.disconnect()
    assert wait_until(lambda: zmq_server.live_tensors() == 0)
    assert all(t.handle.state.value == 'released' for t in kept)


def test_errors_are_exported():
    assert issubclass(rtensor.ShapeMismatch, rtensor.RemoteError)
    assert issubclass(rtensor.Timeout, TimeoutError)
    assert rtensor.__version__ == "0.1.0"


class FailedDevice:
    """Stands in for a default device whose connection has failed."""
    is_open = False
    endpoint = 'tcp://127.0.0.1:1'

    def __init__(self):
        self.closed = 0

    def close(self):
        self.closed += 1


@pytest.mark.parametrize("reopen", [
    lambda endpoint: rtensor.connect(endpoint),
    lambda endpoint: rtensor.default_device(),
], ids=['connect', 'default_device'])
def test_failed_default_device_is_closed_before_replacement(default_device, zmq_server, monkeypatch, reopen):
    failed = FailedDevice()
    monkeypatch.setattr(rtensor, '_default_device', failed)

    device = reopen(zmq_server.endpoint)
    assert failed.closed == 1
    assert device is not failed
    assert rtensor.default_device() is device
