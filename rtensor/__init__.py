"""
rtensor - Remote Tensor Execution

Run tensor operations on a remote executor as if the tensors were local.

Simple API:
    import rtensor

    # Optionally pick the executor (default: $REMOTE_BACKEND_URL or tcp://localhost:3000)
    # rtensor.connect('tcp://gpu-box:3000')

    a = rtensor.ones((3, 3))
    b = rtensor.random((3, 3), rtensor.Distribution.uniform(-1.0, 1.0))
    c = a + b

    # Get data back (sync point)
    data = c.numpy()
"""

__version__ = "0.1.0"

import atexit
import threading
import numpy as np
from typing import List, Optional, Union

from rtensor.client.device import RemoteDevice
from rtensor.client.distribution import Distribution
from rtensor.client.tensor import Tensor, TensorData
from rtensor.config import ClientConfig, get_config, load_config, load_config_from_env
from rtensor.errors import (
    ConnectionError, ConnectionLost, CorrelationIdExhausted, DtypeMismatch, ProtocolError,
    RemoteError, RemoteExecutionError, ShapeMismatch, StaleHandle, Timeout
)

# Dtype constants
float32 = 'float32'
float64 = 'float64'
int32 = 'int32'
int64 = 'int64'
bool = 'bool'

# Global state
_default_device: Optional[RemoteDevice] = None
_device_lock = threading.Lock()


def connect(endpoint: Optional[str] = None, config: Optional[ClientConfig] = None) -> RemoteDevice:
    """
    Connect the default device to a remote executor.

    Args:
        endpoint: Endpoint URL, e.g. "tcp://localhost:3000". Defaults to
            $REMOTE_BACKEND_URL.

    Example:
        rtensor.connect('tcp://localhost:3000')
    """
    global _default_device

    with _device_lock:
        if _default_device is not None and _default_device.is_open:
            raise RuntimeError(f"Already connected to {_default_device.endpoint}")
        _retire_default()
        if config is None:
            load_config_from_env()
        _default_device = RemoteDevice(endpoint, config=config)
        return _default_device


def default_device() -> RemoteDevice:
    """The default device, connecting on first use."""
    global _default_device

    with _device_lock:
        if _default_device is None or not _default_device.is_open:
            _retire_default()
            load_config_from_env()
            _default_device = RemoteDevice()
        return _default_device


def _retire_default():
    """Close a default device that failed or was closed. Caller holds _device_lock."""
    global _default_device

    device, _default_device = _default_device, None
    if device is not None:
        device.close()


def disconnect():
    """Close the default device, releasing every tensor it owns."""
    global _default_device

    with _device_lock:
        device, _default_device = _default_device, None
    if device is not None:
        device.close()


def tensor(data: Union[List, np.ndarray], dtype: Optional[str] = None) -> Tensor:
    """
    Create a tensor from data.

    Args:
        data: List or numpy array
        dtype: Data type (default: float32 for Python floats, else the data's dtype)

    Returns:
        Tensor on the default device
    """
    return default_device().tensor(data, dtype=dtype)


def from_numpy(array: np.ndarray) -> Tensor:
    """Upload a numpy array to the default device."""
    return default_device().from_numpy(array)


def ones(shape, dtype: str = 'float32') -> Tensor:
    return default_device().ones(shape, dtype=dtype)


def zeros(shape, dtype: str = 'float32') -> Tensor:
    return default_device().zeros(shape, dtype=dtype)


def full(shape, value, dtype: str = 'float32') -> Tensor:
    return default_device().full(shape, value, dtype=dtype)


def random(shape, distribution: Optional[Distribution] = None, dtype: str = 'float32') -> Tensor:
    """
    Create a random tensor.

    Args:
        shape: Tensor shape
        distribution: Distribution to sample from (default: uniform [0, 1))

    Returns:
        Tensor on the default device
    """
    return default_device().random(shape, distribution, dtype=dtype)


def _cleanup():
    """Release remote tensors of the default device at interpreter exit."""
    device = _default_device
    if device is not None and device.is_open:
        device.close()


atexit.register(_cleanup)
