"""
Tensor wrapper for remote tensors.

A Tensor looks like a local array but only holds a handle; every operation
goes through its RemoteDevice. Several wrappers may share one handle
(clone()), and the remote tensor is released when the last one is dropped.

Keep this SIMPLE and READABLE.
"""

import numpy as np
import weakref
from typing import TYPE_CHECKING

from rtensor.dispatcher.tensor_handle import RemoteTensorHandle
from rtensor.errors import RemoteError, StaleHandle, stale_handle_error

if TYPE_CHECKING:
    from rtensor.client.device import RemoteDevice


class TensorData:
    """Wrapper for fetched tensor data that provides a .numpy() method."""

    def __init__(self, data: np.ndarray):
        self._data = data

    def numpy(self) -> np.ndarray:
        """Get the underlying numpy array."""
        return self._data

    @property
    def shape(self):
        return self._data.shape

    @property
    def dtype(self):
        return self._data.dtype

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        """Allow numpy to convert this to an array."""
        if dtype is None:
            return self._data
        return self._data.astype(dtype)

    def __repr__(self):
        return repr(self._data)

    def __str__(self):
        return str(self._data)


class Tensor:
    """
    Local stand-in for a tensor that lives on a remote executor.

    Users interact with this like a normal tensor. Operators build remote
    operations; reading data (numpy(), data, repr) is a sync point.
    """

    def __init__(self, device: 'RemoteDevice', handle: RemoteTensorHandle):
        self.device = device
        self.handle = handle.retain()
        # Drop our reference when this wrapper goes away
        self._finalizer = weakref.finalize(self, handle.drop)

    @property
    def shape(self) -> tuple:
        return self.handle.shape

    @property
    def dtype(self) -> str:
        return self.handle.dtype

    @property
    def ndim(self) -> int:
        return len(self.handle.shape)

    @property
    def size(self) -> int:
        return int(np.prod(self.handle.shape, dtype=np.int64))

    @property
    def is_released(self) -> bool:
        return not self._finalizer.alive

    def _live_handle(self) -> RemoteTensorHandle:
        """The handle, or StaleHandle if this wrapper was released."""
        if not self._finalizer.alive:
            raise StaleHandle(stale_handle_error(self.handle.remote_id, 'released'))
        return self.handle

    # Reading

    @property
    def data(self) -> TensorData:
        """
        Fetch the tensor's data from the remote executor.

        NOTE: This is a sync point - blocks until every earlier operation
        on this tensor has been computed remotely.
        """
        return TensorData(self.device.fetch(self))

    def numpy(self) -> np.ndarray:
        return self.data.numpy()

    def item(self):
        """Get the scalar value of a 1-element tensor."""
        data = self.numpy()
        if data.size != 1:
            raise ValueError(f"item() only works on tensors with 1 element, got {data.size}")
        return data.reshape(()).item()

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        data = self.numpy()
        return data if dtype is None else data.astype(dtype)

    def __repr__(self):
        try:
            data = self.numpy()
        except RemoteError:
            # Fallback if data fetch fails (released, connection gone, ...)
            return (f"Tensor(id={self.handle.remote_id}, shape={self.shape}, "
                    f"dtype={self.dtype}, state={self.handle.state.value})")
        data_str = np.array2string(data, threshold=10, edgeitems=3, precision=4, suppress_small=True)
        return f"tensor({data_str}, dtype={self.dtype})"

    def __str__(self):
        return self.__repr__()

    def __len__(self):
        if not self.shape:
            raise TypeError("len() of a 0-d tensor")
        return self.shape[0]

    # Binary operations

    def __add__(self, other):
        return self.device.add(self, other)

    def __radd__(self, other):
        return self.device.add(self, other)

    def __sub__(self, other):
        return self.device.sub(self, other)

    def __rsub__(self, other):
        """Reverse subtraction: scalar - self"""
        return self.device.rsub(self, other)

    def __mul__(self, other):
        return self.device.mul(self, other)

    def __rmul__(self, other):
        return self.device.mul(self, other)

    def __truediv__(self, other):
        return self.device.div(self, other)

    def __rtruediv__(self, other):
        """Reverse division: scalar / self"""
        return self.device.rdiv(self, other)

    def __matmul__(self, other):
        if not isinstance(other, Tensor):
            return NotImplemented
        return self.device.matmul(self, other)

    def __neg__(self):
        return self.device.neg(self)

    def __abs__(self):
        return self.device.abs(self)

    # Named operations

    def add(self, other):
        return self.device.add(self, other)

    def sub(self, other):
        return self.device.sub(self, other)

    def mul(self, other):
        return self.device.mul(self, other)

    def div(self, other):
        return self.device.div(self, other)

    def matmul(self, other):
        return self.device.matmul(self, other)

    def neg(self):
        return self.device.neg(self)

    def exp(self):
        return self.device.exp(self)

    def log(self):
        return self.device.log(self)

    def sqrt(self):
        return self.device.sqrt(self)

    def abs(self):
        return self.device.abs(self)

    def relu(self):
        """ReLU activation: max(0, x)"""
        return self.device.relu(self)

    def transpose(self):
        """Swap the last two dimensions."""
        return self.device.transpose(self)

    @property
    def T(self):
        """Transpose property (NumPy style)"""
        return self.transpose()

    def reshape(self, *shape):
        """Reshape tensor to new shape. One dimension may be -1."""
        if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
            shape = tuple(shape[0])
        return self.device.reshape(self, shape)

    def sum(self, axis=None, keepdims=False):
        """Sum over one axis, or over all elements when axis is None."""
        return self.device.sum(self, axis=axis, keepdims=keepdims)

    def mean(self, axis=None, keepdims=False):
        """Mean over one axis, or over all elements when axis is None."""
        return self.device.mean(self, axis=axis, keepdims=keepdims)

    # Lifetime

    def clone(self) -> 'Tensor':
        """
        Another wrapper for the same remote tensor.

        No remote call: the clone shares the handle and keeps it alive
        until it is dropped too.
        """
        return Tensor(self.device, self._live_handle())

    def release(self):
        """Drop this wrapper's reference now instead of at garbage collection."""
        self._finalizer()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
