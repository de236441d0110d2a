"""
RemoteDevice: the user-facing entry point.

A RemoteDevice is one logical remote executor. It validates every
operation locally (shapes, dtypes, ownership), then hands it to its
backend and wraps the returned handle in a new Tensor.
"""

import numpy as np
from typing import Optional, Sequence

from rtensor.client import shapes
from rtensor.client.backend import Backend, create_backend
from rtensor.client.distribution import Distribution
from rtensor.client.tensor import Tensor
from rtensor.config import ClientConfig, default_endpoint, get_config
from rtensor.errors import DtypeMismatch, ProtocolError


class RemoteDevice:
    """
    A remote executor reachable over the network.

    Example:
        with RemoteDevice("tcp://localhost:3000") as device:
            a = device.ones((3, 3))
            b = device.random((3, 3), Distribution.uniform(-1.0, 1.0))
            print(a @ b)
    """

    def __init__(self, endpoint: Optional[str] = None, config: Optional[ClientConfig] = None,
                 transport_factory=None, backend: str = 'remote'):
        self.endpoint = endpoint or default_endpoint()
        self.config = config or get_config()
        self.backend: Backend = create_backend(
            backend, endpoint=self.endpoint, config=self.config, transport_factory=transport_factory
        )

    @property
    def connection(self):
        return self.backend.connection

    @property
    def is_open(self) -> bool:
        return self.backend.is_open

    # Plumbing

    def _check(self, *tensors: Tensor):
        for tensor in tensors:
            if not isinstance(tensor, Tensor):
                raise TypeError(f"Expected a Tensor, got {type(tensor).__name__}")
            if tensor.device is not self:
                raise ValueError(f"Tensor belongs to {tensor.device!r}, not {self!r}")
            tensor._live_handle().check()

    def _execute(self, opcode: str, inputs: Sequence[Tensor], expected_shape, expected_dtype: str,
                 params: Optional[dict] = None, data: Optional[np.ndarray] = None) -> Tensor:
        handle = self.backend.execute(opcode, [t.handle for t in inputs], params, data)
        if handle.shape != tuple(expected_shape) or handle.dtype != expected_dtype:
            handle.release()
            raise ProtocolError(
                f"'{opcode}' returned {handle.dtype}{list(handle.shape)}, "
                f"expected {expected_dtype}{list(expected_shape)}"
            )
        return Tensor(self, handle)

    def fetch(self, tensor: Tensor) -> np.ndarray:
        """Copy a tensor's data to the host (sync point)."""
        self._check(tensor)
        return self.backend.fetch(tensor.handle)

    # Creation

    def _create(self, opcode: str, shape, dtype, params: Optional[dict] = None) -> Tensor:
        shape = shapes.normalize_shape(shape)
        dtype = shapes.normalize_dtype(dtype)
        params = {'shape': list(shape), 'dtype': dtype, **(params or {})}
        return self._execute(opcode, [], shape, dtype, params)

    def ones(self, shape, dtype='float32') -> Tensor:
        return self._create('ones', shape, dtype)

    def zeros(self, shape, dtype='float32') -> Tensor:
        return self._create('zeros', shape, dtype)

    def full(self, shape, value, dtype='float32') -> Tensor:
        """Tensor of the given shape filled with `value`."""
        dtype = shapes.normalize_dtype(dtype)
        if dtype == 'bool':
            if not isinstance(value, (bool, np.bool_)):
                raise DtypeMismatch(f"Cannot fill a bool tensor with {value!r}")
            value = bool(value)
        else:
            value = shapes.check_scalar('fill', dtype, value)
        return self._create('full', shape, dtype, {'value': value})

    def random(self, shape, distribution: Optional[Distribution] = None, dtype='float32') -> Tensor:
        """Tensor sampled from `distribution` (uniform [0, 1) by default)."""
        dtype = shapes.normalize_dtype(dtype)
        distribution = distribution or Distribution.default()
        if distribution.kind != 'bernoulli':
            shapes.check_float(f"random ({distribution.kind})", dtype)
        return self._create('random', shape, dtype, distribution.to_params())

    def from_numpy(self, array: np.ndarray) -> Tensor:
        """Upload a numpy array."""
        array = np.asarray(array)
        dtype = shapes.normalize_dtype(array.dtype)
        return self._execute('upload', [], array.shape, dtype, data=array)

    def tensor(self, data, dtype=None) -> Tensor:
        """Upload Python data (nested lists, scalars) or an array."""
        if dtype is None:
            array = np.asarray(data)
            if array.dtype == np.float64 and not isinstance(data, np.ndarray):
                # Python floats default to float32, like ones()/zeros()
                array = array.astype(np.float32)
        else:
            array = np.asarray(data, dtype=shapes.normalize_dtype(dtype))
        return self.from_numpy(array)

    # Elementwise

    def _binary(self, op: str, lhs: Tensor, rhs) -> Tensor:
        if not isinstance(rhs, Tensor):
            return self._scalar(op, lhs, rhs)
        self._check(lhs, rhs)
        shapes.check_same_dtype(op, lhs.dtype, rhs.dtype)
        shapes.check_arithmetic(op, lhs.dtype)
        shape = shapes.elementwise_shape(op, lhs.shape, rhs.shape)
        return self._execute(op, [lhs, rhs], shape, lhs.dtype)

    def _scalar(self, op: str, tensor: Tensor, value) -> Tensor:
        self._check(tensor)
        shapes.check_arithmetic(op, tensor.dtype)
        value = shapes.check_scalar(op, tensor.dtype, value)
        return self._execute(f"{op}_scalar", [tensor], tensor.shape, tensor.dtype, {'value': value})

    def add(self, lhs: Tensor, rhs) -> Tensor:
        return self._binary('add', lhs, rhs)

    def sub(self, lhs: Tensor, rhs) -> Tensor:
        return self._binary('sub', lhs, rhs)

    def mul(self, lhs: Tensor, rhs) -> Tensor:
        return self._binary('mul', lhs, rhs)

    def div(self, lhs: Tensor, rhs) -> Tensor:
        return self._binary('div', lhs, rhs)

    def rsub(self, tensor: Tensor, value) -> Tensor:
        """value - tensor"""
        return self._scalar('rsub', tensor, value)

    def rdiv(self, tensor: Tensor, value) -> Tensor:
        """value / tensor"""
        return self._scalar('rdiv', tensor, value)

    def _unary(self, op: str, tensor: Tensor, float_only: bool = False) -> Tensor:
        self._check(tensor)
        if float_only:
            shapes.check_float(op, tensor.dtype)
        else:
            shapes.check_arithmetic(op, tensor.dtype)
        return self._execute(op, [tensor], tensor.shape, tensor.dtype)

    def neg(self, tensor: Tensor) -> Tensor:
        return self._unary('neg', tensor)

    def exp(self, tensor: Tensor) -> Tensor:
        return self._unary('exp', tensor, float_only=True)

    def log(self, tensor: Tensor) -> Tensor:
        return self._unary('log', tensor, float_only=True)

    def sqrt(self, tensor: Tensor) -> Tensor:
        return self._unary('sqrt', tensor, float_only=True)

    def abs(self, tensor: Tensor) -> Tensor:
        return self._unary('abs', tensor)

    def relu(self, tensor: Tensor) -> Tensor:
        return self._unary('relu', tensor)

    # Matrix and shape

    def matmul(self, lhs: Tensor, rhs: Tensor) -> Tensor:
        self._check(lhs, rhs)
        shapes.check_same_dtype('matmul', lhs.dtype, rhs.dtype)
        shapes.check_arithmetic('matmul', lhs.dtype)
        shape = shapes.matmul_shape(lhs.shape, rhs.shape)
        return self._execute('matmul', [lhs, rhs], shape, lhs.dtype)

    def transpose(self, tensor: Tensor) -> Tensor:
        self._check(tensor)
        return self._execute('transpose', [tensor], shapes.transpose_shape(tensor.shape), tensor.dtype)

    def reshape(self, tensor: Tensor, shape) -> Tensor:
        self._check(tensor)
        shape = shapes.reshape_shape(tensor.shape, shape)
        return self._execute('reshape', [tensor], shape, tensor.dtype, {'shape': list(shape)})

    # Reductions

    def _reduce(self, op: str, tensor: Tensor, axis, keepdims: bool, float_only: bool) -> Tensor:
        self._check(tensor)
        if float_only:
            shapes.check_float(op, tensor.dtype)
        else:
            shapes.check_arithmetic(op, tensor.dtype)
        axis = shapes.normalize_axis(tensor.shape, axis)
        shape = shapes.reduce_shape(tensor.shape, axis, keepdims)
        return self._execute(op, [tensor], shape, tensor.dtype, {'axis': axis, 'keepdims': bool(keepdims)})

    def sum(self, tensor: Tensor, axis: Optional[int] = None, keepdims: bool = False) -> Tensor:
        return self._reduce('sum', tensor, axis, keepdims, float_only=False)

    def mean(self, tensor: Tensor, axis: Optional[int] = None, keepdims: bool = False) -> Tensor:
        return self._reduce('mean', tensor, axis, keepdims, float_only=True)

    # Lifetime

    def close(self):
        """Flush pending requests, release every remote tensor, disconnect."""
        self.backend.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __repr__(self):
        return f"RemoteDevice({self.endpoint!r})"
