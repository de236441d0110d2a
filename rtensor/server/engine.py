"""
Engine abstraction for the reference executor.

Engines own the numeric kernels. The executor only looks up tensors,
calls the engine and keeps the results. Every result keeps the dtype of
its inputs, so the shape/dtype a client predicts locally is exactly what
comes back.
"""

import numpy as np
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class Engine(ABC):
    """Abstract base class for computation engines."""

    @abstractmethod
    def full(self, shape: tuple, value, dtype: str) -> Any:
        """Tensor filled with one value (ones/zeros/full)."""
        pass

    @abstractmethod
    def random(self, shape: tuple, dtype: str, distribution: str, params: Dict[str, float]) -> Any:
        """Tensor sampled from a distribution."""
        pass

    @abstractmethod
    def create_tensor(self, data: np.ndarray) -> Any:
        """Create a tensor from a numpy array."""
        pass

    @abstractmethod
    def to_numpy(self, tensor: Any) -> np.ndarray:
        """Convert tensor to numpy array."""
        pass

    @abstractmethod
    def binary(self, op: str, a: Any, b: Any) -> Any:
        """Elementwise add/sub/mul/div with broadcasting."""
        pass

    @abstractmethod
    def scalar(self, op: str, a: Any, value) -> Any:
        """Elementwise op against a scalar (add/sub/mul/div/rsub/rdiv)."""
        pass

    @abstractmethod
    def unary(self, op: str, a: Any) -> Any:
        """neg, exp, log, sqrt, abs, relu"""
        pass

    @abstractmethod
    def matmul(self, a: Any, b: Any) -> Any:
        """Matrix multiplication."""
        pass

    @abstractmethod
    def transpose(self, tensor: Any) -> Any:
        """Transpose (swap last two dimensions)."""
        pass

    @abstractmethod
    def reshape(self, tensor: Any, shape: tuple) -> Any:
        pass

    @abstractmethod
    def reduce(self, op: str, tensor: Any, axis: Optional[int], keepdims: bool) -> Any:
        """sum or mean over one axis, or over everything."""
        pass


class NumpyEngine(Engine):
    """NumPy-based engine (CPU only, eager execution)."""

    UNARY = {
        'neg': np.negative,
        'exp': np.exp,
        'log': np.log,
        'sqrt': np.sqrt,
        'abs': np.abs,
        'relu': lambda a: np.maximum(a, 0),
    }

    def __init__(self, seed: Optional[int] = None):
        self.rng = np.random.default_rng(seed)

    def full(self, shape: tuple, value, dtype: str) -> np.ndarray:
        return np.full(shape, value, dtype=dtype)

    def random(self, shape: tuple, dtype: str, distribution: str, params: Dict[str, float]) -> np.ndarray:
        if distribution == 'uniform':
            data = self.rng.uniform(params['low'], params['high'], size=shape)
        elif distribution == 'normal':
            data = self.rng.normal(params['mean'], params['std'], size=shape)
        elif distribution == 'bernoulli':
            data = self.rng.random(size=shape) < params['p']
        else:
            raise ValueError(f"Unknown distribution: {distribution}")
        return np.asarray(data).astype(dtype)

    def create_tensor(self, data: np.ndarray) -> np.ndarray:
        return np.array(data, copy=True)

    def to_numpy(self, tensor: np.ndarray) -> np.ndarray:
        return tensor

    def binary(self, op: str, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return self._apply(op, a, b).astype(a.dtype, copy=False)

    def scalar(self, op: str, a: np.ndarray, value) -> np.ndarray:
        if op == 'rsub':
            result = value - a
        elif op == 'rdiv':
            result = self._divide(np.asarray(value, dtype=a.dtype), a)
        else:
            result = self._apply(op, a, np.asarray(value, dtype=a.dtype))
        return np.asarray(result).astype(a.dtype, copy=False)

    def _apply(self, op: str, a, b):
        if op == 'add':
            return a + b
        if op == 'sub':
            return a - b
        if op == 'mul':
            return a * b
        if op == 'div':
            return self._divide(a, b)
        raise ValueError(f"Unknown elementwise op: {op}")

    def _divide(self, a, b):
        # Integer tensors divide like integers
        if np.issubdtype(np.result_type(a, b), np.integer):
            if np.any(np.asarray(b) == 0):
                raise ZeroDivisionError("integer division by zero")
            return np.floor_divide(a, b)
        return np.true_divide(a, b)

    def unary(self, op: str, a: np.ndarray) -> np.ndarray:
        if op not in self.UNARY:
            raise ValueError(f"Unknown unary op: {op}")
        return self.UNARY[op](a).astype(a.dtype, copy=False)

    def matmul(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return a @ b

    def transpose(self, tensor: np.ndarray) -> np.ndarray:
        # For 1D or 0D arrays, transpose is a no-op
        if tensor.ndim < 2:
            return tensor.copy()
        # np.transpose() without args reverses ALL axes, but we only want last 2
        return np.ascontiguousarray(np.swapaxes(tensor, -2, -1))

    def reshape(self, tensor: np.ndarray, shape: tuple) -> np.ndarray:
        return tensor.reshape(shape).copy()

    def reduce(self, op: str, tensor: np.ndarray, axis: Optional[int], keepdims: bool) -> np.ndarray:
        if op == 'sum':
            result = np.sum(tensor, axis=axis, keepdims=keepdims)
        elif op == 'mean':
            result = np.mean(tensor, axis=axis, keepdims=keepdims)
        else:
            raise ValueError(f"Unknown reduction: {op}")
        return np.asarray(result).astype(tensor.dtype, copy=False)


def create_engine(backend: str = 'numpy', seed: Optional[int] = None) -> Engine:
    """
    Factory function to create an engine.

    Args:
        backend: 'numpy'
        seed: Seed for random tensors (None = nondeterministic)

    Returns:
        Engine instance
    """
    if backend == 'numpy':
        return NumpyEngine(seed=seed)
    raise ValueError(f"Unknown backend: {backend}")
