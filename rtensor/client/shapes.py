"""
Local shape and dtype checks.

Everything here runs before a request is built, so an invalid operation
fails immediately without a network round trip.
"""

import numpy as np
from typing import Optional, Sequence, Tuple

from rtensor.errors import DtypeMismatch, ShapeMismatch
from rtensor.transport.protocol import DTYPES


SUPPORTED_DTYPES = tuple(DTYPES)
FLOAT_DTYPES = ('float32', 'float64')
INT_DTYPES = ('int32', 'int64')


def normalize_dtype(dtype) -> str:
    """Turn 'float32', np.float32, np.dtype(...) into a wire dtype name."""
    try:
        name = np.dtype(dtype).name
    except TypeError:
        raise DtypeMismatch(f"Unknown dtype: {dtype!r}")
    if name not in DTYPES:
        raise DtypeMismatch(f"Unsupported dtype {name} (supported: {', '.join(SUPPORTED_DTYPES)})")
    return name


def normalize_shape(shape) -> Tuple[int, ...]:
    """Accept an int or a sequence of non-negative ints."""
    if isinstance(shape, (int, np.integer)):
        shape = (shape,)
    try:
        shape = tuple(int(d) for d in shape)
    except (TypeError, ValueError):
        raise ShapeMismatch(f"Invalid shape: {shape!r}")
    if any(d < 0 for d in shape):
        raise ShapeMismatch(f"Negative dimension in shape {shape}")
    return shape


def check_same_dtype(op: str, lhs: str, rhs: str):
    if lhs != rhs:
        raise DtypeMismatch(f"Cannot {op} tensors of dtype {lhs} and {rhs}")


def check_arithmetic(op: str, dtype: str):
    if dtype == 'bool':
        raise DtypeMismatch(f"Cannot {op} bool tensors")


def check_float(op: str, dtype: str):
    if dtype not in FLOAT_DTYPES:
        raise DtypeMismatch(f"{op} requires a floating point tensor, got {dtype}")


def check_scalar(op: str, dtype: str, value) -> float:
    """Validate a Python scalar operand against the tensor dtype."""
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, float, np.integer, np.floating)):
        raise DtypeMismatch(f"Cannot {op} a {dtype} tensor and {type(value).__name__}")
    if dtype in INT_DTYPES and not float(value).is_integer():
        raise DtypeMismatch(f"Cannot {op} a {dtype} tensor and non-integer scalar {value}")
    return value.item() if isinstance(value, np.generic) else value


def elementwise_shape(op: str, lhs: Sequence[int], rhs: Sequence[int]) -> Tuple[int, ...]:
    """Result shape of an elementwise op (numpy broadcasting rules)."""
    try:
        return tuple(np.broadcast_shapes(tuple(lhs), tuple(rhs)))
    except ValueError:
        raise ShapeMismatch(f"Cannot {op} tensors of shape {tuple(lhs)} and {tuple(rhs)}")


def matmul_shape(lhs: Sequence[int], rhs: Sequence[int]) -> Tuple[int, ...]:
    """
    Result shape of a matrix product.

    Both operands need at least 2 dimensions. Leading (batch) dimensions
    broadcast: (b, m, n) @ (n, p) -> (b, m, p).
    """
    lhs, rhs = tuple(lhs), tuple(rhs)
    if len(lhs) < 2 or len(rhs) < 2:
        raise ShapeMismatch(f"matmul needs at least 2-d tensors, got {lhs} and {rhs}")
    if lhs[-1] != rhs[-2]:
        raise ShapeMismatch(f"Cannot matmul shapes {lhs} and {rhs}: inner dimensions {lhs[-1]} != {rhs[-2]}")
    try:
        batch = np.broadcast_shapes(lhs[:-2], rhs[:-2])
    except ValueError:
        raise ShapeMismatch(f"Cannot matmul shapes {lhs} and {rhs}: batch dimensions differ")
    return tuple(batch) + (lhs[-2], rhs[-1])


def transpose_shape(shape: Sequence[int]) -> Tuple[int, ...]:
    """Swap the last two dimensions (no-op below 2-d)."""
    shape = list(shape)
    if len(shape) >= 2:
        shape[-2], shape[-1] = shape[-1], shape[-2]
    return tuple(shape)


def reshape_shape(shape: Sequence[int], new_shape) -> Tuple[int, ...]:
    """Resolve a target shape (one -1 allowed) and check the element count."""
    size = int(np.prod(shape, dtype=np.int64))
    if isinstance(new_shape, (int, np.integer)):
        new_shape = (new_shape,)
    new_shape = [int(d) for d in new_shape]

    unknown = [i for i, d in enumerate(new_shape) if d == -1]
    if len(unknown) > 1:
        raise ShapeMismatch(f"Only one dimension can be -1, got {tuple(new_shape)}")
    if any(d < -1 for d in new_shape):
        raise ShapeMismatch(f"Invalid shape {tuple(new_shape)}")

    known = int(np.prod([d for d in new_shape if d != -1], dtype=np.int64))
    if unknown:
        if known == 0 or size % known != 0:
            raise ShapeMismatch(f"Cannot reshape {tuple(shape)} into {tuple(new_shape)}")
        new_shape[unknown[0]] = size // known
    elif known != size:
        raise ShapeMismatch(f"Cannot reshape {tuple(shape)} ({size} elements) into {tuple(new_shape)}")
    return tuple(new_shape)


def reduce_shape(shape: Sequence[int], axis: Optional[int], keepdims: bool) -> Tuple[int, ...]:
    """Result shape of sum/mean over one axis (or all axes)."""
    shape = tuple(shape)
    if axis is None:
        return tuple(1 for _ in shape) if keepdims else ()
    ndim = len(shape)
    if not -ndim <= axis < ndim:
        raise ShapeMismatch(f"Axis {axis} out of range for shape {shape}")
    axis = axis % ndim
    if keepdims:
        return shape[:axis] + (1,) + shape[axis + 1:]
    return shape[:axis] + shape[axis + 1:]


def normalize_axis(shape: Sequence[int], axis: Optional[int]) -> Optional[int]:
    if axis is None:
        return None
    reduce_shape(shape, axis, False)
    return axis % len(shape)
