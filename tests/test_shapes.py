"""
Test local validation: invalid operations fail before anything is sent.
"""

import numpy as np
import pytest

from rtensor.client import shapes
from rtensor.client.distribution import Distribution
from rtensor.errors import DtypeMismatch, ShapeMismatch


def test_elementwise_shape():
    assert shapes.elementwise_shape('add', (2, 3), (3,)) == (2, 3)
    assert shapes.elementwise_shape('add', (4, 1), (1, 5)) == (4, 5)
    assert shapes.elementwise_shape('add', (), (2,)) == (2,)
    with pytest.raises(ShapeMismatch):
        shapes.elementwise_shape('add', (2, 3), (4,))


def test_matmul_shape():
    assert shapes.matmul_shape((3, 4), (4, 5)) == (3, 5)
    assert shapes.matmul_shape((7, 3, 4), (4, 5)) == (7, 3, 5)
    assert shapes.matmul_shape((2, 1, 3, 4), (6, 4, 5)) == (2, 6, 3, 5)
    with pytest.raises(ShapeMismatch, match="inner"):
        shapes.matmul_shape((3, 4), (5, 6))
    with pytest.raises(ShapeMismatch):
        shapes.matmul_shape((4,), (4, 2))
    with pytest.raises(ShapeMismatch, match="batch"):
        shapes.matmul_shape((2, 3, 4), (3, 4, 5))


def test_reshape_shape():
    assert shapes.reshape_shape((2, 3, 4), (6, -1)) == (6, 4)
    assert shapes.reshape_shape((2, 3), 6) == (6,)
    assert shapes.reshape_shape((0, 3), (-1, 3)) == (0, 3)
    with pytest.raises(ShapeMismatch):
        shapes.reshape_shape((2, 3), (4, 2))
    with pytest.raises(ShapeMismatch):
        shapes.reshape_shape((2, 3), (-1, -1))
    with pytest.raises(ShapeMismatch):
        shapes.reshape_shape((2, 3), (4, -1))


def test_reduce_shape():
    assert shapes.reduce_shape((2, 3), None, False) == ()
    assert shapes.reduce_shape((2, 3), None, True) == (1, 1)
    assert shapes.reduce_shape((2, 3), 0, False) == (3,)
    assert shapes.reduce_shape((2, 3), -1, True) == (2, 1)
    with pytest.raises(ShapeMismatch):
        shapes.reduce_shape((2, 3), 2, False)


def test_transpose_shape():
    assert shapes.transpose_shape((2, 3, 4)) == (2, 4, 3)
    assert shapes.transpose_shape((5,)) == (5,)


def test_normalize():
    assert shapes.normalize_dtype(np.float64) == 'float64'
    assert shapes.normalize_dtype('int32') == 'int32'
    assert shapes.normalize_dtype(bool) == 'bool'
    with pytest.raises(DtypeMismatch):
        shapes.normalize_dtype('float16')
    with pytest.raises(DtypeMismatch):
        shapes.normalize_dtype('not-a-dtype')

    assert shapes.normalize_shape(3) == (3,)
    assert shapes.normalize_shape([2, np.int64(2)]) == (2, 2)
    with pytest.raises(ShapeMismatch):
        shapes.normalize_shape((2, -1))


def test_check_scalar():
    assert shapes.check_scalar('add', 'float32', np.float32(1.5)) == 1.5
    assert shapes.check_scalar('add', 'int64', 3.0) == 3.0
    with pytest.raises(DtypeMismatch):
        shapes.check_scalar('add', 'int64', 0.5)
    with pytest.raises(DtypeMismatch):
        shapes.check_scalar('add', 'float32', True)
    with pytest.raises(DtypeMismatch):
        shapes.check_scalar('add', 'float32', "1")


def test_validation_errors_do_not_touch_the_network(device, network):
    a = device.ones((2, 3))
    b = device.ones((4, 5))
    i = device.ones((2, 3), dtype='int32')
    flags = device.full((2,), True, dtype='bool')
    sent = len(network.transport.sent)

    with pytest.raises(ShapeMismatch):
        a + b
    with pytest.raises(ShapeMismatch):
        a @ b
    with pytest.raises(ShapeMismatch):
        a.reshape(7)
    with pytest.raises(ShapeMismatch):
        a.sum(axis=3)
    with pytest.raises(DtypeMismatch):
        a + i
    with pytest.raises(DtypeMismatch):
        flags * flags
    with pytest.raises(DtypeMismatch):
        i.exp()
    with pytest.raises(DtypeMismatch):
        i.mean()
    with pytest.raises(DtypeMismatch):
        i + 0.5
    with pytest.raises(DtypeMismatch):
        device.full((2,), 1, dtype='bool')
    with pytest.raises(DtypeMismatch):
        device.random((2,), dtype='int32')
    with pytest.raises(DtypeMismatch):
        device.ones((2,), dtype='complex64')
    with pytest.raises(ShapeMismatch):
        device.zeros((2, -3))
    with pytest.raises(TypeError):
        a @ 2
    with pytest.raises(TypeError):
        device.add(a, "x")

    assert len(network.transport.sent) == sent


def test_validation_errors_are_builtin_errors():
    assert issubclass(ShapeMismatch, ValueError)
    assert issubclass(DtypeMismatch, TypeError)


@pytest.mark.parametrize("make", [
    lambda: Distribution.uniform(1.0, 1.0),
    lambda: Distribution.uniform(0.0, float('inf')),
    lambda: Distribution.normal(0.0, -1.0),
    lambda: Distribution.normal(float('nan')),
    lambda: Distribution.bernoulli(1.5),
    lambda: Distribution.bernoulli("half"),
])
def test_invalid_distributions(make):
    with pytest.raises(ValueError):
        make()


def test_distribution_params():
    assert Distribution.default().to_params() == {'distribution': 'uniform', 'low': 0.0, 'high': 1.0}
    assert Distribution.bernoulli(0.25).to_params() == {'distribution': 'bernoulli', 'p': 0.25}
    assert repr(Distribution.normal(1, 2)) == "Distribution.normal(mean=1.0, std=2.0)"
