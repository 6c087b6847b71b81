# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

import numpy as np
import pytest

from transformer_core.errors import DimensionMismatch, InvalidDimension, ShapeMismatch
from transformer_core.tensor import Tensor, as_tensor


def test_construct_from_flat_buffer():
    t = Tensor([2, 3], [1, 2, 3, 4, 5, 6])
    assert t.shape == (2, 3)
    assert t.data[1, 0] == 4.0
    assert t.data.dtype == np.float64


def test_buffer_length_mismatch():
    with pytest.raises(ShapeMismatch) as exc:
        Tensor([2, 3], [1, 2, 3, 4, 5])
    assert exc.value.expected == 6
    assert exc.value.actual == 5


def test_non_positive_dimension():
    with pytest.raises(InvalidDimension):
        Tensor([0, 3], [])


def test_immutable():
    t = Tensor.from_array([[1.0, 2.0], [3.0, 4.0]])
    with pytest.raises(ValueError):
        t.data[0, 0] = 10.0
    copy = t.numpy()
    copy[0, 0] = 10.0
    assert t.data[0, 0] == 1.0


def test_backing_buffer_is_not_writable():
    t = Tensor([2, 2], [1, 2, 3, 4])
    for arr in (t.data, t.T.data, t[0].data, (t + 1.0).data):
        base = arr.base
        assert base is None or not base.flags.writeable
    with pytest.raises(ValueError):
        t.data.reshape(-1)[0] = 99.0
    np.testing.assert_array_equal(t.data, [[1.0, 2.0], [3.0, 4.0]])


def test_caller_array_is_copied_not_frozen():
    a = np.zeros(3)
    t = Tensor.from_array(a)
    assert a.flags.writeable
    a[0] = 5.0
    assert t.data[0] == 0.0


def test_operations_return_new_tensors():
    a = Tensor.from_array([1.0, 2.0, 3.0])
    b = a + 1.0
    assert b is not a
    np.testing.assert_array_equal(a.data, [1.0, 2.0, 3.0])
    np.testing.assert_array_equal(b.data, [2.0, 3.0, 4.0])


def test_elementwise_broadcasting():
    x = Tensor.from_array(np.arange(6.0).reshape(2, 3))
    row = Tensor.from_array([10.0, 20.0, 30.0])
    np.testing.assert_array_equal((x + row).data, [[10, 21, 32], [13, 24, 35]])
    np.testing.assert_array_equal((x * 2).data, np.arange(6.0).reshape(2, 3) * 2)
    np.testing.assert_array_equal((1.0 - x).data, 1.0 - np.arange(6.0).reshape(2, 3))
    np.testing.assert_array_equal((-x).data, -np.arange(6.0).reshape(2, 3))
    np.testing.assert_allclose((6.0 / (x + 1.0)).data, 6.0 / (np.arange(6.0).reshape(2, 3) + 1.0))


def test_ndarray_on_the_left_returns_tensor():
    x = Tensor.from_array([1.0, 2.0])
    out = np.array([3.0, 4.0]) + x
    assert isinstance(out, Tensor)
    np.testing.assert_array_equal(out.data, [4.0, 6.0])


def test_broadcast_mismatch():
    a = Tensor.from_array(np.zeros((2, 3)))
    b = Tensor.from_array(np.zeros((2, 4)))
    with pytest.raises(ShapeMismatch) as exc:
        a + b
    assert exc.value.expected == (2, 3)
    assert exc.value.actual == (2, 4)


def test_matmul_matches_numpy():
    rng = np.random.default_rng(0)
    A = rng.normal(size=(2, 3, 4))
    B = rng.normal(size=(4, 5))
    out = Tensor.from_array(A) @ Tensor.from_array(B)
    assert out.shape == (2, 3, 5)
    np.testing.assert_allclose(out.data, A @ B)


def test_matmul_inner_dimension_mismatch():
    a = Tensor.from_array(np.zeros((2, 3)))
    b = Tensor.from_array(np.zeros((4, 2)))
    with pytest.raises(DimensionMismatch):
        a @ b


def test_transpose_swaps_last_two_axes():
    x = Tensor.from_array(np.arange(24.0).reshape(2, 3, 4))
    assert x.transpose().shape == (2, 4, 3)
    np.testing.assert_array_equal(x.T.data, np.swapaxes(x.data, -1, -2))
    with pytest.raises(DimensionMismatch):
        Tensor.from_array([1.0, 2.0]).transpose()


def test_reductions():
    x = Tensor.from_array([[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]])
    np.testing.assert_array_equal(x.sum().data, [6.0, 15.0])
    np.testing.assert_array_equal(x.mean(axis=0).data, [2.5, 3.5, 4.5])
    assert x.max(keepdims=True).shape == (2, 1)
    with pytest.raises(DimensionMismatch):
        x.sum(axis=2)


def test_reshape_and_indexing():
    x = Tensor.from_array(np.arange(6.0))
    y = x.reshape(2, 3)
    assert y.shape == (2, 3)
    assert y[1].tolist() == [3.0, 4.0, 5.0]
    with pytest.raises(ShapeMismatch):
        x.reshape(4, 2)


def test_map_and_as_tensor():
    x = as_tensor([[0.0, 1.0]])
    assert as_tensor(x) is x
    np.testing.assert_allclose(x.map(np.exp).data, [[1.0, np.e]])
    with pytest.raises(ShapeMismatch):
        x.map(np.sum)
