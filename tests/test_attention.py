# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

import numpy as np
import pytest

from transformer_core.attention import (
    MultiHeadAttention,
    scaled_dot_product_attention,
    softmax_last,
)
from transformer_core.errors import (
    DimensionMismatch,
    InvalidDimension,
    InvalidMask,
    ShapeMismatch,
)
from transformer_core.masks import causal_mask
from transformer_core.tensor import Tensor

D_MODEL = 8
N_HEADS = 2


def random_mha(seed=0, d_model=D_MODEL, n_heads=N_HEADS):
    rng = np.random.default_rng(seed)
    W = [Tensor.from_array(rng.normal(0.0, 0.5, size=(d_model, d_model))) for _ in range(4)]
    return MultiHeadAttention(d_model, n_heads, *W)


def random_input(B=2, T=5, D=D_MODEL, seed=1):
    return Tensor.from_array(np.random.default_rng(seed).normal(size=(B, T, D)))


def test_softmax_rows_sum_to_one():
    z = Tensor.from_array(np.random.default_rng(0).normal(0.0, 30.0, size=(4, 6)))
    P = softmax_last(z).data
    np.testing.assert_allclose(P.sum(axis=-1), 1.0, atol=1e-12)


def test_softmax_large_scores_are_stable():
    P = softmax_last(Tensor.from_array([[1000.0, 1000.0, -1000.0]])).data
    assert np.all(np.isfinite(P))
    np.testing.assert_allclose(P, [[0.5, 0.5, 0.0]])


def test_fully_masked_row_is_zero():
    z = Tensor.from_array([[1.0, 2.0], [3.0, 4.0]])
    mask = np.array([[True, True], [False, True]])
    P = softmax_last(z, mask).data
    np.testing.assert_array_equal(P[0], [0.0, 0.0])
    np.testing.assert_array_equal(P[1], [1.0, 0.0])


def test_scaled_dot_product_matches_reference():
    rng = np.random.default_rng(3)
    Q, K, V = (rng.normal(size=(2, 4, 3)) for _ in range(3))
    O, P = scaled_dot_product_attention(
        Tensor.from_array(Q), Tensor.from_array(K), Tensor.from_array(V)
    )
    S = Q @ np.swapaxes(K, -1, -2) / np.sqrt(3)
    S = np.exp(S - S.max(axis=-1, keepdims=True))
    S /= S.sum(axis=-1, keepdims=True)
    np.testing.assert_allclose(P.data, S, rtol=1e-12)
    np.testing.assert_allclose(O.data, S @ V, rtol=1e-12)


def test_scaled_dot_product_key_value_length_mismatch():
    q = Tensor.from_array(np.zeros((1, 2, 3)))
    with pytest.raises(ShapeMismatch):
        scaled_dot_product_attention(
            q, Tensor.from_array(np.zeros((1, 4, 3))), Tensor.from_array(np.zeros((1, 5, 3)))
        )


def test_attention_weights_sum_to_one():
    mha = random_mha()
    W = mha.attention_weights(random_input()).data
    assert W.shape == (2, N_HEADS, 5, 5)
    np.testing.assert_allclose(W.sum(axis=-1), 1.0, atol=1e-6)


def test_causal_weights_sum_to_one_and_zero_above_diagonal():
    mha = random_mha()
    W = mha.attention_weights(random_input(), mask=causal_mask(5)).data
    np.testing.assert_allclose(W.sum(axis=-1), 1.0, atol=1e-6)
    upper = np.triu_indices(5, k=1)
    assert np.all(W[..., upper[0], upper[1]] == 0.0)


def test_output_shape():
    mha = random_mha()
    assert mha(random_input(B=3, T=4)).shape == (3, 4, D_MODEL)


def test_causal_no_future_leakage():
    mha = random_mha()
    X = random_input(B=1, T=3).numpy()
    Y = mha(Tensor.from_array(X), mask=causal_mask(3)).data

    X[0, 2] += np.random.default_rng(9).normal(size=D_MODEL) * 10.0
    Y_changed = mha(Tensor.from_array(X), mask=causal_mask(3)).data

    np.testing.assert_allclose(Y[0, :2], Y_changed[0, :2], rtol=0, atol=1e-12)
    assert not np.allclose(Y[0, 2], Y_changed[0, 2])


def test_zero_mask_equals_no_mask_exactly():
    mha = random_mha()
    X = random_input()
    unmasked = mha(X).data
    masked = mha(X, mask=np.zeros((5, 5))).data
    np.testing.assert_array_equal(unmasked, masked)


def test_heads_are_independent_slices():
    rng = np.random.default_rng(4)
    Wq, Wk, Wv = (rng.normal(size=(4, 4)) for _ in range(3))
    mha = MultiHeadAttention(4, 2, Wq, Wk, Wv, np.eye(4))
    X = rng.normal(size=(1, 3, 4))
    Y = mha(Tensor.from_array(X)).data
    for i, s in enumerate((slice(0, 2), slice(2, 4))):
        O, _ = scaled_dot_product_attention(
            Tensor.from_array((X @ Wq)[..., s]),
            Tensor.from_array((X @ Wk)[..., s]),
            Tensor.from_array((X @ Wv)[..., s]),
        )
        np.testing.assert_allclose(Y[..., s], O.data, rtol=1e-12)


def test_cross_attention_shapes():
    mha = random_mha()
    query = random_input(B=2, T=3)
    memory = random_input(B=2, T=6, seed=5)
    assert mha(query, memory).shape == (2, 3, D_MODEL)
    assert mha.attention_weights(query, memory).shape == (2, N_HEADS, 3, 6)


def test_indivisible_heads():
    W = np.eye(6)
    with pytest.raises(InvalidDimension):
        MultiHeadAttention(6, 4, W, W, W, W)


def test_projection_wrong_shape():
    W = np.eye(4)
    with pytest.raises(ShapeMismatch):
        MultiHeadAttention(4, 2, W, W, np.eye(3), W)


def test_bad_mask_shape():
    mha = random_mha()
    with pytest.raises(InvalidMask):
        mha(random_input(T=5), mask=np.zeros((4, 4)))


def test_wrong_model_width():
    mha = random_mha()
    with pytest.raises(DimensionMismatch):
        mha(random_input(D=D_MODEL + 2))


def test_batch_size_mismatch():
    mha = random_mha()
    with pytest.raises(ShapeMismatch):
        mha(random_input(B=2), random_input(B=3))
