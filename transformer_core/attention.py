# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Attention mechanisms for transformers.

Implements scaled dot-product attention and multi-head attention
(self- and cross-attention) as pure forward computations.
"""

import logging
from typing import List, Optional, Tuple

import numpy as np

from .errors import DimensionMismatch, InvalidDimension, ShapeMismatch
from .masks import validate_mask
from .tensor import Tensor, as_tensor

logger = logging.getLogger(__name__)


def softmax_last(x: Tensor, mask: Optional[np.ndarray] = None) -> Tensor:
    """
    Softmax along the last axis with numerical stabilization.

    Args:
        x: Scores (..., K).
        mask: Optional boolean array broadcastable to x; True entries are
            set to -inf before normalization.

    Returns:
        Probabilities, same shape as x. Rows whose every entry is masked
        come back as all zeros.
    """
    z = as_tensor(x).data
    if mask is not None:
        z = np.where(mask, -np.inf, z)
    zmax = z.max(axis=-1, keepdims=True)
    zmax = np.where(np.isfinite(zmax), zmax, 0.0)
    e = np.exp(z - zmax)
    denom = e.sum(axis=-1, keepdims=True)
    P = np.divide(e, denom, out=np.zeros_like(e), where=denom > 0)
    return Tensor._wrap(P)


def scaled_dot_product_attention(
    Q: Tensor,
    K: Tensor,
    V: Tensor,
    mask: Optional[np.ndarray] = None,
) -> Tuple[Tensor, Tensor]:
    """
    O = softmax(QK^T / sqrt(d) + mask) @ V.

    Args:
        Q: Queries (..., T_q, d).
        K: Keys (..., T_kv, d).
        V: Values (..., T_kv, d_v).
        mask: Optional boolean mask broadcastable to (..., T_q, T_kv).

    Returns:
        (O, P): output (..., T_q, d_v) and attention weights (..., T_q, T_kv).
    """
    Q, K, V = as_tensor(Q), as_tensor(K), as_tensor(V)
    if K.shape[-2] != V.shape[-2]:
        raise ShapeMismatch(
            "Keys and values have different sequence lengths",
            expected=K.shape[-2],
            actual=V.shape[-2],
        )
    d = Q.shape[-1]
    scale = 1.0 / np.sqrt(d)

    S = (Q @ K.transpose()) * scale  # (..., T_q, T_kv)
    P = softmax_last(S, mask)
    O = P @ V  # (..., T_q, d_v)
    return O, P


class MultiHeadAttention:
    """Multi-Head Attention. key/value=None for self-attention, else cross-attention."""

    def __init__(
        self,
        d_model: int,
        n_heads: int,
        Wq: Tensor,
        Wk: Tensor,
        Wv: Tensor,
        Wo: Tensor,
    ) -> None:
        """
        Args:
            d_model: Model dimension D.
            n_heads: Number of attention heads h.
            Wq, Wk, Wv: Input projections, each (D, D).
            Wo: Output projection (D, D).

        Raises:
            InvalidDimension: If d_model is not divisible by n_heads.
            ShapeMismatch: If a projection is not (D, D).
        """
        if n_heads <= 0 or d_model <= 0 or d_model % n_heads != 0:
            raise InvalidDimension(
                f"d_model ({d_model}) must be divisible by n_heads ({n_heads})"
            )
        self.D = d_model
        self.h = n_heads
        self.d = d_model // n_heads

        weights = {"Wq": Wq, "Wk": Wk, "Wv": Wv, "Wo": Wo}
        for name, W in weights.items():
            W = as_tensor(W)
            if W.shape != (d_model, d_model):
                raise ShapeMismatch(
                    f"Projection {name} has the wrong shape",
                    expected=(d_model, d_model),
                    actual=W.shape,
                )
            setattr(self, name, W)

        # head i reads columns [i*d, (i+1)*d) of the projected Q/K/V
        self._slices: List[slice] = [
            slice(i * self.d, (i + 1) * self.d) for i in range(n_heads)
        ]
        logger.debug("MultiHeadAttention: D=%d, h=%d, head dim=%d", self.D, self.h, self.d)

    @classmethod
    def from_params(cls, params, prefix: str, d_model: int, n_heads: int) -> "MultiHeadAttention":
        return cls(
            d_model,
            n_heads,
            params[f"{prefix}.Wq"],
            params[f"{prefix}.Wk"],
            params[f"{prefix}.Wv"],
            params[f"{prefix}.Wo"],
        )

    def _check_inputs(self, X: Tensor, X_k: Tensor, X_v: Tensor) -> None:
        for name, t in (("query", X), ("key", X_k), ("value", X_v)):
            if t.ndim != 3:
                raise ShapeMismatch(
                    f"{name} must be (B, T, D)", expected="3 dims", actual=t.shape
                )
            if t.shape[-1] != self.D:
                raise DimensionMismatch(
                    f"{name} width differs from d_model", expected=self.D, actual=t.shape[-1]
                )
        if not X.shape[0] == X_k.shape[0] == X_v.shape[0]:
            raise ShapeMismatch(
                "query/key/value batch sizes differ",
                expected=X.shape[0],
                actual=(X_k.shape[0], X_v.shape[0]),
            )
        if X_k.shape[1] != X_v.shape[1]:
            raise ShapeMismatch(
                "key and value sequence lengths differ",
                expected=X_k.shape[1],
                actual=X_v.shape[1],
            )

    def _attend(
        self,
        X: Tensor,
        key: Optional[Tensor],
        value: Optional[Tensor],
        mask,
    ) -> Tuple[Tensor, List[Tensor]]:
        X = as_tensor(X)
        X_k = X if key is None else as_tensor(key)
        X_v = X_k if value is None else as_tensor(value)
        self._check_inputs(X, X_k, X_v)
        B, T, _ = X.shape
        T_kv = X_k.shape[1]

        mask_b = None if mask is None else validate_mask(mask, B, T, T_kv)

        # Linear projections
        Q_lin = X @ self.Wq  # (B, T, D)
        K_lin = X_k @ self.Wk  # (B, T_kv, D)
        V_lin = X_v @ self.Wv  # (B, T_kv, D)

        # Heads are independent: each reads its own column slice
        heads = [
            scaled_dot_product_attention(
                Q_lin[:, :, s], K_lin[:, :, s], V_lin[:, :, s], mask=mask_b
            )
            for s in self._slices
        ]

        # Concatenate heads: h x (B, T, d) -> (B, T, D)
        H = Tensor._wrap(np.concatenate([O.data for O, _ in heads], axis=-1))

        # Output projection
        Y = H @ self.Wo
        return Y, [P for _, P in heads]

    def forward(
        self,
        query: Tensor,
        key: Optional[Tensor] = None,
        value: Optional[Tensor] = None,
        mask: Optional[np.ndarray] = None,
    ) -> Tensor:
        """
        Forward pass. Shape: (B, T, D) -> (B, T, D).

        Args:
            query: Query source (B, T, D).
            key: Key source (B, T_kv, D); defaults to query.
            value: Value source (B, T_kv, D); defaults to key.
            mask: Optional boolean mask (T, T_kv) or (B, T, T_kv).
        """
        Y, _ = self._attend(query, key, value, mask)
        return Y

    __call__ = forward

    def attention_weights(
        self,
        query: Tensor,
        key: Optional[Tensor] = None,
        value: Optional[Tensor] = None,
        mask: Optional[np.ndarray] = None,
    ) -> Tensor:
        """Per-head attention weights, shape (B, h, T, T_kv)."""
        _, weights = self._attend(query, key, value, mask)
        return Tensor._wrap(np.stack([P.data for P in weights], axis=1))
