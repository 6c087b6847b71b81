# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Temporal continuity: attend from the current sequence to earlier hidden states.

Earlier states are always passed in by the caller. Nothing here remembers a
previous call; a caller that wants a running history keeps the states it got
back (optionally reduced with ``pool_state``) and hands them to the next call.

Shapes: (B, T, D) = batch, sequence, model dim; a previous state is
(B, T_i, D) with its own length T_i.
"""

import logging
from typing import Optional, Sequence

import numpy as np

from .attention import scaled_dot_product_attention
from .config import TransformerConfig
from .errors import DimensionMismatch, InvalidDimension, ShapeMismatch
from .normalization import LayerNorm
from .tensor import Tensor, as_tensor
from .transformer import Encoder, residual

logger = logging.getLogger(__name__)

# integration is skipped when the context is this close to zero
CONTEXT_NORM_TOL = 1e-8


def _check_states(query: Tensor, states: Sequence[Tensor], name: str) -> None:
    B, _, D = query.shape
    for i, s in enumerate(states):
        if s.ndim != 3 or s.shape[0] != B:
            raise ShapeMismatch(f"{name}[{i}] must be (B, T_i, D)", expected=(B, "T_i", D), actual=s.shape)
        if s.shape[-1] != D:
            raise DimensionMismatch(f"{name}[{i}] width differs from the query", expected=D, actual=s.shape[-1])


def pool_state(H: Tensor) -> Tensor:
    """Mean over the sequence axis: (B, T, D) -> (B, 1, D)."""
    return as_tensor(H).mean(axis=1, keepdims=True)


class TemporalAttention:
    """
    Decay-weighted attention over earlier states.

    Each earlier state at distance k contributes
    ``decay**k * Attention(query, key_k, value_k)`` (distance 0 weighs 1);
    states further than ``max_distance`` are skipped and the remaining
    contributions are averaged. With nothing left the output is zeros.
    """

    def __init__(self, max_distance: int = 10, decay: float = 0.95) -> None:
        if max_distance < 0:
            raise InvalidDimension("max_distance must be non-negative", actual=max_distance)
        if not 0.0 < decay <= 1.0:
            raise ValueError(f"decay must lie in (0, 1], got {decay}")
        self.max_distance = max_distance
        self.decay = decay

    def weight(self, distance: int) -> float:
        return 1.0 if distance == 0 else self.decay**distance

    def forward(
        self,
        query: Tensor,
        keys: Sequence[Tensor],
        values: Sequence[Tensor],
        distances: Sequence[int],
    ) -> Tensor:
        """
        Args:
            query: Current states (B, T, D).
            keys, values: Earlier states, each (B, T_i, D).
            distances: How many steps back each earlier state lies.

        Returns:
            Averaged weighted attention output (B, T, D).
        """
        query = as_tensor(query)
        keys = [as_tensor(k) for k in keys]
        values = [as_tensor(v) for v in values]
        if not len(keys) == len(values) == len(distances):
            raise ShapeMismatch(
                "keys, values and distances must have the same length",
                expected=len(keys),
                actual=(len(values), len(distances)),
            )
        _check_states(query, keys, "keys")
        _check_states(query, values, "values")

        outputs = [
            scaled_dot_product_attention(query, k, v)[0] * self.weight(dist)
            for k, v, dist in zip(keys, values, distances)
            if dist <= self.max_distance
        ]
        if not outputs:
            return Tensor.zeros(query.shape)
        logger.debug("TemporalAttention: %d of %d states in range", len(outputs), len(keys))
        return Tensor._wrap(np.mean([o.data for o in outputs], axis=0))

    __call__ = forward


class TemporalEncoder:
    """
    Encoder stack followed by integration of caller-supplied earlier states.

    Two ways to bring in history:
        forward:                  LN(H + TemporalAttention(H, states))
        forward_with_continuity:  LN(H + Attention(H, concat(states)) @ W_mem)
    where H is the plain encoder output. Without earlier states both return H.
    """

    def __init__(
        self,
        encoder: Encoder,
        W_mem: Tensor,
        norm: LayerNorm,
        temporal_attention: Optional[TemporalAttention] = None,
    ) -> None:
        self.encoder = encoder
        self.W_mem = as_tensor(W_mem)
        self.norm = norm
        self.temporal_attention = temporal_attention or TemporalAttention()
        if self.W_mem.shape != (norm.d_model, norm.d_model):
            raise ShapeMismatch(
                "W_mem must be (D, D)", expected=(norm.d_model, norm.d_model), actual=self.W_mem.shape
            )

    @classmethod
    def from_params(cls, params, prefix: str, config: TransformerConfig, encoder: Encoder) -> "TemporalEncoder":
        return cls(
            encoder,
            params[f"{prefix}temporal.W_mem"],
            LayerNorm.from_params(params, f"{prefix}temporal.ln", config.d_model, config.eps),
            TemporalAttention(config.max_temporal_distance, config.temporal_decay),
        )

    def forward(
        self,
        X: Tensor,
        previous_states: Sequence[Tensor] = (),
        distances: Optional[Sequence[int]] = None,
        mask: Optional[np.ndarray] = None,
    ) -> Tensor:
        """
        Encode X and mix in decay-weighted attention over earlier states.

        Args:
            X: Embedded input (B, T, D).
            previous_states: Earlier outputs, most recent first.
            distances: Steps back per state; defaults to 1, 2, ...
            mask: Optional self-attention mask for the encoder.
        """
        H = self.encoder(X, mask=mask)
        if not previous_states:
            return H
        if distances is None:
            distances = range(1, len(previous_states) + 1)
        context = self.temporal_attention(H, previous_states, previous_states, list(distances))
        return self.norm(residual(H, context))

    __call__ = forward

    def forward_with_continuity(
        self,
        X: Tensor,
        previous_states: Sequence[Tensor],
        mask: Optional[np.ndarray] = None,
    ) -> Tensor:
        """
        Encode X and integrate attention over all earlier states at once.

        The earlier states are joined along the sequence axis and attended
        to as one memory; the result is projected by ``W_mem`` and added
        back through a residual and LayerNorm.

        Returns:
            (B, T, D); the plain encoder output when there is no history or
            the attended context is numerically zero.
        """
        H = self.encoder(X, mask=mask)
        states = [as_tensor(s) for s in previous_states]
        if not states:
            return H
        _check_states(H, states, "previous_states")
        memory = Tensor._wrap(np.concatenate([s.data for s in states], axis=1))
        context, _ = scaled_dot_product_attention(H, memory, memory)
        if np.linalg.norm(context.data) < CONTEXT_NORM_TOL:
            return H
        return self.norm(residual(H, context @ self.W_mem))
