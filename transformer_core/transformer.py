# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Encoder/decoder blocks and stacks, forward pass only.

Blocks come in two variants selected by ``norm``:
    post: x1 = LN(x + Attn(x));   x2 = LN(x1 + FFN(x1))
    pre:  x1 = x + Attn(LN(x));   x2 = x1 + FFN(LN(x1)), stack ends with LN
Shapes: (B, T, D) = batch, sequence, model dim.
"""

import logging
from typing import List, Optional

import numpy as np

from .activations import get_activation
from .attention import MultiHeadAttention
from .config import TransformerConfig
from .errors import DimensionMismatch, InvalidTokenId, ShapeMismatch
from .normalization import LayerNorm
from .tensor import Tensor, as_tensor

logger = logging.getLogger(__name__)


def residual(x: Tensor, y: Tensor) -> Tensor:
    """x + y for two tensors of identical shape."""
    if x.shape != y.shape:
        raise ShapeMismatch("Residual branch changed the shape", expected=x.shape, actual=y.shape)
    return x + y


# -------------------------- FFN (position-wise) --------------------------


class FeedForward:
    """Position-wise feed-forward: phi(X @ W1 + b1) @ W2 + b2."""

    def __init__(
        self,
        W1: Tensor,
        b1: Tensor,
        W2: Tensor,
        b2: Tensor,
        activation: str = "relu",
    ) -> None:
        """
        Args:
            W1: (D, Dff) expansion weights.
            b1: (Dff,) expansion bias.
            W2: (Dff, D) projection weights.
            b2: (D,) projection bias.
            activation: 'relu' or 'gelu'.

        Raises:
            DimensionMismatch: If the four shapes do not agree on D and Dff.
        """
        self.W1, self.b1 = as_tensor(W1), as_tensor(b1)
        self.W2, self.b2 = as_tensor(W2), as_tensor(b2)
        if self.W1.ndim != 2 or self.W2.ndim != 2:
            raise DimensionMismatch(
                "FFN weights must be matrices", actual=(self.W1.shape, self.W2.shape)
            )
        D, Dff = self.W1.shape
        expected = {"b1": (Dff,), "W2": (Dff, D), "b2": (D,)}
        for name, shape in expected.items():
            actual = getattr(self, name).shape
            if actual != shape:
                raise DimensionMismatch(f"FFN {name} is inconsistent with W1", expected=shape, actual=actual)
        self.d_model = D
        self.d_ff = Dff
        self.activation = activation
        self._phi = get_activation(activation)

    @classmethod
    def from_params(cls, params, prefix: str, activation: str = "relu") -> "FeedForward":
        return cls(
            params[f"{prefix}.W1"],
            params[f"{prefix}.b1"],
            params[f"{prefix}.W2"],
            params[f"{prefix}.b2"],
            activation=activation,
        )

    def forward(self, X: Tensor) -> Tensor:
        """Forward pass. Shape: (B, T, D) -> (B, T, D)."""
        X = as_tensor(X)
        if X.shape[-1] != self.d_model:
            raise DimensionMismatch("FFN input width differs from d_model", expected=self.d_model, actual=X.shape[-1])
        H = self._phi(X @ self.W1 + self.b1)
        return H @ self.W2 + self.b2

    __call__ = forward


# -------------------------- Encoder/Decoder Layers --------------------------


class EncoderBlock:
    """Encoder block: self-attention + FFN, each with residual and LayerNorm."""

    def __init__(
        self,
        attn: MultiHeadAttention,
        ffn: FeedForward,
        ln1: LayerNorm,
        ln2: LayerNorm,
        norm: str = "post",
    ) -> None:
        self.attn = attn
        self.ffn = ffn
        self.ln1 = ln1
        self.ln2 = ln2
        self.norm = norm

    @classmethod
    def from_params(cls, params, prefix: str, config: TransformerConfig) -> "EncoderBlock":
        D = config.d_model
        return cls(
            MultiHeadAttention.from_params(params, f"{prefix}.attn", D, config.n_heads),
            FeedForward.from_params(params, f"{prefix}.ffn", config.activation),
            LayerNorm.from_params(params, f"{prefix}.ln1", D, config.eps),
            LayerNorm.from_params(params, f"{prefix}.ln2", D, config.eps),
            norm=config.norm,
        )

    def forward(self, X: Tensor, mask: Optional[np.ndarray] = None) -> Tensor:
        """
        Forward pass.

        Args:
            X: Input (B, T, D).
            mask: Optional boolean self-attention mask, (T, T) or (B, T, T).

        Returns:
            Y: Output (B, T, D).
        """
        X = as_tensor(X)
        if self.norm == "pre":
            Y1 = residual(X, self.attn(self.ln1(X), mask=mask))
            return residual(Y1, self.ffn(self.ln2(Y1)))
        Y1 = self.ln1(residual(X, self.attn(X, mask=mask)))
        return self.ln2(residual(Y1, self.ffn(Y1)))

    __call__ = forward


class DecoderBlock:
    """Decoder block: masked self-attn + cross-attn + FFN with residuals."""

    def __init__(
        self,
        self_attn: MultiHeadAttention,
        cross_attn: MultiHeadAttention,
        ffn: FeedForward,
        ln1: LayerNorm,
        ln2: LayerNorm,
        ln3: LayerNorm,
        norm: str = "post",
    ) -> None:
        self.self_attn = self_attn
        self.cross_attn = cross_attn
        self.ffn = ffn
        self.ln1 = ln1
        self.ln2 = ln2
        self.ln3 = ln3
        self.norm = norm

    @classmethod
    def from_params(cls, params, prefix: str, config: TransformerConfig) -> "DecoderBlock":
        D, h = config.d_model, config.n_heads
        return cls(
            MultiHeadAttention.from_params(params, f"{prefix}.self_attn", D, h),
            MultiHeadAttention.from_params(params, f"{prefix}.cross_attn", D, h),
            FeedForward.from_params(params, f"{prefix}.ffn", config.activation),
            LayerNorm.from_params(params, f"{prefix}.ln1", D, config.eps),
            LayerNorm.from_params(params, f"{prefix}.ln2", D, config.eps),
            LayerNorm.from_params(params, f"{prefix}.ln3", D, config.eps),
            norm=config.norm,
        )

    def forward(
        self,
        X: Tensor,
        memory: Tensor,
        tgt_mask: Optional[np.ndarray] = None,
        mem_mask: Optional[np.ndarray] = None,
    ) -> Tensor:
        """
        Forward pass.

        Args:
            X: Decoder input (B, T, D).
            memory: Encoder memory (B, T_src, D).
            tgt_mask: Mask for decoder self-attn, (T, T) or (B, T, T).
            mem_mask: Mask for cross-attn, (T, T_src) or (B, T, T_src).

        Returns:
            Y: Output (B, T, D).
        """
        X = as_tensor(X)
        memory = as_tensor(memory)
        if self.norm == "pre":
            Y1 = residual(X, self.self_attn(self.ln1(X), mask=tgt_mask))
            Y2 = residual(Y1, self.cross_attn(self.ln2(Y1), memory, mask=mem_mask))
            return residual(Y2, self.ffn(self.ln3(Y2)))
        Y1 = self.ln1(residual(X, self.self_attn(X, mask=tgt_mask)))
        Y2 = self.ln2(residual(Y1, self.cross_attn(Y1, memory, mask=mem_mask)))
        return self.ln3(residual(Y2, self.ffn(Y2)))

    __call__ = forward


# -------------------------- Encoder / Decoder stacks --------------------------


class Encoder:
    """Stack of encoder blocks."""

    def __init__(self, layers: List[EncoderBlock], final_norm: Optional[LayerNorm] = None) -> None:
        self.layers = layers
        self.final_norm = final_norm

    @classmethod
    def from_params(cls, params, prefix: str, config: TransformerConfig, num_layers: int) -> "Encoder":
        layers = [
            EncoderBlock.from_params(params, f"{prefix}blocks.{i}", config)
            for i in range(num_layers)
        ]
        final_norm = None
        if config.norm == "pre":
            final_norm = LayerNorm.from_params(params, f"{prefix}ln_f", config.d_model, config.eps)
        logger.debug("%s: %d blocks, %s-norm", cls.__name__, num_layers, config.norm)
        return cls(layers, final_norm)

    def forward(self, X: Tensor, mask: Optional[np.ndarray] = None) -> Tensor:
        """
        Run the encoder stack.

        Args:
            X: Input (B, T, D).
            mask: Optional self-attention mask shared by every block.

        Returns:
            H: Encoder output (B, T, D).
        """
        H = as_tensor(X)
        for layer in self.layers:
            H = layer(H, mask=mask)
        if self.final_norm is not None:
            H = self.final_norm(H)
        return H

    __call__ = forward


class Decoder:
    """Stack of decoder blocks."""

    def __init__(self, layers: List[DecoderBlock], final_norm: Optional[LayerNorm] = None) -> None:
        self.layers = layers
        self.final_norm = final_norm

    @classmethod
    def from_params(cls, params, prefix: str, config: TransformerConfig, num_layers: int) -> "Decoder":
        layers = [
            DecoderBlock.from_params(params, f"{prefix}blocks.{i}", config)
            for i in range(num_layers)
        ]
        final_norm = None
        if config.norm == "pre":
            final_norm = LayerNorm.from_params(params, f"{prefix}ln_f", config.d_model, config.eps)
        logger.debug("%s: %d blocks, %s-norm", cls.__name__, num_layers, config.norm)
        return cls(layers, final_norm)

    def forward(
        self,
        X: Tensor,
        memory: Tensor,
        tgt_mask: Optional[np.ndarray] = None,
        mem_mask: Optional[np.ndarray] = None,
    ) -> Tensor:
        """
        Run the decoder stack.

        Args:
            X: Decoder input (B, T, D).
            memory: Encoder memory (B, T_src, D).
            tgt_mask: Causal/self-attn mask for the decoder.
            mem_mask: Optional cross-attn mask.

        Returns:
            H: Decoder outputs (B, T, D).
        """
        H = as_tensor(X)
        for layer in self.layers:
            H = layer(H, memory, tgt_mask=tgt_mask, mem_mask=mem_mask)
        if self.final_norm is not None:
            H = self.final_norm(H)
        return H

    __call__ = forward


# -------------------------- Embeddings / output head --------------------------


class TokenEmbedding:
    """Token embedding layer: W[idx] lookup."""

    def __init__(self, W: Tensor) -> None:
        """
        Args:
            W: Embedding table (V, D).
        """
        self.W = as_tensor(W)
        self.vocab_size, self.d_model = self.W.shape

    def forward(self, idx: np.ndarray) -> Tensor:
        """Embedding lookup. idx: (B, T) -> embeddings: (B, T, D)."""
        idx = np.asarray(idx)
        bad = (idx < 0) | (idx >= self.vocab_size)
        if bad.any():
            raise InvalidTokenId(
                "Token id outside the vocabulary",
                expected=f"[0, {self.vocab_size})",
                actual=int(idx[bad][0]),
            )
        return Tensor._wrap(self.W.data[idx])

    __call__ = forward


class OutputHead:
    """Linear projection to vocabulary logits."""

    def __init__(self, W: Tensor, b: Tensor) -> None:
        """
        Args:
            W: (D, V) projection; pass the transposed embedding table to tie weights.
            b: (V,) bias.
        """
        self.W = as_tensor(W)
        self.b = as_tensor(b)
        if self.b.shape != (self.W.shape[-1],):
            raise DimensionMismatch(
                "Output bias is inconsistent with W", expected=(self.W.shape[-1],), actual=self.b.shape
            )

    def logits(self, H: Tensor) -> Tensor:
        """Raw scores. Shape: (B, T, D) -> (B, T, V)."""
        return as_tensor(H) @ self.W + self.b
