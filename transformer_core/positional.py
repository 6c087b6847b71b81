# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Positional encoding schemes for transformers.

Currently implemented:
- Sinusoidal: Fixed positional encodings (Vaswani et al., 2017)
- Learned: Position embeddings read from the parameter store
"""

import math

import numpy as np

from .errors import InvalidDimension, ShapeMismatch
from .tensor import Tensor


def _check_dims(seq_len: int, d_model: int) -> None:
    if d_model <= 0 or d_model % 2 != 0:
        raise InvalidDimension("d_model must be a positive even number", actual=d_model)
    if seq_len <= 0:
        raise InvalidDimension("seq_len must be positive", actual=seq_len)


def positional_encoding(position: int, index: int, d_model: int) -> float:
    """
    Single entry of the sinusoidal table.

    Even index i: sin(p / 10000^(2i/d)); odd index i: cos(p / 10000^(2(i-1)/d)).
    """
    _check_dims(1, d_model)
    if not 0 <= index < d_model:
        raise InvalidDimension(f"index must lie in [0, {d_model})", actual=index)
    if index % 2 == 0:
        return math.sin(position / 10000 ** (2 * index / d_model))
    return math.cos(position / 10000 ** (2 * (index - 1) / d_model))


def sinusoidal_encoding(seq_len: int, d_model: int) -> Tensor:
    """
    Fixed sinusoidal positional encodings.

    Formula (i is the embedding index):
        PE[pos, i] = sin(pos / 10000^(2i/d))      for even i
        PE[pos, i] = cos(pos / 10000^(2(i-1)/d))  for odd i

    Args:
        seq_len: Sequence length T.
        d_model: Model dimension D (must be even).

    Returns:
        PE: Positional encodings of shape (T, D).

    Raises:
        InvalidDimension: If d_model is zero/odd or seq_len is not positive.
    """
    _check_dims(seq_len, d_model)
    pos = np.arange(seq_len)[:, None]
    i = np.arange(d_model)[None, :]
    even = 2 * i / d_model
    odd = 2 * (i - 1) / d_model
    PE = np.where(
        i % 2 == 0,
        np.sin(pos / 10000**even),
        np.cos(pos / 10000**odd),
    )
    return Tensor((seq_len, d_model), PE)


class LearnedPositionalEmbedding:
    """
    Learned positional embeddings (GPT-2 style).

    Lookup table of shape (max_len, D) taken from the parameter store.
    """

    def __init__(self, W: Tensor) -> None:
        """
        Args:
            W: Position embedding matrix (max_len, D).
        """
        if W.ndim != 2:
            raise ShapeMismatch("Position table must be 2-D", actual=W.shape)
        self.W = W
        self.max_len, self.d_model = W.shape

    def forward(self, seq_len: int) -> Tensor:
        """
        Get position embeddings for a sequence.

        Args:
            seq_len: Length of sequence (must be <= max_len).

        Returns:
            PE: Position embeddings of shape (seq_len, D).
        """
        if seq_len <= 0:
            raise InvalidDimension("seq_len must be positive", actual=seq_len)
        if seq_len > self.max_len:
            raise ShapeMismatch(
                "Sequence longer than learned position table",
                expected=f"<= {self.max_len}",
                actual=seq_len,
            )
        return self.W[:seq_len]


class SinusoidalPositionalEncoding(LearnedPositionalEmbedding):
    """Precomputed sinusoidal table with the same interface as the learned one."""

    def __init__(self, max_len: int, d_model: int) -> None:
        super().__init__(sinusoidal_encoding(max_len, d_model))


# Factory function
def get_positional_encoding(name: str, max_len: int, d_model: int, W: Tensor = None):
    """
    Get positional encoding by name.

    Args:
        name: One of 'sinusoidal', 'learned', 'none'.
        max_len: Maximum sequence length.
        d_model: Model dimension.
        W: Position table, required for 'learned'.

    Returns:
        Object with ``forward(seq_len) -> Tensor``, or None for 'none'.
    """
    if name == "sinusoidal":
        return SinusoidalPositionalEncoding(max_len, d_model)
    elif name == "learned":
        if W is None:
            raise ValueError("Learned positional encoding needs a position table")
        return LearnedPositionalEmbedding(W)
    elif name == "none":
        return None
    else:
        raise ValueError(f"Unknown positional encoding: {name}")
