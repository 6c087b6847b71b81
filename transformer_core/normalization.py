# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Normalization layers.

Currently implemented:
- LayerNorm: Standard layer normalization with learned scale/shift
"""

import numpy as np

from .errors import DimensionMismatch
from .tensor import Tensor, as_tensor

DEFAULT_EPS = 1e-5


class LayerNorm:
    """
    Layer Normalization over the last axis with learned scale/shift.

    Normalizes per-token features to zero mean and unit variance:
        mu = mean(x, axis=-1, keepdims=True)
        sigma = sqrt(var(x) + eps)
        xhat = (x - mu) / sigma
        y = gamma * xhat + beta

    Attributes:
        gamma: Learned scale, shape (D,).
        beta:  Learned shift, shape (D,).
    """

    def __init__(
        self,
        d_model: int,
        gamma: Tensor = None,
        beta: Tensor = None,
        eps: float = DEFAULT_EPS,
    ) -> None:
        """
        Args:
            d_model: Feature dimension D (size of last axis to normalize).
            gamma: Scale of shape (D,); ones when omitted.
            beta: Shift of shape (D,); zeros when omitted.
            eps: Small constant for numerical stability.

        Raises:
            DimensionMismatch: If gamma or beta length differs from d_model.
        """
        self.d_model = d_model
        self.eps = eps
        self.gamma = Tensor.ones((d_model,)) if gamma is None else as_tensor(gamma)
        self.beta = Tensor.zeros((d_model,)) if beta is None else as_tensor(beta)
        for name, p in (("gamma", self.gamma), ("beta", self.beta)):
            if p.shape != (d_model,):
                raise DimensionMismatch(
                    f"LayerNorm {name} has the wrong length",
                    expected=(d_model,),
                    actual=p.shape,
                )

    @classmethod
    def from_params(cls, params, prefix: str, d_model: int, eps: float = DEFAULT_EPS) -> "LayerNorm":
        return cls(d_model, params[f"{prefix}.gamma"], params[f"{prefix}.beta"], eps=eps)

    def normalize(self, x: Tensor) -> Tensor:
        """Zero-mean, unit-variance rows, before scale/shift."""
        x = as_tensor(x)
        if x.shape[-1] != self.d_model:
            raise DimensionMismatch(
                "LayerNorm input width differs from d_model",
                expected=self.d_model,
                actual=x.shape[-1],
            )
        mu = x.mean(axis=-1, keepdims=True)
        centered = x - mu
        var = (centered * centered).mean(axis=-1, keepdims=True)
        sigma = (var + self.eps).map(np.sqrt)
        return centered / sigma

    def forward(self, x: Tensor) -> Tensor:
        """
        Forward pass.

        Args:
            x: Input of shape (..., D).

        Returns:
            y: Output of same shape as x.
        """
        return self.normalize(x) * self.gamma + self.beta

    __call__ = forward
