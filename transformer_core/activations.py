# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Activation functions for the position-wise feed-forward network.

Currently implemented:
- ReLU: Standard rectified linear unit
- GELU: Gaussian Error Linear Unit (tanh approximation, GPT-2 style)
"""

from typing import Callable, Dict

import numpy as np

from .tensor import Tensor

Activation = Callable[[Tensor], Tensor]


def relu(x: Tensor) -> Tensor:
    """
    Rectified Linear Unit: max(0, x).

    Args:
        x: Input tensor of any shape.

    Returns:
        Element-wise maximum of 0 and x.
    """
    return x.map(lambda a: np.maximum(0.0, a))


def _gelu(a: np.ndarray) -> np.ndarray:
    c = np.sqrt(2.0 / np.pi)
    return 0.5 * a * (1.0 + np.tanh(c * (a + 0.044715 * a**3)))


def gelu(x: Tensor) -> Tensor:
    """
    Gaussian Error Linear Unit (approximate).

    GELU(x) = x * Phi(x) where Phi is the CDF of standard normal.
    Using the tanh approximation from the original paper:
        GELU(x) ≈ 0.5 * x * (1 + tanh(sqrt(2/pi) * (x + 0.044715 * x^3)))

    Args:
        x: Input tensor of any shape.

    Returns:
        GELU activation applied element-wise.
    """
    return x.map(_gelu)


# Registry for easy lookup by name
ACTIVATIONS: Dict[str, Activation] = {
    "relu": relu,
    "gelu": gelu,
}


def get_activation(name: str) -> Activation:
    """
    Get activation function by name.

    Args:
        name: One of 'relu', 'gelu'.

    Raises:
        ValueError: If activation name is not recognized.
    """
    if name not in ACTIVATIONS:
        raise ValueError(f"Unknown activation: {name}. Available: {list(ACTIVATIONS.keys())}")
    return ACTIVATIONS[name]
