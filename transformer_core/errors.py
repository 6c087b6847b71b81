# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Error kinds raised by the forward-pass core.

All of them are validation failures: raised before any computation starts,
never retried, and fatal to the call that triggered them.
"""

from typing import Any, Optional


class TransformerError(ValueError):
    """Base class for every validation failure in transformer_core."""

    def __init__(
        self,
        message: str,
        expected: Optional[Any] = None,
        actual: Optional[Any] = None,
    ) -> None:
        if expected is not None or actual is not None:
            message = f"{message} (expected {expected}, got {actual})"
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class ShapeMismatch(TransformerError):
    """Tensor shapes (or buffer lengths) disagree."""


class DimensionMismatch(TransformerError):
    """A single dimension (inner matmul dim, feature width) disagrees."""


class InvalidMask(TransformerError):
    """Attention mask has the wrong shape for the scores it is applied to."""


class InvalidDimension(TransformerError):
    """A configured size is zero, negative or otherwise unusable."""


class InvalidTokenId(TransformerError):
    """Token id outside [0, vocab_size)."""


class MissingParameter(TransformerError, KeyError):
    """A required parameter name is absent from the parameter store."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Missing parameter: {name!r}")
        self.name = name

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return self.args[0]
