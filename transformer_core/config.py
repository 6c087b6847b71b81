# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Model configuration.

``TransformerConfig`` is fixed at model construction. It is validated once,
in ``__post_init__``, so an unusable architecture fails before any parameter
is allocated.
"""

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .errors import InvalidDimension

NORMS = ("post", "pre")
ACTIVATION_NAMES = ("relu", "gelu")
ARCHITECTURES = ("stack", "seq2seq")
POSITIONALS = ("sinusoidal", "learned", "none")


@dataclass(frozen=True)
class TransformerConfig:
    """
    Architecture hyperparameters.

    Attributes:
        d_model: Embedding width D.
        n_heads: Number of attention heads h (D % h == 0).
        n_layers: Block count (encoder blocks for 'seq2seq').
        d_ff: Feed-forward inner dimension.
        vocab_size: Output vocabulary size V.
        max_seq_len: Longest accepted sequence.
        norm: 'post' (LN(x + f(x))) or 'pre' (x + f(LN(x))).
        activation: 'relu' or 'gelu'.
        architecture: 'stack' (single causal/bidirectional stack) or 'seq2seq'.
        n_decoder_layers: Decoder depth for 'seq2seq'; defaults to n_layers.
        positional: 'sinusoidal', 'learned' or 'none'.
        causal: Apply a causal mask in the 'stack' architecture.
        pad_token_id: When set, pad tokens are masked out of attention.
        tie_embeddings: Reuse the (target) embedding table as output projection.
        eps: LayerNorm epsilon.
        temporal: Add the temporal-continuity integration (W_mem + LayerNorm) to
            the (encoder) stack.
        temporal_decay: Per-step weight decay for earlier states, in (0, 1].
        max_temporal_distance: Earlier states further back than this are ignored.
    """

    d_model: int = 512
    n_heads: int = 8
    n_layers: int = 6
    d_ff: int = 2048
    vocab_size: int = 50000
    max_seq_len: int = 512
    norm: str = "post"
    activation: str = "relu"
    architecture: str = "stack"
    n_decoder_layers: Optional[int] = None
    positional: str = "sinusoidal"
    causal: bool = True
    pad_token_id: Optional[int] = None
    tie_embeddings: bool = False
    eps: float = 1e-5
    temporal: bool = False
    temporal_decay: float = 0.95
    max_temporal_distance: int = 10

    def __post_init__(self) -> None:
        for name in ("d_model", "n_heads", "n_layers", "d_ff", "vocab_size", "max_seq_len"):
            value = getattr(self, name)
            if value <= 0:
                raise InvalidDimension(f"{name} must be positive", actual=value)
        if self.n_decoder_layers is not None and self.n_decoder_layers <= 0:
            raise InvalidDimension("n_decoder_layers must be positive", actual=self.n_decoder_layers)
        if self.d_model % self.n_heads != 0:
            raise InvalidDimension(
                f"d_model ({self.d_model}) must be divisible by n_heads ({self.n_heads})"
            )
        if self.positional == "sinusoidal" and self.d_model % 2 != 0:
            raise InvalidDimension("Sinusoidal encoding needs an even d_model", actual=self.d_model)
        if self.eps <= 0:
            raise ValueError(f"eps must be positive, got {self.eps}")
        if not 0.0 < self.temporal_decay <= 1.0:
            raise ValueError(f"temporal_decay must lie in (0, 1], got {self.temporal_decay}")
        if self.max_temporal_distance < 0:
            raise InvalidDimension(
                "max_temporal_distance must be non-negative", actual=self.max_temporal_distance
            )
        for name, allowed in (
            ("norm", NORMS),
            ("activation", ACTIVATION_NAMES),
            ("architecture", ARCHITECTURES),
            ("positional", POSITIONALS),
        ):
            if getattr(self, name) not in allowed:
                raise ValueError(f"Unknown {name}: {getattr(self, name)!r}. Available: {list(allowed)}")
        if self.pad_token_id is not None and not 0 <= self.pad_token_id < self.vocab_size:
            raise InvalidDimension(
                "pad_token_id must lie inside the vocabulary", actual=self.pad_token_id
            )

    @property
    def head_dim(self) -> int:
        return self.d_model // self.n_heads

    @property
    def decoder_layers(self) -> int:
        return self.n_layers if self.n_decoder_layers is None else self.n_decoder_layers

    # ------------------------------------------------------------------
    # (de)serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> "TransformerConfig":
        """Build from a mapping; unknown keys are rejected."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {unknown}")
        return cls(**values)

    def to_json(self, path: Union[str, Path]) -> None:
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "TransformerConfig":
        with open(path) as f:
            return cls.from_dict(json.load(f))
