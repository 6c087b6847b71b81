# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
transformer_core
================

Forward-pass core of a Transformer in NumPy: no training, no autodiff.

Public API
~~~~~~~~~~
- Tensor primitive
    - `Tensor`, `as_tensor`
- Layers
    - `LayerNorm`, `MultiHeadAttention`, `FeedForward`
    - `EncoderBlock`, `DecoderBlock`, `Encoder`, `Decoder`
- Encodings and masks
    - `sinusoidal_encoding`, `positional_encoding`
    - `causal_mask`, `padding_mask`, `combine_masks`
- Models
    - `TransformerConfig`, `ParameterStore`
    - `TransformerLM`, `Seq2SeqTransformer`, `build_model`
- Temporal continuity
    - `TemporalAttention`, `TemporalEncoder`, `pool_state`
- Errors
    - `ShapeMismatch`, `DimensionMismatch`, `InvalidMask`,
      `InvalidDimension`, `MissingParameter`

Example
-------
>>> import transformer_core as tc
>>> cfg = tc.TransformerConfig(d_model=8, n_heads=2, n_layers=1, d_ff=16,
...                            vocab_size=10, max_seq_len=4)
>>> model = tc.build_model(cfg, seed=0)
>>> model.probabilities([[1, 2, 3]]).shape
(1, 3, 10)
"""

from importlib.metadata import version as _pkg_version

from .activations import ACTIVATIONS, gelu, get_activation, relu
from .attention import MultiHeadAttention, scaled_dot_product_attention, softmax_last
from .config import TransformerConfig
from .errors import (
    DimensionMismatch,
    InvalidDimension,
    InvalidMask,
    InvalidTokenId,
    MissingParameter,
    ShapeMismatch,
    TransformerError,
)
from .masks import causal_mask, combine_masks, padding_mask
from .model import Seq2SeqTransformer, TransformerLM, build_model
from .normalization import LayerNorm
from .params import (
    ParameterStore,
    load_checkpoint,
    parameter_shapes,
    save_checkpoint,
)
from .positional import (
    LearnedPositionalEmbedding,
    SinusoidalPositionalEncoding,
    positional_encoding,
    sinusoidal_encoding,
)
from .temporal import TemporalAttention, TemporalEncoder, pool_state
from .tensor import Tensor, as_tensor
from .transformer import (
    Decoder,
    DecoderBlock,
    Encoder,
    EncoderBlock,
    FeedForward,
    OutputHead,
    TokenEmbedding,
)

__all__ = [
    # Tensor
    "Tensor",
    "as_tensor",
    # Activations
    "relu",
    "gelu",
    "get_activation",
    "ACTIVATIONS",
    # Normalization
    "LayerNorm",
    # Positional
    "positional_encoding",
    "sinusoidal_encoding",
    "SinusoidalPositionalEncoding",
    "LearnedPositionalEmbedding",
    # Masks
    "causal_mask",
    "padding_mask",
    "combine_masks",
    # Attention
    "softmax_last",
    "scaled_dot_product_attention",
    "MultiHeadAttention",
    # Transformer
    "FeedForward",
    "EncoderBlock",
    "DecoderBlock",
    "Encoder",
    "Decoder",
    "TokenEmbedding",
    "OutputHead",
    # Models
    "TransformerConfig",
    "ParameterStore",
    "parameter_shapes",
    "save_checkpoint",
    "load_checkpoint",
    "TransformerLM",
    "Seq2SeqTransformer",
    "build_model",
    # Temporal continuity
    "TemporalAttention",
    "TemporalEncoder",
    "pool_state",
    # Errors
    "TransformerError",
    "ShapeMismatch",
    "DimensionMismatch",
    "InvalidMask",
    "InvalidDimension",
    "InvalidTokenId",
    "MissingParameter",
]

# ---------------------------------------------------------------------
# Version string (helps "pip show transformer-core", Sphinx, etc.)
# ---------------------------------------------------------------------
try:  # installed via pip / build backend
    __version__ = _pkg_version("transformer-core")
except Exception:  # running from a checkout
    __version__ = "0.0.0.dev0"

# ---------------------------------------------------------------------
# Library logging stays silent unless the application configures it.
# ---------------------------------------------------------------------
import logging as _logging

_logging.getLogger(__name__).addHandler(_logging.NullHandler())
