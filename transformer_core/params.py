# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Model parameters: naming, shapes, initialization and checkpoints.

Parameters live in a ``ParameterStore``: an immutable name -> Tensor mapping
built once and then shared read-only by every layer. Inference never writes
to it, so one store can back any number of concurrent forward passes.
Replacing weights means building a new store.

Names are dotted paths, e.g. ``blocks.0.attn.Wq`` or
``decoder.blocks.1.cross_attn.Wo``; ``parameter_shapes`` is the single source
of truth for which names a configuration needs.
"""

import logging
from collections.abc import Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterator, Tuple, Union

import numpy as np

from .config import TransformerConfig
from .errors import MissingParameter, ShapeMismatch
from .tensor import Tensor, as_tensor

logger = logging.getLogger(__name__)

PARAMS_FILE = "params.npz"
CONFIG_FILE = "config.json"

Shape = Tuple[int, ...]


def _attn_shapes(prefix: str, D: int) -> Dict[str, Shape]:
    return {f"{prefix}.{w}": (D, D) for w in ("Wq", "Wk", "Wv", "Wo")}


def _norm_shapes(prefix: str, D: int) -> Dict[str, Shape]:
    return {f"{prefix}.gamma": (D,), f"{prefix}.beta": (D,)}


def _ffn_shapes(prefix: str, D: int, Dff: int) -> Dict[str, Shape]:
    return {
        f"{prefix}.W1": (D, Dff),
        f"{prefix}.b1": (Dff,),
        f"{prefix}.W2": (Dff, D),
        f"{prefix}.b2": (D,),
    }


def _stack_shapes(
    config: TransformerConfig, prefix: str, num_layers: int, cross: bool
) -> Dict[str, Shape]:
    D, Dff = config.d_model, config.d_ff
    shapes: Dict[str, Shape] = {f"{prefix}embed.W": (config.vocab_size, D)}
    if config.positional == "learned":
        shapes[f"{prefix}pos.W"] = (config.max_seq_len, D)
    for i in range(num_layers):
        blk = f"{prefix}blocks.{i}"
        if cross:
            shapes.update(_attn_shapes(f"{blk}.self_attn", D))
            shapes.update(_norm_shapes(f"{blk}.ln1", D))
            shapes.update(_attn_shapes(f"{blk}.cross_attn", D))
            shapes.update(_norm_shapes(f"{blk}.ln2", D))
            shapes.update(_ffn_shapes(f"{blk}.ffn", D, Dff))
            shapes.update(_norm_shapes(f"{blk}.ln3", D))
        else:
            shapes.update(_attn_shapes(f"{blk}.attn", D))
            shapes.update(_norm_shapes(f"{blk}.ln1", D))
            shapes.update(_ffn_shapes(f"{blk}.ffn", D, Dff))
            shapes.update(_norm_shapes(f"{blk}.ln2", D))
    if config.norm == "pre":
        shapes.update(_norm_shapes(f"{prefix}ln_f", D))
    if config.temporal and not cross:
        shapes[f"{prefix}temporal.W_mem"] = (D, D)
        shapes.update(_norm_shapes(f"{prefix}temporal.ln", D))
    return shapes


def parameter_shapes(config: TransformerConfig) -> Dict[str, Shape]:
    """
    Every parameter name the configuration requires, with its shape.

    Returns:
        Ordered mapping name -> shape.
    """
    if config.architecture == "seq2seq":
        shapes = _stack_shapes(config, "encoder.", config.n_layers, cross=False)
        shapes.update(_stack_shapes(config, "decoder.", config.decoder_layers, cross=True))
    else:
        shapes = _stack_shapes(config, "", config.n_layers, cross=False)
    if not config.tie_embeddings:
        shapes["head.W"] = (config.d_model, config.vocab_size)
    shapes["head.b"] = (config.vocab_size,)
    return shapes


def he_init(fan_in: int, fan_out: int, rng: np.random.Generator) -> np.ndarray:
    """Kaiming/He initialization: N(0, sqrt(2/fan_in))."""
    std = np.sqrt(2.0 / fan_in)
    return rng.normal(0.0, std, size=(fan_in, fan_out))


class ParameterStore(Mapping):
    """
    Immutable mapping from parameter name to Tensor.

    Looking up an absent name raises ``MissingParameter``.
    """

    def __init__(self, tensors: Mapping) -> None:
        self._tensors = MappingProxyType(
            {name: as_tensor(value) for name, value in tensors.items()}
        )

    def __getitem__(self, name: str) -> Tensor:
        try:
            return self._tensors[name]
        except KeyError:
            raise MissingParameter(name) from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._tensors)

    def __len__(self) -> int:
        return len(self._tensors)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({len(self)} tensors, {self.num_parameters()} values)"

    def num_parameters(self) -> int:
        return sum(t.size for t in self._tensors.values())

    def require(self, name: str, shape: Shape) -> Tensor:
        """Fetch ``name`` and check its shape."""
        t = self[name]
        if t.shape != tuple(shape):
            raise ShapeMismatch(
                f"Parameter {name!r} has the wrong shape", expected=tuple(shape), actual=t.shape
            )
        return t

    def validate(self, config: TransformerConfig) -> None:
        """
        Check the store against the architecture.

        Raises:
            MissingParameter: If a required name is absent.
            ShapeMismatch: If a tensor's shape disagrees with the config.
        """
        expected = parameter_shapes(config)
        for name, shape in expected.items():
            self.require(name, shape)
        unused = sorted(set(self) - set(expected))
        if unused:
            logger.warning("Ignoring %d unused parameters: %s", len(unused), unused)

    @classmethod
    def load(cls, tensors: Mapping, config: TransformerConfig) -> "ParameterStore":
        """Build a store from raw arrays and validate it against ``config``."""
        store = cls(tensors)
        store.validate(config)
        logger.debug("Loaded %d parameter tensors (%d values)", len(store), store.num_parameters())
        return store

    @classmethod
    def random(cls, config: TransformerConfig, seed: int = 0) -> "ParameterStore":
        """
        Random initialization for every required parameter.

        - projections: He init
        - embeddings: N(0, 0.02)
        - output head: Glorot-style N(0, sqrt(2 / (D + V)))
        - LayerNorm: gamma = 1, beta = 0; biases = 0
        """
        rng = np.random.default_rng(seed)
        tensors: Dict[str, np.ndarray] = {}
        for name, shape in parameter_shapes(config).items():
            leaf = name.rsplit(".", 1)[-1]
            if leaf == "gamma":
                tensors[name] = np.ones(shape)
            elif leaf in ("beta", "b", "b1", "b2"):
                tensors[name] = np.zeros(shape)
            elif name.endswith("embed.W") or name.endswith("pos.W"):
                tensors[name] = rng.normal(0.0, 0.02, size=shape)
            elif name == "head.W":
                std = np.sqrt(2.0 / (shape[0] + shape[1]))
                tensors[name] = rng.normal(0.0, std, size=shape)
            else:
                tensors[name] = he_init(shape[0], shape[1], rng)
        return cls(tensors)

    def to_arrays(self) -> Dict[str, np.ndarray]:
        return {name: t.numpy() for name, t in self._tensors.items()}


def save_checkpoint(
    directory: Union[str, Path], config: TransformerConfig, params: ParameterStore
) -> Path:
    """Write ``params.npz`` and ``config.json`` into ``directory``."""
    ckpt_dir = Path(directory)
    ckpt_dir.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(ckpt_dir / PARAMS_FILE, **params.to_arrays())
    config.to_json(ckpt_dir / CONFIG_FILE)
    logger.info("saved checkpoint → %s (%d tensors)", ckpt_dir, len(params))
    return ckpt_dir


def load_checkpoint(directory: Union[str, Path]) -> Tuple[TransformerConfig, ParameterStore]:
    """Read a checkpoint written by ``save_checkpoint`` and validate it."""
    ckpt_dir = Path(directory)
    config = TransformerConfig.from_json(ckpt_dir / CONFIG_FILE)
    with np.load(ckpt_dir / PARAMS_FILE) as z:
        arrays: Dict[str, Any] = {name: z[name] for name in z.files}
    params = ParameterStore.load(arrays, config)
    logger.info("loaded checkpoint ← %s", ckpt_dir)
    return config, params
