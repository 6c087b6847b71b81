# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Inference entry points.

- TransformerLM: token ids -> embeddings + positions -> block stack -> head.
- Seq2SeqTransformer: encoder over source ids, decoder with cross-attention
  over the encoder memory.

Both are stateless between calls: every call receives the full input and
reads the shared, immutable ParameterStore.
"""

import logging
from typing import List, Mapping, Optional, Union

import numpy as np

from .attention import softmax_last
from .config import TransformerConfig
from .errors import InvalidTokenId, ShapeMismatch
from .masks import causal_mask, combine_masks, key_padding_mask, padding_mask, validate_mask
from .params import ParameterStore
from .positional import get_positional_encoding
from .tensor import Tensor
from .temporal import TemporalEncoder
from .transformer import Decoder, Encoder, OutputHead, TokenEmbedding

logger = logging.getLogger(__name__)

OUTPUTS = ("logits", "probabilities")


def as_token_ids(ids) -> np.ndarray:
    """
    Coerce a batch of token-id sequences to an int64 (B, T) array.

    A single flat sequence is treated as a batch of one.

    Raises:
        ShapeMismatch: If the batch is ragged or empty.
        InvalidTokenId: If an id is not an integer.
    """
    try:
        arr = np.asarray(ids)
    except ValueError:
        raise ShapeMismatch("Token id sequences must all have the same length") from None
    if arr.dtype == object:
        raise ShapeMismatch("Token id sequences must all have the same length")
    if arr.ndim == 1:
        arr = arr[None, :]
    if arr.ndim != 2 or 0 in arr.shape:
        raise ShapeMismatch("Token ids must form a non-empty (B, T) batch", actual=arr.shape)
    if not np.issubdtype(arr.dtype, np.integer):
        raise InvalidTokenId("Token ids must be integers", actual=arr.dtype)
    return arr.astype(np.int64)


def sample_token(
    logits: np.ndarray,
    temperature: float = 1.0,
    top_k: int = 0,
    rng: Optional[np.random.Generator] = None,
) -> int:
    """
    Pick the next token from a row of logits.

    Args:
        logits: Scores (V,).
        temperature: 0 means greedy argmax; otherwise scores are divided by it.
        top_k: When > 0, sample only among the k best scores.
        rng: Random generator for sampling.
    """
    z = np.asarray(logits, dtype=np.float64)
    if temperature <= 0:
        return int(np.argmax(z))
    z = z / temperature
    if top_k > 0:
        k = min(top_k, z.size)
        idx = np.argpartition(z, -k)[-k:]
        keep = np.zeros(z.size, dtype=bool)
        keep[idx] = True
        z = np.where(keep, z, -np.inf)
    p = softmax_last(Tensor.from_array(z)).numpy()
    rng = np.random.default_rng() if rng is None else rng
    return int(rng.choice(z.size, p=p))


class _InputEmbedding:
    """Token lookup plus positional encoding."""

    def __init__(self, params: ParameterStore, prefix: str, config: TransformerConfig) -> None:
        self.max_seq_len = config.max_seq_len
        self.token = TokenEmbedding(params[f"{prefix}embed.W"])
        self.positional = get_positional_encoding(
            config.positional,
            config.max_seq_len,
            config.d_model,
            W=params.get(f"{prefix}pos.W"),
        )

    def __call__(self, ids: np.ndarray) -> Tensor:
        T = ids.shape[1]
        if T > self.max_seq_len:
            raise ShapeMismatch(
                "Sequence longer than max_seq_len", expected=f"<= {self.max_seq_len}", actual=T
            )
        X = self.token(ids)  # (B, T, D)
        if self.positional is not None:
            X = X + self.positional.forward(T)  # (T, D) broadcast over B
        return X


def _coerce_params(config: TransformerConfig, params) -> ParameterStore:
    if isinstance(params, ParameterStore):
        params.validate(config)
        return params
    return ParameterStore.load(params, config)


def _head(params: ParameterStore, config: TransformerConfig, embed_name: str) -> OutputHead:
    W = params[embed_name].T if config.tie_embeddings else params["head.W"]
    return OutputHead(W, params["head.b"])


def _temporal(params: ParameterStore, prefix: str, config: TransformerConfig, encoder: Encoder):
    if not config.temporal:
        return None
    return TemporalEncoder.from_params(params, prefix, config, encoder)


def _require_temporal(model) -> TemporalEncoder:
    if model.temporal is None:
        raise ValueError("Temporal continuity needs a config with temporal=True")
    return model.temporal


class TransformerLM:
    """
    Single block stack with a vocabulary head.

    With ``config.causal`` each position only attends to itself and earlier
    positions, which makes the model usable for autoregressive generation.
    """

    def __init__(self, config: TransformerConfig, params: Union[ParameterStore, Mapping]) -> None:
        """
        Args:
            config: Architecture; must use ``architecture='stack'``.
            params: ParameterStore or raw name -> array mapping.

        Raises:
            MissingParameter: If a required parameter is absent.
            ShapeMismatch: If a parameter has the wrong shape.
        """
        if config.architecture != "stack":
            raise ValueError(f"TransformerLM needs architecture='stack', got {config.architecture!r}")
        self.config = config
        self.params = _coerce_params(config, params)
        self.embed = _InputEmbedding(self.params, "", config)
        self.stack = Encoder.from_params(self.params, "", config, config.n_layers)
        self.temporal = _temporal(self.params, "", config, self.stack)
        self.head = _head(self.params, config, "embed.W")
        logger.debug(
            "TransformerLM: D=%d, h=%d, layers=%d, V=%d",
            config.d_model,
            config.n_heads,
            config.n_layers,
            config.vocab_size,
        )

    def attention_mask(self, ids: np.ndarray, mask=None) -> Optional[np.ndarray]:
        """Caller mask combined with the causal and padding masks."""
        B, T = ids.shape
        m = None if mask is None else validate_mask(mask, B, T, T)
        if self.config.causal:
            m = combine_masks(m, causal_mask(T))
        if self.config.pad_token_id is not None:
            m = combine_masks(m, padding_mask(ids, self.config.pad_token_id))
        return m

    def hidden(self, ids, mask=None) -> Tensor:
        """Final hidden states, shape (B, T, D)."""
        ids = as_token_ids(ids)
        X = self.embed(ids)
        return self.stack(X, mask=self.attention_mask(ids, mask))

    def logits(self, ids, mask=None) -> Tensor:
        """Raw scores, shape (B, T, V)."""
        return self.head.logits(self.hidden(ids, mask))

    def probabilities(self, ids, mask=None) -> Tensor:
        """Softmax over the vocabulary, shape (B, T, V)."""
        return softmax_last(self.logits(ids, mask))

    def hidden_with_history(self, ids, previous_states, distances=None, mask=None) -> Tensor:
        """
        Hidden states mixed with decay-weighted attention over earlier states.

        Args:
            ids: (B, T) token ids.
            previous_states: Earlier hidden states, each (B, T_i, D), most recent first.
            distances: Steps back per state; defaults to 1, 2, ...
        """
        temporal = _require_temporal(self)
        ids = as_token_ids(ids)
        return temporal(self.embed(ids), previous_states, distances, mask=self.attention_mask(ids, mask))

    def hidden_with_continuity(self, ids, previous_states, mask=None) -> Tensor:
        """
        Hidden states integrated with attention over the joined earlier states.

        The result can be passed back as a previous state on the next call.
        """
        temporal = _require_temporal(self)
        ids = as_token_ids(ids)
        return temporal.forward_with_continuity(
            self.embed(ids), previous_states, mask=self.attention_mask(ids, mask)
        )

    def logits_with_continuity(self, ids, previous_states, mask=None) -> Tensor:
        """Raw scores (B, T, V) from ``hidden_with_continuity``."""
        return self.head.logits(self.hidden_with_continuity(ids, previous_states, mask))

    def infer(self, ids, mask=None, output: str = "logits") -> Tensor:
        """
        Run inference on a batch of token-id sequences.

        Args:
            ids: (B, T) token ids, or a single sequence.
            mask: Optional boolean mask (T, T) or (B, T, T); True blocks.
            output: 'logits' or 'probabilities'.
        """
        if output not in OUTPUTS:
            raise ValueError(f"Unknown output: {output!r}. Available: {list(OUTPUTS)}")
        if output == "probabilities":
            return self.probabilities(ids, mask)
        return self.logits(ids, mask)

    __call__ = infer

    def generate(
        self,
        prompt,
        max_new_tokens: int,
        temperature: float = 1.0,
        top_k: int = 0,
        rng: Optional[np.random.Generator] = None,
        end_token: Optional[int] = None,
    ) -> List[int]:
        """
        Extend ``prompt`` one token at a time.

        The context is cropped to the last ``max_seq_len`` tokens.

        Returns:
            Prompt followed by the generated ids.
        """
        ids = list(as_token_ids(prompt)[0])
        rng = np.random.default_rng() if rng is None else rng
        for _ in range(max_new_tokens):
            ctx = np.asarray(ids[-self.config.max_seq_len :], dtype=np.int64)
            z = self.logits(ctx[None, :]).data[0, -1]  # (V,)
            nxt = sample_token(z, temperature, top_k, rng)
            ids.append(nxt)
            if end_token is not None and nxt == end_token:
                break
        return [int(i) for i in ids]


class Seq2SeqTransformer:
    """Encoder-decoder transformer."""

    def __init__(self, config: TransformerConfig, params: Union[ParameterStore, Mapping]) -> None:
        """
        Args:
            config: Architecture; must use ``architecture='seq2seq'``.
            params: ParameterStore or raw name -> array mapping.
        """
        if config.architecture != "seq2seq":
            raise ValueError(f"Seq2SeqTransformer needs architecture='seq2seq', got {config.architecture!r}")
        self.config = config
        self.params = _coerce_params(config, params)
        self.src_embed = _InputEmbedding(self.params, "encoder.", config)
        self.tgt_embed = _InputEmbedding(self.params, "decoder.", config)
        self.encoder = Encoder.from_params(self.params, "encoder.", config, config.n_layers)
        self.temporal = _temporal(self.params, "encoder.", config, self.encoder)
        self.decoder = Decoder.from_params(self.params, "decoder.", config, config.decoder_layers)
        self.head = _head(self.params, config, "decoder.embed.W")
        logger.debug(
            "Seq2SeqTransformer: D=%d, h=%d, enc=%d, dec=%d, V=%d",
            config.d_model,
            config.n_heads,
            config.n_layers,
            config.decoder_layers,
            config.vocab_size,
        )

    def _self_mask(self, ids: np.ndarray, mask, causal: bool) -> Optional[np.ndarray]:
        B, T = ids.shape
        m = None if mask is None else validate_mask(mask, B, T, T)
        if causal:
            m = combine_masks(m, causal_mask(T))
        if self.config.pad_token_id is not None:
            m = combine_masks(m, padding_mask(ids, self.config.pad_token_id))
        return m

    def encode(self, src, src_mask=None) -> Tensor:
        """
        Run the encoder.

        Args:
            src: Source ids (B, T_src).
            src_mask: Optional extra mask (T_src, T_src) or (B, T_src, T_src).

        Returns:
            memory: (B, T_src, D).
        """
        src = as_token_ids(src)
        return self.encoder(self.src_embed(src), mask=self._self_mask(src, src_mask, causal=False))

    def encode_with_continuity(self, src, previous_states, src_mask=None) -> Tensor:
        """
        Encoder memory integrated with earlier encoder outputs.

        Args:
            src: Source ids (B, T_src).
            previous_states: Earlier memories, each (B, T_i, D).

        Returns:
            memory: (B, T_src, D), usable with ``decode``.
        """
        temporal = _require_temporal(self)
        src = as_token_ids(src)
        return temporal.forward_with_continuity(
            self.src_embed(src), previous_states, mask=self._self_mask(src, src_mask, causal=False)
        )

    def decode(self, tgt, memory: Tensor, src=None, tgt_mask=None) -> Tensor:
        """
        Run the decoder against an encoder memory.

        Args:
            tgt: Target ids (B, T).
            memory: Output of ``encode`` (B, T_src, D).
            src: Source ids, used to mask pad tokens out of cross-attention.
            tgt_mask: Optional extra self-attention mask.

        Returns:
            Decoder hidden states (B, T, D).
        """
        tgt = as_token_ids(tgt)
        self_mask = self._self_mask(tgt, tgt_mask, causal=True)
        mem_mask = None
        if src is not None and self.config.pad_token_id is not None:
            mem_mask = key_padding_mask(tgt.shape[1], as_token_ids(src), self.config.pad_token_id)
        return self.decoder(self.tgt_embed(tgt), memory, tgt_mask=self_mask, mem_mask=mem_mask)

    def logits(self, src, tgt, src_mask=None, tgt_mask=None) -> Tensor:
        """Raw scores over the target vocabulary, shape (B, T, V)."""
        memory = self.encode(src, src_mask)
        return self.head.logits(self.decode(tgt, memory, src=src, tgt_mask=tgt_mask))

    def probabilities(self, src, tgt, src_mask=None, tgt_mask=None) -> Tensor:
        return softmax_last(self.logits(src, tgt, src_mask, tgt_mask))

    def infer(self, src, tgt, output: str = "logits", src_mask=None, tgt_mask=None) -> Tensor:
        """
        Run inference on a batch of source/target pairs.

        Args:
            src: Source ids (B, T_src).
            tgt: Target ids (B, T).
            output: 'logits' or 'probabilities'.
            src_mask: Optional extra encoder mask (T_src, T_src) or (B, T_src, T_src).
            tgt_mask: Optional extra decoder self-attention mask (T, T) or (B, T, T).
        """
        if output not in OUTPUTS:
            raise ValueError(f"Unknown output: {output!r}. Available: {list(OUTPUTS)}")
        if output == "probabilities":
            return self.probabilities(src, tgt, src_mask, tgt_mask)
        return self.logits(src, tgt, src_mask, tgt_mask)

    __call__ = infer

    def generate(
        self,
        src,
        start_token: int,
        max_length: int,
        temperature: float = 1.0,
        top_k: int = 0,
        rng: Optional[np.random.Generator] = None,
        end_token: Optional[int] = None,
    ) -> List[int]:
        """
        Decode one target sequence for a single source sequence.

        Stops after ``max_length`` new tokens, at ``end_token`` (defaults to
        ``pad_token_id``), or when the target reaches ``max_seq_len``.

        Returns:
            Generated ids, starting with ``start_token``.
        """
        src = as_token_ids(src)
        if src.shape[0] != 1:
            raise ShapeMismatch("generate() decodes one source sequence", expected=1, actual=src.shape[0])
        if end_token is None:
            end_token = self.config.pad_token_id
        rng = np.random.default_rng() if rng is None else rng
        memory = self.encode(src)
        generated = [int(start_token)]
        for _ in range(max_length):
            if len(generated) >= self.config.max_seq_len:
                logger.debug("generate(): reached max_seq_len=%d", self.config.max_seq_len)
                break
            tgt = np.asarray(generated, dtype=np.int64)[None, :]
            z = self.head.logits(self.decode(tgt, memory, src=src)).data[0, -1]
            nxt = sample_token(z, temperature, top_k, rng)
            generated.append(nxt)
            if end_token is not None and nxt == end_token:
                break
        return generated


def build_model(
    config: TransformerConfig,
    params: Optional[Union[ParameterStore, Mapping]] = None,
    seed: int = 0,
):
    """
    Construct the model class matching ``config.architecture``.

    Args:
        config: Architecture.
        params: Parameters; random initialization from ``seed`` when omitted.
    """
    if params is None:
        params = ParameterStore.random(config, seed=seed)
    if config.architecture == "seq2seq":
        return Seq2SeqTransformer(config, params)
    return TransformerLM(config, params)
