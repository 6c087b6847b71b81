# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

import numpy as np
import pytest

from transformer_core.config import TransformerConfig
from transformer_core.errors import InvalidMask, InvalidTokenId, MissingParameter, ShapeMismatch
from transformer_core.masks import causal_mask
from transformer_core.model import (
    Seq2SeqTransformer,
    TransformerLM,
    as_token_ids,
    build_model,
    sample_token,
)
from transformer_core.params import ParameterStore, parameter_shapes

# Single post-norm block, D=4, h=2, identity projections, zero FFN.
# Attention rows, with c = exp(1/sqrt(2)):
#   [c/(c+2), 1/(c+2), 1/3, 0], [1/(c+2), c/(c+2), 1/3, 0], [1/3, 1/3, c/(c+2), 0]
GOLDEN_LOGITS = np.array(
    [
        [1.6929954, -0.4705790, -0.3239347, -0.8984817],
        [-0.4705790, 1.6929954, -0.3239347, -0.8984817],
        [-0.3662186, -0.3662186, 1.6821617, -0.9497246],
    ]
)


def golden_config(**overrides):
    values = dict(
        d_model=4,
        n_heads=2,
        n_layers=1,
        d_ff=4,
        vocab_size=4,
        max_seq_len=3,
        positional="none",
        causal=False,
    )
    values.update(overrides)
    return TransformerConfig(**values)


def golden_params(config):
    params = {}
    for name, shape in parameter_shapes(config).items():
        leaf = name.rsplit(".", 1)[-1]
        if leaf in ("Wq", "Wk", "Wv", "Wo") or name in ("embed.W", "head.W"):
            params[name] = np.eye(*shape)
        elif leaf == "gamma":
            params[name] = np.ones(shape)
        else:
            params[name] = np.zeros(shape)
    return params


def small_config(**overrides):
    values = dict(d_model=8, n_heads=2, n_layers=2, d_ff=16, vocab_size=11, max_seq_len=6)
    values.update(overrides)
    return TransformerConfig(**values)


def test_golden_single_block():
    config = golden_config()
    model = TransformerLM(config, golden_params(config))
    logits = model.logits([[0, 1, 2]])
    assert logits.shape == (1, 3, 4)
    np.testing.assert_allclose(logits.data[0], GOLDEN_LOGITS, atol=1e-4)


def test_golden_probabilities_are_softmax_of_logits():
    config = golden_config()
    model = TransformerLM(config, golden_params(config))
    P = model.infer([0, 1, 2], output="probabilities").data[0]
    e = np.exp(GOLDEN_LOGITS - GOLDEN_LOGITS.max(axis=-1, keepdims=True))
    np.testing.assert_allclose(P, e / e.sum(axis=-1, keepdims=True), atol=1e-4)
    np.testing.assert_allclose(P.sum(axis=-1), 1.0, atol=1e-12)


def test_infer_rejects_unknown_output():
    model = build_model(small_config())
    with pytest.raises(ValueError):
        model.infer([[1, 2]], output="hidden")


def test_batch_rows_are_independent():
    model = build_model(small_config(), seed=3)
    batch = model.logits([[1, 2, 3], [4, 5, 6]]).data
    single = model.logits([[4, 5, 6]]).data
    np.testing.assert_allclose(batch[1], single[0], rtol=1e-12)


def test_causal_lm_prefix_is_stable():
    model = build_model(small_config(), seed=1)
    short = model.logits([[1, 2, 3]]).data
    long = model.logits([[1, 2, 3, 7, 9]]).data
    np.testing.assert_allclose(long[0, :3], short[0], atol=1e-12)


def test_caller_mask_is_combined_with_causal():
    model = build_model(small_config(causal=False), seed=2)
    ids = [[1, 2, 3]]
    np.testing.assert_allclose(
        model.logits(ids, mask=causal_mask(3)).data,
        build_model(small_config(), seed=2).logits(ids).data,
        rtol=1e-12,
    )
    with pytest.raises(InvalidMask):
        model.logits(ids, mask=np.zeros((2, 2)))


def test_padding_does_not_change_real_tokens():
    config = small_config(pad_token_id=0, causal=False)
    model = build_model(config, seed=4)
    plain = model.logits([[5, 6, 7]]).data
    padded = model.logits([[5, 6, 7, 0, 0]]).data
    np.testing.assert_allclose(padded[0, :3], plain[0], atol=1e-10)


def test_learned_positional_and_tied_embeddings():
    config = small_config(positional="learned", tie_embeddings=True, norm="pre")
    shapes = parameter_shapes(config)
    assert "pos.W" in shapes
    assert "head.W" not in shapes
    assert "ln_f.gamma" in shapes
    model = build_model(config, seed=0)
    assert model.probabilities([[1, 2]]).shape == (1, 2, 11)


def test_sequence_too_long():
    model = build_model(small_config())
    with pytest.raises(ShapeMismatch):
        model.logits([list(range(7))])


def test_token_id_out_of_vocabulary():
    model = build_model(small_config())
    with pytest.raises(InvalidTokenId):
        model.logits([[1, 11]])


def test_token_ids_validation():
    assert as_token_ids([1, 2]).shape == (1, 2)
    with pytest.raises(ShapeMismatch):
        as_token_ids([[1, 2], [3]])
    with pytest.raises(ShapeMismatch):
        as_token_ids([])
    with pytest.raises(InvalidTokenId):
        as_token_ids([[1.5, 2.0]])


def test_missing_parameter():
    config = golden_config()
    params = golden_params(config)
    del params["blocks.0.attn.Wk"]
    with pytest.raises(MissingParameter) as exc:
        TransformerLM(config, params)
    assert exc.value.name == "blocks.0.attn.Wk"
    assert isinstance(exc.value, KeyError)


def test_wrong_parameter_shape():
    config = golden_config()
    params = golden_params(config)
    params["blocks.0.ffn.W1"] = np.zeros((4, 5))
    with pytest.raises(ShapeMismatch):
        TransformerLM(config, params)


def test_architecture_mismatch():
    with pytest.raises(ValueError):
        TransformerLM(small_config(architecture="seq2seq"), {})


def test_sample_token_greedy_and_top_k():
    logits = np.array([0.1, 3.0, 2.0, -1.0])
    assert sample_token(logits, temperature=0.0) == 1
    rng = np.random.default_rng(0)
    draws = {sample_token(logits, temperature=1.0, top_k=2, rng=rng) for _ in range(200)}
    assert draws <= {1, 2}


def test_generate_greedy_is_deterministic():
    model = build_model(small_config(), seed=5)
    a = model.generate([1, 2], 6, temperature=0.0)
    b = model.generate([1, 2], 6, temperature=0.0)
    assert a == b
    assert a[:2] == [1, 2]
    assert len(a) == 8
    assert all(0 <= t < 11 for t in a)


def test_generate_stops_at_end_token():
    model = build_model(small_config(), seed=5)
    first = model.generate([1, 2], 1, temperature=0.0)[-1]
    out = model.generate([1, 2], 5, temperature=0.0, end_token=first)
    assert out == [1, 2, first]


def seq2seq_config(**overrides):
    values = dict(architecture="seq2seq", n_layers=1, n_decoder_layers=2, pad_token_id=0)
    values.update(overrides)
    return small_config(**values)


def test_seq2seq_shapes():
    model = build_model(seq2seq_config(), seed=0)
    assert isinstance(model, Seq2SeqTransformer)
    memory = model.encode([[3, 4, 5, 6]])
    assert memory.shape == (1, 4, 8)
    assert model.decode([[1, 2]], memory).shape == (1, 2, 8)
    P = model.infer([[3, 4, 5, 6]], [[1, 2]], output="probabilities").data
    assert P.shape == (1, 2, 11)
    np.testing.assert_allclose(P.sum(axis=-1), 1.0, atol=1e-12)


def test_seq2seq_decoder_is_causal():
    model = build_model(seq2seq_config(), seed=1)
    src = [[3, 4, 5]]
    short = model.logits(src, [[1, 2]]).data
    long = model.logits(src, [[1, 2, 9]]).data
    np.testing.assert_allclose(long[0, :2], short[0], atol=1e-12)


def test_seq2seq_source_padding_is_ignored():
    model = build_model(seq2seq_config(), seed=2)
    plain = model.logits([[3, 4, 5]], [[1, 2]]).data
    padded = model.logits([[3, 4, 5, 0, 0]], [[1, 2]]).data
    np.testing.assert_allclose(padded, plain, atol=1e-10)


def test_seq2seq_depends_on_source():
    model = build_model(seq2seq_config(), seed=3)
    a = model.logits([[3, 4, 5]], [[1, 2]]).data
    b = model.logits([[7, 8, 9]], [[1, 2]]).data
    assert not np.allclose(a, b)


def test_seq2seq_generate():
    model = build_model(seq2seq_config(), seed=4)
    out = model.generate([3, 4, 5], start_token=1, max_length=10, temperature=0.0)
    assert out[0] == 1
    assert len(out) <= model.config.max_seq_len
    assert out == model.generate([3, 4, 5], start_token=1, max_length=10, temperature=0.0)
    if 0 in out:
        assert out.index(0) == len(out) - 1
    with pytest.raises(ShapeMismatch):
        model.generate([[3, 4], [5, 6]], start_token=1, max_length=2)


def test_models_share_one_parameter_store():
    config = small_config()
    params = ParameterStore.random(config, seed=0)
    a = TransformerLM(config, params)
    b = TransformerLM(config, params)
    assert a.params is b.params
    np.testing.assert_array_equal(a.logits([[1, 2]]).data, b.logits([[1, 2]]).data)


def test_seq2seq_infer_accepts_masks():
    model = build_model(seq2seq_config(), seed=5)
    src, tgt = [[3, 4, 5]], [[1, 2]]
    plain = model.infer(src, tgt).data
    np.testing.assert_array_equal(model.infer(src, tgt, tgt_mask=np.zeros((2, 2))).data, plain)
    np.testing.assert_array_equal(model.infer(src, tgt, src_mask=np.zeros((3, 3))).data, plain)
    blocked = np.array([[False, True, False]] * 3)
    assert not np.allclose(model.infer(src, tgt, src_mask=blocked).data, plain)
    P = model.infer(src, tgt, output="probabilities", tgt_mask=np.zeros((2, 2))).data
    np.testing.assert_allclose(P.sum(axis=-1), 1.0, atol=1e-12)
    with pytest.raises(InvalidMask):
        model.infer(src, tgt, tgt_mask=np.zeros((3, 3)))
