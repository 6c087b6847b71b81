# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

import numpy as np
import pytest

from transformer_core.errors import InvalidMask
from transformer_core.masks import (
    causal_mask,
    combine_masks,
    key_padding_mask,
    padding_mask,
    validate_mask,
)


def test_causal_mask_blocks_future():
    m = causal_mask(3)
    expected = np.array(
        [
            [False, True, True],
            [False, False, True],
            [False, False, False],
        ]
    )
    np.testing.assert_array_equal(m, expected)


def test_padding_mask_blocks_rows_and_columns():
    m = padding_mask(np.array([[5, 6, 0]]), pad_id=0)
    assert m.shape == (1, 3, 3)
    assert not m[0, 0, 1]
    assert m[0, 0, 2]
    assert m[0, 2].all()


def test_key_padding_mask():
    m = key_padding_mask(2, np.array([[1, 0, 3]]), pad_id=0)
    assert m.shape == (1, 2, 3)
    np.testing.assert_array_equal(m[0], [[False, True, False], [False, True, False]])


def test_combine_masks():
    a = causal_mask(2)
    assert combine_masks(None, None) is None
    np.testing.assert_array_equal(combine_masks(a, None), a)
    both = combine_masks(a, np.array([[True, False], [False, False]]))
    np.testing.assert_array_equal(both, [[True, True], [False, False]])
    with pytest.raises(InvalidMask):
        combine_masks(causal_mask(2), causal_mask(3))


def test_validate_mask_broadcasts():
    m = validate_mask(np.zeros((3, 4)), batch=2, q_len=3, k_len=4)
    assert m.shape == (2, 3, 4)
    assert m.dtype == bool


@pytest.mark.parametrize("shape", [(3, 3), (2, 3, 3), (2, 4, 3), (4,)])
def test_validate_mask_rejects_bad_shapes(shape):
    with pytest.raises(InvalidMask):
        validate_mask(np.zeros(shape), batch=3, q_len=4, k_len=3)
