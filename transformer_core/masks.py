# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Boolean attention masks.

Convention: ``mask[..., i, j] == True`` blocks query i from attending to key j.
Masks are plain boolean ndarrays of shape (T_q, T_kv) or (B, T_q, T_kv).
"""

from typing import Optional

import numpy as np

from .errors import InvalidMask


def causal_mask(seq_len: int) -> np.ndarray:
    """
    Build a causal (future-blocking) mask.

    Returns:
        Mask of shape (T, T) where mask[i, j] = True if j > i.
    """
    i = np.arange(seq_len)
    return i[:, None] < i[None, :]


def padding_mask(ids: np.ndarray, pad_id: int) -> np.ndarray:
    """
    Block every pair that involves a pad token.

    Args:
        ids: Token ids (B, T).
        pad_id: Id of the padding token.

    Returns:
        Mask of shape (B, T, T); row i and column i are blocked when
        ids[b, i] == pad_id.
    """
    pad = np.asarray(ids) == pad_id  # (B, T)
    return pad[:, :, None] | pad[:, None, :]


def key_padding_mask(q_len: int, key_ids: np.ndarray, pad_id: int) -> np.ndarray:
    """Mask of shape (B, q_len, T_kv) blocking keys that are pad tokens."""
    pad = np.asarray(key_ids) == pad_id  # (B, T_kv)
    return np.broadcast_to(pad[:, None, :], (pad.shape[0], q_len, pad.shape[1]))


def combine_masks(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> Optional[np.ndarray]:
    """Logical OR of two masks; either may be None."""
    if a is None:
        return None if b is None else np.asarray(b, dtype=bool)
    if b is None:
        return np.asarray(a, dtype=bool)
    a = np.asarray(a, dtype=bool)
    b = np.asarray(b, dtype=bool)
    try:
        return a | b
    except ValueError:
        raise InvalidMask(
            "Masks cannot be combined", expected=a.shape, actual=b.shape
        ) from None


def validate_mask(mask, batch: int, q_len: int, k_len: int) -> np.ndarray:
    """
    Coerce a mask to bool and broadcast it to (B, T_q, T_kv).

    Any numeric mask is accepted: non-zero entries block, zeros do not.

    Raises:
        InvalidMask: If the mask is not (T_q, T_kv) or (B, T_q, T_kv).
    """
    m = np.asarray(mask)
    if m.ndim == 2 and m.shape == (q_len, k_len):
        m = m[None, :, :]
    elif not (m.ndim == 3 and m.shape[1:] == (q_len, k_len) and m.shape[0] in (1, batch)):
        raise InvalidMask(
            "Mask shape does not match attention scores",
            expected=f"({q_len}, {k_len}) or ({batch}, {q_len}, {k_len})",
            actual=m.shape,
        )
    return np.broadcast_to(m.astype(bool), (batch, q_len, k_len))
