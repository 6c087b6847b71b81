# Copyright (C) 2025 Brantleigh Bunting
# SPDX-License-Identifier: BUSL-1.1
#
# Use of this software is governed by the Business Source License
# included in the LICENSE file and at <https://mariadb.com/bsl11>

"""
Immutable dense tensor used throughout the forward pass.

A Tensor wraps a row-major float64 NumPy array whose write flag is cleared,
so a Tensor handed to a callee can never be changed by it. Every operation
validates shapes up front and returns a new Tensor.

Shapes: (B, T, D) = batch, sequence, model dim, as elsewhere in the package.
"""

import math
from typing import Any, Callable, Sequence, Tuple, Union

import numpy as np

from .errors import DimensionMismatch, InvalidDimension, ShapeMismatch

DTYPE = np.float64

Operand = Union["Tensor", np.ndarray, float, int]


def _readonly(arr: np.ndarray) -> np.ndarray:
    # a view is only safe when nothing writable sits underneath it
    base = arr.base
    if base is not None and (not isinstance(base, np.ndarray) or base.flags.writeable):
        arr = arr.copy()
    arr.setflags(write=False)
    return arr


class Tensor:
    """
    Dense multi-dimensional float buffer with shape-checked operations.

    Attributes:
        shape: Tuple of positive ints.
        data:  Read-only ndarray of that shape.
    """

    __slots__ = ("_data",)

    # ndarray <op> Tensor defers to Tensor's reflected operators
    __array_ufunc__ = None

    def __init__(self, shape: Sequence[int], data: Any) -> None:
        """
        Args:
            shape: Dimensions, each a positive integer.
            data:  Flat (or nested) numeric buffer with prod(shape) elements.

        Raises:
            InvalidDimension: If a dimension is not positive.
            ShapeMismatch: If the buffer length differs from prod(shape).
        """
        shape = tuple(int(s) for s in shape)
        if any(s <= 0 for s in shape):
            raise InvalidDimension("Tensor dimensions must be positive", actual=shape)
        flat = np.array(data, dtype=DTYPE).reshape(-1)
        if flat.size != math.prod(shape):
            raise ShapeMismatch(
                f"Buffer length does not match shape {shape}",
                expected=math.prod(shape),
                actual=flat.size,
            )
        self._data = _readonly(flat.reshape(shape).copy())

    # ------------------------------------------------------------------
    # constructors
    # ------------------------------------------------------------------

    @classmethod
    def from_array(cls, array: Any) -> "Tensor":
        """Wrap an array-like, taking its shape as given (copies the data)."""
        arr = np.array(array, dtype=DTYPE)
        if arr.ndim == 0:
            arr = arr.reshape(1)
        return cls(arr.shape, arr)

    @classmethod
    def _wrap(cls, arr: np.ndarray) -> "Tensor":
        # Takes ownership of arr, a fresh result of a NumPy op inside the package.
        t = object.__new__(cls)
        if arr.dtype != DTYPE:
            arr = arr.astype(DTYPE)
        t._data = _readonly(arr)
        return t

    @classmethod
    def zeros(cls, shape: Sequence[int]) -> "Tensor":
        return cls(shape, np.zeros(math.prod(shape)))

    @classmethod
    def ones(cls, shape: Sequence[int]) -> "Tensor":
        return cls(shape, np.ones(math.prod(shape)))

    # ------------------------------------------------------------------
    # introspection
    # ------------------------------------------------------------------

    @property
    def shape(self) -> Tuple[int, ...]:
        return self._data.shape

    @property
    def ndim(self) -> int:
        return self._data.ndim

    @property
    def size(self) -> int:
        return self._data.size

    @property
    def data(self) -> np.ndarray:
        """Read-only view of the backing array."""
        return self._data

    def numpy(self) -> np.ndarray:
        """Writable copy of the backing array."""
        return self._data.copy()

    def tolist(self) -> list:
        return self._data.tolist()

    def __array__(self, dtype=None, copy=None) -> np.ndarray:
        if copy:
            return self._data.astype(dtype or DTYPE, copy=True)
        return self._data if dtype is None else self._data.astype(dtype)

    def __len__(self) -> int:
        return self.shape[0]

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(shape={self.shape}, data={self._data!r})"

    def __getitem__(self, key) -> "Tensor":
        out = self._data[key]
        if np.ndim(out) == 0:
            out = np.reshape(out, (1,))
        return Tensor._wrap(np.asarray(out))

    # ------------------------------------------------------------------
    # elementwise
    # ------------------------------------------------------------------

    def _elementwise(self, other: Operand, op: Callable, name: str) -> "Tensor":
        rhs = other._data if isinstance(other, Tensor) else np.asarray(other, dtype=DTYPE)
        try:
            np.broadcast_shapes(self.shape, rhs.shape)
        except ValueError:
            raise ShapeMismatch(
                f"Operands of {name} are not broadcast-compatible",
                expected=self.shape,
                actual=rhs.shape,
            ) from None
        return Tensor._wrap(op(self._data, rhs))

    def add(self, other: Operand) -> "Tensor":
        return self._elementwise(other, np.add, "add")

    def sub(self, other: Operand) -> "Tensor":
        return self._elementwise(other, np.subtract, "sub")

    def mul(self, other: Operand) -> "Tensor":
        return self._elementwise(other, np.multiply, "mul")

    def div(self, other: Operand) -> "Tensor":
        return self._elementwise(other, np.divide, "div")

    __add__ = add
    __sub__ = sub
    __mul__ = mul
    __truediv__ = div

    def __radd__(self, other: Operand) -> "Tensor":
        return self._elementwise(other, lambda a, b: b + a, "add")

    def __rsub__(self, other: Operand) -> "Tensor":
        return self._elementwise(other, lambda a, b: b - a, "sub")

    def __rmul__(self, other: Operand) -> "Tensor":
        return self._elementwise(other, lambda a, b: b * a, "mul")

    def __rtruediv__(self, other: Operand) -> "Tensor":
        return self._elementwise(other, lambda a, b: b / a, "div")

    def __neg__(self) -> "Tensor":
        return Tensor._wrap(-self._data)

    def map(self, fn: Callable[[np.ndarray], np.ndarray]) -> "Tensor":
        """Apply an elementwise NumPy function, e.g. ``t.map(np.exp)``."""
        out = np.asarray(fn(self._data), dtype=DTYPE)
        if out.shape != self.shape:
            raise ShapeMismatch("map() must preserve shape", expected=self.shape, actual=out.shape)
        return Tensor._wrap(out)

    # ------------------------------------------------------------------
    # linear algebra
    # ------------------------------------------------------------------

    def matmul(self, other: Operand) -> "Tensor":
        """
        Matrix product over the last two axes, leading axes broadcast.

        Raises:
            DimensionMismatch: If the inner dimensions differ.
        """
        rhs = other._data if isinstance(other, Tensor) else np.asarray(other, dtype=DTYPE)
        if self.ndim == 0 or rhs.ndim == 0:
            raise DimensionMismatch("matmul needs at least 1-D operands")
        k_lhs = self.shape[-1]
        k_rhs = rhs.shape[-2] if rhs.ndim >= 2 else rhs.shape[0]
        if k_lhs != k_rhs:
            raise DimensionMismatch(
                f"Inner dimensions differ for {self.shape} @ {rhs.shape}",
                expected=k_lhs,
                actual=k_rhs,
            )
        try:
            out = np.matmul(self._data, rhs)
        except ValueError:
            raise ShapeMismatch(
                "Batch dimensions of matmul operands are not broadcast-compatible",
                expected=self.shape,
                actual=rhs.shape,
            ) from None
        return Tensor._wrap(out)

    __matmul__ = matmul

    def __rmatmul__(self, other: Operand) -> "Tensor":
        return Tensor.from_array(other).matmul(self)

    def transpose(self) -> "Tensor":
        """Swap the last two axes: (..., m, n) -> (..., n, m)."""
        if self.ndim < 2:
            raise DimensionMismatch("transpose needs at least 2 dimensions", actual=self.ndim)
        return Tensor._wrap(np.swapaxes(self._data, -1, -2))

    @property
    def T(self) -> "Tensor":
        return self.transpose()

    def reshape(self, *shape) -> "Tensor":
        if len(shape) == 1 and not isinstance(shape[0], int):
            shape = tuple(shape[0])
        try:
            out = self._data.reshape(shape)
        except ValueError:
            raise ShapeMismatch(
                "Cannot reshape tensor", expected=self.shape, actual=shape
            ) from None
        return Tensor._wrap(out)

    # ------------------------------------------------------------------
    # reductions
    # ------------------------------------------------------------------

    def _reduce(self, fn: Callable, axis: int, keepdims: bool) -> "Tensor":
        if not -self.ndim <= axis < self.ndim:
            raise DimensionMismatch(
                f"Axis out of range for tensor of rank {self.ndim}", actual=axis
            )
        out = fn(self._data, axis=axis, keepdims=keepdims)
        if np.ndim(out) == 0:
            out = np.reshape(out, (1,))
        return Tensor._wrap(np.asarray(out))

    def sum(self, axis: int = -1, keepdims: bool = False) -> "Tensor":
        return self._reduce(np.sum, axis, keepdims)

    def mean(self, axis: int = -1, keepdims: bool = False) -> "Tensor":
        return self._reduce(np.mean, axis, keepdims)

    def max(self, axis: int = -1, keepdims: bool = False) -> "Tensor":
        return self._reduce(np.max, axis, keepdims)

    # ------------------------------------------------------------------
    # comparison helpers
    # ------------------------------------------------------------------

    def allclose(self, other: Operand, rtol: float = 1e-7, atol: float = 0.0) -> bool:
        rhs = other._data if isinstance(other, Tensor) else np.asarray(other)
        return self.shape == rhs.shape and bool(np.allclose(self._data, rhs, rtol=rtol, atol=atol))


def as_tensor(x: Union[Tensor, np.ndarray, Sequence]) -> Tensor:
    """Return x unchanged if it is a Tensor, else wrap it."""
    if isinstance(x, Tensor):
        return x
    return Tensor.from_array(x)
