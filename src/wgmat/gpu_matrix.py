"""GPU-resident float32 matrix and the operation catalog"""

from numbers import Real
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from .gpu_buffer import buffer_allocate, buffer_download, buffer_upload
from .gpu_errors import ShapeError
from .gpu_ops import (
    dispatch,
    geometry_1d,
    geometry_2d,
    validate_contexts,
    validate_dot_shapes,
    validate_extents,
    validate_no_alias,
    validate_output_shape,
    validate_same_shape,
)
from .gpu_types import DeviceBuffer, GPUContext

# ============================================================================
# MATRIX HANDLE
# ============================================================================


class Matrix:
    """
    Dense row-major float32 matrix living in device memory

    Holds a shared reference to its compute context and owns one device
    buffer of exactly rows * cols elements. Extents are fixed; contents
    change only through square_in_place() or when passed as `out=`.
    """

    __slots__ = ("_ctx", "_buffer", "_rows", "_cols")

    def __init__(self, ctx: GPUContext, buffer: DeviceBuffer, rows: int, cols: int):
        validate_extents(rows, cols)
        if buffer.size != rows * cols:
            raise ShapeError(
                f"Buffer holds {buffer.size} elements, shape ({rows}, {cols}) "
                f"needs {rows * cols}"
            )
        self._ctx = ctx
        self._buffer = buffer
        self._rows = rows
        self._cols = cols

    @property
    def ctx(self) -> GPUContext:
        return self._ctx

    @property
    def buffer(self) -> DeviceBuffer:
        return self._buffer

    @property
    def rows(self) -> int:
        return self._rows

    @property
    def cols(self) -> int:
        return self._cols

    @property
    def shape(self) -> Tuple[int, int]:
        return (self._rows, self._cols)

    @property
    def size(self) -> int:
        return self._rows * self._cols

    def __repr__(self) -> str:
        return f"Matrix(rows={self._rows}, cols={self._cols}, device={self._ctx.adapter_name!r})"

    # Construction and readback

    @classmethod
    def zeros(cls, ctx: GPUContext, rows: int, cols: int) -> "Matrix":
        return matrix_create(ctx, rows, cols)

    @classmethod
    def from_vec(
        cls, ctx: GPUContext, rows: int, cols: int, values: Sequence[float]
    ) -> "Matrix":
        return matrix_from_vec(ctx, rows, cols, values)

    @classmethod
    def from_array(cls, ctx: GPUContext, array: np.ndarray) -> "Matrix":
        return matrix_from_array(ctx, array)

    def to_vec(self) -> np.ndarray:
        return matrix_to_vec(self)

    def to_array(self) -> np.ndarray:
        return matrix_to_array(self)

    # Operation catalog

    def square(self, out: Optional["Matrix"] = None) -> "Matrix":
        return square(self, out=out)

    def square_in_place(self) -> "Matrix":
        return square_in_place(self)

    def add(self, other: "Matrix", out: Optional["Matrix"] = None) -> "Matrix":
        return add(self, other, out=out)

    def subtract(self, other: "Matrix", out: Optional["Matrix"] = None) -> "Matrix":
        return subtract(self, other, out=out)

    def hadamard(self, other: "Matrix", out: Optional["Matrix"] = None) -> "Matrix":
        return hadamard(self, other, out=out)

    def scalar_multiply(
        self, scalar: float, out: Optional["Matrix"] = None
    ) -> "Matrix":
        return scalar_multiply(self, scalar, out=out)

    def sigmoid(self, out: Optional["Matrix"] = None) -> "Matrix":
        return sigmoid(self, out=out)

    def sigmoid_prime(self, out: Optional["Matrix"] = None) -> "Matrix":
        return sigmoid_prime(self, out=out)

    def transpose(self, out: Optional["Matrix"] = None) -> "Matrix":
        return transpose(self, out=out)

    def dot(self, other: "Matrix", out: Optional["Matrix"] = None) -> "Matrix":
        return dot(self, other, out=out)

    @property
    def T(self) -> "Matrix":
        return transpose(self)

    # Operators

    def __add__(self, other: "Matrix") -> "Matrix":
        if not isinstance(other, Matrix):
            return NotImplemented
        return add(self, other)

    def __sub__(self, other: "Matrix") -> "Matrix":
        if not isinstance(other, Matrix):
            return NotImplemented
        return subtract(self, other)

    def __matmul__(self, other: "Matrix") -> "Matrix":
        if not isinstance(other, Matrix):
            return NotImplemented
        return dot(self, other)

    def __mul__(self, other: Union["Matrix", float]) -> "Matrix":
        if isinstance(other, Matrix):
            return hadamard(self, other)
        if isinstance(other, Real):
            return scalar_multiply(self, float(other))
        return NotImplemented

    def __rmul__(self, other: float) -> "Matrix":
        if isinstance(other, Real):
            return scalar_multiply(self, float(other))
        return NotImplemented


# ============================================================================
# CONSTRUCTORS / READBACK
# ============================================================================


def matrix_create(ctx: GPUContext, rows: int, cols: int) -> Matrix:
    """Create a zero-filled matrix.

    Raises:
        ShapeError: If rows or cols <= 0
    """
    validate_extents(rows, cols)
    return Matrix(ctx, buffer_allocate(ctx, rows * cols), rows, cols)


def matrix_from_vec(
    ctx: GPUContext, rows: int, cols: int, values: Sequence[float]
) -> Matrix:
    """Upload row-major values as a (rows, cols) matrix.

    Raises:
        AssertionError: If len(values) != rows * cols
        ShapeError: If rows or cols <= 0
    """
    validate_extents(rows, cols)
    return Matrix(ctx, buffer_upload(ctx, values, rows * cols), rows, cols)


def matrix_from_array(ctx: GPUContext, array: np.ndarray) -> Matrix:
    """Upload a 2-D host array; extents are taken from its shape.

    Raises:
        ShapeError: If the array is not 2-D or has an empty axis
    """
    data = np.asarray(array, dtype=np.float32)
    if data.ndim != 2:
        raise ShapeError(f"Expected a 2-D array, got shape {data.shape}")

    rows, cols = data.shape
    return matrix_from_vec(ctx, rows, cols, data)


def matrix_to_vec(m: Matrix) -> np.ndarray:
    """Blocking read of the matrix contents as a flat row-major array"""
    return buffer_download(m.ctx, m.buffer, m.size)


def matrix_to_array(m: Matrix) -> np.ndarray:
    """Blocking read of the matrix contents as a (rows, cols) array

    Raises:
        ShapeError: If the read does not hold rows * cols values
    """
    values = matrix_to_vec(m)
    if values.size != m.size:
        raise ShapeError(f"Read {values.size} values, expected shape {m.shape}")
    return values.reshape(m.shape)


# ============================================================================
# OPERATION CATALOG
# ============================================================================


def _destination(
    a: Matrix,
    shape: Tuple[int, int],
    out: Optional[Matrix],
    operands: Sequence[Matrix],
    operation: str,
) -> Tuple[Matrix, bool]:
    """Allocate the result, or check a caller-owned one.

    Returns:
        (destination, wait): blocking for fresh results, pipelined for `out`
    """
    if out is None:
        return matrix_create(a.ctx, *shape), True

    validate_output_shape(out.shape, shape, operation)
    validate_contexts(a.ctx, [out.ctx], operation)
    validate_no_alias(out.buffer, [m.buffer for m in operands], operation)
    return out, False


def _unary(name: str, a: Matrix, out: Optional[Matrix]) -> Matrix:
    geometry = geometry_1d(a.ctx.config, a.size, name)
    c, wait = _destination(a, a.shape, out, [a], name)
    dispatch(a.ctx, name, [a.buffer, c.buffer], {}, geometry, wait)
    return c


def _binary(name: str, a: Matrix, b: Matrix, out: Optional[Matrix]) -> Matrix:
    validate_same_shape(a.shape, b.shape, name)
    validate_contexts(a.ctx, [b.ctx], name)
    geometry = geometry_1d(a.ctx.config, a.size, name)
    c, wait = _destination(a, a.shape, out, [a, b], name)
    dispatch(a.ctx, name, [a.buffer, b.buffer, c.buffer], {}, geometry, wait)
    return c


def square(a: Matrix, out: Optional[Matrix] = None) -> Matrix:
    """Elementwise square into a new matrix (or `out`)"""
    return _unary("square", a, out)


def square_in_place(a: Matrix) -> Matrix:
    """Square every element of `a` in its own buffer and return `a`"""
    geometry = geometry_1d(a.ctx.config, a.size, "square_in_place")
    dispatch(a.ctx, "square_in_place", [a.buffer], {}, geometry)
    return a


def add(a: Matrix, b: Matrix, out: Optional[Matrix] = None) -> Matrix:
    return _binary("add", a, b, out)


def subtract(a: Matrix, b: Matrix, out: Optional[Matrix] = None) -> Matrix:
    """a - b, elementwise"""
    return _binary("subtract", a, b, out)


def hadamard(a: Matrix, b: Matrix, out: Optional[Matrix] = None) -> Matrix:
    """Elementwise product"""
    return _binary("hadamard", a, b, out)


def scalar_multiply(a: Matrix, scalar: float, out: Optional[Matrix] = None) -> Matrix:
    geometry = geometry_1d(a.ctx.config, a.size, "multiply_by_scalar")
    c, wait = _destination(a, a.shape, out, [a], "multiply_by_scalar")
    dispatch(
        a.ctx,
        "multiply_by_scalar",
        [a.buffer, c.buffer],
        {"scalar": float(scalar)},
        geometry,
        wait,
    )
    return c


def sigmoid(a: Matrix, out: Optional[Matrix] = None) -> Matrix:
    """Logistic function 1 / (1 + exp(-x)), elementwise"""
    return _unary("sigmoid", a, out)


def sigmoid_prime(a: Matrix, out: Optional[Matrix] = None) -> Matrix:
    """Derivative of the logistic function, sigmoid(x) * (1 - sigmoid(x))"""
    return _unary("sigmoid_prime", a, out)


def transpose(a: Matrix, out: Optional[Matrix] = None) -> Matrix:
    """(rows, cols) -> (cols, rows)"""
    geometry = geometry_2d(a.ctx.config, a.rows, a.cols, "transpose")
    c, wait = _destination(a, (a.cols, a.rows), out, [a], "transpose")
    dispatch(
        a.ctx,
        "transpose",
        [a.buffer, c.buffer],
        {"rows": a.rows, "cols": a.cols},
        geometry,
        wait,
    )
    return c


def dot(a: Matrix, b: Matrix, out: Optional[Matrix] = None) -> Matrix:
    """
    Matrix product a @ b

    Args:
        a: (M, K) matrix
        b: (K, N) matrix
        out: Optional (M, N) destination; the dispatch is then not awaited

    Returns:
        (M, N) matrix

    Raises:
        ShapeError: If a.cols != b.rows or out has the wrong shape
        ContextMismatchError: If operands belong to different contexts
        DispatchError: If out aliases an operand or the device fails
    """
    M, K, N = validate_dot_shapes(a.shape, b.shape, "dot_product")
    validate_contexts(a.ctx, [b.ctx], "dot_product")
    geometry = geometry_2d(a.ctx.config, M, N, "dot_product")
    c, wait = _destination(a, (M, N), out, [a, b], "dot_product")
    dispatch(
        a.ctx,
        "dot_product",
        [a.buffer, b.buffer, c.buffer],
        {"shared_dim": K, "out_cols": N},
        geometry,
        wait,
    )
    return c
