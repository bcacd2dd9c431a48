"""
Matrix Operations
=================

Stateless operations on Matrix objects: arithmetic, convolution, pooling,
padding, reshaping, statistics and numeric guards.

Naming:
- ``op(m, ...)`` returns a new Matrix and leaves its inputs untouched
- ``op_inplace(m, ...)`` mutates ``m`` and returns None

Numeric guards:
    HI_LIMIT clamps runaway products to +/-1e6 and LOW_LIMIT flushes tiny
    products to zero, so an overflow stays a large finite number long enough
    for the NaN checks at layer boundaries to report where it started.
    Clamping never hides a shape bug: every binary operation checks shapes
    first and raises DimensionMismatchError.

Convolution here is valid 2-D correlation (no kernel flip), matching the
forward pass of a convolutional layer:

    out[i, j] = sum_{u, v} M[i + u, j + v] * F[u, v]
"""

from dataclasses import dataclass

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .errors import DimensionMismatchError, NumericInstabilityError
from .matrix import Matrix


HI_LIMIT = 1.0e6
LOW_LIMIT = 1.0e-9
LOSS_LOW_LIMIT = 1.0e-3
NORM_LOW_LIMIT = 1.0e-6


def _require_same_shape(m, b, op):
    if not m.same_shape(b):
        raise DimensionMismatchError(
            f"{op}: shapes ({m.rows}, {m.cols}) and ({b.rows}, {b.cols}) differ")


# ============================================================================
# Reshaping
# ============================================================================

def transpose(m):
    return Matrix(m.cols, m.rows, m.to_array().T)


def rotate(m):
    """Reverse the flat cell order: a 180 degree rotation of the matrix."""
    return Matrix(m.rows, m.cols, m.data[::-1])


def col_to_row(m):
    if m.cols != 1:
        raise DimensionMismatchError(f"col_to_row: expected one column, got {m.cols}")
    return Matrix(1, m.rows, m.data)


def row_to_col(m):
    if m.rows != 1:
        raise DimensionMismatchError(f"row_to_col: expected one row, got {m.rows}")
    return Matrix(m.cols, 1, m.data)


def concat(m, b):
    """Stack the rows of b under the rows of m (same column count)."""
    if m.cols != b.cols:
        raise DimensionMismatchError(f"concat: column counts {m.cols} and {b.cols} differ")
    return Matrix(m.rows + b.rows, m.cols, np.concatenate([m.data, b.data]))


def list_to_single_col(m_list):
    """Concatenate the cells of every matrix in the list into one column."""
    if not m_list:
        raise DimensionMismatchError("list_to_single_col: empty list")
    data = np.concatenate([m.data for m in m_list])
    return Matrix(data.size, 1, data)


def split_matrix(m, n):
    """
    Split m by rows into n equal matrices with m's column count.

    Inverse of list_to_single_col for equally sized column pieces; used to
    hand the flat internal-layer gradient back to the pooled feature maps.
    """
    if n <= 0 or m.rows % n != 0:
        raise DimensionMismatchError(f"split_matrix: {m.rows} rows not divisible by {n}")
    sub_rows = m.rows // n
    sub_size = sub_rows * m.cols
    return [Matrix(sub_rows, m.cols, m.data[k * sub_size:(k + 1) * sub_size])
            for k in range(n)]


def sub_matrix(m, row_start, row_end, col_start, col_end):
    """Half-open block [row_start, row_end) x [col_start, col_end) of m."""
    if not (0 <= row_start < row_end <= m.rows and 0 <= col_start < col_end <= m.cols):
        raise DimensionMismatchError(
            f"sub_matrix: block [{row_start}:{row_end}, {col_start}:{col_end}] "
            f"outside ({m.rows}, {m.cols})")
    block = m.to_array()[row_start:row_end, col_start:col_end]
    return Matrix(row_end - row_start, col_end - col_start, block)


def copy_and_pad(m, pad_size):
    """Copy of m surrounded by pad_size zero cells on every side."""
    if pad_size < 0:
        raise DimensionMismatchError(f"copy_and_pad: negative pad size {pad_size}")
    padded = np.pad(m.to_array(), pad_size, mode='constant')
    return Matrix(padded.shape[0], padded.shape[1], padded)


# ============================================================================
# Arithmetic
# ============================================================================

def mult(m, b):
    """
    Matrix product m . b with magnitude clamping.

    Cells beyond +/-HI_LIMIT are clamped, cells smaller than LOW_LIMIT in
    magnitude are flushed to zero.

    Raises:
        DimensionMismatchError: m.cols != b.rows
        NumericInstabilityError: the product contains NaN
    """
    if m.cols != b.rows:
        raise DimensionMismatchError(
            f"mult: ({m.rows}, {m.cols}) . ({b.rows}, {b.cols}) is undefined")
    product = m.to_array() @ b.to_array()
    product = np.clip(product, -HI_LIMIT, HI_LIMIT)
    product[np.abs(product) < LOW_LIMIT] = 0.0
    if np.isnan(product).any():
        raise NumericInstabilityError("mult")
    return Matrix(m.rows, b.cols, product)


def a_x_plus_b(w, x, b):
    """W . X + b, with b checked before and the result checked after."""
    b.check_nan("a_x_plus_b bias")
    z = mult(w, x)
    add_inplace(z, b)
    z.check_nan("a_x_plus_b")
    return z


def add(m, b):
    _require_same_shape(m, b, "add")
    return Matrix(m.rows, m.cols, m.data + b.data)


def subtract(m, b):
    _require_same_shape(m, b, "subtract")
    return Matrix(m.rows, m.cols, m.data - b.data)


def add_inplace(m, b):
    _require_same_shape(m, b, "add_inplace")
    m.data += b.data


def subtract_inplace(m, b):
    _require_same_shape(m, b, "subtract_inplace")
    m.data -= b.data


def add_constant(m, c):
    return Matrix(m.rows, m.cols, m.data + c)


def add_constant_inplace(m, c):
    m.data += c


def mul_constant(m, c):
    return Matrix(m.rows, m.cols, m.data * c)


def mul_constant_inplace(m, c):
    m.data *= c


def cell_mult(m, b):
    """Hadamard (cell by cell) product."""
    _require_same_shape(m, b, "cell_mult")
    return Matrix(m.rows, m.cols, m.data * b.data)


def layer_norm(z, mean, std_dev):
    """(z - mean) / std_dev for every cell."""
    return Matrix(z.rows, z.cols, (z.data - mean) / std_dev)


# ============================================================================
# Convolution and pooling
# ============================================================================

def _check_window(m, frows, fcols, op):
    if m.size < frows * fcols or m.rows < frows or m.cols < fcols:
        raise DimensionMismatchError(
            f"{op}: ({m.rows}, {m.cols}) matrix is smaller than ({frows}, {fcols}) window")


def unfold(m, frows, fcols):
    """
    im2col: one row per window position, one column per window cell.

    Output shape ((m.rows-frows+1) * (m.cols-fcols+1), frows*fcols), windows
    ordered row-major. mult(unfold(M), F as a column) reshaped to the output
    size equals convolve(M, F).
    """
    _check_window(m, frows, fcols, "unfold")
    windows = sliding_window_view(m.to_array(), (frows, fcols))
    out_rows, out_cols = windows.shape[:2]
    return Matrix(out_rows * out_cols, frows * fcols,
                  windows.reshape(out_rows * out_cols, frows * fcols))


def convolve(m, f):
    """
    Valid 2-D correlation of m with filter f.

    Output shape (m.rows - f.rows + 1, m.cols - f.cols + 1).

    Example:
        >>> m = Matrix.from_array(np.arange(16).reshape(4, 4))
        >>> convolve(m, Matrix.filled(2, 2, 1.0)).shape
        (3, 3)
    """
    _check_window(m, f.rows, f.cols, "convolve")
    windows = sliding_window_view(m.to_array(), f.shape)
    out = np.einsum('ijuv,uv->ij', windows, f.to_array())
    return Matrix(out.shape[0], out.shape[1], out)


def _pool_windows(m, pool_rows, pool_cols, op):
    if pool_rows <= 0 or pool_cols <= 0:
        raise DimensionMismatchError(f"{op}: pool size must be positive")
    if m.rows % pool_rows != 0 or m.cols % pool_cols != 0:
        raise DimensionMismatchError(
            f"{op}: ({m.rows}, {m.cols}) is not divisible by pool ({pool_rows}, {pool_cols})")
    out_rows = m.rows // pool_rows
    out_cols = m.cols // pool_cols
    # (out_rows, out_cols, pool_rows * pool_cols)
    windows = (m.to_array()
               .reshape(out_rows, pool_rows, out_cols, pool_cols)
               .transpose(0, 2, 1, 3)
               .reshape(out_rows, out_cols, pool_rows * pool_cols))
    return windows, out_rows, out_cols


def max_pool(m, pool_rows, pool_cols):
    """Non-overlapping max pooling with stride equal to the pool size."""
    windows, out_rows, out_cols = _pool_windows(m, pool_rows, pool_cols, "max_pool")
    return Matrix(out_rows, out_cols, windows.max(axis=2))


def pool_index(m, pool_rows, pool_cols):
    """
    Flat index into m of the cell that won each max-pool window.

    Ties go to the first cell in row-major window order, so
    m.data[pool_index(m).data[c]] == max_pool(m).data[c] for every cell c.
    """
    windows, out_rows, out_cols = _pool_windows(m, pool_rows, pool_cols, "pool_index")
    local = windows.argmax(axis=2)
    di, dj = np.divmod(local, pool_cols)
    bi, bj = np.meshgrid(np.arange(out_rows), np.arange(out_cols), indexing='ij')
    flat = (bi * pool_rows + di) * m.cols + (bj * pool_cols + dj)
    return Matrix(out_rows, out_cols, flat)


# ============================================================================
# Aggregates and statistics
# ============================================================================

@dataclass(frozen=True)
class MatrixStats:
    """Summary statistics of all cells of a matrix."""

    mean: float
    std_dev: float
    sum: float
    ave: float
    min: float
    max: float


def sum_cells(m):
    return float(np.sum(m.data))


def sum_col(m, col):
    return float(np.sum(m.to_array()[:, col]))


def sum_all_cols(m):
    """Row matrix holding the sum of each column."""
    return Matrix(1, m.cols, np.sum(m.to_array(), axis=0))


def max_cell(m):
    return float(np.max(m.data))


def min_cell(m):
    return float(np.min(m.data))


def max_abs_cell(m):
    """Largest absolute cell value, capped at HI_LIMIT."""
    return min(float(np.max(np.abs(m.data))), HI_LIMIT)


def min_abs_cell(m):
    return float(np.min(np.abs(m.data)))


def ave_cell(m):
    return float(np.mean(m.data))


def stats(m):
    """Population mean/std-dev plus sum, average, min and max of the cells."""
    return MatrixStats(
        mean=float(np.mean(m.data)),
        std_dev=float(np.std(m.data)),
        sum=float(np.sum(m.data)),
        ave=float(np.mean(m.data)),
        min=float(np.min(m.data)),
        max=float(np.max(m.data)),
    )


def index_of_max(values):
    """Index of the first maximum."""
    values = values.data if isinstance(values, Matrix) else values
    return int(np.argmax(values))


def index_of_min(values):
    """Index of the first minimum."""
    values = values.data if isinstance(values, Matrix) else values
    return int(np.argmin(values))


def equals_const(m, c):
    """True if every cell equals c."""
    return bool(np.all(m.data == c))


def sum_of_list(m_list):
    """Cell-wise sum of equally shaped matrices."""
    if not m_list:
        raise DimensionMismatchError("sum_of_list: empty list")
    first = m_list[0]
    total = first.data.copy()
    for m in m_list[1:]:
        _require_same_shape(first, m, "sum_of_list")
        total += m.data
    return Matrix(first.rows, first.cols, total)


def average_of_list(m_list):
    """Cell-wise mean of equally shaped matrices."""
    total = sum_of_list(m_list)
    mul_constant_inplace(total, 1.0 / len(m_list))
    return total


def list_average(batch):
    """average_of_list, then empty the list."""
    average = average_of_list(batch)
    batch.clear()
    return average


# ============================================================================
# Normalization and numeric guards
# ============================================================================

def _norm_divisor(m):
    max_val = max_abs_cell(m)
    if max_val < NORM_LOW_LIMIT:
        max_val = 1.0
    return max_val


def normalize(m):
    """Copy of m scaled so the largest absolute cell is at most 1."""
    return mul_constant(m, 1.0 / _norm_divisor(m))


def normalize_inplace(m):
    """Scale m so the largest absolute cell is at most 1."""
    mul_constant_inplace(m, 1.0 / _norm_divisor(m))


def normalize_list(m_list, norm=1.0):
    """
    Scale every matrix in the list by norm / (global max absolute cell).

    NaN/Inf cells are repaired first (see fix_nan_inplace).
    """
    global_max = 0.0
    for m in m_list:
        fix_nan_inplace(m)
        global_max = max(global_max, max_abs_cell(m))
    if global_max < NORM_LOW_LIMIT:
        global_max = 1.0
    for m in m_list:
        mul_constant_inplace(m, norm / global_max)


def fix_nan_inplace(m):
    """
    Replace NaN with 0 and +/-Inf with +/-HI_LIMIT.

    Returns:
        True if any cell was modified
    """
    bad = ~np.isfinite(m.data)
    if not bad.any():
        return False
    m.data[np.isnan(m.data)] = 0.0
    m.data[np.isposinf(m.data)] = HI_LIMIT
    m.data[np.isneginf(m.data)] = -HI_LIMIT
    return True


def d_loss_d_p(actual, p):
    """
    Derivative of the negative log-likelihood -sum(y * ln p) w.r.t. p.

    dL/dP = -y / p, with p clamped from below at LOSS_LOW_LIMIT.
    A NaN cell becomes -1.
    """
    _require_same_shape(actual, p, "d_loss_d_p")
    safe_p = np.where(p.data < LOSS_LOW_LIMIT, LOSS_LOW_LIMIT, p.data)
    with np.errstate(invalid='ignore'):
        grad = -actual.data / safe_p
    grad[np.isnan(grad)] = -1.0
    return Matrix(actual.rows, actual.cols, grad)
