"""
Matrix Container
================

A 2-D matrix stored as a flat, row-major NumPy array.

Cell (i, j) lives at flat index k = i * cols + j. Layers reinterpret the
same cells with a different shape (a feature map becomes a column vector and
back), so the flat array is the primary representation and the 2-D view is
derived from it.

Only methods ending in ``_inplace`` (and the cell setters) mutate a Matrix.
"""

import numpy as np

from .errors import DimensionMismatchError, NumericInstabilityError


class Matrix:
    """
    Dense float64 matrix with a flat row-major cell array.

    Args:
        rows: Number of rows
        cols: Number of columns
        data: Optional cells (flat sequence of rows*cols values, or any array
              with that many elements). Zero-filled when omitted.

    Example:
        >>> m = Matrix(2, 3, [1, 2, 3, 4, 5, 6])
        >>> m.get_cell(1, 0)
        4.0
    """

    def __init__(self, rows, cols, data=None):
        rows = int(rows)
        cols = int(cols)
        if rows < 0 or cols < 0:
            raise DimensionMismatchError(f"Invalid matrix shape ({rows}, {cols})")

        self.rows = rows
        self.cols = cols

        if data is None:
            self.data = np.zeros(rows * cols, dtype=np.float64)
        else:
            data = np.array(data, dtype=np.float64).ravel()
            if data.size != rows * cols:
                raise DimensionMismatchError(
                    f"Cannot fill a ({rows}, {cols}) matrix with {data.size} cells")
            self.data = data

    # ------------------------------------------------------------------
    # Construction helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_array(cls, array):
        """Build a Matrix from a 2-D array-like (a 1-D input becomes a column)."""
        array = np.asarray(array, dtype=np.float64)
        if array.ndim == 1:
            return cls(array.size, 1, array)
        if array.ndim != 2:
            raise DimensionMismatchError(f"Expected a 2-D array, got {array.ndim}-D")
        return cls(array.shape[0], array.shape[1], array)

    @classmethod
    def column(cls, values):
        """Column vector (n x 1)."""
        values = np.asarray(values, dtype=np.float64).ravel()
        return cls(values.size, 1, values)

    @classmethod
    def row(cls, values):
        """Row vector (1 x n)."""
        values = np.asarray(values, dtype=np.float64).ravel()
        return cls(1, values.size, values)

    @classmethod
    def identity(cls, rows, cols):
        """Ones on the main diagonal, zeros elsewhere."""
        return cls(rows, cols, np.eye(rows, cols))

    @classmethod
    def filled(cls, rows, cols, value):
        return cls(rows, cols, np.full(rows * cols, value, dtype=np.float64))

    # ------------------------------------------------------------------
    # Shape
    # ------------------------------------------------------------------

    @property
    def size(self):
        return self.rows * self.cols

    @property
    def shape(self):
        return (self.rows, self.cols)

    def to_array(self):
        """2-D view of the cells (shares memory with the matrix)."""
        return self.data.reshape(self.rows, self.cols)

    def reshaped(self, rows, cols):
        """Copy of the same cells interpreted with a new shape."""
        if rows * cols != self.size:
            raise DimensionMismatchError(
                f"Cannot reshape ({self.rows}, {self.cols}) to ({rows}, {cols})")
        return Matrix(rows, cols, self.data.copy())

    def copy(self):
        return Matrix(self.rows, self.cols, self.data.copy())

    # ------------------------------------------------------------------
    # Cell access
    # ------------------------------------------------------------------

    def _index(self, i, j):
        if not (0 <= i < self.rows and 0 <= j < self.cols):
            raise IndexError(f"Cell ({i}, {j}) outside ({self.rows}, {self.cols}) matrix")
        return i * self.cols + j

    def get_cell(self, i, j):
        return float(self.data[self._index(i, j)])

    def set_cell(self, i, j, value):
        self.data[self._index(i, j)] = value

    def update_cell(self, i, j, delta):
        """Add delta to cell (i, j)."""
        self.data[self._index(i, j)] += delta

    def get_row(self, i):
        return self.to_array()[i].copy()

    def get_col(self, j):
        return self.to_array()[:, j].copy()

    def fill_inplace(self, value):
        self.data.fill(value)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def has_nan(self):
        """True if any cell is NaN or infinite."""
        return not np.all(np.isfinite(self.data))

    def check_nan(self, name):
        """
        Raise NumericInstabilityError if any cell is NaN or Inf.

        Args:
            name: Operation or stage name reported in the error
        """
        if self.has_nan():
            raise NumericInstabilityError(name)

    def same_shape(self, other):
        return self.rows == other.rows and self.cols == other.cols

    def allclose(self, other, atol=1e-8):
        return self.same_shape(other) and np.allclose(self.data, other.data, atol=atol)

    def __eq__(self, other):
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.same_shape(other) and np.array_equal(self.data, other.data)

    __hash__ = None

    def __repr__(self):
        if self.size <= 36:
            body = np.array2string(self.to_array(), precision=4, separator=', ')
        else:
            body = f"min={self.data.min():.4g}, max={self.data.max():.4g}"
        return f"Matrix(rows={self.rows}, cols={self.cols}, {body})"
