"""
Activation Functions
====================

Differentiable activations used by the convolution, internal and output layers.

Each activation has two forward variants:
- training_fn(z): returns y = F(z) and caches dY/dZ for the backward pass
- testing_fn(z): returns y only (no side effects)

derivative() hands the cached dY/dZ to the layer's backward pass. The cache
holds one value: the next training_fn call overwrites it.

Elementwise activations cache a matrix shaped like z and the layer applies it
with a cell product. Softmax couples its outputs, so it caches the full n x n
Jacobian instead and the layer multiplies by it (is_jacobian = True).
"""

import warnings

import numpy as np

from .matrix import Matrix


class Activation:
    """Base class for all activation functions."""

    label = 'None'
    is_jacobian = False

    def __init__(self):
        self._dydz = None

    def forward(self, z):
        """Apply activation to a NumPy array."""
        raise NotImplementedError

    def backward(self, z, y):
        """dY/dZ as a NumPy array, given input z and output y."""
        raise NotImplementedError

    def training_fn(self, z):
        """y = F(z); caches dY/dZ for derivative()."""
        y = self.forward(z.data)
        self._dydz = self._derivative_matrix(z, y)
        return Matrix(z.rows, z.cols, y)

    def testing_fn(self, z):
        """y = F(z) without touching the derivative cache."""
        return Matrix(z.rows, z.cols, self.forward(z.data))

    def _derivative_matrix(self, z, y):
        return Matrix(z.rows, z.cols, self.backward(z.data, y))

    def derivative(self):
        """dY/dZ from the most recent training_fn call."""
        if self._dydz is None:
            raise RuntimeError(f"{self.label}: derivative() called before training_fn()")
        return self._dydz

    def __call__(self, z):
        return self.testing_fn(z)

    def __repr__(self):
        return f"{type(self).__name__}()"


class Identity(Activation):
    """
    Identity: f(z) = z

    Derivative:
        f'(z) = 1 (an all-ones matrix shaped like z)
    """

    label = 'Identity'

    def forward(self, z):
        return z.copy()

    def backward(self, z, y):
        return np.ones_like(z)


class LeakyReLU(Activation):
    """
    Leaky ReLU: f(z) = z if z > 0 else slope * z

    Args:
        slope: Slope for non-positive inputs (default: 0.1)

    Derivative:
        f'(z) = 1 if z > 0 else slope
    """

    label = 'Leaky RELU'

    def __init__(self, slope=0.1):
        super().__init__()
        self.slope = slope

    def forward(self, z):
        return np.where(z > 0, z, self.slope * z)

    def backward(self, z, y):
        return np.where(z > 0, 1.0, self.slope)

    def __repr__(self):
        return f"LeakyReLU(slope={self.slope})"


class LeakyLog(Activation):
    """
    Leaky logarithm: f(z) = ln(z) if z > 1 else slope * (z - 1)

    Continuous at z = 1 (both branches give 0), grows slowly for large
    inputs and leaks a constant gradient below 1.

    Derivative:
        f'(z) = 1/z if z > 1 else slope
    """

    label = 'Leaky Log'

    def __init__(self, slope=0.1):
        super().__init__()
        self.slope = slope

    def forward(self, z):
        # log only sees values > 1
        return np.where(z > 1.0, np.log(np.maximum(z, 1.0)), self.slope * (z - 1.0))

    def backward(self, z, y):
        return np.where(z > 1.0, 1.0 / np.maximum(z, 1.0), self.slope)


class Sigmoid(Activation):
    """
    Sigmoid: f(z) = 1 / (1 + exp(-z))

    Derivative:
        f'(z) = f(z) * (1 - f(z))
    """

    label = 'Sigmoid'

    def forward(self, z):
        z_clipped = np.clip(z, -500, 500)
        return 1.0 / (1.0 + np.exp(-z_clipped))

    def backward(self, z, y):
        return y * (1.0 - y)


class Tanh(Activation):
    """
    Hyperbolic Tangent: f(z) = tanh(z)

    Derivative:
        f'(z) = 1 - tanh(z)^2
    """

    label = 'Hyperbolic Tangent'

    def forward(self, z):
        return np.tanh(z)

    def backward(self, z, y):
        return 1.0 - y ** 2


class ScaledTanh(Activation):
    """
    Scaled tanh: f(z) = scale^2 * tanh(z)

    Args:
        scale: Scale factor, applied twice (default: 400)

    Derivative:
        f'(z) = scale^2 * (1 - tanh(z)^2)

    This is the exact derivative of f. The desktop engine's rule,
    scale * (1 - s^2) with s = scale * tanh(z), is deliberately not used:
    it does not match its own forward pass and fails gradient checks.
    """

    label = 'Scaled Tanh'

    def __init__(self, scale=400.0):
        super().__init__()
        self.scale = scale

    def forward(self, z):
        return self.scale * (self.scale * np.tanh(z))

    def backward(self, z, y):
        t = np.tanh(z)
        return self.scale ** 2 * (1.0 - t ** 2)

    def __repr__(self):
        return f"ScaledTanh(scale={self.scale})"


class Softmax(Activation):
    """
    Softmax over a column vector: f(z_i) = exp(z_i - max) / sum_j exp(z_j - max)

    Subtracting max(z) keeps exp() from overflowing and does not change the
    result.

    Derivative (n x n Jacobian):
        J[i, i] = y_i * (1 - y_i)
        J[i, j] = -y_i * y_j
    """

    label = 'Softmax'
    is_jacobian = True

    def forward(self, z):
        exp_z = np.exp(z - np.max(z))
        return exp_z / np.sum(exp_z)

    def backward(self, z, y):
        return np.diag(y) - np.outer(y, y)

    def _derivative_matrix(self, z, y):
        return Matrix(y.size, y.size, self.backward(z, y))


# ====================================
# Activation Registry
# ====================================

ACTIVATIONS = {
    'none': Identity,
    'identity': Identity,
    'linear': Identity,
    'leaky_relu': LeakyReLU,
    'leakyrelu': LeakyReLU,
    'leaky_log': LeakyLog,
    'leakylog': LeakyLog,
    'sigmoid': Sigmoid,
    'tanh': Tanh,
    'hyperbolic_tangent': Tanh,
    'scaled_tanh': ScaledTanh,
    'tanh_scaled': ScaledTanh,
    'softmax': Softmax,
}

# labels shown in configuration files and summaries
ACTIVATION_LABELS = [cls.label for cls in
                     (Identity, LeakyReLU, LeakyLog, Sigmoid, Tanh, ScaledTanh, Softmax)]


def _registry_key(name):
    return name.strip().lower().replace('-', '_').replace(' ', '_')


def get_activation(name):
    """
    Get activation function by name.

    Names are matched case-insensitively, with spaces and dashes treated as
    underscores, so both 'Leaky RELU' and 'leaky-relu' work. An unknown name
    falls back to Identity with a warning.

    Args:
        name: Label ('Sigmoid', 'Hyperbolic Tangent', ...), None, or an
              Activation instance

    Returns:
        A fresh Activation instance (each layer owns its own derivative cache)

    Example:
        >>> act = get_activation('Leaky RELU')
        >>> act.testing_fn(Matrix.column([-1.0, 2.0])).data
        array([-0.1,  2. ])
    """
    if isinstance(name, Activation):
        return name

    if name is None:
        return Identity()

    key = _registry_key(name)
    if key not in ACTIVATIONS:
        available = ', '.join(ACTIVATION_LABELS)
        warnings.warn(f"Unknown activation '{name}', using Identity. Available: {available}")
        return Identity()

    return ACTIVATIONS[key]()
