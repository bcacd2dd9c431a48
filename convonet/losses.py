"""
Classification Loss
===================

Negative log-likelihood (cross-entropy) for a single output column:

    L = -sum_i y_i * ln(p_i)

where y is the one-hot "actual" column and p the output layer's activation.

The output layer needs dL/dZ, not dL/dP:
- Softmax output: dL/dZ = p - y (the Jacobian and -y/p cancel)
- Any other output activation: dL/dZ = dL/dP (.) dP/dZ, or J . dL/dP when
  the activation caches a Jacobian
"""

import numpy as np

from . import ops
from .activations import Softmax
from .errors import DimensionMismatchError
from .matrix import Matrix
from .utils import one_hot_encode


class Loss:
    """Base class for loss functions."""

    def forward(self, predicted, actual):
        """Compute loss value."""
        raise NotImplementedError

    def backward(self, predicted, actual):
        """Compute gradient of loss w.r.t. the prediction."""
        raise NotImplementedError

    def __call__(self, predicted, actual):
        return self.forward(predicted, actual)


class CrossEntropyLoss(Loss):
    """
    Cross-entropy loss on column matrices.

    Args:
        epsilon: Lower clip for ln(p) when reporting the loss value
    """

    def __init__(self, epsilon=1e-15):
        self.epsilon = epsilon

    def forward(self, predicted, actual):
        """
        Loss value for one sample.

        Args:
            predicted: Output column p
            actual: One-hot column y

        Returns:
            -sum(y * ln p) as a float
        """
        p = np.clip(predicted.data, self.epsilon, 1.0)
        return float(-np.sum(actual.data * np.log(p)))

    def backward(self, predicted, actual):
        """dL/dP = -y / p, clamped (see ops.d_loss_d_p)."""
        return ops.d_loss_d_p(actual, predicted)

    def output_gradient(self, activation, predicted, actual):
        """
        dL/dZ for the output layer.

        Args:
            activation: The output layer's activation, after training_fn
            predicted: Output column p = F(z)
            actual: One-hot column y

        Returns:
            dL/dZ as a column Matrix
        """
        if isinstance(activation, Softmax):
            return ops.subtract(predicted, actual)

        dl_dp = self.backward(predicted, actual)
        dp_dz = activation.derivative()
        if activation.is_jacobian:
            return ops.mult(dp_dz, dl_dp)
        return ops.cell_mult(dl_dp, dp_dz)


def one_hot_column(index, num_classes):
    """Column matrix with 1.0 at row `index` and zeros elsewhere."""
    if not 0 <= index < num_classes:
        raise DimensionMismatchError(f"Class index {index} outside [0, {num_classes})")
    return Matrix.column(one_hot_encode([index], num_classes)[0])
