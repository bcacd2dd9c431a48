"""
Gradient Checking Tests
=======================

Verify analytical gradients match numerical approximations.

Method: Centered finite differences
    f'(x) ≈ (f(x + ε) - f(x - ε)) / (2ε)

We compare:
    - Analytical gradient: accumulated by backward()
    - Numerical gradient: finite difference approximation

Each check runs one sample through train_forward() and backward() without
applying the update, then compares the layer's accumulated gradient with
the numerical one.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from convonet.config import (NetConfig, InputConfig, ConvoPoolConfig, ConvoConfig, PoolConfig,
                             InternalConfig, OutputConfig)
from convonet.layers import ConvoLayer, InternalLayer, OutputLayer
from convonet.losses import one_hot_column
from convonet.matrix import Matrix
from convonet.network import ConvoNet


def numerical_gradient(f, x, epsilon=1e-5):
    """
    Compute numerical gradient using centered finite differences.

    Args:
        f: Function that takes x and returns scalar loss
        x: Point at which to compute gradient (modified in place and restored)
        epsilon: Small perturbation

    Returns:
        Numerical gradient, same shape as x
    """
    grad = np.zeros_like(x)

    it = np.nditer(x, flags=['multi_index'])
    while not it.finished:
        idx = it.multi_index

        # f(x + epsilon)
        x[idx] += epsilon
        loss_plus = f(x)

        # f(x - epsilon)
        x[idx] -= 2 * epsilon
        loss_minus = f(x)

        # Restore
        x[idx] += epsilon

        # Centered difference
        grad[idx] = (loss_plus - loss_minus) / (2 * epsilon)

        it.iternext()

    return grad


def assert_gradients_close(analytical, numerical, name):
    np.testing.assert_allclose(analytical, numerical, rtol=1e-4, atol=1e-7,
                               err_msg=f"{name} gradient mismatch")


class TestConvoLayerGradients:
    """Gradient tests for ConvoLayer."""

    def setup_method(self):
        np.random.seed(42)
        self.layer = ConvoLayer(n_in=2, num_filters=3, filter_size=3, activation='Tanh', seed=11)
        self.layer.set_filters(self.layer.filters, Matrix.column(np.random.randn(3) * 0.1))
        self.x_list = [Matrix.from_array(np.random.randn(6, 6)) for _ in range(2)]
        # L = sum_k sum(G_k * Y_k)
        self.g_list = [np.random.randn(4, 4) for _ in range(3)]

    def _loss(self, _=None):
        out = self.layer.test_forward(self.x_list)
        return sum(np.sum(g * y.to_array()) for g, y in zip(self.g_list, out))

    def _backward(self):
        self.layer.train_forward(self.x_list)
        return self.layer.backward([Matrix.from_array(g) for g in self.g_list])

    def test_filter_gradient(self):
        """Check dL/dF[k][i]."""
        self._backward()
        for k in range(3):
            for i in range(2):
                numerical = numerical_gradient(self._loss, self.layer.filters[k][i].data)
                assert_gradients_close(self.layer._grad_filters[k][i].data, numerical,
                                       f"filter[{k}][{i}]")

    def test_bias_gradient(self):
        """Check dL/db."""
        self._backward()
        numerical = numerical_gradient(self._loss, self.layer.bias.data)
        assert_gradients_close(self.layer._grad_bias.data, numerical, "bias")

    def test_input_gradient(self):
        """Check dL/dX, summed across output filters."""
        dl_dx = self._backward()
        for i in range(2):
            numerical = numerical_gradient(self._loss, self.x_list[i].data)
            assert_gradients_close(dl_dx[i].data, numerical, f"input[{i}]")


class TestInternalLayerGradients:
    """Gradient tests for InternalLayer."""

    @pytest.mark.parametrize('activation', ['Identity', 'Leaky RELU', 'Sigmoid',
                                            'Hyperbolic Tangent', 'Softmax'])
    def test_gradients(self, activation):
        """Check dL/dW, dL/db and dL/dX for a linear projection of Y."""
        np.random.seed(42)
        layer = InternalLayer(5, 4, activation=activation)
        x = Matrix.column(np.random.randn(5))
        g = np.random.randn(4)

        def loss(_=None):
            return float(np.sum(g * layer.test_forward(x).data))

        layer.train_forward(x)
        dl_dx = layer.backward(Matrix.column(g))

        assert_gradients_close(layer.grads['w'].data,
                               numerical_gradient(loss, layer.w.data), f"{activation} W")
        assert_gradients_close(layer.grads['b'].data,
                               numerical_gradient(loss, layer.b.data), f"{activation} b")
        assert_gradients_close(dl_dx.data, numerical_gradient(loss, x.data), f"{activation} X")


class TestOutputLayerGradients:
    """Gradient tests for OutputLayer with the cross-entropy loss."""

    @pytest.mark.parametrize('activation', ['Softmax', 'Sigmoid'])
    def test_gradients(self, activation):
        np.random.seed(42)
        layer = OutputLayer(6, 3, activation=activation)
        x = Matrix.column(np.random.randn(6) * 0.5)
        actual = one_hot_column(2, 3)

        def loss(_=None):
            return layer.loss_fn(layer.test_forward(x), actual)

        layer.train_forward(x)
        dl_dx = layer.backward(actual)

        assert_gradients_close(layer.grads['w'].data,
                               numerical_gradient(loss, layer.w.data), f"{activation} W")
        assert_gradients_close(layer.grads['b'].data,
                               numerical_gradient(loss, layer.b.data), f"{activation} b")
        assert_gradients_close(dl_dx.data, numerical_gradient(loss, x.data), f"{activation} X")


class TestNetworkGradients:
    """End-to-end gradient check through convolution, pooling and dense layers."""

    def test_full_network(self):
        np.random.seed(42)
        config = NetConfig(
            input_config=InputConfig(8, 8),
            convo_pool_list=[ConvoPoolConfig(ConvoConfig('Tanh', 3, 2), PoolConfig(2))],
            internal_list=[InternalConfig('Sigmoid', 5)],
            output_config=OutputConfig('Softmax', 3),
        )
        net = ConvoNet(config, verbose=False).initialize()
        x = Matrix.from_array(np.random.randn(8, 8))
        actual = one_hot_column(1, 3)

        def loss(_=None):
            return net.output_layer.loss_fn(net.test_forward(x), actual)

        net.train_forward(x)
        net.backward(actual)

        convo = net.convo_pool_list[0].convo
        internal = net.internal_list[0]
        output = net.output_layer

        assert_gradients_close(output.grads['w'].data,
                               numerical_gradient(loss, output.w.data), "output W")
        assert_gradients_close(internal.grads['w'].data,
                               numerical_gradient(loss, internal.w.data), "internal W")
        for k in range(2):
            assert_gradients_close(convo._grad_filters[k][0].data,
                                   numerical_gradient(loss, convo.filters[k][0].data),
                                   f"convo filter[{k}]")
        assert_gradients_close(convo._grad_bias.data,
                               numerical_gradient(loss, convo.bias.data), "convo bias")


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
