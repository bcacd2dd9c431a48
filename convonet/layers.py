"""
Network Layers
==============

The four layer types of the network, each with a training forward pass
(caches what backpropagation needs), a testing forward pass (no side
effects) and a backward pass.

Layers implemented:
- ConvoLayer: multi-map convolution with square filters, bias and activation
- PoolLayer: non-overlapping max pooling
- InternalLayer: fully connected Z = W.X + b, Y = F(Z)
- OutputLayer: fully connected classification layer with the loss gradient

Mini-batch training:
    backward() is called once per sample. It returns dL/dX for the previous
    layer and adds this sample's parameter gradients to the layer's batch
    accumulators. apply_update() runs once at the end of the batch: it
    averages the accumulated gradients, applies the momentum/L2 rule to the
    weights (see optimizers.update_weight_matrix) and a plain gradient step
    to the bias, then clears the accumulators.

Shapes:
    Convolution input/output: list of square feature maps, one per map
    Internal/output input: column vector (n_in x 1)
"""

import numpy as np

from . import ops
from .activations import get_activation
from .errors import DimensionMismatchError
from .losses import CrossEntropyLoss
from .matrix import Matrix
from .optimizers import update_weight_matrix


# seeds for reproducible weight initialization
INTERNAL_WT_SEED = 1234
OUTPUT_WT_SEED = 4321


def _chain_derivative(dydz, dl_dy, is_jacobian):
    """dL/dZ from dL/dY and the cached dY/dZ (cell product or Jacobian product)."""
    if is_jacobian:
        col = dl_dy.reshaped(dl_dy.size, 1)
        return ops.mult(dydz, col).reshaped(dl_dy.rows, dl_dy.cols)
    return ops.cell_mult(dl_dy, dydz)


class Layer:
    """Base class for all layers."""

    layer_type = 'layer'

    def __init__(self, layer_id=''):
        self.layer_id = layer_id
        self.cache = {}
        # samples accumulated since the last apply_update
        self.batch_count = 0

    def train_forward(self, x):
        """Forward pass that caches state for backward()."""
        raise NotImplementedError

    def test_forward(self, x):
        """Forward pass without side effects."""
        raise NotImplementedError

    def backward(self, grad_output):
        """Backward pass for one sample; returns dL/dX."""
        raise NotImplementedError

    def apply_update(self, eta, lambda_, mu):
        """Apply the batch-averaged gradients. No-op for parameterless layers."""
        self.batch_count = 0

    def num_params(self):
        return 0

    def __call__(self, x):
        return self.test_forward(x)


class ConvoLayer(Layer):
    """
    Convolution layer over a list of feature maps.

    For each output map k:

        Z_k = sum_i convolve(X_i, F[k][i]) + b_k
        Y_k = activation(Z_k)

    Args:
        n_in: Number of input feature maps
        num_filters: Number of output feature maps (nOut)
        filter_size: Filter side length f
        activation: Activation label or instance
        normalize: Rescale Z_k and Y_k to max |cell| <= 1 (gradients then
                   treat the scale as constant)
        seed: Seed for the filter initializer
        layer_id: Name used in error messages and snapshots

    Output map size: (n - f + 1) x (n - f + 1) for an n x n input.

    The backward pass computes, per sample:
    1. dL/dZ_k = dL/dY_k (.) dY_k/dZ_k
    2. dL/dX_i = sum_k convolve(pad(dL/dZ_k, f - 1), rotate(F[k][i]))
    3. dL/dF[k][i] = convolve(X_i, dL/dZ_k)
    4. dL/db_k = sum of dL/dZ_k cells
    """

    layer_type = 'convo'

    def __init__(self, n_in, num_filters, filter_size, activation='Identity',
                 normalize=False, seed=OUTPUT_WT_SEED, layer_id='convo.0'):
        super().__init__(layer_id)
        self.n_in = n_in
        self.num_filters = num_filters
        self.filter_size = filter_size
        self.activation = get_activation(activation)
        self.normalize = normalize
        self.seed = seed

        self.filters = []
        self.velocity = []
        self.bias = Matrix(num_filters, 1)
        self.init_filters()

    def init_filters(self):
        """Gaussian filters with variance 2 / (f * f); zero bias and velocity."""
        rng = np.random.default_rng(self.seed)
        f = self.filter_size
        std_dev = np.sqrt(2.0 / (f * f))
        self.filters = [[Matrix(f, f, rng.standard_normal(f * f) * std_dev)
                         for _ in range(self.n_in)]
                        for _ in range(self.num_filters)]
        self.bias = Matrix(self.num_filters, 1)
        self._reset_state()

    def set_filters(self, filter_list, bias):
        """Replace filters and bias with copies of the given matrices."""
        if len(filter_list) != self.num_filters or any(len(row) != self.n_in for row in filter_list):
            raise DimensionMismatchError(
                f"{self.layer_id}: expected {self.num_filters} x {self.n_in} filters")
        f = self.filter_size
        for row in filter_list:
            for w in row:
                if w.shape != (f, f):
                    raise DimensionMismatchError(
                        f"{self.layer_id}: filter shape {w.shape} != ({f}, {f})")
        if bias.shape != (self.num_filters, 1):
            raise DimensionMismatchError(f"{self.layer_id}: bias shape {bias.shape}")
        self.filters = [[w.copy() for w in row] for row in filter_list]
        self.bias = bias.copy()
        self._reset_state()

    def _reset_state(self):
        f = self.filter_size
        self.velocity = [[Matrix(f, f) for _ in range(self.n_in)]
                         for _ in range(self.num_filters)]
        self._grad_filters = [[Matrix(f, f) for _ in range(self.n_in)]
                              for _ in range(self.num_filters)]
        self._grad_bias = Matrix(self.num_filters, 1)
        self.batch_count = 0
        self.cache = {}

    def _forward(self, x_list, training):
        if len(x_list) != self.n_in:
            raise DimensionMismatchError(
                f"{self.layer_id}: expected {self.n_in} input maps, got {len(x_list)}")

        out_list = []
        derivs = []
        for k in range(self.num_filters):
            sum_z = None
            for i, x in enumerate(x_list):
                z = ops.convolve(x, self.filters[k][i])
                if sum_z is None:
                    sum_z = z
                else:
                    ops.add_inplace(sum_z, z)
            sum_z.check_nan(f"{self.layer_id} forward sum_z")
            ops.add_constant_inplace(sum_z, self.bias.data[k])

            if self.normalize:
                ops.normalize_inplace(sum_z)

            if training:
                y = self.activation.training_fn(sum_z)
                derivs.append(self.activation.derivative())
            else:
                y = self.activation.testing_fn(sum_z)

            if self.normalize:
                ops.normalize_inplace(y)
            out_list.append(y)

        if training:
            self.cache = {'inputs': list(x_list), 'dydz': derivs}
        return out_list

    def train_forward(self, x_list):
        return self._forward(x_list, training=True)

    def test_forward(self, x_list):
        return self._forward(x_list, training=False)

    def backward(self, dl_dy_list):
        """
        Args:
            dl_dy_list: dL/dY, one matrix per output map

        Returns:
            dL/dX, one matrix per input map
        """
        if 'inputs' not in self.cache:
            raise RuntimeError(f"{self.layer_id}: backward() called before train_forward()")
        if len(dl_dy_list) != self.num_filters:
            raise DimensionMismatchError(
                f"{self.layer_id}: expected {self.num_filters} gradient maps, got {len(dl_dy_list)}")

        x_list = self.cache['inputs']
        pad_size = self.filter_size - 1
        dl_dx_list = [Matrix(x.rows, x.cols) for x in x_list]

        for k in range(self.num_filters):
            dl_dz = _chain_derivative(self.cache['dydz'][k], dl_dy_list[k],
                                      self.activation.is_jacobian)
            dl_dz_pad = ops.copy_and_pad(dl_dz, pad_size)
            self._grad_bias.data[k] += ops.sum_cells(dl_dz)

            for i, x in enumerate(x_list):
                ops.add_inplace(dl_dx_list[i],
                                ops.convolve(dl_dz_pad, ops.rotate(self.filters[k][i])))
                ops.add_inplace(self._grad_filters[k][i], ops.convolve(x, dl_dz))

        for i, dl_dx in enumerate(dl_dx_list):
            dl_dx.check_nan(f"{self.layer_id} backward dl_dx[{i}]")

        self.batch_count += 1
        return dl_dx_list

    def apply_update(self, eta, lambda_, mu):
        if self.batch_count == 0:
            return
        inv = 1.0 / self.batch_count
        one_minus_lambda = 1.0 - lambda_

        for k in range(self.num_filters):
            for i in range(self.n_in):
                avg = ops.mul_constant(self._grad_filters[k][i], inv)
                update_weight_matrix(avg, eta, self.filters[k][i], self.velocity[k][i],
                                     mu, one_minus_lambda)
                self._grad_filters[k][i].fill_inplace(0.0)

        ops.add_inplace(self.bias, ops.mul_constant(self._grad_bias, -eta * inv))
        self.bias.check_nan(f"{self.layer_id} bias")
        self._grad_bias.fill_inplace(0.0)
        self.batch_count = 0

    def output_size(self, input_size):
        return input_size - self.filter_size + 1

    def num_params(self):
        return self.num_filters * self.n_in * self.filter_size ** 2 + self.num_filters

    def __repr__(self):
        return (f"ConvoLayer(id={self.layer_id}, n_in={self.n_in}, num_filters={self.num_filters}, "
                f"filter_size={self.filter_size}, activation={self.activation.label})")


class PoolLayer(Layer):
    """
    Non-overlapping max pooling, stride equal to the pool size.

    Args:
        pool_size: Pool window side length p
        layer_id: Name used in error messages

    Forward keeps, per input map, the flat index of each window's maximum.
    Backward routes each pooled gradient to that index; every other cell of
    the pre-pool map gets zero.
    """

    layer_type = 'pool'

    def __init__(self, pool_size=2, layer_id='pool.0'):
        super().__init__(layer_id)
        self.pool_size = pool_size

    def _forward(self, x_list, training):
        p = self.pool_size
        out_list = [ops.max_pool(x, p, p) for x in x_list]
        if training:
            self.cache = {
                'index': [ops.pool_index(x, p, p) for x in x_list],
                'shapes': [x.shape for x in x_list],
            }
        return out_list

    def train_forward(self, x_list):
        return self._forward(x_list, training=True)

    def test_forward(self, x_list):
        return self._forward(x_list, training=False)

    def backward(self, dl_dy_list):
        """
        Args:
            dl_dy_list: dL/dY per map, pooled shape or a flat column of the
                        same size

        Returns:
            dL/dX per map, pre-pool shape
        """
        if 'index' not in self.cache:
            raise RuntimeError(f"{self.layer_id}: backward() called before train_forward()")
        if len(dl_dy_list) != len(self.cache['index']):
            raise DimensionMismatchError(
                f"{self.layer_id}: expected {len(self.cache['index'])} gradient maps, "
                f"got {len(dl_dy_list)}")

        dl_dx_list = []
        for dl_dy, index, (rows, cols) in zip(dl_dy_list, self.cache['index'], self.cache['shapes']):
            if dl_dy.size != index.size:
                raise DimensionMismatchError(
                    f"{self.layer_id}: gradient has {dl_dy.size} cells, pool output has {index.size}")
            dl_dx = Matrix(rows, cols)
            dl_dx.data[index.data.astype(np.intp)] = dl_dy.data
            dl_dx_list.append(dl_dx)

        self.batch_count += 1
        return dl_dx_list

    def output_size(self, input_size):
        return input_size // self.pool_size

    def __repr__(self):
        return f"PoolLayer(id={self.layer_id}, pool_size={self.pool_size})"


class InternalLayer(Layer):
    """
    Fully connected layer.

    Forward:
        Z = W.X + b
        Y = activation(Z)

    Args:
        n_in: Input vector length
        n_out: Number of output nodes
        activation: Activation label or instance
        seed: Seed for the weight initializer
        layer_id: Name used in error messages and snapshots

    Backward (per sample):
        dL/dZ = dL/dY (.) dY/dZ       (J . dL/dY for a Jacobian activation)
        dL/dW = dL/dZ . X^T
        dL/dB = dL/dZ
        dL/dX = W^T . dL/dZ
    """

    layer_type = 'internal'

    def __init__(self, n_in, n_out, activation='Identity', seed=INTERNAL_WT_SEED,
                 layer_id='internal.0'):
        super().__init__(layer_id)
        self.n_in = n_in
        self.n_out = n_out
        self.activation = get_activation(activation)
        self.seed = seed
        self.params = {}
        self.velocity = None
        self.grads = {}
        self.init_weights()

    def init_weights(self):
        """He-style init: W ~ N(0, 2 / n_in); zero bias and velocity."""
        rng = np.random.default_rng(self.seed)
        std_dev = np.sqrt(2.0 / self.n_in)
        self.params['w'] = Matrix(self.n_out, self.n_in,
                                  rng.standard_normal(self.n_out * self.n_in) * std_dev)
        self.params['b'] = Matrix(self.n_out, 1)
        self._reset_state()

    def set_weights(self, w, b):
        """Replace W and b with copies of the given matrices."""
        if w.shape != (self.n_out, self.n_in):
            raise DimensionMismatchError(
                f"{self.layer_id}: weight shape {w.shape} != ({self.n_out}, {self.n_in})")
        if b.shape != (self.n_out, 1):
            raise DimensionMismatchError(
                f"{self.layer_id}: bias shape {b.shape} != ({self.n_out}, 1)")
        self.params['w'] = w.copy()
        self.params['b'] = b.copy()
        self._reset_state()

    def _reset_state(self):
        self.velocity = Matrix(self.n_out, self.n_in)
        self.grads = {'w': Matrix(self.n_out, self.n_in), 'b': Matrix(self.n_out, 1)}
        self.batch_count = 0
        self.cache = {}

    @property
    def w(self):
        return self.params['w']

    @property
    def b(self):
        return self.params['b']

    def _as_column(self, x):
        if x.size != self.n_in:
            raise DimensionMismatchError(
                f"{self.layer_id}: expected {self.n_in} inputs, got {x.size}")
        if x.cols == 1:
            return x
        return x.reshaped(self.n_in, 1)

    def _forward(self, x, training):
        x = self._as_column(x)
        z = ops.a_x_plus_b(self.w, x, self.b)
        if training:
            y = self.activation.training_fn(z)
            self.cache = {'x': x, 'y': y}
        else:
            y = self.activation.testing_fn(z)
        y.check_nan(f"{self.layer_id} forward")
        return y

    def train_forward(self, x):
        return self._forward(x, training=True)

    def test_forward(self, x):
        return self._forward(x, training=False)

    def backward(self, dl_dy):
        if 'x' not in self.cache:
            raise RuntimeError(f"{self.layer_id}: backward() called before train_forward()")
        if dl_dy.size != self.n_out:
            raise DimensionMismatchError(
                f"{self.layer_id}: expected {self.n_out} gradient cells, got {dl_dy.size}")
        dl_dy = dl_dy if dl_dy.cols == 1 else dl_dy.reshaped(self.n_out, 1)
        dl_dz = _chain_derivative(self.activation.derivative(), dl_dy,
                                  self.activation.is_jacobian)
        return self._backward_from_dz(dl_dz)

    def _backward_from_dz(self, dl_dz):
        x = self.cache['x']
        ops.add_inplace(self.grads['w'], ops.mult(dl_dz, ops.transpose(x)))
        ops.add_inplace(self.grads['b'], dl_dz)
        dl_dx = ops.mult(ops.transpose(self.w), dl_dz)
        dl_dx.check_nan(f"{self.layer_id} backward dl_dx")
        self.batch_count += 1
        return dl_dx

    def apply_update(self, eta, lambda_, mu):
        if self.batch_count == 0:
            return
        inv = 1.0 / self.batch_count
        avg_dw = ops.mul_constant(self.grads['w'], inv)
        update_weight_matrix(avg_dw, eta, self.w, self.velocity, mu, 1.0 - lambda_)
        ops.add_inplace(self.b, ops.mul_constant(self.grads['b'], -eta * inv))
        self.b.check_nan(f"{self.layer_id} bias")
        self.grads['w'].fill_inplace(0.0)
        self.grads['b'].fill_inplace(0.0)
        self.batch_count = 0

    def num_params(self):
        return self.n_out * self.n_in + self.n_out

    def __repr__(self):
        return (f"{type(self).__name__}(id={self.layer_id}, n_in={self.n_in}, "
                f"n_out={self.n_out}, activation={self.activation.label})")


class OutputLayer(InternalLayer):
    """
    Classification output layer.

    Same forward pass as InternalLayer. backward() takes the one-hot actual
    column instead of dL/dY and derives dL/dZ from the cross-entropy loss:
    with Softmax that is simply Y - actual.

    After each sample, Y - actual is also appended to a batch list;
    batch_loss_gradient() averages and clears it.

    Args:
        n_in: Input vector length
        n_out: Number of classes
        activation: Activation label or instance (default: Softmax)
        seed: Seed for the weight initializer
    """

    layer_type = 'output'

    def __init__(self, n_in, n_out, activation='Softmax', seed=OUTPUT_WT_SEED,
                 layer_id='output.0'):
        super().__init__(n_in, n_out, activation=activation, seed=seed, layer_id=layer_id)
        self.loss_fn = CrossEntropyLoss()
        self.batch_loss = []
        self.output = None

    def _forward(self, x, training):
        self.output = super()._forward(x, training)
        return self.output

    def backward(self, actual):
        """
        Args:
            actual: One-hot column of the true class

        Returns:
            dL/dX for the previous layer
        """
        if 'y' not in self.cache:
            raise RuntimeError(f"{self.layer_id}: backward() called before train_forward()")
        y = self.cache['y']
        if actual.shape != y.shape:
            raise DimensionMismatchError(
                f"{self.layer_id}: actual shape {actual.shape} != output shape {y.shape}")

        dl_dz = self.loss_fn.output_gradient(self.activation, y, actual)
        self.batch_loss.append(ops.subtract(y, actual))
        return self._backward_from_dz(dl_dz)

    def batch_loss_gradient(self):
        """Average of Y - actual over the samples since the last call (None if empty)."""
        if not self.batch_loss:
            return None
        return ops.list_average(self.batch_loss)

    def loss(self, actual):
        """Cross-entropy of the most recent output against the actual column."""
        return self.loss_fn(self.output, actual)

    def predicted_index(self):
        """Index of the largest output (first one on ties)."""
        if self.output is None:
            raise RuntimeError(f"{self.layer_id}: no forward pass yet")
        return ops.index_of_max(self.output)

    def is_correct(self, actual_index):
        return self.predicted_index() == actual_index
