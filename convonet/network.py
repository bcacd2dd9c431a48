"""
ConvoNet Network Orchestrator
=============================

Ties the layers together:
- Layer construction from a NetConfig
- Training and testing forward passes
- Per-sample backpropagation with one parameter update per batch
- Training loop with progress bar, cancellation and batch callbacks
- Evaluation (confusion matrix and counters)
- Parameter export/import and saving/loading

Architecture (built from the configuration):
    Input (rows x cols)
    -> [Convolution(nOut, f x f) -> MaxPool(p)] x len(convo_pool_list)
    -> Concatenate feature maps into one column
    -> Internal (fully connected) x len(internal_list)
    -> Output (fully connected, Softmax by default)

Life cycle:
    UNCONFIGURED -> CONFIGURED -> INITIALIZED -> RUNNING -> COMPLETED | CANCELLED
    Any state -> FAILED after a numeric or configuration error during a run.
"""

import time
from dataclasses import dataclass
from enum import Enum

import numpy as np
from tqdm import tqdm

from . import ops
from .errors import (DimensionMismatchError, InvalidConfigurationError,
                     NumericInstabilityError)
from .layers import ConvoLayer, InternalLayer, OutputLayer, PoolLayer
from .losses import one_hot_column
from .matrix import Matrix
from .optimizers import TRAINING_SCHEDULERS, get_rate_schedule
from .snapshot import (ConvoPoolFitParams, FitParams, InternalFitParams,
                       OutputFitParams, load_fit_params, save_fit_params)
from .utils import (SHUFFLE_SEED, create_batches, get_model_summary,
                    shuffle_samples, take_samples)


class NetState(Enum):
    UNCONFIGURED = 'unconfigured'
    CONFIGURED = 'configured'
    INITIALIZED = 'initialized'
    RUNNING = 'running'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    FAILED = 'failed'


class RunStatus(Enum):
    OK = 'ok'
    CANCELLED = 'cancelled'
    DIVERGED = 'diverged'
    CONFIG_ERROR = 'config_error'


@dataclass(frozen=True)
class Evaluation:
    """Counter snapshot, safe to hand to other code between batches."""

    sample_count: int
    num_correct: int
    batch_sample_count: int
    batch_num_correct: int

    @property
    def accuracy(self):
        return self.num_correct / self.sample_count if self.sample_count else 0.0

    @property
    def batch_accuracy(self):
        return self.batch_num_correct / self.batch_sample_count if self.batch_sample_count else 0.0


class NetResult:
    """
    Running results of a training or testing pass.

    summary_results is the confusion matrix: cell [actual][predicted] counts
    the samples of class `actual` that were classified as `predicted`.
    """

    def __init__(self, num_classes):
        self.num_classes = num_classes
        self.summary_results = Matrix(num_classes, num_classes)
        self.samples_completed = 0
        self.samples_correct = 0
        self.batch_samples_completed = 0
        self.batch_samples_correct = 0
        self.run_time = 0.0
        self.history = {'accuracy': [], 'batch_accuracy': [], 'eta': [], 'loss': [], 'error': []}

    def update_summary(self, actual, predicted):
        """Record one classified sample."""
        self.summary_results.update_cell(actual, predicted, 1.0)
        self.samples_completed += 1
        self.batch_samples_completed += 1
        if actual == predicted:
            self.samples_correct += 1
            self.batch_samples_correct += 1

    def reset_batch(self):
        self.batch_samples_completed = 0
        self.batch_samples_correct = 0

    @property
    def accuracy(self):
        return self.samples_correct / self.samples_completed if self.samples_completed else 0.0

    @property
    def batch_accuracy(self):
        if not self.batch_samples_completed:
            return 0.0
        return self.batch_samples_correct / self.batch_samples_completed

    def evaluation(self):
        return Evaluation(self.samples_completed, self.samples_correct,
                          self.batch_samples_completed, self.batch_samples_correct)

    def confusion_matrix(self):
        """Confusion matrix as an integer array (rows = actual)."""
        return self.summary_results.to_array().astype(int)

    def __repr__(self):
        return (f"NetResult(samples={self.samples_completed}, correct={self.samples_correct}, "
                f"accuracy={self.accuracy:.4f})")


@dataclass(frozen=True)
class RunResult:
    """Terminal outcome of a training or testing run."""

    status: RunStatus
    net_result: NetResult = None
    message: str = ''
    operation: str = ''
    fit_params: FitParams = None

    @property
    def ok(self):
        return self.status == RunStatus.OK


class ConvoPoolLayer:
    """A convolution layer followed by its max-pool layer."""

    def __init__(self, convo, pool):
        self.convo = convo
        self.pool = pool

    def train_forward(self, x_list):
        return self.pool.train_forward(self.convo.train_forward(x_list))

    def test_forward(self, x_list):
        return self.pool.test_forward(self.convo.test_forward(x_list))

    def backward(self, dl_dy_list):
        return self.convo.backward(self.pool.backward(dl_dy_list))

    def apply_update(self, eta, lambda_, mu):
        self.convo.apply_update(eta, lambda_, mu)
        self.pool.apply_update(eta, lambda_, mu)

    def __repr__(self):
        return f"ConvoPoolLayer({self.convo!r}, {self.pool!r})"


class ConvoNet:
    """
    Convolutional neural network built from a NetConfig.

    Args:
        config: NetConfig (configure() is called when given)
        verbose: Show a progress bar and print summaries

    Example:
        >>> from convonet import ConvoNet, NetConfig, InputConfig, InternalConfig, OutputConfig
        >>> from convonet.utils import make_separable_samples
        >>> config = NetConfig(input_config=InputConfig(4, 4),
        ...                    internal_list=[InternalConfig('Leaky RELU', 8)],
        ...                    output_config=OutputConfig('Softmax', 2))
        >>> net = ConvoNet(config, verbose=False)
        >>> result = net.fit(make_separable_samples(200, 4, 4, 2))
        >>> result.status
        <RunStatus.OK: 'ok'>
    """

    def __init__(self, config=None, verbose=True):
        self.verbose = verbose
        self.config = None
        self.state = NetState.UNCONFIGURED
        self.convo_pool_list = []
        self.internal_list = []
        self.output_layer = None
        self.result = None
        self._rate_schedule = None
        self._sizes = []

        if config is not None:
            self.configure(config)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def configure(self, config):
        """
        Validate the configuration and build the layers.

        Raises:
            InvalidConfigurationError: bad sizes or an unsupported rate function
        """
        sizes = config.validate()
        rate_schedule = get_rate_schedule(config.back_prop_config.rate_model,
                                          allowed=TRAINING_SCHEDULERS)

        convo_pool_list = []
        n_maps = 1
        for i, stage in enumerate(config.convo_pool_list):
            cc = stage.convo_config
            convo = ConvoLayer(n_maps, cc.num_filters, cc.filter_size, activation=cc.act_name,
                               normalize=config.normalize_convo, layer_id=f'convo.{i}')
            pool = PoolLayer(stage.pool_config.pool_size, layer_id=f'pool.{i}')
            convo_pool_list.append(ConvoPoolLayer(convo, pool))
            n_maps = cc.num_filters

        if sizes:
            _, nfp = sizes[-1]
            n_in = n_maps * nfp * nfp
        else:
            n_in = config.input_config.rows * config.input_config.cols

        internal_list = []
        for i, internal in enumerate(config.internal_list):
            internal_list.append(InternalLayer(n_in, internal.num_output_nodes,
                                               activation=internal.act_name,
                                               layer_id=f'internal.{i}'))
            n_in = internal.num_output_nodes

        self.output_layer = OutputLayer(n_in, config.num_classes,
                                        activation=config.output_config.act_name)
        self.convo_pool_list = convo_pool_list
        self.internal_list = internal_list
        self.config = config
        self._sizes = sizes
        self._rate_schedule = rate_schedule
        self.result = NetResult(config.num_classes)
        self.state = NetState.CONFIGURED
        return self

    def _require_configured(self):
        if self.config is None:
            raise InvalidConfigurationError("Network is not configured; call configure() first")

    def initialize(self):
        """Seeded weight initialization for every layer; resets the results."""
        self._require_configured()
        for stage in self.convo_pool_list:
            stage.convo.init_filters()
        for layer in self.internal_list:
            layer.init_weights()
        self.output_layer.init_weights()
        self.result = NetResult(self.config.num_classes)
        self.state = NetState.INITIALIZED
        return self

    def layers(self):
        """All layers in forward order."""
        layers = []
        for stage in self.convo_pool_list:
            layers.extend([stage.convo, stage.pool])
        layers.extend(self.internal_list)
        if self.output_layer is not None:
            layers.append(self.output_layer)
        return layers

    def layer_shapes(self):
        """(layer, output shape description) pairs in forward order."""
        shapes = []
        for stage, (nf, nfp) in zip(self.convo_pool_list, self._sizes):
            shapes.append((stage.convo, f"{stage.convo.num_filters} x ({nf}, {nf})"))
            shapes.append((stage.pool, f"{stage.convo.num_filters} x ({nfp}, {nfp})"))
        for layer in self.internal_list + [self.output_layer]:
            shapes.append((layer, f"({layer.n_out}, 1)"))
        return shapes

    # ------------------------------------------------------------------
    # Parameter snapshots
    # ------------------------------------------------------------------

    def create_fit_params(self):
        """Copy of all trainable parameters (take between batches)."""
        self._require_configured()
        return FitParams(
            convo_pool_list=[ConvoPoolFitParams(stage.convo.layer_id,
                                                [[f.copy() for f in row] for row in stage.convo.filters],
                                                stage.convo.bias.copy())
                             for stage in self.convo_pool_list],
            internal_list=[InternalFitParams(layer.layer_id, layer.w.copy(), layer.b.copy())
                           for layer in self.internal_list],
            output=OutputFitParams(self.output_layer.w.copy(), self.output_layer.b.copy()),
        )

    def set_fit_params(self, fit_params):
        """
        Import parameters instead of the seeded initialization.

        Raises:
            DimensionMismatchError: layer counts or matrix shapes differ
        """
        self._require_configured()
        if len(fit_params.convo_pool_list) != len(self.convo_pool_list):
            raise DimensionMismatchError(
                f"Snapshot has {len(fit_params.convo_pool_list)} convolution layers, "
                f"network has {len(self.convo_pool_list)}")
        if len(fit_params.internal_list) != len(self.internal_list):
            raise DimensionMismatchError(
                f"Snapshot has {len(fit_params.internal_list)} internal layers, "
                f"network has {len(self.internal_list)}")
        if fit_params.output is None:
            raise DimensionMismatchError("Snapshot has no output layer parameters")

        for stage, params in zip(self.convo_pool_list, fit_params.convo_pool_list):
            stage.convo.set_filters(params.filter_list, params.bias)
        for layer, params in zip(self.internal_list, fit_params.internal_list):
            layer.set_weights(params.w, params.b)
        self.output_layer.set_weights(fit_params.output.w, fit_params.output.b)

        self.result = NetResult(self.config.num_classes)
        self.state = NetState.INITIALIZED
        return self

    # ------------------------------------------------------------------
    # Forward / backward
    # ------------------------------------------------------------------

    def _check_input(self, x):
        if not isinstance(x, Matrix):
            x = Matrix.from_array(x)
        expected = (self.config.input_config.rows, self.config.input_config.cols)
        if x.shape != expected:
            raise DimensionMismatchError(f"Input shape {x.shape} != {expected}")
        return x

    def _forward(self, x, training):
        self._require_configured()
        x = self._check_input(x)

        if self.convo_pool_list:
            maps = [x]
            for stage in self.convo_pool_list:
                maps = stage.train_forward(maps) if training else stage.test_forward(maps)
            col = ops.list_to_single_col(maps)
        else:
            col = x.reshaped(x.size, 1)

        for layer in self.internal_list:
            col = layer.train_forward(col) if training else layer.test_forward(col)

        if training:
            return self.output_layer.train_forward(col)
        return self.output_layer.test_forward(col)

    def train_forward(self, x):
        """Forward pass that caches what backward() needs."""
        return self._forward(x, training=True)

    def test_forward(self, x):
        """Forward pass without touching any cache."""
        return self._forward(x, training=False)

    def backward(self, actual):
        """
        Backpropagate one sample; parameter gradients accumulate in the layers.

        Args:
            actual: One-hot column of the true class
        """
        grad = self.output_layer.backward(actual)
        for layer in reversed(self.internal_list):
            grad = layer.backward(grad)

        if self.convo_pool_list:
            # one flat piece per pooled feature map of the last stage
            grads = ops.split_matrix(grad, self.convo_pool_list[-1].convo.num_filters)
            for stage in reversed(self.convo_pool_list):
                grads = stage.backward(grads)

    def apply_updates(self, eta):
        """One parameter update from the gradients accumulated over the batch."""
        bp = self.config.back_prop_config
        for stage in self.convo_pool_list:
            stage.apply_update(eta, bp.lambda_, bp.mu)
        for layer in self.internal_list:
            layer.apply_update(eta, bp.lambda_, bp.mu)
        self.output_layer.apply_update(eta, bp.lambda_, bp.mu)

    def current_eta(self):
        """Learning rate for the next batch."""
        return self._rate_schedule(self.result.samples_completed)

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def fit_batch(self, batch):
        """
        Train on one batch: forward, evaluate and backpropagate each sample,
        then update the parameters once.

        Returns:
            Evaluation after the batch
        """
        eta = self.current_eta()
        num_classes = self.config.num_classes
        self.result.reset_batch()
        batch_loss = 0.0

        for sample in batch:
            actual = one_hot_column(sample.label, num_classes)
            self.train_forward(sample.x)
            batch_loss += self.output_layer.loss(actual)
            self.result.update_summary(sample.label, self.output_layer.predicted_index())
            self.backward(actual)

        self.apply_updates(eta)
        avg_error = self.output_layer.batch_loss_gradient()

        history = self.result.history
        history['accuracy'].append(self.result.accuracy)
        history['batch_accuracy'].append(self.result.batch_accuracy)
        history['eta'].append(eta)
        history['loss'].append(batch_loss / max(len(batch), 1))
        # mean |Y - actual| over the batch
        history['error'].append(0.0 if avg_error is None else float(np.mean(np.abs(avg_error.data))))
        return self.result.evaluation()

    def fit(self, samples, total_samples=None, epochs=1, shuffle=True,
            cancel=None, on_batch_end=None):
        """
        Train the network.

        Consecutive full batches run while samples_completed + batch_size
        stays within the sample total of the epoch; a trailing partial batch
        is skipped.

        Args:
            samples: Sequence of Samples
            total_samples: Samples to use per epoch (default: the configured
                           total_training_samples, or all samples)
            epochs: Number of passes over the samples
            shuffle: Shuffle before each epoch (seed 4321 + epoch)
            cancel: Callable returning True to stop; checked between batches
            on_batch_end: Callable(net, evaluation) run after each batch, the
                          point at which create_fit_params() is safe

        Returns:
            RunResult
        """
        if self.config is None:
            return RunResult(RunStatus.CONFIG_ERROR, None,
                             "Network is not configured", 'fit')
        if self.state == NetState.CONFIGURED:
            self.initialize()

        if total_samples is None:
            total_samples = self.config.general_config.total_training_samples
        samples = take_samples(samples, total_samples, 'training samples')
        batch_size = self.config.back_prop_config.batch_size

        self.state = NetState.RUNNING
        start = time.perf_counter()
        try:
            cancelled = self._run_epochs(samples, batch_size, epochs, shuffle,
                                         cancel, on_batch_end)
        except NumericInstabilityError as exc:
            return self._failed(RunStatus.DIVERGED, exc, exc.operation, start)
        except (InvalidConfigurationError, DimensionMismatchError) as exc:
            return self._failed(RunStatus.CONFIG_ERROR, exc, 'fit', start)

        self.result.run_time += time.perf_counter() - start
        if cancelled:
            self.state = NetState.CANCELLED
            status = RunStatus.CANCELLED
        else:
            self.state = NetState.COMPLETED
            status = RunStatus.OK

        if self.verbose:
            print(f"Training {status.value}: {self.result.samples_completed} samples, "
                  f"accuracy {self.result.accuracy:.4f}, {self.result.run_time:.1f}s")

        return RunResult(status, self.result, fit_params=self.create_fit_params())

    def _run_epochs(self, samples, batch_size, epochs, shuffle, cancel, on_batch_end):
        n_batches = len(samples) // batch_size

        for epoch in range(epochs):
            epoch_samples = shuffle_samples(samples, SHUFFLE_SEED + epoch) if shuffle else samples
            batches = create_batches(epoch_samples, batch_size)

            if self.verbose:
                pbar = tqdm(batches, total=n_batches, desc=f"Epoch {epoch+1}/{epochs}")
            else:
                pbar = batches

            for batch in pbar:
                if cancel is not None and cancel():
                    if self.verbose:
                        pbar.close()
                    return True

                evaluation = self.fit_batch(batch)
                if on_batch_end is not None:
                    on_batch_end(self, evaluation)

                if self.verbose:
                    pbar.set_postfix({
                        'acc': f'{evaluation.accuracy:.4f}',
                        'batch_acc': f'{evaluation.batch_accuracy:.4f}',
                        'eta': f'{self.result.history["eta"][-1]:.6f}',
                        'err': f'{self.result.history["error"][-1]:.4f}'
                    })
        return False

    def _failed(self, status, exc, operation, start):
        self.result.run_time += time.perf_counter() - start
        self.state = NetState.FAILED
        if self.verbose:
            print(f"Training {status.value}: {exc}")
        return RunResult(status, self.result, str(exc), operation)

    # ------------------------------------------------------------------
    # Testing and prediction
    # ------------------------------------------------------------------

    def evaluate(self, samples, total_samples=None, batch_size=None):
        """
        Forward-only pass over a sample set.

        Args:
            samples: Sequence of Samples
            total_samples: Samples to use (default: the configured
                           total_testing_samples, or all samples)
            batch_size: Evaluation batch size (default: the configured
                        general batch size, else the training batch size)

        Returns:
            A new NetResult (the training results are not touched)
        """
        self._require_configured()
        if total_samples is None:
            total_samples = self.config.general_config.total_testing_samples
        samples = take_samples(samples, total_samples, 'testing samples')
        if batch_size is None:
            batch_size = (self.config.general_config.batch_size
                          or self.config.back_prop_config.batch_size)

        result = NetResult(self.config.num_classes)
        start = time.perf_counter()
        batches = create_batches(samples, batch_size, drop_last=False)
        if self.verbose:
            n_batches = (len(samples) + batch_size - 1) // batch_size
            batches = tqdm(batches, total=n_batches, desc="Testing")

        for batch in batches:
            result.reset_batch()
            for sample in batch:
                result.update_summary(sample.label, self.predict_class(sample.x))
            result.history['accuracy'].append(result.accuracy)
            result.history['batch_accuracy'].append(result.batch_accuracy)

        result.run_time = time.perf_counter() - start
        if self.verbose:
            print(f"Test accuracy: {result.accuracy:.4f} "
                  f"({result.samples_correct}/{result.samples_completed})")
        return result

    def predict(self, x):
        """Output column for one input."""
        return self.test_forward(x)

    def predict_class(self, x):
        """Predicted class index for one input."""
        return ops.index_of_max(self.predict(x))

    def evaluation(self):
        """Counter snapshot of the current training results."""
        self._require_configured()
        return self.result.evaluation()

    def get_feature_maps(self, x):
        """
        Pooled feature maps of every convolution stage for one input.

        Returns:
            List (one entry per stage) of lists of Matrices
        """
        self._require_configured()
        maps = [self._check_input(x)]
        feature_maps = []
        for stage in self.convo_pool_list:
            maps = stage.test_forward(maps)
            feature_maps.append(maps)
        return feature_maps

    # ------------------------------------------------------------------
    # Reporting and persistence
    # ------------------------------------------------------------------

    def summary(self):
        """Print model summary."""
        self._require_configured()
        rows, cols = self.config.input_config.rows, self.config.input_config.cols
        print("\n" + "=" * 70)
        print("ConvoNet Model Summary")
        print(f"Input shape: ({rows}, {cols})    Output classes: {self.config.num_classes}")
        print(get_model_summary(self))

        return sum(layer.num_params() for layer in self.layers())

    def save(self, filepath):
        """
        Save the current parameters to a .npz file.

        Args:
            filepath: Path to save file (.npz)
        """
        save_fit_params(self.create_fit_params(), filepath)
        print(f"Model saved to {filepath}")

    def load(self, filepath):
        """
        Load parameters saved by save().

        Args:
            filepath: Path to saved model (.npz)
        """
        self.set_fit_params(load_fit_params(filepath))
        print(f"Model loaded from {filepath}")

    def __repr__(self):
        if self.config is None:
            return "ConvoNet(unconfigured)"
        return (f"ConvoNet(convo_stages={len(self.convo_pool_list)}, "
                f"internal={len(self.internal_list)}, classes={self.config.num_classes}, "
                f"state={self.state.value})")


# ============================================================================
# Run entry points
# ============================================================================

def run_training(config, samples, fit_params=None, verbose=False, **fit_kwargs):
    """
    Configure a network, optionally import parameters, and train it.

    Configuration problems come back as a CONFIG_ERROR RunResult instead of
    an exception.

    Args:
        config: NetConfig
        samples: Sequence of training Samples
        fit_params: Optional FitParams to start from
        verbose: Progress output
        **fit_kwargs: Passed to ConvoNet.fit

    Returns:
        RunResult
    """
    try:
        net = ConvoNet(config, verbose=verbose)
        if fit_params is not None:
            net.set_fit_params(fit_params)
    except (InvalidConfigurationError, DimensionMismatchError) as exc:
        return RunResult(RunStatus.CONFIG_ERROR, message=str(exc), operation='configure')
    return net.fit(samples, **fit_kwargs)


def run_testing(config, fit_params, samples, verbose=False, total_samples=None):
    """
    Configure a network from a snapshot and evaluate it.

    Returns:
        RunResult whose net_result holds the confusion matrix and counters
    """
    try:
        net = ConvoNet(config, verbose=verbose)
        net.set_fit_params(fit_params)
        result = net.evaluate(samples, total_samples=total_samples)
    except (InvalidConfigurationError, DimensionMismatchError) as exc:
        return RunResult(RunStatus.CONFIG_ERROR, message=str(exc), operation='configure')
    except NumericInstabilityError as exc:
        return RunResult(RunStatus.DIVERGED, message=str(exc), operation=exc.operation)
    return RunResult(RunStatus.OK, result, fit_params=fit_params)
