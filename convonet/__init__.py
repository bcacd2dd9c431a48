"""
ConvoNet
========

A convolutional neural network engine written with NumPy.
The package covers:
- A flat row-major Matrix type and its operations (convolution, max pooling,
  clamped products, normalization)
- Activations with cached derivatives (Leaky RELU, Leaky Log, Sigmoid,
  Tanh, Scaled Tanh, Softmax)
- Convolution, pooling, fully connected and output layers
- Mini-batch backpropagation with momentum, L2 decay and a scheduled
  learning rate
- Configuration files, parameter snapshots and a training/testing runner
"""

from .matrix import Matrix
from . import ops
from .errors import (ConvoNetError, DimensionMismatchError, InvalidConfigurationError,
                     NumericInstabilityError)
from .activations import (Identity, LeakyReLU, LeakyLog, Sigmoid, Tanh, ScaledTanh,
                          Softmax, get_activation)
from .layers import ConvoLayer, PoolLayer, InternalLayer, OutputLayer
from .losses import CrossEntropyLoss, one_hot_column
from .optimizers import update_weight_matrix, get_rate_schedule
from .config import (NetConfig, GeneralConfig, BackPropConfig, EtaModel, InputConfig,
                     ConvoConfig, PoolConfig, ConvoPoolConfig, InternalConfig, OutputConfig,
                     load_config, save_config)
from .snapshot import FitParams, save_fit_params, load_fit_params
from .network import (ConvoNet, NetResult, Evaluation, RunResult, RunStatus, NetState,
                      run_training, run_testing)
from .utils import Sample, load_mnist, load_image_folder, shuffle_samples, create_batches
from . import visualizations

__version__ = "1.0.0"
__all__ = [
    # Matrix
    'Matrix', 'ops',
    # Errors
    'ConvoNetError', 'DimensionMismatchError', 'InvalidConfigurationError',
    'NumericInstabilityError',
    # Activations
    'Identity', 'LeakyReLU', 'LeakyLog', 'Sigmoid', 'Tanh', 'ScaledTanh', 'Softmax',
    'get_activation',
    # Layers
    'ConvoLayer', 'PoolLayer', 'InternalLayer', 'OutputLayer',
    # Loss and updates
    'CrossEntropyLoss', 'one_hot_column', 'update_weight_matrix', 'get_rate_schedule',
    # Configuration
    'NetConfig', 'GeneralConfig', 'BackPropConfig', 'EtaModel', 'InputConfig',
    'ConvoConfig', 'PoolConfig', 'ConvoPoolConfig', 'InternalConfig', 'OutputConfig',
    'load_config', 'save_config',
    # Snapshots
    'FitParams', 'save_fit_params', 'load_fit_params',
    # Network
    'ConvoNet', 'NetResult', 'Evaluation', 'RunResult', 'RunStatus', 'NetState',
    'run_training', 'run_testing',
    # Utilities
    'Sample', 'load_mnist', 'load_image_folder', 'shuffle_samples', 'create_batches',
]
