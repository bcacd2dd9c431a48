"""
PyTorch ConvoNet Implementation
===============================

The network described by a NetConfig, built from torch modules, for
comparison with the NumPy engine.

Layer mapping:
    ConvoLayer    -> nn.Conv2d (valid cross-correlation, one bias per map) + activation
    PoolLayer     -> nn.MaxPool2d(p, p)
    concatenation -> nn.Flatten (map-major, row-major within a map)
    InternalLayer -> nn.Linear + activation
    OutputLayer   -> nn.Linear + activation (Softmax by default)

Weights are imported from (and exported to) FitParams, so both engines can
be run on the same parameters.
"""

import time

import numpy as np
import torch
import torch.nn as nn
import torch.nn.functional as F
from torch.utils.data import TensorDataset, DataLoader

from convonet.activations import (Identity, LeakyLog, LeakyReLU, ScaledTanh, Sigmoid,
                                  Softmax, Tanh, get_activation)
from convonet.matrix import Matrix
from convonet.ops import NORM_LOW_LIMIT
from convonet.snapshot import (ConvoPoolFitParams, FitParams, InternalFitParams,
                               OutputFitParams)
from convonet.utils import accuracy_score, confusion_matrix


class LeakyLogTorch(nn.Module):
    """ln(z) for z > 1, slope * (z - 1) otherwise."""

    def __init__(self, slope=0.1):
        super().__init__()
        self.slope = slope

    def forward(self, x):
        return torch.where(x > 1.0, torch.log(torch.clamp(x, min=1.0)), self.slope * (x - 1.0))


class ScaledTanhTorch(nn.Module):
    """scale^2 * tanh(z)."""

    def __init__(self, scale=400.0):
        super().__init__()
        self.scale = scale

    def forward(self, x):
        return self.scale * (self.scale * torch.tanh(x))


class CellSoftmax(nn.Module):
    """Softmax over all cells of each feature map (or over each vector)."""

    def forward(self, x):
        if x.dim() == 4:
            n, c, h, w = x.shape
            return F.softmax(x.reshape(n, c, h * w), dim=-1).reshape(n, c, h, w)
        return F.softmax(x, dim=1)


class MaxAbsNorm(nn.Module):
    """Scale each feature map so its largest absolute cell is at most 1."""

    def forward(self, x):
        max_abs = x.abs().amax(dim=(-2, -1), keepdim=True)
        return x / torch.where(max_abs < NORM_LOW_LIMIT, torch.ones_like(max_abs), max_abs)


def torch_activation(name):
    """torch module for an activation label (same names as get_activation)."""
    act = get_activation(name)
    if isinstance(act, LeakyReLU):
        return nn.LeakyReLU(act.slope)
    if isinstance(act, LeakyLog):
        return LeakyLogTorch(act.slope)
    if isinstance(act, Sigmoid):
        return nn.Sigmoid()
    if isinstance(act, ScaledTanh):
        return ScaledTanhTorch(act.scale)
    if isinstance(act, Tanh):
        return nn.Tanh()
    if isinstance(act, Softmax):
        return CellSoftmax()
    if isinstance(act, Identity):
        return nn.Identity()
    raise ValueError(f"No torch equivalent for activation '{name}'")


class ConvoNetTorch(nn.Module):
    """
    PyTorch network with the same architecture as a ConvoNet.

    Args:
        config: NetConfig

    Example:
        >>> model = ConvoNetTorch(config).double()
        >>> model.load_fit_params(net.create_fit_params())
        >>> probs = model(torch.from_numpy(x.to_array())[None, None])
    """

    def __init__(self, config):
        super().__init__()
        sizes = config.validate()
        self.config = config

        blocks = []
        n_maps = 1
        for stage in config.convo_pool_list:
            cc = stage.convo_config
            layers = [nn.Conv2d(n_maps, cc.num_filters, kernel_size=cc.filter_size)]
            if config.normalize_convo:
                layers.append(MaxAbsNorm())
            layers.append(torch_activation(cc.act_name))
            if config.normalize_convo:
                layers.append(MaxAbsNorm())
            layers.append(nn.MaxPool2d(stage.pool_config.pool_size, stage.pool_config.pool_size))
            blocks.append(nn.Sequential(*layers))
            n_maps = cc.num_filters
        self.convo_blocks = nn.ModuleList(blocks)

        if sizes:
            n_in = n_maps * sizes[-1][1] ** 2
        else:
            n_in = config.input_config.rows * config.input_config.cols

        self.flatten = nn.Flatten()

        internal = []
        for item in config.internal_list:
            internal.append(nn.Sequential(nn.Linear(n_in, item.num_output_nodes),
                                          torch_activation(item.act_name)))
            n_in = item.num_output_nodes
        self.internal_layers = nn.ModuleList(internal)

        self.output_linear = nn.Linear(n_in, config.num_classes)
        self.output_activation = torch_activation(config.output_config.act_name)

    def forward(self, x):
        """
        Forward pass.

        Args:
            x: Inputs, shape (batch, 1, rows, cols)

        Returns:
            Output activations, shape (batch, num_classes)
        """
        for block in self.convo_blocks:
            x = block(x)
        x = self.flatten(x)
        for layer in self.internal_layers:
            x = layer(x)
        return self.output_activation(self.output_linear(x))

    def predict_classes(self, x):
        """Predict class labels."""
        self.eval()
        with torch.no_grad():
            return torch.argmax(self.forward(x), dim=1)

    def load_fit_params(self, fit_params):
        """Copy FitParams weights into the torch parameters."""
        with torch.no_grad():
            for block, params in zip(self.convo_blocks, fit_params.convo_pool_list):
                conv = block[0]
                weight = np.array([[f.to_array() for f in row] for row in params.filter_list])
                conv.weight.copy_(torch.from_numpy(weight))
                conv.bias.copy_(torch.from_numpy(params.bias.data.copy()))

            for layer, params in zip(self.internal_layers, fit_params.internal_list):
                layer[0].weight.copy_(torch.from_numpy(params.w.to_array().copy()))
                layer[0].bias.copy_(torch.from_numpy(params.b.data.copy()))

            self.output_linear.weight.copy_(torch.from_numpy(fit_params.output.w.to_array().copy()))
            self.output_linear.bias.copy_(torch.from_numpy(fit_params.output.b.data.copy()))
        return self

    def to_fit_params(self):
        """Export the torch parameters as FitParams."""
        def matrix(t):
            return Matrix.from_array(t.detach().cpu().double().numpy())

        def column(t):
            return Matrix.column(t.detach().cpu().double().numpy())

        convo_list = []
        for i, block in enumerate(self.convo_blocks):
            conv = block[0]
            filters = [[matrix(conv.weight[k, j]) for j in range(conv.in_channels)]
                       for k in range(conv.out_channels)]
            convo_list.append(ConvoPoolFitParams(f'convo.{i}', filters, column(conv.bias)))

        internal_list = [InternalFitParams(f'internal.{i}', matrix(layer[0].weight),
                                           column(layer[0].bias))
                         for i, layer in enumerate(self.internal_layers)]

        output = OutputFitParams(matrix(self.output_linear.weight), column(self.output_linear.bias))
        return FitParams(convo_list, internal_list, output)

    def count_parameters(self):
        """Count trainable parameters."""
        return sum(p.numel() for p in self.parameters() if p.requires_grad)


def samples_to_tensors(samples):
    """
    Stack Samples into (inputs, labels) tensors.

    Returns:
        inputs (N, 1, rows, cols) float64, labels (N,) int64
    """
    x = np.stack([s.x.to_array() for s in samples])[:, np.newaxis]
    y = np.array([s.label for s in samples], dtype=np.int64)
    return torch.from_numpy(x), torch.from_numpy(y)


def evaluate_torch_model(model, samples):
    """
    Classify Samples with a torch model.

    Returns:
        Dictionary with accuracy and the confusion matrix (rows = actual)
    """
    x, y = samples_to_tensors(samples)
    predicted = model.predict_classes(x).numpy()
    actual = y.numpy()
    return {
        'accuracy': accuracy_score(actual, predicted),
        'confusion_matrix': confusion_matrix(actual, predicted, model.config.num_classes),
    }


def create_data_loaders(train_samples, test_samples, batch_size=32):
    """
    Create PyTorch data loaders from Sample lists.

    Returns:
        train_loader, test_loader
    """
    train_dataset = TensorDataset(*samples_to_tensors(train_samples))
    test_dataset = TensorDataset(*samples_to_tensors(test_samples))

    train_loader = DataLoader(train_dataset, batch_size=batch_size, shuffle=True)
    test_loader = DataLoader(test_dataset, batch_size=batch_size, shuffle=False)

    return train_loader, test_loader


def benchmark_pytorch_inference(model, sample_input, n_runs=100, device='cpu'):
    """
    Benchmark PyTorch inference time.

    Args:
        model: ConvoNetTorch model
        sample_input: Sample input tensor
        n_runs: Number of runs
        device: Device

    Returns:
        Dictionary with timing statistics
    """
    model = model.to(device)
    sample_input = sample_input.to(device)
    model.eval()

    # Warmup
    with torch.no_grad():
        for _ in range(10):
            _ = model(sample_input)

    if device == 'cuda':
        torch.cuda.synchronize()

    times = []
    with torch.no_grad():
        for _ in range(n_runs):
            start = time.perf_counter()
            _ = model(sample_input)
            if device == 'cuda':
                torch.cuda.synchronize()
            end = time.perf_counter()
            times.append(end - start)

    times = np.array(times) * 1000  # Convert to ms

    return {
        'mean_ms': np.mean(times),
        'std_ms': np.std(times),
        'min_ms': np.min(times),
        'max_ms': np.max(times),
        'n_samples': sample_input.shape[0],
        'per_sample_ms': np.mean(times) / sample_input.shape[0]
    }
