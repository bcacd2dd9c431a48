"""
Parameter Snapshots
===================

FitParams mirrors the layer tree of a trained network so weights can be
exported between batches, persisted, and imported into a freshly configured
network:

    FitParams
    ├── convo_pool_list  [ConvoPoolFitParams(layer_id, filter_list, bias)]
    ├── internal_list    [InternalFitParams(layer_id, w, b)]
    └── output           OutputFitParams(w, b)

filter_list[k][i] is the filter from input feature map i to output map k.

Snapshots hold copies, so a snapshot taken at a post-batch safe point is not
affected by later training.

Persistence uses np.savez with one array per matrix:
    convo.{n}.filter.{k}.{i}, convo.{n}.bias, internal.{n}.w, internal.{n}.b,
    output.w, output.b
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import numpy as np

from .errors import InvalidConfigurationError
from .matrix import Matrix


@dataclass
class ConvoPoolFitParams:
    layer_id: str
    filter_list: List[List[Matrix]]
    bias: Matrix


@dataclass
class InternalFitParams:
    layer_id: str
    w: Matrix
    b: Matrix


@dataclass
class OutputFitParams:
    w: Matrix
    b: Matrix


@dataclass
class FitParams:
    convo_pool_list: List[ConvoPoolFitParams] = field(default_factory=list)
    internal_list: List[InternalFitParams] = field(default_factory=list)
    output: OutputFitParams = None

    def copy(self):
        return FitParams(
            convo_pool_list=[
                ConvoPoolFitParams(p.layer_id,
                                   [[f.copy() for f in row] for row in p.filter_list],
                                   p.bias.copy())
                for p in self.convo_pool_list],
            internal_list=[InternalFitParams(p.layer_id, p.w.copy(), p.b.copy())
                           for p in self.internal_list],
            output=None if self.output is None
            else OutputFitParams(self.output.w.copy(), self.output.b.copy()),
        )


def save_fit_params(fit_params, filepath):
    """
    Save a FitParams snapshot to a .npz file.

    Args:
        fit_params: FitParams to save
        filepath: Destination path (.npz)
    """
    arrays = {}
    layer_ids = []

    for n, convo in enumerate(fit_params.convo_pool_list):
        layer_ids.append(convo.layer_id)
        for k, row in enumerate(convo.filter_list):
            for i, f in enumerate(row):
                arrays[f'convo.{n}.filter.{k}.{i}'] = f.to_array()
        arrays[f'convo.{n}.bias'] = convo.bias.to_array()
        arrays[f'convo.{n}.shape'] = np.array([len(convo.filter_list),
                                               len(convo.filter_list[0])])

    for n, internal in enumerate(fit_params.internal_list):
        layer_ids.append(internal.layer_id)
        arrays[f'internal.{n}.w'] = internal.w.to_array()
        arrays[f'internal.{n}.b'] = internal.b.to_array()

    if fit_params.output is not None:
        arrays['output.w'] = fit_params.output.w.to_array()
        arrays['output.b'] = fit_params.output.b.to_array()

    arrays['num_convo'] = np.array(len(fit_params.convo_pool_list))
    arrays['num_internal'] = np.array(len(fit_params.internal_list))
    arrays['layer_ids'] = np.array(layer_ids, dtype=str)

    np.savez(filepath, **arrays)
    return Path(filepath)


def load_fit_params(filepath):
    """
    Load a FitParams snapshot written by save_fit_params.

    Raises:
        InvalidConfigurationError: the file is missing expected arrays
    """
    with np.load(filepath, allow_pickle=False) as data:
        try:
            num_convo = int(data['num_convo'])
            num_internal = int(data['num_internal'])
            layer_ids = [str(s) for s in data['layer_ids']]

            convo_list = []
            for n in range(num_convo):
                n_out, n_in = (int(v) for v in data[f'convo.{n}.shape'])
                filters = [[Matrix.from_array(data[f'convo.{n}.filter.{k}.{i}'])
                            for i in range(n_in)] for k in range(n_out)]
                bias = Matrix.from_array(data[f'convo.{n}.bias'])
                convo_list.append(ConvoPoolFitParams(layer_ids[n], filters, bias))

            internal_list = []
            for n in range(num_internal):
                internal_list.append(InternalFitParams(
                    layer_ids[num_convo + n],
                    Matrix.from_array(data[f'internal.{n}.w']),
                    Matrix.from_array(data[f'internal.{n}.b'])))

            output = None
            if 'output.w' in data:
                output = OutputFitParams(Matrix.from_array(data['output.w']),
                                         Matrix.from_array(data['output.b']))
        except KeyError as exc:
            raise InvalidConfigurationError(f"{filepath}: incomplete snapshot ({exc})") from exc

    return FitParams(convo_list, internal_list, output)
