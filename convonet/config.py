"""
Network Configuration
=====================

Immutable description of a network and its training run:

    NetConfig
    ├── general_config     data directories and sample counts
    ├── back_prop_config   batch size, L2 lambda, momentum mu, eta schedule
    ├── input_config       input matrix rows/cols
    ├── convo_pool_list    [(convolution, pool), ...] stages, in order
    ├── internal_list      fully connected layers, in order
    └── output_config      output layer size and activation

JSON files may use snake_case keys or camelCase keys (generalConfig,
backPropConfig, convoPoolList, ...).

Example:
    >>> config = NetConfig(
    ...     input_config=InputConfig(rows=28, cols=28),
    ...     convo_pool_list=(ConvoPoolConfig(ConvoConfig('Leaky RELU', 5, 8), PoolConfig(2)),),
    ...     internal_list=(InternalConfig('Leaky RELU', 64),),
    ...     output_config=OutputConfig('Softmax', 10),
    ... )
    >>> config.convo_pool_list[0].convo_config.filter_size
    5
"""

import dataclasses
import json
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Tuple

from .errors import InvalidConfigurationError


@dataclass(frozen=True)
class GeneralConfig:
    training_dir: str = ''
    testing_dir: str = ''
    total_training_samples: int = 0
    total_testing_samples: int = 0
    # evaluation batch size; 0 means use back_prop_config.batch_size
    batch_size: int = 0


@dataclass(frozen=True)
class EtaModel:
    """Learning-rate schedule parameters."""

    rate_fn: str = 'Triangle Decay'
    min_rate: float = 0.001
    max_rate: float = 0.01
    step_count: int = 1000
    decay_per_step: float = 0.001


@dataclass(frozen=True)
class BackPropConfig:
    rate_model: EtaModel = field(default_factory=EtaModel)
    # L2 regularization coefficient
    lambda_: float = 0.0
    # momentum coefficient
    mu: float = 0.0
    batch_size: int = 1


@dataclass(frozen=True)
class InputConfig:
    rows: int = 28
    cols: int = 28


@dataclass(frozen=True)
class ConvoConfig:
    act_name: str = 'Identity'
    filter_size: int = 3
    num_filters: int = 1


@dataclass(frozen=True)
class PoolConfig:
    pool_size: int = 2
    # pooling has no activation; kept so saved files round-trip
    act_name: str = 'None'


@dataclass(frozen=True)
class ConvoPoolConfig:
    convo_config: ConvoConfig = field(default_factory=ConvoConfig)
    pool_config: PoolConfig = field(default_factory=PoolConfig)


@dataclass(frozen=True)
class InternalConfig:
    act_name: str = 'Identity'
    num_output_nodes: int = 10


@dataclass(frozen=True)
class OutputConfig:
    act_name: str = 'Softmax'
    num_output_nodes: int = 10


@dataclass(frozen=True)
class NetConfig:
    """
    Complete network and training configuration.

    normalize_convo rescales each convolution stage's pre-activation sum and
    its activated output to max |cell| <= 1. The backward pass treats that
    scaling as a constant, so gradients are approximate when it is on.
    """

    general_config: GeneralConfig = field(default_factory=GeneralConfig)
    back_prop_config: BackPropConfig = field(default_factory=BackPropConfig)
    input_config: InputConfig = field(default_factory=InputConfig)
    convo_pool_list: Tuple[ConvoPoolConfig, ...] = ()
    internal_list: Tuple[InternalConfig, ...] = ()
    output_config: OutputConfig = field(default_factory=OutputConfig)
    normalize_convo: bool = False

    def __post_init__(self):
        # accept lists from callers, store tuples
        object.__setattr__(self, 'convo_pool_list', tuple(self.convo_pool_list))
        object.__setattr__(self, 'internal_list', tuple(self.internal_list))

    @property
    def num_classes(self):
        return self.output_config.num_output_nodes

    def validate(self):
        """
        Check sizes and chain the convolution/pool shapes.

        Returns:
            List of (nf, nfp) per convo/pool stage

        Raises:
            InvalidConfigurationError: a size is not positive, a filter does not
                fit its input, or a pool does not divide its convolution output
        """
        rows, cols = self.input_config.rows, self.input_config.cols
        if rows <= 0 or cols <= 0:
            raise InvalidConfigurationError(f"Input size must be positive, got ({rows}, {cols})")
        if rows != cols and self.convo_pool_list:
            raise InvalidConfigurationError(
                f"Convolution stages need a square input, got ({rows}, {cols})")

        bp = self.back_prop_config
        if bp.batch_size <= 0:
            raise InvalidConfigurationError(f"Batch size must be positive, got {bp.batch_size}")
        if not 0.0 <= bp.lambda_ < 1.0:
            raise InvalidConfigurationError(f"Lambda must be in [0, 1), got {bp.lambda_}")
        if not 0.0 <= bp.mu < 1.0:
            raise InvalidConfigurationError(f"Mu must be in [0, 1), got {bp.mu}")

        sizes = []
        n = rows
        for i, stage in enumerate(self.convo_pool_list):
            f = stage.convo_config.filter_size
            p = stage.pool_config.pool_size
            if f <= 0 or stage.convo_config.num_filters <= 0 or p <= 0:
                raise InvalidConfigurationError(
                    f"convo.{i}: filter size, filter count and pool size must be positive")
            nf = n - f + 1
            if nf <= 0:
                raise InvalidConfigurationError(
                    f"convo.{i}: filter size {f} does not fit a {n}x{n} input")
            if nf % p != 0:
                raise InvalidConfigurationError(
                    f"pool.{i}: convolution output {nf}x{nf} is not divisible by pool size {p}")
            nfp = nf // p
            sizes.append((nf, nfp))
            n = nfp

        for i, internal in enumerate(self.internal_list):
            if internal.num_output_nodes <= 0:
                raise InvalidConfigurationError(f"internal.{i}: node count must be positive")
        if self.output_config.num_output_nodes <= 0:
            raise InvalidConfigurationError("output.0: node count must be positive")

        return sizes

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self):
        data = dataclasses.asdict(self)
        data['convo_pool_list'] = list(data['convo_pool_list'])
        data['internal_list'] = list(data['internal_list'])
        return data

    @classmethod
    def from_dict(cls, data):
        """Build a NetConfig from nested dicts (snake_case or camelCase keys)."""
        data = _normalize_keys(data, 'NetConfig')
        kwargs = dict(data)
        if 'general_config' in kwargs:
            kwargs['general_config'] = _build(GeneralConfig, kwargs['general_config'])
        if 'back_prop_config' in kwargs:
            # nested keys must be snake_case before the rate_model lookup
            bp = _normalize_keys(kwargs['back_prop_config'], 'BackPropConfig')
            if 'rate_model' in bp:
                bp['rate_model'] = _build(EtaModel, bp['rate_model'])
            kwargs['back_prop_config'] = _build(BackPropConfig, bp)
        if 'input_config' in kwargs:
            kwargs['input_config'] = _build(InputConfig, kwargs['input_config'])
        if 'convo_pool_list' in kwargs:
            stages = []
            for stage in kwargs['convo_pool_list']:
                stage = _normalize_keys(stage, 'ConvoPoolConfig')
                stages.append(ConvoPoolConfig(
                    convo_config=_build(ConvoConfig, stage.get('convo_config', {})),
                    pool_config=_build(PoolConfig, stage.get('pool_config', {})),
                ))
            kwargs['convo_pool_list'] = tuple(stages)
        if 'internal_list' in kwargs:
            kwargs['internal_list'] = tuple(_build(InternalConfig, item)
                                            for item in kwargs['internal_list'])
        if 'output_config' in kwargs:
            kwargs['output_config'] = _build(OutputConfig, kwargs['output_config'])
        return _build(cls, kwargs)


def _snake_case(key):
    if key == 'lambda':
        return 'lambda_'
    return re.sub(r'(?<!^)(?=[A-Z])', '_', key).lower()


def _normalize_keys(data, where):
    if not isinstance(data, dict):
        raise InvalidConfigurationError(f"{where}: expected an object, got {type(data).__name__}")
    return {_snake_case(k): v for k, v in data.items()}


def _build(cls, data):
    if isinstance(data, cls):
        return data
    data = _normalize_keys(data, cls.__name__)
    names = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - names)
    if unknown:
        raise InvalidConfigurationError(f"{cls.__name__}: unknown keys {unknown}")
    return cls(**data)


def load_config(path):
    """Read a NetConfig from a JSON file."""
    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as exc:
        raise InvalidConfigurationError(f"{path}: invalid JSON ({exc})") from exc
    return NetConfig.from_dict(data)


def save_config(config, path):
    """Write a NetConfig to a JSON file (snake_case keys)."""
    path = Path(path)
    path.write_text(json.dumps(config.to_dict(), indent=2))
    return path
