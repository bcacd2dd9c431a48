"""
Unit Tests for Network Configuration
====================================

Tests for:
- Size validation and chained convolution/pool shapes
- Building from nested dicts (snake_case and camelCase)
- JSON round trip
"""

import json

import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from convonet.config import (NetConfig, BackPropConfig, EtaModel, InputConfig, ConvoPoolConfig,
                             ConvoConfig, PoolConfig, InternalConfig, OutputConfig,
                             load_config, save_config)
from convonet.errors import InvalidConfigurationError
from convonet.network import RunStatus, run_training
from convonet.utils import make_separable_samples


def mnist_config():
    return NetConfig(
        back_prop_config=BackPropConfig(EtaModel('Step Decay', 0.01, 0.1, 500, 0.01),
                                        lambda_=0.0001, mu=0.9, batch_size=32),
        input_config=InputConfig(28, 28),
        convo_pool_list=[ConvoPoolConfig(ConvoConfig('Leaky RELU', 5, 8), PoolConfig(2))],
        internal_list=[InternalConfig('Leaky RELU', 64)],
        output_config=OutputConfig('Softmax', 10),
    )


class TestValidate:
    """Tests for NetConfig.validate()."""

    def test_sizes(self):
        """Returns (nf, nfp) per stage."""
        config = NetConfig(
            input_config=InputConfig(28, 28),
            convo_pool_list=[ConvoPoolConfig(ConvoConfig('Identity', 5, 4), PoolConfig(2)),
                             ConvoPoolConfig(ConvoConfig('Identity', 5, 4), PoolConfig(4))],
        )
        assert config.validate() == [(24, 12), (8, 2)]

    def test_no_stages(self):
        assert NetConfig(input_config=InputConfig(4, 6)).validate() == []

    def test_lists_become_tuples(self):
        """Configs are immutable even when built from lists."""
        config = mnist_config()
        assert isinstance(config.convo_pool_list, tuple)
        assert isinstance(config.internal_list, tuple)

    def test_num_classes(self):
        assert mnist_config().num_classes == 10

    @pytest.mark.parametrize('config', [
        NetConfig(input_config=InputConfig(0, 28)),
        NetConfig(input_config=InputConfig(28, 20),
                  convo_pool_list=[ConvoPoolConfig(ConvoConfig('Identity', 3, 1), PoolConfig(1))]),
        NetConfig(back_prop_config=BackPropConfig(batch_size=0)),
        NetConfig(back_prop_config=BackPropConfig(lambda_=1.0)),
        NetConfig(back_prop_config=BackPropConfig(mu=-0.1)),
        NetConfig(input_config=InputConfig(4, 4),
                  convo_pool_list=[ConvoPoolConfig(ConvoConfig('Identity', 5, 1), PoolConfig(1))]),
        NetConfig(input_config=InputConfig(10, 10),
                  convo_pool_list=[ConvoPoolConfig(ConvoConfig('Identity', 3, 1), PoolConfig(3))]),
        NetConfig(internal_list=[InternalConfig('Sigmoid', 0)]),
        NetConfig(output_config=OutputConfig('Softmax', 0)),
    ])
    def test_invalid(self, config):
        with pytest.raises(InvalidConfigurationError):
            config.validate()


class TestFromDict:
    """Tests for NetConfig.from_dict()."""

    def test_camel_case(self):
        data = {
            'generalConfig': {'totalTrainingSamples': 1000, 'totalTestingSamples': 200},
            'backPropConfig': {
                'rateModel': {'rateFn': 'Triangle Decay', 'minRate': 0.001, 'maxRate': 0.01,
                              'stepCount': 500, 'decayPerStep': 0.001},
                'lambda': 0.0005,
                'mu': 0.5,
                'batchSize': 16,
            },
            'inputConfig': {'rows': 28, 'cols': 28},
            'convoPoolList': [
                {'convoConfig': {'actName': 'Leaky RELU', 'filterSize': 5, 'numFilters': 8},
                 'poolConfig': {'poolSize': 2}},
            ],
            'internalList': [{'actName': 'Sigmoid', 'numOutputNodes': 32}],
            'outputConfig': {'actName': 'Softmax', 'numOutputNodes': 10},
            'normalizeConvo': True,
        }
        config = NetConfig.from_dict(data)

        assert config.general_config.total_training_samples == 1000
        assert config.back_prop_config.lambda_ == 0.0005
        assert config.back_prop_config.batch_size == 16
        assert config.back_prop_config.rate_model.step_count == 500
        assert config.convo_pool_list[0].convo_config.num_filters == 8
        assert config.convo_pool_list[0].pool_config.pool_size == 2
        assert config.internal_list[0].num_output_nodes == 32
        assert config.normalize_convo is True

    def test_defaults_for_missing_sections(self):
        config = NetConfig.from_dict({'outputConfig': {'numOutputNodes': 3}})
        assert config.input_config == InputConfig()
        assert config.num_classes == 3

    def test_unknown_key(self):
        with pytest.raises(InvalidConfigurationError, match="unknown keys"):
            NetConfig.from_dict({'inputConfig': {'rows': 28, 'colz': 28}})

    def test_not_an_object(self):
        with pytest.raises(InvalidConfigurationError):
            NetConfig.from_dict({'internalList': [5]})


class TestJson:
    """Tests for load_config() and save_config()."""

    def test_round_trip(self, tmp_path):
        config = mnist_config()
        path = save_config(config, tmp_path / 'net.json')
        assert load_config(path) == config

    def test_snake_case_file(self, tmp_path):
        path = tmp_path / 'net.json'
        save_config(mnist_config(), path)
        data = json.loads(path.read_text())

        assert 'back_prop_config' in data
        assert data['back_prop_config']['lambda_'] == 0.0001

    def test_camel_case_file_trains(self, tmp_path):
        """A camelCase file gives a typed rate model the trainer can use."""
        path = tmp_path / 'camel.json'
        path.write_text(json.dumps({
            'backPropConfig': {
                'rateModel': {'rateFn': 'Step Decay', 'minRate': 0.01, 'maxRate': 0.1,
                              'stepCount': 100, 'decayPerStep': 0.0},
                'batchSize': 5,
            },
            'inputConfig': {'rows': 4, 'cols': 4},
            'internalList': [{'actName': 'Leaky RELU', 'numOutputNodes': 6}],
            'outputConfig': {'actName': 'Softmax', 'numOutputNodes': 2},
        }))

        config = load_config(path)
        assert isinstance(config.back_prop_config.rate_model, EtaModel)
        assert config.back_prop_config.rate_model.rate_fn == 'Step Decay'

        result = run_training(config, make_separable_samples(20, 4, 4, 2))
        assert result.status == RunStatus.OK
        assert result.net_result.history['eta'][0] == 0.1

    def test_invalid_json(self, tmp_path):
        path = tmp_path / 'broken.json'
        path.write_text('{"inputConfig": ')
        with pytest.raises(InvalidConfigurationError):
            load_config(path)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
