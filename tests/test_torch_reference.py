"""
Tests for the PyTorch Reference Network
=======================================

The torch network built from the same NetConfig and loaded with the same
parameters must produce the same outputs as the NumPy engine.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

torch = pytest.importorskip("torch")

from convonet.config import (NetConfig, BackPropConfig, EtaModel, InputConfig, ConvoPoolConfig,
                             ConvoConfig, PoolConfig, InternalConfig, OutputConfig)
from convonet.network import ConvoNet
from convonet.utils import make_separable_samples
from pytorch.convonet_torch import (ConvoNetTorch, samples_to_tensors, create_data_loaders,
                                    benchmark_pytorch_inference, evaluate_torch_model)


def two_stage_config(convo_act='Leaky RELU', normalize=False):
    """Input 14x14 -> Convo(3, 3) -> Pool(2) -> Convo(3, 2) -> Pool(2) -> 6 -> 3."""
    return NetConfig(
        back_prop_config=BackPropConfig(EtaModel('Step Decay', 0.01, 0.05, 100, 0.0),
                                        batch_size=4),
        input_config=InputConfig(14, 14),
        convo_pool_list=[ConvoPoolConfig(ConvoConfig(convo_act, 3, 3), PoolConfig(2)),
                         ConvoPoolConfig(ConvoConfig(convo_act, 3, 2), PoolConfig(2))],
        internal_list=[InternalConfig('Sigmoid', 6)],
        output_config=OutputConfig('Softmax', 3),
        normalize_convo=normalize,
    )


def engine_outputs(net, samples):
    return np.array([net.predict(s.x).data for s in samples])


def torch_outputs(model, samples):
    x, _ = samples_to_tensors(samples)
    model.eval()
    with torch.no_grad():
        return model(x).numpy()


class TestAgreement:
    """NumPy engine vs torch reference on identical parameters."""

    def setup_method(self):
        np.random.seed(42)
        torch.manual_seed(42)
        self.samples = make_separable_samples(8, 14, 14, 3, seed=4)

    @pytest.mark.parametrize('convo_act', ['Leaky RELU', 'Hyperbolic Tangent', 'Sigmoid'])
    def test_initialized_network(self, convo_act):
        net = ConvoNet(two_stage_config(convo_act), verbose=False).initialize()
        model = ConvoNetTorch(net.config).double().load_fit_params(net.create_fit_params())

        np.testing.assert_allclose(torch_outputs(model, self.samples),
                                   engine_outputs(net, self.samples), atol=1e-6)

    def test_trained_network(self):
        net = ConvoNet(two_stage_config(), verbose=False)
        result = net.fit(make_separable_samples(24, 14, 14, 3, seed=5))
        model = ConvoNetTorch(net.config).double().load_fit_params(result.fit_params)

        np.testing.assert_allclose(torch_outputs(model, self.samples),
                                   engine_outputs(net, self.samples), atol=1e-6)

    def test_normalized_convolution(self):
        net = ConvoNet(two_stage_config(normalize=True), verbose=False).initialize()
        model = ConvoNetTorch(net.config).double().load_fit_params(net.create_fit_params())

        np.testing.assert_allclose(torch_outputs(model, self.samples),
                                   engine_outputs(net, self.samples), atol=1e-6)

    def test_dense_only(self):
        config = NetConfig(input_config=InputConfig(4, 4),
                           internal_list=[InternalConfig('Leaky Log', 5)],
                           output_config=OutputConfig('Sigmoid', 2))
        samples = make_separable_samples(6, 4, 4, 2)
        net = ConvoNet(config, verbose=False).initialize()
        model = ConvoNetTorch(config).double().load_fit_params(net.create_fit_params())

        np.testing.assert_allclose(torch_outputs(model, samples),
                                   engine_outputs(net, samples), atol=1e-6)

    def test_export_round_trip(self):
        """Parameters exported from torch load back into the engine unchanged."""
        net = ConvoNet(two_stage_config(), verbose=False).initialize()
        model = ConvoNetTorch(net.config).double()

        other = ConvoNet(net.config, verbose=False)
        other.set_fit_params(model.to_fit_params())

        np.testing.assert_allclose(torch_outputs(model, self.samples),
                                   engine_outputs(other, self.samples), atol=1e-6)
        assert model.count_parameters() == other.summary()


class TestHelpers:
    """Tests for data conversion, evaluation and benchmarking."""

    def test_samples_to_tensors(self):
        samples = make_separable_samples(5, 4, 6, 2)
        x, y = samples_to_tensors(samples)

        assert x.shape == (5, 1, 4, 6)
        assert x.dtype == torch.float64
        assert y.tolist() == [0, 1, 0, 1, 0]

    def test_data_loaders(self):
        samples = make_separable_samples(10, 4, 4, 2)
        train_loader, test_loader = create_data_loaders(samples, samples[:4], batch_size=3)

        assert len(train_loader) == 4
        assert len(test_loader) == 2

    def test_predict_classes(self):
        net = ConvoNet(two_stage_config(), verbose=False).initialize()
        model = ConvoNetTorch(net.config).double().load_fit_params(net.create_fit_params())
        samples = make_separable_samples(6, 14, 14, 3)
        x, _ = samples_to_tensors(samples)

        assert model.predict_classes(x).tolist() == [net.predict_class(s.x) for s in samples]

    def test_evaluate_matches_engine(self):
        """Accuracy and confusion matrix agree with ConvoNet.evaluate()."""
        net = ConvoNet(two_stage_config(), verbose=False).initialize()
        model = ConvoNetTorch(net.config).double().load_fit_params(net.create_fit_params())
        samples = make_separable_samples(9, 14, 14, 3)

        results = evaluate_torch_model(model, samples)
        expected = net.evaluate(samples)

        assert results['accuracy'] == pytest.approx(expected.accuracy)
        np.testing.assert_array_equal(results['confusion_matrix'], expected.confusion_matrix())
        assert results['confusion_matrix'].sum() == 9

    def test_benchmark(self):
        model = ConvoNetTorch(two_stage_config()).double()
        x, _ = samples_to_tensors(make_separable_samples(4, 14, 14, 3))
        results = benchmark_pytorch_inference(model, x, n_runs=3)

        assert results['n_samples'] == 4
        assert results['mean_ms'] > 0


class TestLightning:
    """Baseline training with PyTorch Lightning."""

    def test_train(self, tmp_path, monkeypatch):
        pytest.importorskip("pytorch_lightning")
        from pytorch.lightning_module import train_with_lightning

        monkeypatch.chdir(tmp_path)
        config = two_stage_config()
        samples = make_separable_samples(16, 14, 14, 3, seed=6)

        model, trainer = train_with_lightning(config, samples[:12], samples[12:], max_epochs=1,
                                              checkpoint_dir=str(tmp_path / 'ckpt'))

        assert trainer.current_epoch == 1
        fit_params = model.model.to_fit_params()
        net = ConvoNet(config, verbose=False).set_fit_params(fit_params)
        assert net.predict(samples[0].x).shape == (3, 1)


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
