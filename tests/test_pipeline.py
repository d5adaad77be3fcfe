"""
Tests for the benchmark pipeline: weight sources, layer setup, benchmark loop.
"""
import math

import pytest
import timm
import torch
import torch.nn.functional as F

from svd_softmax.benchmark.pipeline import (build_layer, build_output_projection,
                                            run_benchmark)
from svd_softmax.benchmark.runner import SVDSoftmaxBenchmark
from svd_softmax.models.sources import (HeadCapture, get_classifier_head,
                                        load_weight_from_checkpoint,
                                        synthetic_weight)
from svd_softmax.utils.rank_selection import select_preview_rank


@pytest.fixture
def small_weight():
    generator = torch.Generator().manual_seed(0)
    return synthetic_weight(64, 10, spectrum_decay=0.8, generator=generator)


def test_synthetic_weight_spectrum(small_weight):
    assert small_weight.shape == (64, 10)
    S = torch.linalg.svdvals(small_weight)
    expected = 8.0 * 0.8 ** torch.arange(10, dtype=torch.float32)
    torch.testing.assert_close(S, expected, rtol=1e-4, atol=1e-4)


def test_build_layer_defaults(small_weight):
    layer = build_layer(small_weight, None, {})
    assert layer.svd_state.preview_rank == 2
    assert layer.svd_state.correction_budget == 7
    assert layer.bias is None


def test_build_layer_energy_threshold(small_weight):
    config = {'preview_rank_method': 'energy_threshold',
              'energy_threshold': 0.9,
              'correction_budget_ratio': 0.25}
    layer = build_layer(small_weight, None, config)
    S = layer.decomposition.S
    assert layer.svd_state.preview_rank == select_preview_rank(
        S, 'energy_threshold', threshold=0.9)
    assert layer.svd_state.correction_budget == math.ceil(64 * 0.25)


def test_build_layer_explicit_params_win(small_weight):
    config = {'preview_rank': 4, 'correction_budget': 9,
              'preview_rank_method': 'fixed_ratio', 'fixed_rank_ratio': 0.5,
              'correction_budget_ratio': 0.5}
    layer = build_layer(small_weight, torch.zeros(64), config)
    assert layer.svd_state.preview_rank == 4
    assert layer.svd_state.correction_budget == 9
    assert layer.bias is not None


def test_checkpoint_source(tmp_path, small_weight):
    bias = torch.randn(64)
    path = tmp_path / 'model.pt'
    torch.save({'state_dict': {'head.weight': small_weight, 'head.bias': bias}},
               path)

    weight, loaded_bias, backbone = build_output_projection({
        'source': 'checkpoint', 'checkpoint_path': str(path),
        'weight_key': 'head.weight', 'bias_key': 'head.bias'})
    assert backbone is None
    torch.testing.assert_close(weight, small_weight)
    torch.testing.assert_close(loaded_bias, bias)

    with pytest.raises(KeyError):
        load_weight_from_checkpoint(str(path), 'lm_head.weight')
    with pytest.raises(FileNotFoundError):
        load_weight_from_checkpoint(str(tmp_path / 'missing.pt'), 'head.weight')


def test_unknown_source():
    with pytest.raises(ValueError):
        build_output_projection({'source': 'bogus'})


def test_head_capture():
    model = timm.create_model('resnet18', pretrained=False, num_classes=10).eval()
    capture = HeadCapture(model)
    out = capture(torch.randn(2, 3, 64, 64))
    head = get_classifier_head(model)
    assert out['hidden'].shape == (2, head.in_features)
    assert out['logits'].shape == (2, 10)
    torch.testing.assert_close(F.linear(out['hidden'], head.weight, head.bias),
                               out['logits'])
    capture.remove_hooks()
    assert not capture.hooks


def test_runner_with_captured_logits(tmp_path, small_weight):
    layer = build_layer(small_weight, None, {'correction_budget': 16})
    torch.manual_seed(1)
    hidden = torch.randn(4, 10)
    batches = [{'hidden': hidden, 'logits': hidden @ small_weight.t()}, hidden]
    benchmark = SVDSoftmaxBenchmark(
        layer, batches, {'log_dir': str(tmp_path), 'repeats': 0, 'top_k': [1, 3]},
        torch.device('cpu'))
    results = benchmark.run()
    assert results['num_batches'] == 2
    assert 'top3_overlap' in results
    assert 'approx_ms' not in results
    assert results['max_selected_error'] < 1e-3


def test_run_benchmark_end_to_end(tmp_path):
    summary = run_benchmark(overrides={
        'vocab_size': 64, 'hidden_size': 8, 'batch_size': 4, 'num_batches': 2,
        'repeats': 1, 'log_every': 1, 'num_workers': 2,
        'log_dir': str(tmp_path), 'device': 'cpu'})

    assert summary['preview_rank'] == 2
    assert summary['correction_budget'] == 7
    assert summary['num_batches'] == 2
    assert summary['reconstruction_error'] < 1e-4
    assert 0.0 < summary['energy_retained'] <= 1.0
    for key in ('top1_match', 'top5_overlap', 'exact_fraction',
                'approx_ms', 'exact_ms', 'speedup'):
        assert key in summary
    assert summary['max_selected_error'] < 1e-3


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
