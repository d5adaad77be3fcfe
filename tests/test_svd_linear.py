"""
Tests for SVDSoftmaxLinear: exact / approximate dispatch and configuration.
"""
import copy
from concurrent.futures import ThreadPoolExecutor

import pytest
import torch
import torch.nn as nn
import torch.nn.functional as F

from svd_softmax.errors import ParameterError, ShapeError
from svd_softmax.models import svd_linear as svd_linear_module
from svd_softmax.models.evaluator import evaluate
from svd_softmax.models.svd_linear import SVDSoftmaxLinear


@pytest.fixture
def layer():
    torch.manual_seed(0)
    return SVDSoftmaxLinear(8, 40).double()


def test_training_mode_is_exact(layer):
    layer.train()
    x = torch.randn(3, 8, dtype=torch.float64)
    torch.testing.assert_close(layer(x), F.linear(x, layer.weight, layer.bias))
    assert not layer.is_configured


def test_approximate_flag_off_is_exact(layer):
    layer.approximate = False
    layer.eval()
    x = torch.randn(2, 5, 8, dtype=torch.float64)
    torch.testing.assert_close(layer(x), F.linear(x, layer.weight, layer.bias))


def test_eval_mode_configures_defaults_lazily(layer):
    layer.eval()
    assert not layer.is_configured
    out = layer(torch.randn(3, 8, dtype=torch.float64))
    assert out.shape == (3, 40)
    assert layer.is_configured
    assert layer.svd_state.preview_rank == 2      # ceil(8 / 5)
    assert layer.svd_state.correction_budget == 4  # ceil(40 / 10)


def test_approximate_output_exact_on_candidates(layer):
    layer.eval()
    layer.set_svd_param(3, 6)
    x = torch.randn(4, 8, dtype=torch.float64)
    out = layer(x)
    _, candidates = evaluate(x, layer.svd_state, return_candidates=True)
    exact = F.linear(x, layer.weight, layer.bias)
    for b in range(4):
        rows = candidates[:, b]
        torch.testing.assert_close(out[b, rows], exact[b, rows])


def test_from_linear_copies_weights():
    torch.manual_seed(1)
    linear = nn.Linear(8, 40)
    layer = SVDSoftmaxLinear.from_linear(linear)
    torch.testing.assert_close(layer.weight, linear.weight)
    torch.testing.assert_close(layer.bias, linear.bias)

    with torch.no_grad():
        linear.weight.add_(1.0)
    assert not torch.allclose(layer.weight, linear.weight)


def test_from_linear_without_bias():
    layer = SVDSoftmaxLinear.from_linear(nn.Linear(8, 40, bias=False))
    assert layer.bias is None
    layer.eval()
    x = torch.randn(8)
    assert layer(x).shape == (40,)


def test_failed_set_svd_param_keeps_previous(layer):
    layer.set_svd_param(3, 5)
    with pytest.raises(ParameterError):
        layer.set_svd_param(8, 5)
    with pytest.raises(ParameterError):
        layer.set_svd_param(3, 40)
    assert layer.svd_state.preview_rank == 3
    assert layer.svd_state.correction_budget == 5


def test_set_svd_param_does_not_redecompose(layer):
    layer.set_svd_param(3, 5)
    decomposition = layer.decomposition
    layer.set_svd_param(4, 6)
    assert layer.decomposition is decomposition
    assert layer.svd_state.preview_basis.shape == (40, 4)


def test_weight_changes_need_do_svd(layer):
    layer.eval()
    layer.set_svd_param(3, 6)
    x = torch.randn(8, dtype=torch.float64)
    before = layer(x).clone()

    with torch.no_grad():
        layer.weight.mul_(2.0)
    torch.testing.assert_close(layer(x), before)

    layer.do_svd()
    assert layer.svd_state.preview_rank == 3
    assert layer.svd_state.correction_budget == 6
    out, candidates = evaluate(x, layer.svd_state, return_candidates=True)
    exact = F.linear(x, layer.weight, layer.bias)
    torch.testing.assert_close(out[candidates], exact[candidates])


def test_do_svd_before_params(layer):
    layer.do_svd()
    assert layer.decomposition is not None
    assert not layer.is_configured


def test_prepare_is_idempotent(layer):
    state = layer.prepare()
    assert layer.prepare() is state


def test_concurrent_first_calls_configure_once(layer, monkeypatch):
    calls = []
    original = svd_linear_module.configure

    def counting_configure(*args, **kwargs):
        calls.append(1)
        return original(*args, **kwargs)
    monkeypatch.setattr(svd_linear_module, 'configure', counting_configure)

    layer.eval()
    x = torch.randn(2, 8, dtype=torch.float64)
    with ThreadPoolExecutor(max_workers=8) as pool:
        outputs = list(pool.map(lambda _: layer(x), range(16)))

    assert len(calls) == 1
    for out in outputs[1:]:
        torch.testing.assert_close(out, outputs[0])


def test_reuse_buffers_aliases_output():
    torch.manual_seed(2)
    layer = SVDSoftmaxLinear(8, 40, reuse_buffers=True).eval()
    out1 = layer(torch.randn(8))
    out2 = layer(torch.randn(8))
    assert out1.data_ptr() == out2.data_ptr()

    layer.reuse_buffers = False
    out3 = layer(torch.randn(8))
    assert out3.data_ptr() != out2.data_ptr()


def test_approximate_path_rejects_bad_shapes(layer):
    layer.eval()
    with pytest.raises(ShapeError):
        layer(torch.randn(2, 3, 8, dtype=torch.float64))
    with pytest.raises(ShapeError):
        layer(torch.randn(7, dtype=torch.float64))


def test_deepcopy(layer):
    layer.eval()
    layer.set_svd_param(3, 6)
    clone = copy.deepcopy(layer)
    x = torch.randn(8, dtype=torch.float64)
    torch.testing.assert_close(clone(x), layer(x))
    assert clone.svd_state is not layer.svd_state


def test_extra_repr(layer):
    assert 'unconfigured' in repr(layer)
    layer.set_svd_param(3, 6)
    assert 'W=3, N=6' in repr(layer)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
