import pytest
import torch

from svd_softmax.models.decomposition import configure


@pytest.fixture
def weight():
    """(V=48, D=8) float64 projection."""
    torch.manual_seed(0)
    return torch.randn(48, 8, dtype=torch.float64)


@pytest.fixture
def bias():
    torch.manual_seed(1)
    return torch.randn(48, dtype=torch.float64)


@pytest.fixture
def state(weight, bias):
    return configure(weight, preview_rank=3, correction_budget=6, bias=bias)
