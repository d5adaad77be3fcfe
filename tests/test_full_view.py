"""
Tests for the full-view correction kernel.
"""
import pytest
import torch

from svd_softmax.errors import ShapeError
from svd_softmax.models.full_view import (ROW_BLOCK, full_view_dot, get_executor,
                                          update_full_view,
                                          update_full_view_batched,
                                          update_full_view_single)


@pytest.fixture
def basis():
    torch.manual_seed(0)
    return torch.randn(20, 6, dtype=torch.float64)


def test_full_view_dot(basis):
    h = torch.randn(6, dtype=torch.float64)
    rows = torch.tensor([0, 5, 19])
    torch.testing.assert_close(full_view_dot(basis, rows, h.unsqueeze(0)),
                               basis[rows] @ h)


def test_single_updates_only_selected(basis):
    h = torch.randn(6, dtype=torch.float64)
    z = torch.zeros(20, dtype=torch.float64)
    idx = torch.tensor([3, 7, 11])

    update_full_view_single(idx, z, basis, h)

    torch.testing.assert_close(z[idx], basis[idx] @ h)
    mask = torch.ones(20, dtype=torch.bool)
    mask[idx] = False
    assert (z[mask] == 0).all()


def test_single_with_bias(basis):
    h = torch.randn(6, dtype=torch.float64)
    bias = torch.randn(20, dtype=torch.float64)
    z = torch.zeros(20, dtype=torch.float64)
    idx = torch.tensor([0, 19])

    update_full_view_single(idx, z, basis, h, bias)

    torch.testing.assert_close(z[idx], basis[idx] @ h + bias[idx])


def test_batched_updates_each_sample(basis):
    torch.manual_seed(1)
    h = torch.randn(6, 4, dtype=torch.float64)
    bias = torch.randn(20, dtype=torch.float64)
    idx = torch.stack([torch.randperm(20)[:5] for _ in range(4)], dim=1)  # (5, 4)
    z = torch.zeros(20, 4, dtype=torch.float64)

    update_full_view_batched(idx, z, basis, h, bias)

    for b in range(4):
        rows = idx[:, b]
        torch.testing.assert_close(z[rows, b], basis[rows] @ h[:, b] + bias[rows])
        mask = torch.ones(20, dtype=torch.bool)
        mask[rows] = False
        assert (z[mask, b] == 0).all()


def test_batched_matches_single(basis):
    torch.manual_seed(2)
    h = torch.randn(6, 3, dtype=torch.float64)
    idx = torch.stack([torch.randperm(20)[:4] for _ in range(3)], dim=1)
    z_batched = torch.zeros(20, 3, dtype=torch.float64)
    update_full_view_batched(idx, z_batched, basis, h)

    for b in range(3):
        z_single = torch.zeros(20, dtype=torch.float64)
        update_full_view_single(idx[:, b].contiguous(), z_single, basis,
                                h[:, b].contiguous())
        assert torch.equal(z_batched[:, b], z_single)


def test_parallel_matches_inline(basis):
    torch.manual_seed(3)
    h = torch.randn(6, 8, dtype=torch.float64)
    idx = torch.stack([torch.randperm(20)[:10] for _ in range(8)], dim=1)

    z_inline = torch.zeros(20, 8, dtype=torch.float64)
    update_full_view_batched(idx, z_inline, basis, h, num_workers=1)
    z_parallel = torch.zeros(20, 8, dtype=torch.float64)
    update_full_view_batched(idx, z_parallel, basis, h, num_workers=4,
                             parallel_threshold=1)
    assert torch.equal(z_parallel, z_inline)

    h1 = h[:, 0].contiguous()
    idx1 = idx[:, 0].contiguous()
    z_inline = torch.zeros(20, dtype=torch.float64)
    update_full_view_single(idx1, z_inline, basis, h1, num_workers=1)
    z_parallel = torch.zeros(20, dtype=torch.float64)
    update_full_view_single(idx1, z_parallel, basis, h1, num_workers=3,
                            parallel_threshold=1)
    assert torch.equal(z_parallel, z_inline)


def test_float32_blocks_independent_of_batch_and_workers():
    """More candidates than one row block, float32: every path agrees exactly."""
    generator = torch.Generator().manual_seed(4)
    B = torch.randn(3000, 128, generator=generator)
    h = torch.randn(128, 5, generator=generator)
    bias = torch.randn(3000, generator=generator)
    num_candidates = ROW_BLOCK * 2 + 37
    idx = torch.stack([torch.randperm(3000, generator=generator)[:num_candidates]
                       for _ in range(5)], dim=1)

    z_inline = torch.zeros(3000, 5)
    update_full_view_batched(idx, z_inline, B, h, bias, num_workers=1)
    z_parallel = torch.zeros(3000, 5)
    update_full_view_batched(idx, z_parallel, B, h, bias, num_workers=3,
                             parallel_threshold=1)
    assert torch.equal(z_parallel, z_inline)

    for b in range(5):
        z_single = torch.zeros(3000)
        update_full_view_single(idx[:, b].contiguous(), z_single, B,
                                h[:, b].contiguous(), bias, num_workers=2,
                                parallel_threshold=1)
        assert torch.equal(z_inline[:, b], z_single)


def test_empty_index_set(basis):
    z = torch.zeros(20, dtype=torch.float64)
    update_full_view_single(torch.zeros(0, dtype=torch.long), z, basis,
                            torch.randn(6, dtype=torch.float64))
    assert (z == 0).all()


def test_executor_is_reused():
    assert get_executor(2) is get_executor(2)


def test_dispatch_by_index_rank(basis):
    h = torch.randn(6, dtype=torch.float64)
    z = torch.zeros(20, dtype=torch.float64)
    update_full_view(torch.tensor([1, 2]), z, basis, h)
    torch.testing.assert_close(z[[1, 2]], basis[[1, 2]] @ h)

    with pytest.raises(ShapeError):
        update_full_view(torch.zeros(2, 2, 2, dtype=torch.long), z, basis, h)


@pytest.mark.parametrize("bad", [[20], [-1], [0, 25]])
def test_out_of_range_indices(basis, bad):
    h = torch.randn(6, dtype=torch.float64)
    z = torch.zeros(20, dtype=torch.float64)
    with pytest.raises(ShapeError):
        update_full_view_single(torch.tensor(bad), z, basis, h)


def test_shape_mismatch(basis):
    with pytest.raises(ShapeError):
        update_full_view_single(torch.tensor([0]), torch.zeros(19, dtype=torch.float64),
                                basis, torch.zeros(6, dtype=torch.float64))
    with pytest.raises(ShapeError):
        update_full_view_single(torch.tensor([0]), torch.zeros(20, dtype=torch.float64),
                                basis, torch.zeros(5, dtype=torch.float64))
    with pytest.raises(ShapeError):
        update_full_view_batched(torch.zeros(2, 3, dtype=torch.long),
                                 torch.zeros(20, 4, dtype=torch.float64),
                                 basis, torch.zeros(6, 3, dtype=torch.float64))
    with pytest.raises(ShapeError):
        update_full_view_single(torch.tensor([0]), torch.zeros(20, dtype=torch.float64),
                                basis, torch.zeros(6, dtype=torch.float64),
                                bias=torch.zeros(19, dtype=torch.float64))


def test_rejects_non_int64_indices(basis):
    with pytest.raises(ShapeError):
        update_full_view_single(torch.tensor([0, 1], dtype=torch.int32),
                                torch.zeros(20, dtype=torch.float64), basis,
                                torch.zeros(6, dtype=torch.float64))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
