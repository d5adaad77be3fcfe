"""
Full-view correction: overwrite selected preview outputs with exact values.

For every selected vocabulary row v (and sample b in the batched case):

    z[v]    = B[v] . h        + bias[v]      single sequence
    z[v, b] = B[v] . h[:, b]  + bias[v]      batched

Each (index, sample) pair reads B and h and owns one distinct element of z.
The candidates of each sample are cut into blocks of ROW_BLOCK rows; blocks
are the unit of work for the thread pool, and a sample's values depend only
on its own blocks, never on the batch width or on how blocks are spread over
threads. Workers compute the dot products; the scatter into z happens after
the join.
"""

import logging
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Tuple

import torch
from torch import Tensor

from ..errors import ShapeError

logger = logging.getLogger(__name__)

# Below this many (index, sample) pairs the correction runs inline.
DEFAULT_PARALLEL_THRESHOLD = 2048

# Candidate rows of one sample per block.
ROW_BLOCK = 256

_executors = {}
_executors_lock = threading.Lock()


def default_num_workers() -> int:
    return min(8, os.cpu_count() or 1)


def get_executor(num_workers: int) -> ThreadPoolExecutor:
    """Process-wide pool with num_workers threads, created on first use."""
    with _executors_lock:
        executor = _executors.get(num_workers)
        if executor is None:
            executor = ThreadPoolExecutor(max_workers=num_workers,
                                          thread_name_prefix='svd-full-view')
            _executors[num_workers] = executor
            logger.debug(f"Started full-view correction pool "
                         f"({num_workers} threads)")
        return executor


def full_view_dot(B: Tensor, rows: Tensor, h_rows: Tensor) -> Tensor:
    """
    Exact dot products of selected basis rows with hidden vectors.

    B: (V, D), rows: (M,) int64, h_rows: (M, D) or (1, D) broadcast.
    Returns (M,) with out[i] = B[rows[i]] . h_rows[i].
    """
    return (B.index_select(0, rows) * h_rows).sum(dim=1)


def _check_indices(indices: Tensor, vocab_size: int):
    if indices.dtype != torch.long:
        raise ShapeError(f"indices must be int64, got {indices.dtype}")
    if indices.numel() == 0:
        return
    lo = indices.min().item()
    hi = indices.max().item()
    if lo < 0 or hi >= vocab_size:
        raise ShapeError(
            f"indices out of range [0, {vocab_size}): min={lo}, max={hi}")


def _check_bias(bias: Optional[Tensor], vocab_size: int):
    if bias is not None and tuple(bias.shape) != (vocab_size,):
        raise ShapeError(
            f"bias must have shape ({vocab_size},), got {tuple(bias.shape)}")


def _correct_blocks(B: Tensor, index_rows: Tensor, h_rows: Tensor,
                    bias: Optional[Tensor],
                    blocks: List[Tuple[int, int, int]]) -> Tensor:
    values = []
    for b, lo, hi in blocks:
        rows = index_rows[b, lo:hi]
        block = full_view_dot(B, rows, h_rows[b].unsqueeze(0))
        if bias is not None:
            block = block + bias.index_select(0, rows)
        values.append(block)
    return torch.cat(values)


def _sample_values(B: Tensor, index_rows: Tensor, h_rows: Tensor,
                   bias: Optional[Tensor], num_workers: int,
                   parallel_threshold: int) -> Tensor:
    """
    Exact values for all pairs, sample major.

    index_rows: (Bt, N) candidates per sample, h_rows: (Bt, D).
    Returns (Bt * N,) with value [b * N + n] for index_rows[b, n].
    """
    batch_size, num_candidates = index_rows.shape
    blocks = [(b, lo, min(lo + ROW_BLOCK, num_candidates))
              for b in range(batch_size)
              for lo in range(0, num_candidates, ROW_BLOCK)]
    if not blocks:
        return B.new_empty(0)
    if num_workers <= 1 or batch_size * num_candidates < parallel_threshold:
        return _correct_blocks(B, index_rows, h_rows, bias, blocks)

    num_chunks = min(num_workers, len(blocks))
    bounds = [len(blocks) * i // num_chunks for i in range(num_chunks + 1)]
    executor = get_executor(num_workers)
    futures = [executor.submit(_correct_blocks, B, index_rows, h_rows, bias,
                               blocks[lo:hi])
               for lo, hi in zip(bounds[:-1], bounds[1:])]
    return torch.cat([f.result() for f in futures])


def update_full_view_single(indices: Tensor, z: Tensor, B: Tensor,
                            h: Tensor, bias: Optional[Tensor] = None,
                            num_workers: int = 1,
                            parallel_threshold: int = DEFAULT_PARALLEL_THRESHOLD
                            ) -> Tensor:
    """
    Exact correction for one sequence, in place.

    indices: (N,)  z: (V,)  B: (V, D)  h: (D,)  bias: (V,) or None
    """
    if indices.dim() != 1 or z.dim() != 1 or h.dim() != 1 or B.dim() != 2:
        raise ShapeError(
            f"expected indices (N,), z (V,), B (V, D), h (D,); got "
            f"{tuple(indices.shape)}, {tuple(z.shape)}, {tuple(B.shape)}, "
            f"{tuple(h.shape)}")
    vocab_size, hidden_size = B.shape
    if z.shape[0] != vocab_size or h.shape[0] != hidden_size:
        raise ShapeError(
            f"z {tuple(z.shape)} / h {tuple(h.shape)} do not match "
            f"B {tuple(B.shape)}")
    _check_indices(indices, vocab_size)
    _check_bias(bias, vocab_size)

    values = _sample_values(B, indices.unsqueeze(0), h.unsqueeze(0), bias,
                            num_workers, parallel_threshold)
    z.index_copy_(0, indices, values.to(z.dtype))
    return z


def update_full_view_batched(indices: Tensor, z: Tensor, B: Tensor,
                             h: Tensor, bias: Optional[Tensor] = None,
                             num_workers: int = 1,
                             parallel_threshold: int = DEFAULT_PARALLEL_THRESHOLD
                             ) -> Tensor:
    """
    Exact correction for a batch, in place.

    indices: (N, Bt)  z: (V, Bt)  B: (V, D)  h: (D, Bt)  bias: (V,) or None
    """
    if indices.dim() != 2 or z.dim() != 2 or h.dim() != 2 or B.dim() != 2:
        raise ShapeError(
            f"expected indices (N, Bt), z (V, Bt), B (V, D), h (D, Bt); got "
            f"{tuple(indices.shape)}, {tuple(z.shape)}, {tuple(B.shape)}, "
            f"{tuple(h.shape)}")
    vocab_size, hidden_size = B.shape
    num_candidates, batch_size = indices.shape
    if (tuple(z.shape) != (vocab_size, batch_size)
            or tuple(h.shape) != (hidden_size, batch_size)):
        raise ShapeError(
            f"z {tuple(z.shape)} / h {tuple(h.shape)} do not match "
            f"B {tuple(B.shape)} and batch size {batch_size}")
    _check_indices(indices, vocab_size)
    _check_bias(bias, vocab_size)

    index_rows = indices.t()                        # (Bt, N)
    values = _sample_values(B, index_rows, h.t(), bias, num_workers,
                            parallel_threshold)
    flat_rows = index_rows.reshape(-1)
    flat_cols = torch.arange(batch_size, device=indices.device
                             ).repeat_interleave(num_candidates)
    z.index_put_((flat_rows, flat_cols), values.to(z.dtype))
    return z


def update_full_view(indices: Tensor, z: Tensor, B: Tensor, h: Tensor,
                     bias: Optional[Tensor] = None, num_workers: int = 1,
                     parallel_threshold: int = DEFAULT_PARALLEL_THRESHOLD
                     ) -> Tensor:
    """Route to the single-sequence or batched correction by index rank."""
    if indices.dim() == 1:
        return update_full_view_single(indices, z, B, h, bias, num_workers,
                                       parallel_threshold)
    if indices.dim() == 2:
        return update_full_view_batched(indices, z, B, h, bias, num_workers,
                                        parallel_threshold)
    raise ShapeError(
        f"indices must have 1 or 2 dimensions, got {tuple(indices.shape)}")
