"""
Top-N candidate selection over preview outputs.

torch.topk does not document how it orders equal values, so the boundary
is resolved here: every value strictly above the N-th largest is taken, and
the remaining slots go to the lowest vocabulary indices holding exactly the
N-th largest value. Candidates come back in ascending vocabulary order.

NaN counts as +inf, at the top as in torch.topk, so NaN and +inf entries
tie by index like any other equal values.
"""

import torch
from torch import Tensor

from ..errors import ParameterError, ShapeError


def select_candidates(z: Tensor, n: int) -> Tensor:
    """
    Indices of the n largest preview outputs per sample.

    Args:
        z: (V,) or (V, B) preview outputs, may hold NaN or inf
        n: number of candidates per sample, 1 <= n <= V

    Returns:
        (n,) or (n, B) int64 indices, ascending within each sample
    """
    if z.dim() not in (1, 2):
        raise ShapeError(
            f"preview outputs must be (V,) or (V, B), got {tuple(z.shape)}")
    vocab_size = z.shape[0]
    if not 1 <= n <= vocab_size:
        raise ParameterError(f"cannot select {n} of {vocab_size} candidates")

    single = z.dim() == 1
    scores = z.unsqueeze(1) if single else z                    # (V, B)
    nan = torch.isnan(scores)
    if nan.any():
        scores = scores.masked_fill(nan, float('inf'))

    kth = torch.topk(scores, n, dim=0, largest=True, sorted=True).values[-1]
    above = scores > kth                                        # < n per column
    tied = scores == kth
    need = n - above.sum(dim=0)                                 # >= 1 per column
    keep = above | (tied & (tied.long().cumsum(dim=0) <= need))

    # exactly n hits per column; nonzero() walks each sample in index order
    indices = keep.t().nonzero()[:, 1].reshape(-1, n).t()       # (n, B)
    if single:
        return indices[:, 0].contiguous()
    return indices.contiguous()
