"""
Approximate evaluation of the output projection (SVD-softmax inference path).

    1. h~ = V_rot^T h                      rotate into the singular basis, O(D^2)
    2. z~ = B_W h~[:W] (+ bias)            preview with W dimensions, O(V W)
    3. Cn = top-N indices of z~            candidate selection
    4. z~[v] = B[v] . h~ (+ bias[v])       exact correction for v in Cn, O(N D)
    5. return z~ (batch-major for batched input)

Single sequences (D,) and batches (Bt, D) run as two separate code paths.
Both apply the same per-sample matrix-vector products and correction
blocks, so row b of a batched result equals the result for hidden[b] bit
for bit.
"""

from typing import Optional, Tuple

import torch
from torch import Tensor

from ..errors import ShapeError
from .decomposition import SVDSoftmaxState
from .full_view import (DEFAULT_PARALLEL_THRESHOLD, default_num_workers,
                        update_full_view_batched, update_full_view_single)
from .selection import select_candidates


class Workspace:
    """
    Scratch buffers owned by one caller at a time.

    h_tilde (Bt, D) and z_tilde (Bt, V) hold intermediate results, sample
    major. output holds the returned result and is written only once a call
    has fully succeeded, so a failing call leaves the previous output as it
    was. The output of evaluate(..., workspace=ws) is ws.output (or a view
    of it) and is overwritten by the next successful call using ws.

    Buffers are reallocated only when shape, dtype or device change.
    """

    def __init__(self):
        self.h_tilde = None
        self.z_tilde = None
        self.output = None

    def buffer(self, name: str, shape: tuple, dtype: torch.dtype,
               device: torch.device) -> Tensor:
        buf = getattr(self, name)
        if (buf is None or tuple(buf.shape) != tuple(shape)
                or buf.dtype != dtype or buf.device != device):
            buf = torch.empty(shape, dtype=dtype, device=device)
            setattr(self, name, buf)
        return buf


def _check_hidden(hidden: Tensor, state: SVDSoftmaxState) -> bool:
    """Validate input shape; True for a single sequence."""
    if hidden.dim() not in (1, 2):
        raise ShapeError(
            f"hidden state must be (D,) or (batch, D), got "
            f"{tuple(hidden.shape)}")
    if hidden.shape[-1] != state.hidden_size:
        raise ShapeError(
            f"hidden size mismatch: expected {state.hidden_size}, got "
            f"{hidden.shape[-1]}")
    return hidden.dim() == 1


def _alloc(workspace: Optional[Workspace], name: str, shape: tuple,
           state: SVDSoftmaxState) -> Tensor:
    if workspace is None:
        return torch.empty(shape, dtype=state.dtype, device=state.device)
    return workspace.buffer(name, shape, state.dtype, state.device)


def _preview(hidden: Tensor, state: SVDSoftmaxState, single: bool,
             workspace: Optional[Workspace]) -> Tuple[Tensor, Tensor]:
    """Steps 1-2 into sample-major h~ (Bt, D) and z~ (Bt, V); Bt = 1 if single."""
    x = hidden.detach().to(state.dtype)
    x_rows = x.unsqueeze(0) if single else x
    batch_size = x_rows.shape[0]
    V_rot_t = state.decomposition.V_rot.t()
    basis = state.preview_basis
    W = state.preview_rank

    h_rows = _alloc(workspace, 'h_tilde', (batch_size, state.hidden_size), state)
    z_rows = _alloc(workspace, 'z_tilde', (batch_size, state.vocab_size), state)
    # One mv per sample on freshly allocated vectors: a matrix-matrix product
    # blocks differently with the batch width, and BLAS kernels may round
    # differently for differently aligned operands.
    for b in range(batch_size):
        h_b = torch.mv(V_rot_t, x_rows[b].clone(
            memory_format=torch.contiguous_format))                    # D
        h_rows[b] = h_b
        z_rows[b] = torch.mv(basis, h_b[:W])                         # V
    if state.bias is not None:
        z_rows.add_(state.bias)
    return h_rows, z_rows


@torch.no_grad()
def preview(hidden: Tensor, state: SVDSoftmaxState,
            workspace: Optional[Workspace] = None) -> Tuple[Tensor, Tensor]:
    """
    Steps 1-2 only: rotated hidden state and uncorrected preview outputs.

    Returns h~ of shape (D,) or (D, Bt) and z~ of shape (V,) or (V, Bt).
    """
    single = _check_hidden(hidden, state)
    h_rows, z_rows = _preview(hidden, state, single, workspace)
    if single:
        return h_rows[0], z_rows[0]
    return h_rows.t(), z_rows.t()


@torch.no_grad()
def evaluate(hidden: Tensor, state: SVDSoftmaxState,
             workspace: Optional[Workspace] = None,
             num_workers: Optional[int] = None,
             parallel_threshold: int = DEFAULT_PARALLEL_THRESHOLD,
             return_candidates: bool = False):
    """
    Approximate output projection for one sequence or a batch.

    Args:
        hidden: (D,) or (Bt, D) hidden state
        state: configured SVD-softmax state (read only, shareable)
        workspace: optional scratch arena owned by the caller
        num_workers: threads for the correction, default min(8, cpu_count)
        parallel_threshold: corrections below this count run inline
        return_candidates: also return the selected indices

    Returns:
        (V,) or (Bt, V) approximate outputs in hidden's floating dtype,
        plus (N,) or (N, Bt) candidate indices if return_candidates.

    Raises:
        ShapeError: hidden is not 1-D / 2-D or its last dimension is not D.
    """
    single = _check_hidden(hidden, state)
    if num_workers is None:
        num_workers = default_num_workers()

    h_rows, z_rows = _preview(hidden, state, single, workspace)
    B = state.decomposition.B
    if single:
        candidates = select_candidates(z_rows[0], state.correction_budget)
        update_full_view_single(candidates, z_rows[0], B, h_rows[0],
                                state.bias, num_workers, parallel_threshold)
        result = z_rows[0]
    else:
        candidates = select_candidates(z_rows.t(), state.correction_budget)
        update_full_view_batched(candidates, z_rows.t(), B, h_rows.t(),
                                 state.bias, num_workers, parallel_threshold)
        result = z_rows

    dtype = hidden.dtype if hidden.dtype.is_floating_point else result.dtype
    if workspace is not None:
        output = workspace.buffer('output', tuple(result.shape), dtype,
                                  result.device)
        output.copy_(result)
    else:
        output = result if result.dtype == dtype else result.to(dtype)
    if return_candidates:
        return output, candidates
    return output
