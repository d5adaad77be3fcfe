"""
SVD decomposition and parameter setup for SVD-softmax.

Given an output projection W ∈ R^{V x D} (V vocabulary rows, D hidden size)
computes the reduced SVD W = U diag(S) V_rot^T and the correction basis
B = U diag(S) ∈ R^{V x D}. The preview basis B_W holds the first W columns
of B and is the only thing recomputed when the hyperparameters change.

Runs once per model, off the inference path.
"""

import logging
import math
import time
from dataclasses import dataclass, replace
from numbers import Integral
from typing import Optional, Tuple

import torch
from torch import Tensor

from ..errors import ParameterError, ShapeError

logger = logging.getLogger(__name__)


def compute_dtype(dtype: torch.dtype) -> torch.dtype:
    """Dtype used for decomposition and evaluation (half types run in fp32)."""
    if dtype in (torch.float16, torch.bfloat16) or not dtype.is_floating_point:
        return torch.float32
    return dtype


def orthonormality_error(X: Tensor) -> float:
    """Largest absolute entry of X^T X - I."""
    XtX = X.t() @ X
    I = torch.eye(X.shape[1], dtype=X.dtype, device=X.device)
    return (XtX - I).abs().max().item()


@dataclass(frozen=True, eq=False)
class SVDDecomposition:
    """
    Reduced SVD of a V x D weight matrix plus the cached correction basis.

    U:     (V, D) orthonormal columns
    S:     (D,)   singular values, non-negative, descending
    V_rot: (D, D) orthonormal, right singular vectors as columns
    B:     (V, D) U * S, contiguous row-major

    To reconstruct weight: U @ diag(S) @ V_rot^T
    """

    U: Tensor
    S: Tensor
    V_rot: Tensor
    B: Tensor

    @property
    def vocab_size(self) -> int:
        return self.U.shape[0]

    @property
    def hidden_size(self) -> int:
        return self.V_rot.shape[0]

    @property
    def dtype(self) -> torch.dtype:
        return self.B.dtype

    @property
    def device(self) -> torch.device:
        return self.B.device

    def reconstruct(self) -> Tensor:
        return self.B @ self.V_rot.t()

    def reconstruction_error(self, weight: Tensor) -> float:
        """Relative Frobenius error ||U diag(S) V_rot^T - W|| / ||W||."""
        weight = weight.detach().to(device=self.device, dtype=self.dtype)
        err = torch.linalg.norm(self.reconstruct() - weight)
        ref = torch.linalg.norm(weight)
        if ref == 0:
            return err.item()
        return (err / ref).item()

    @staticmethod
    def from_factors(U: Tensor, S: Tensor, V_rot: Tensor,
                     atol: float = 1e-4) -> 'SVDDecomposition':
        """
        Wrap an externally computed decomposition after validating it.

        Raises ShapeError for incompatible shapes and ParameterError when
        S is negative or not descending, or when U / V_rot are not
        orthonormal within atol.
        """
        if U.dim() != 2 or S.dim() != 1 or V_rot.dim() != 2:
            raise ShapeError(
                f"expected U (V x D), S (D,), V_rot (D x D); got "
                f"{tuple(U.shape)}, {tuple(S.shape)}, {tuple(V_rot.shape)}")
        vocab_size, hidden_size = U.shape
        if S.shape[0] != hidden_size or tuple(V_rot.shape) != (hidden_size, hidden_size):
            raise ShapeError(
                f"factor shapes disagree: U {tuple(U.shape)}, "
                f"S {tuple(S.shape)}, V_rot {tuple(V_rot.shape)}")
        if vocab_size <= hidden_size:
            raise ShapeError(
                f"vocabulary size ({vocab_size}) must exceed hidden size "
                f"({hidden_size})")

        dtype = compute_dtype(U.dtype)
        U = U.detach().to(dtype).clone()
        S = S.detach().to(device=U.device, dtype=dtype).clone()
        V_rot = V_rot.detach().to(device=U.device, dtype=dtype).contiguous().clone()

        if (S < 0).any():
            raise ParameterError("singular values must be non-negative")
        if hidden_size > 1 and (S[1:] > S[:-1]).any():
            raise ParameterError("singular values must be sorted in descending order")
        u_err = orthonormality_error(U)
        v_err = orthonormality_error(V_rot)
        if u_err > atol or v_err > atol:
            raise ParameterError(
                f"factors are not orthonormal within atol={atol}: "
                f"|U^T U - I|max={u_err:.2e}, |V^T V - I|max={v_err:.2e}")

        B = (U * S.unsqueeze(0)).contiguous()
        return SVDDecomposition(U=U, S=S, V_rot=V_rot, B=B)


def _check_weight(weight: Tensor) -> Tuple[int, int]:
    if weight.dim() != 2:
        raise ShapeError(
            f"weight must be 2-dimensional (V x D), got shape "
            f"{tuple(weight.shape)}")
    vocab_size, hidden_size = weight.shape
    if vocab_size <= hidden_size:
        raise ShapeError(
            f"vocabulary size ({vocab_size}) must exceed hidden size "
            f"({hidden_size})")
    return vocab_size, hidden_size


def do_svd(weight: Tensor) -> SVDDecomposition:
    """
    Decompose a V x D weight matrix and cache the correction basis B = U diag(S).

    The weight is read once; later changes to it do not propagate.
    """
    vocab_size, hidden_size = _check_weight(weight)

    start = time.time()
    W = weight.detach().to(compute_dtype(weight.dtype))
    U, S, Vh = torch.linalg.svd(W, full_matrices=False)
    B = (U * S.unsqueeze(0)).contiguous()   # (V, D)
    decomposition = SVDDecomposition(U=U, S=S, V_rot=Vh.t().contiguous(), B=B)

    logger.info(f"SVD of {vocab_size}x{hidden_size} weight done in "
                f"{time.time() - start:.2f}s (dtype={W.dtype}, "
                f"s_max={S[0].item():.4g}, s_min={S[-1].item():.4g})")
    return decomposition


def default_svd_params(vocab_size: int, hidden_size: int) -> Tuple[int, int]:
    """Default (W, N) = (ceil(D/5), ceil(V/10))."""
    return math.ceil(hidden_size / 5), math.ceil(vocab_size / 10)


def _check_count(name: str, value, upper: int, upper_name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, Integral):
        raise ParameterError(f"{name} must be an integer, got {value!r}")
    value = int(value)
    if value < 1:
        raise ParameterError(f"{name} must be positive, got {value}")
    if value >= upper:
        raise ParameterError(
            f"{name}={value} must be smaller than the {upper_name} ({upper})")
    return value


def resolve_svd_params(vocab_size: int, hidden_size: int,
                       preview_rank: Optional[int] = None,
                       correction_budget: Optional[int] = None) -> Tuple[int, int]:
    """Fill in defaults for omitted values and validate 1 <= W < D, 1 <= N < V."""
    default_w, default_n = default_svd_params(vocab_size, hidden_size)
    if preview_rank is None:
        preview_rank = default_w
    if correction_budget is None:
        correction_budget = default_n
    W = _check_count("preview_rank", preview_rank, hidden_size, "hidden size")
    N = _check_count("correction_budget", correction_budget, vocab_size,
                     "vocabulary size")
    return W, N


@dataclass(frozen=True, eq=False)
class SVDParams:
    """Validated hyperparameters and the preview basis B_W (V x W, contiguous)."""

    preview_rank: int
    correction_budget: int
    preview_basis: Tensor


def set_svd_param(decomposition: SVDDecomposition,
                  preview_rank: Optional[int] = None,
                  correction_budget: Optional[int] = None) -> SVDParams:
    """Validate (W, N) and slice the preview basis out of B."""
    W, N = resolve_svd_params(decomposition.vocab_size,
                              decomposition.hidden_size,
                              preview_rank, correction_budget)
    preview_basis = decomposition.B[:, :W].contiguous()
    logger.info(f"SVD-softmax params: W={W}/{decomposition.hidden_size}, "
                f"N={N}/{decomposition.vocab_size}")
    return SVDParams(preview_rank=W, correction_budget=N,
                     preview_basis=preview_basis)


@dataclass(frozen=True, eq=False)
class SVDSoftmaxState:
    """
    Everything the evaluator reads on each call.

    Immutable: re-configuring builds a new state, so a failed
    re-configuration leaves the old one usable, and one state can be shared
    by any number of concurrent evaluate() calls.
    """

    decomposition: SVDDecomposition
    params: SVDParams
    bias: Optional[Tensor] = None

    @property
    def vocab_size(self) -> int:
        return self.decomposition.vocab_size

    @property
    def hidden_size(self) -> int:
        return self.decomposition.hidden_size

    @property
    def preview_rank(self) -> int:
        return self.params.preview_rank

    @property
    def correction_budget(self) -> int:
        return self.params.correction_budget

    @property
    def preview_basis(self) -> Tensor:
        return self.params.preview_basis

    @property
    def dtype(self) -> torch.dtype:
        return self.decomposition.dtype

    @property
    def device(self) -> torch.device:
        return self.decomposition.device

    def with_params(self, preview_rank: Optional[int] = None,
                    correction_budget: Optional[int] = None) -> 'SVDSoftmaxState':
        """New state with other (W, N); the decomposition is shared, not recomputed."""
        params = set_svd_param(self.decomposition, preview_rank,
                               correction_budget)
        return replace(self, params=params)


def _check_bias(bias: Optional[Tensor], vocab_size: int,
                dtype: torch.dtype) -> Optional[Tensor]:
    if bias is None:
        return None
    if bias.dim() != 1 or bias.shape[0] != vocab_size:
        raise ShapeError(
            f"bias must have shape ({vocab_size},), got {tuple(bias.shape)}")
    return bias.detach().to(dtype).clone()


def configure(weight: Tensor,
              preview_rank: Optional[int] = None,
              correction_budget: Optional[int] = None,
              bias: Optional[Tensor] = None,
              decomposition: Optional[SVDDecomposition] = None) -> SVDSoftmaxState:
    """
    Build a ready-to-evaluate state from a dense weight matrix.

    Args:
        weight: (V, D) exact output projection, read once
        preview_rank: W, defaults to ceil(D/5)
        correction_budget: N, defaults to ceil(V/10)
        bias: optional (V,) additive term, copied
        decomposition: reuse an existing decomposition of `weight`
            instead of computing a new one

    Raises:
        ShapeError: weight not 2-D, V <= D, bias or decomposition shape mismatch
        ParameterError: W or N out of range
    """
    vocab_size, hidden_size = _check_weight(weight)
    # Cheap checks first so bad hyperparameters never pay for an SVD.
    resolve_svd_params(vocab_size, hidden_size, preview_rank, correction_budget)
    if decomposition is not None and (
            decomposition.vocab_size != vocab_size
            or decomposition.hidden_size != hidden_size):
        raise ShapeError(
            f"decomposition is for a {decomposition.vocab_size}x"
            f"{decomposition.hidden_size} weight, got {vocab_size}x{hidden_size}")
    dtype = (decomposition.dtype if decomposition is not None
             else compute_dtype(weight.dtype))
    bias = _check_bias(bias, vocab_size, dtype)

    if decomposition is None:
        decomposition = do_svd(weight)
    if bias is not None:
        bias = bias.to(decomposition.device)
    params = set_svd_param(decomposition, preview_rank, correction_budget)
    return SVDSoftmaxState(decomposition=decomposition, params=params, bias=bias)
