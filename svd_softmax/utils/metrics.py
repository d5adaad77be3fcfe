"""
Quality and cost metrics for SVD-softmax against the exact projection.
"""

import time

import torch
from torch import Tensor


def estimate_flops(vocab_size: int, hidden_size: int, preview_rank: int,
                   correction_budget: int, batch_size: int = 1) -> dict:
    """
    Multiply-add counts of the exact and approximate paths.

    Exact: V*D per sample. Approximate: D^2 (rotation) + V*W (preview)
    + N*D (correction) per sample.
    """
    exact = vocab_size * hidden_size * batch_size
    preview = (hidden_size * hidden_size
               + vocab_size * preview_rank) * batch_size
    correction = correction_budget * hidden_size * batch_size
    approximate = preview + correction
    return {
        'exact': exact,
        'preview': preview,
        'correction': correction,
        'approximate': approximate,
        'flop_reduction_pct': (1 - approximate / exact) * 100,
        'speedup': exact / approximate,
    }


def _as_batch(x: Tensor) -> Tensor:
    return x.unsqueeze(0) if x.dim() == 1 else x


@torch.no_grad()
def top1_match(approx: Tensor, exact: Tensor) -> float:
    """Fraction of samples whose argmax agrees."""
    approx, exact = _as_batch(approx), _as_batch(exact)
    return (approx.argmax(dim=1) == exact.argmax(dim=1)).float().mean().item()


@torch.no_grad()
def top_k_overlap(approx: Tensor, exact: Tensor, k: int) -> float:
    """Mean fraction of the exact top-k indices also in the approximate top-k."""
    approx, exact = _as_batch(approx), _as_batch(exact)
    pred = approx.topk(k, dim=1).indices                  # (Bt, k)
    target = exact.topk(k, dim=1).indices                 # (Bt, k)
    hits = (pred.unsqueeze(2) == target.unsqueeze(1)).any(dim=2)
    return hits.float().sum(dim=1).div(k).mean().item()


@torch.no_grad()
def exact_fraction(approx: Tensor, exact: Tensor, rtol: float = 1e-4,
                   atol: float = 1e-5) -> float:
    """Fraction of output entries that match the exact projection."""
    return torch.isclose(approx, exact.to(approx.dtype), rtol=rtol,
                         atol=atol).float().mean().item()


@torch.no_grad()
def max_selected_error(approx: Tensor, exact: Tensor, candidates: Tensor) -> float:
    """
    Largest absolute error on the corrected entries.

    candidates: (N,) for (V,) outputs or (N, Bt) for (Bt, V) outputs.
    """
    if approx.dim() == 1:
        diff = approx[candidates] - exact[candidates]
    else:
        diff = approx.gather(1, candidates.t()) - exact.gather(1, candidates.t())
    if diff.numel() == 0:
        return 0.0
    return diff.abs().max().item()


@torch.no_grad()
def time_forward(fn, x: Tensor, repeats: int = 10, warmup: int = 2) -> float:
    """Mean wall time of fn(x) in seconds."""
    sync = x.is_cuda and torch.cuda.is_available()
    for _ in range(warmup):
        fn(x)
    if sync:
        torch.cuda.synchronize()
    start = time.perf_counter()
    for _ in range(repeats):
        fn(x)
    if sync:
        torch.cuda.synchronize()
    return (time.perf_counter() - start) / max(repeats, 1)


@torch.no_grad()
def evaluate_agreement(approx: Tensor, exact: Tensor,
                       top_k: tuple = (1, 5)) -> dict:
    """
    Agreement of approximate outputs with exact ones, as a dict for logging.

    Keys: top1_match, top{k}_overlap for each k, exact_fraction, max_abs_error.
    """
    metrics = {'top1_match': top1_match(approx, exact)}
    vocab_size = exact.shape[-1]
    for k in top_k:
        if k <= vocab_size:
            metrics[f'top{k}_overlap'] = top_k_overlap(approx, exact, k)
    metrics['exact_fraction'] = exact_fraction(approx, exact)
    metrics['max_abs_error'] = (approx - exact.to(approx.dtype)).abs().max().item()
    return metrics


def print_benchmark_summary(summary: dict):
    """Print configuration, cost model and aggregated agreement metrics."""
    print(f"\n{'='*50}")
    print(f"SVD-Softmax Summary")
    print(f"{'='*50}")
    print(f"Vocabulary size V:    {summary['vocab_size']:,}")
    print(f"Hidden size D:        {summary['hidden_size']:,}")
    print(f"Preview rank W:       {summary['preview_rank']}")
    print(f"Correction budget N:  {summary['correction_budget']}")
    if 'reconstruction_error' in summary:
        print(f"Reconstruction error: {summary['reconstruction_error']:.2e}")
    if 'energy_retained' in summary:
        print(f"Preview energy:       {summary['energy_retained']*100:.1f}%")
    print(f"FLOP reduction:       {summary['flop_reduction_pct']:.1f}% "
          f"({summary['speedup']:.2f}x)")

    if 'top1_match' in summary:
        print(f"Top-1 match:          {summary['top1_match']*100:.2f}%")
        for key in sorted(k for k in summary if k.endswith('_overlap')):
            print(f"{key + ':':<22}{summary[key]*100:.2f}%")
        print(f"Exact fraction:       {summary['exact_fraction']*100:.2f}%")
    if 'approx_ms' in summary:
        print(f"Approximate time:     {summary['approx_ms']:.3f} ms/batch")
        print(f"Exact time:           {summary['exact_ms']:.3f} ms/batch")
        print(f"Measured speedup:     {summary['measured_speedup']:.2f}x")
    print(f"{'='*50}\n")
