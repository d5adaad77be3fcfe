"""
Preview-rank selection for SVD-softmax.

Chooses the number W of leading singular dimensions used by the preview
pass, from the singular value spectrum of the output projection.
"""

import math

import torch
from torch import Tensor


def select_preview_rank(S: Tensor, method: str = "default", **kwargs) -> int:
    """
    Determine the preview rank W from singular values S (length D, descending).

    Args:
        S: (D,) singular values
        method: "default", "energy_threshold" or "fixed_ratio"
        kwargs:
            threshold (float): for energy_threshold, default 0.95
            ratio (float): for fixed_ratio, default 0.2

    Returns:
        rank (int), clamped to [1, D - 1]
    """
    hidden_size = S.shape[0]
    max_rank = max(hidden_size - 1, 1)

    if method == "default":
        rank = math.ceil(hidden_size / 5)
    elif method == "energy_threshold":
        threshold = kwargs.get("threshold", 0.95)
        energy = S.double() ** 2
        total_energy = energy.sum()
        if total_energy == 0:
            return 1
        cumulative = torch.cumsum(energy, dim=0) / total_energy
        indices = (cumulative >= threshold).nonzero(as_tuple=True)[0]
        rank = int(indices[0].item()) + 1 if len(indices) > 0 else max_rank
    elif method == "fixed_ratio":
        ratio = kwargs.get("ratio", 0.2)
        rank = int(hidden_size * ratio)
    else:
        raise ValueError(f"Unknown preview rank method: {method}")

    return min(max(rank, 1), max_rank)


def energy_retained(S: Tensor, rank: int) -> float:
    """Fraction of squared singular value mass in the first `rank` values."""
    energy = S.double() ** 2
    total_energy = energy.sum()
    if total_energy == 0:
        return 1.0
    return (energy[:rank].sum() / total_energy).item()


def analyze_spectrum(S: Tensor, ranks=None) -> dict:
    """
    Summarize a spectrum: energy retained at each candidate preview rank.

    Returns dict with hidden_size, s_max, s_min, condition number and
    'energy' mapping rank -> fraction retained.
    """
    hidden_size = S.shape[0]
    if ranks is None:
        ranks = sorted({select_preview_rank(S, "fixed_ratio", ratio=r)
                        for r in (0.05, 0.1, 0.2, 0.3, 0.5)})
    s_max = S[0].item()
    s_min = S[-1].item()
    return {
        'hidden_size': hidden_size,
        's_max': s_max,
        's_min': s_min,
        'condition_number': s_max / s_min if s_min > 0 else float('inf'),
        'energy': {int(r): energy_retained(S, r) for r in ranks},
    }
