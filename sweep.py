"""
W&B grid sweep over the SVD-softmax preview rank W and correction budget N.

The grid is built from the output projection the base config describes:
W takes ceil(D * r) for each rank ratio r and N takes ceil(V * r) for each
budget ratio, clamped to the valid ranges 1 <= W < D and 1 <= N < V. Each
run benchmarks one (W, N) pair and reports top-k agreement, FLOP reduction
and measured speedup.

Usage:
    python sweep.py --project svd-softmax
    python sweep.py --config my.yaml --rank_ratios 0.05 0.1 \
        --budget_ratios 0.01 0.05 --num_batches 5
"""

import argparse
import math
import os
import sys

# Ensure the repository root is on the path when run as a script
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import wandb

from svd_softmax.benchmark.pipeline import build_output_projection, run_benchmark
from svd_softmax.config import DEFAULT_CONFIG_PATH, load_config


def grid_values(size: int, ratios) -> list:
    """Distinct ceil(size * r), clamped to [1, size - 1]."""
    return sorted({min(max(math.ceil(size * r), 1), size - 1) for r in ratios})


def build_sweep_config(vocab_size: int, hidden_size: int, rank_ratios,
                       budget_ratios) -> dict:
    return {
        "method": "grid",
        "metric": {"name": "top1_match", "goal": "maximize"},
        "parameters": {
            "preview_rank": {"values": grid_values(hidden_size, rank_ratios)},
            "correction_budget": {"values": grid_values(vocab_size, budget_ratios)},
        },
    }


def parse_args():
    parser = argparse.ArgumentParser(
        description="Sweep SVD-softmax preview rank and correction budget")
    parser.add_argument("--config", type=str, default=DEFAULT_CONFIG_PATH,
                        help="Base YAML config")
    parser.add_argument("--project", type=str, default="svd-softmax")
    parser.add_argument("--entity", type=str, default=None)
    parser.add_argument("--rank_ratios", type=float, nargs="+",
                        default=[0.05, 0.1, 0.2, 0.3],
                        help="Preview rank W as fractions of D")
    parser.add_argument("--budget_ratios", type=float, nargs="+",
                        default=[0.01, 0.03, 0.1],
                        help="Correction budget N as fractions of V")
    parser.add_argument("--num_batches", type=int, default=None)
    return parser.parse_args()


def main():
    args = parse_args()
    overrides = {}
    if args.num_batches is not None:
        overrides["num_batches"] = args.num_batches

    # W and N are absolute, so the grid needs the real projection shape
    config = load_config(args.config, overrides)
    weight, _, _ = build_output_projection(config)
    vocab_size, hidden_size = weight.shape
    sweep_config = build_sweep_config(vocab_size, hidden_size,
                                      args.rank_ratios, args.budget_ratios)
    sweep_id = wandb.sweep(sweep_config, project=args.project,
                           entity=args.entity)

    def trial():
        with wandb.init() as run:
            trial_overrides = dict(overrides, use_wandb=True)
            trial_overrides.update(dict(run.config))
            run_benchmark(args.config, overrides=trial_overrides)

    wandb.agent(sweep_id, function=trial)


if __name__ == "__main__":
    main()
