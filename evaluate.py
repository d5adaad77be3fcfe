"""
SVD-softmax benchmark entry point.

Compares the SVD-softmax approximation of an output projection with the
exact projection: agreement (top-1 / top-k), exact fraction, timing and
FLOP reduction.

Usage:
    python evaluate.py --config svd_softmax/configs/default.yaml
    python evaluate.py --source timm --timm_model vit_small_patch16_224 \
        --hidden_source dataset --dataset imagenet --data_root ./data
    python evaluate.py --vocab_size 50000 --hidden_size 1024 \
        --preview_rank 128 --correction_budget 2000
"""

import argparse
import os
import sys

# Ensure the repository root is on the path when run as a script
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from svd_softmax.benchmark.pipeline import run_benchmark
from svd_softmax.config import DEFAULT_CONFIG_PATH


def parse_args():
    parser = argparse.ArgumentParser(
        description='SVD-Softmax: fast large-vocabulary output projection')
    parser.add_argument('--config', type=str, default=DEFAULT_CONFIG_PATH,
                        help='Path to YAML config file')

    # Override any config value from command line
    parser.add_argument('--source', type=str, default=None,
                        choices=['synthetic', 'checkpoint', 'timm'])
    parser.add_argument('--vocab_size', type=int, default=None)
    parser.add_argument('--hidden_size', type=int, default=None)
    parser.add_argument('--spectrum_decay', type=float, default=None)
    parser.add_argument('--checkpoint_path', type=str, default=None)
    parser.add_argument('--weight_key', type=str, default=None)
    parser.add_argument('--bias_key', type=str, default=None)
    parser.add_argument('--timm_model', type=str, default=None)
    parser.add_argument('--preview_rank', type=int, default=None,
                        help='Preview rank W')
    parser.add_argument('--correction_budget', type=int, default=None,
                        help='Correction budget N')
    parser.add_argument('--preview_rank_method', type=str, default=None,
                        choices=['default', 'energy_threshold', 'fixed_ratio'])
    parser.add_argument('--energy_threshold', type=float, default=None)
    parser.add_argument('--num_workers', type=int, default=None,
                        help='Threads for the full-view correction')
    parser.add_argument('--hidden_source', type=str, default=None,
                        choices=['random', 'dataset'])
    parser.add_argument('--dataset', type=str, default=None)
    parser.add_argument('--data_root', type=str, default=None)
    parser.add_argument('--batch_size', type=int, default=None)
    parser.add_argument('--num_batches', type=int, default=None)
    parser.add_argument('--device', type=str, default=None)
    parser.add_argument('--seed', type=int, default=None)
    parser.add_argument('--log_dir', type=str, default=None)

    return parser.parse_args()


def main():
    args = parse_args()

    # Collect non-None overrides
    overrides = {}
    for key, val in vars(args).items():
        if key != 'config' and val is not None:
            overrides[key] = val

    run_benchmark(args.config, overrides=overrides if overrides else None)


if __name__ == '__main__':
    main()
