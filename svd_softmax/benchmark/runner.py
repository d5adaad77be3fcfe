"""
SVD-softmax benchmark loop.

Feeds batches of hidden states through the approximate and exact paths of
an SVDSoftmaxLinear, logs agreement and timing per batch to TensorBoard
(and W&B when enabled) and aggregates them over the run.
"""

import logging
import os
import time

import torch
import torch.nn.functional as F
from torch.utils.tensorboard import SummaryWriter

from ..models.evaluator import evaluate
from ..models.svd_linear import SVDSoftmaxLinear
from ..utils.metrics import evaluate_agreement, max_selected_error, time_forward

logger = logging.getLogger(__name__)


class SVDSoftmaxBenchmark:
    """
    Compares SVD-softmax outputs with the exact projection batch by batch.

    Per batch: top-1 match, top-k overlap, exact fraction, max abs error,
    max error on corrected entries, approximate / exact wall time.
    """

    def __init__(self, layer: SVDSoftmaxLinear, hidden_batches, config: dict,
                 device):
        self.layer = layer.to(device).eval()
        self.hidden_batches = hidden_batches
        self.config = config
        self.device = device

        self.top_k = tuple(config.get('top_k', (1, 5)))
        self.repeats = config.get('repeats', 5)
        self.log_every = config.get('log_every', 5)

        log_dir = config.get('log_dir', './runs')
        os.makedirs(log_dir, exist_ok=True)
        self.writer = SummaryWriter(log_dir)

        self.use_wandb = config.get('use_wandb', False)
        self._wandb_available = False
        if self.use_wandb:
            try:
                import wandb
                self._wandb_available = wandb.run is not None
            except ImportError:
                pass

    @torch.no_grad()
    def run_batch(self, hidden: torch.Tensor, exact=None) -> dict:
        """Metrics for one (Bt, D) batch; exact logits are recomputed if not given."""
        layer = self.layer
        state = layer.prepare()
        hidden = hidden.to(self.device)
        if exact is None:
            exact = F.linear(hidden, layer.weight, layer.bias)

        approx, candidates = evaluate(
            hidden, state, num_workers=layer.num_workers,
            parallel_threshold=layer.parallel_threshold,
            return_candidates=True)

        metrics = evaluate_agreement(approx, exact, top_k=self.top_k)
        metrics['max_selected_error'] = max_selected_error(
            approx, exact.to(approx.dtype), candidates)

        if self.repeats > 0:
            approx_s = time_forward(layer.forward_approximate, hidden,
                                    repeats=self.repeats)
            exact_s = time_forward(
                lambda x: F.linear(x, layer.weight, layer.bias), hidden,
                repeats=self.repeats)
            metrics['approx_ms'] = approx_s * 1e3
            metrics['exact_ms'] = exact_s * 1e3
            metrics['measured_speedup'] = exact_s / max(approx_s, 1e-12)
        return metrics

    def run(self) -> dict:
        """Run over all batches and return the averaged metrics."""
        state = self.layer.prepare()
        logger.info(f"Starting SVD-softmax benchmark: W={state.preview_rank}, "
                    f"N={state.correction_budget}, top_k={self.top_k}")

        totals = {}
        num_batches = 0
        start = time.time()

        for step, batch in enumerate(self.hidden_batches, start=1):
            if isinstance(batch, dict):
                metrics = self.run_batch(batch['hidden'],
                                         exact=batch.get('logits'))
            else:
                metrics = self.run_batch(batch)

            for k, v in metrics.items():
                totals[k] = totals.get(k, 0.0) + v
                self.writer.add_scalar(f'batch/{k}', v, step)
            if self.use_wandb and self._wandb_available:
                import wandb
                wandb.log({f'batch/{k}': v for k, v in metrics.items()},
                          step=step)
            num_batches += 1

            if step % self.log_every == 0:
                log_msg = f"Batch {step} "
                log_msg += " ".join(f"{k}={v:.4f}" for k, v in metrics.items())
                logger.info(log_msg)

        averages = {k: v / max(num_batches, 1) for k, v in totals.items()}
        averages['num_batches'] = num_batches
        logger.info(f"Benchmark complete: {num_batches} batches in "
                    f"{time.time() - start:.1f}s")

        for k, v in averages.items():
            self.writer.add_scalar(f'summary/{k}', v, 0)
        self.writer.close()
        if self.use_wandb and self._wandb_available:
            import wandb
            wandb.run.summary.update(averages)
        return averages
