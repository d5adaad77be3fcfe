"""
Full SVD-softmax benchmark pipeline.

Orchestrates: config loading -> output projection -> decomposition and
parameter setup -> hidden-state source -> benchmark -> summary.
"""

import logging
import math
import os

import torch
import torchvision.transforms as transforms
import torchvision.datasets as datasets
from torch.utils.data import DataLoader

from ..config import load_config
from ..models.sources import (HeadCapture, create_backbone, get_classifier_head,
                              get_device, load_weight_from_checkpoint,
                              synthetic_weight)
from ..models.svd_linear import SVDSoftmaxLinear
from ..utils.metrics import estimate_flops, print_benchmark_summary
from ..utils.rank_selection import analyze_spectrum, energy_retained, select_preview_rank
from .runner import SVDSoftmaxBenchmark

logger = logging.getLogger(__name__)


def get_data_loader(config: dict) -> DataLoader:
    """
    Validation loader for dataset-driven hidden states.

    Supports CIFAR-100 and ImageNet (ImageFolder layout under data_root/val).
    """
    dataset_name = config.get('dataset', 'imagenet')
    data_root = config.get('data_root', './data')
    batch_size = config.get('batch_size', 64)
    num_workers = config.get('loader_workers', 4)
    image_size = config.get('image_size', 224)

    if dataset_name == 'cifar100':
        val_transform = transforms.Compose([
            transforms.Resize(image_size),
            transforms.CenterCrop(image_size),
            transforms.ToTensor(),
            transforms.Normalize([0.485, 0.456, 0.406],
                                 [0.229, 0.224, 0.225]),
        ])
        val_dataset = datasets.CIFAR100(
            root=data_root, train=False, download=True,
            transform=val_transform)
    elif dataset_name == 'imagenet':
        val_transform = transforms.Compose([
            transforms.Resize(256),
            transforms.CenterCrop(image_size),
            transforms.ToTensor(),
            transforms.Normalize([0.485, 0.456, 0.406],
                                 [0.229, 0.224, 0.225]),
        ])
        val_dataset = datasets.ImageFolder(os.path.join(data_root, 'val'),
                                           transform=val_transform)
    else:
        raise ValueError(f"Unknown dataset: {dataset_name}")

    logger.info(f"Dataset: {dataset_name}, val={len(val_dataset)}")
    return DataLoader(val_dataset, batch_size=batch_size, shuffle=False,
                      num_workers=num_workers, pin_memory=True)


def build_output_projection(config: dict):
    """
    Weight (V, D), bias (V,) or None, and the timm backbone (or None).
    """
    source = config.get('source', 'synthetic')
    if source == 'synthetic':
        generator = torch.Generator().manual_seed(config.get('seed', 42))
        weight = synthetic_weight(config['vocab_size'], config['hidden_size'],
                                  spectrum_decay=config.get('spectrum_decay', 0.97),
                                  generator=generator)
        return weight, None, None
    if source == 'checkpoint':
        if not config.get('checkpoint_path'):
            raise ValueError("source 'checkpoint' needs checkpoint_path")
        weight, bias = load_weight_from_checkpoint(
            config['checkpoint_path'], config['weight_key'],
            config.get('bias_key'))
        return weight, bias, None
    if source == 'timm':
        backbone = create_backbone(config['timm_model'],
                                   pretrained=config.get('pretrained', True),
                                   checkpoint_path=config.get('backbone_checkpoint'))
        head = get_classifier_head(backbone)
        return head.weight.data, (head.bias.data if head.bias is not None else None), backbone
    raise ValueError(f"Unknown weight source: {source}")


def random_hidden_batches(config: dict, hidden_size: int, device):
    """Gaussian hidden states, `num_batches` batches of `batch_size`."""
    generator = torch.Generator().manual_seed(config.get('seed', 42) + 1)
    for _ in range(config.get('num_batches', 20)):
        yield torch.randn(config.get('batch_size', 64), hidden_size,
                          generator=generator).to(device)


def dataset_hidden_batches(config: dict, capture: HeadCapture, device):
    """Head inputs and exact logits of a timm backbone over a dataset."""
    loader = get_data_loader(config)
    max_batches = config.get('num_batches', 20)
    for batch_idx, (images, _) in enumerate(loader):
        if max_batches is not None and batch_idx >= max_batches:
            break
        yield capture(images.to(device))


def build_layer(weight: torch.Tensor, bias, config: dict) -> SVDSoftmaxLinear:
    """SVDSoftmaxLinear holding `weight`, decomposed and configured from `config`."""
    vocab_size, hidden_size = weight.shape
    layer = SVDSoftmaxLinear(hidden_size, vocab_size, bias=bias is not None,
                             num_workers=config.get('num_workers'),
                             parallel_threshold=config.get('parallel_threshold', 2048))
    layer = layer.to(device=weight.device, dtype=weight.dtype)
    with torch.no_grad():
        layer.weight.copy_(weight)
        if bias is not None:
            layer.bias.copy_(bias)

    decomposition = layer.do_svd()

    preview_rank = config.get('preview_rank')
    method = config.get('preview_rank_method', 'default')
    if preview_rank is None and method != 'default':
        preview_rank = select_preview_rank(
            decomposition.S, method,
            threshold=config.get('energy_threshold', 0.95),
            ratio=config.get('fixed_rank_ratio', 0.2))
        logger.info(f"Preview rank from {method}: W={preview_rank}")

    correction_budget = config.get('correction_budget')
    ratio = config.get('correction_budget_ratio')
    if correction_budget is None and ratio is not None:
        correction_budget = min(max(math.ceil(vocab_size * ratio), 1),
                                vocab_size - 1)

    layer.set_svd_param(preview_rank, correction_budget)
    return layer


def run_benchmark(config_path: str = None, overrides: dict = None) -> dict:
    """
    Full SVD-softmax benchmark.

    Steps:
    1. Load config
    2. Build the output projection (synthetic, checkpoint or timm head)
    3. Decompose and set W, N
    4. Print cost model and spectrum statistics
    5. Set up the hidden-state source
    6. Run the benchmark
    7. Print the summary
    """
    # 1. Load config
    config = load_config(config_path, overrides)

    # Weights & Biases: init run (or use existing run from sweep agent)
    use_wandb = config.get('use_wandb', False)
    wandb_available = False
    if use_wandb:
        try:
            import wandb
            wandb_available = True
            if wandb.run is None:
                wandb.init(
                    project=config.get('wandb_project', 'svd-softmax'),
                    entity=config.get('wandb_entity'),
                    name=config.get('wandb_run_name'),
                    config=config,
                )
            else:
                wandb.config.update(config, allow_val_change=True)
        except ImportError:
            logger.warning("use_wandb is True but wandb not installed; skipping wandb logging.")

    # Set up logging
    log_dir = config.get('log_dir', './runs')
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(os.path.join(log_dir, 'benchmark.log'),
                                mode='w'),
        ]
    )

    # Set seed
    seed = config.get('seed', 42)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)

    device = get_device(config.get('device', 'auto'))
    logger.info(f"Device: {device}")

    # 2. Output projection
    weight, bias, backbone = build_output_projection(config)
    if weight.dtype in (torch.float16, torch.bfloat16):
        weight = weight.float()
        bias = bias.float() if bias is not None else None
    weight = weight.to(device)
    bias = bias.to(device) if bias is not None else None
    vocab_size, hidden_size = weight.shape
    logger.info(f"Output projection: V={vocab_size}, D={hidden_size}, "
                f"bias={bias is not None}")

    # 3. Decompose and configure
    layer = build_layer(weight, bias, config)
    state = layer.svd_state

    # 4. Cost model and spectrum
    summary = {
        'vocab_size': vocab_size,
        'hidden_size': hidden_size,
        'preview_rank': state.preview_rank,
        'correction_budget': state.correction_budget,
        'reconstruction_error': state.decomposition.reconstruction_error(weight),
        'energy_retained': energy_retained(state.decomposition.S,
                                           state.preview_rank),
    }
    summary.update(estimate_flops(vocab_size, hidden_size, state.preview_rank,
                                  state.correction_budget))
    spectrum = analyze_spectrum(state.decomposition.S)
    logger.info("Energy retained by preview rank: " + ", ".join(
        f"W={r}: {e*100:.1f}%" for r, e in spectrum['energy'].items()))
    if use_wandb and wandb_available:
        wandb.run.summary.update(summary)

    # 5. Hidden states
    capture = None
    hidden_source = config.get('hidden_source', 'random')
    if hidden_source == 'random':
        batches = random_hidden_batches(config, hidden_size, device)
    elif hidden_source == 'dataset':
        if backbone is None:
            raise ValueError("hidden_source 'dataset' needs source 'timm'")
        capture = HeadCapture(backbone.to(device))
        batches = dataset_hidden_batches(config, capture, device)
    else:
        raise ValueError(f"Unknown hidden source: {hidden_source}")

    # 6. Benchmark
    benchmark = SVDSoftmaxBenchmark(layer, batches, config, device)
    try:
        results = benchmark.run()
    finally:
        if capture is not None:
            capture.remove_hooks()

    # 7. Summary
    summary.update(results)
    print_benchmark_summary(summary)
    return summary
