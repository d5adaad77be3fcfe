"""
Where output projections and hidden states come from.

- synthetic: random V x D weight with a geometrically decaying spectrum
- checkpoint: a 2-D tensor (and optional bias) from a saved state dict
- timm: the classifier head of a timm model; a forward hook on the head
  captures its input, which is the hidden state the head projects
"""

import logging
import os

import torch
import torch.nn as nn
import timm
from torch import Tensor

logger = logging.getLogger(__name__)


def get_device(device_str: str) -> torch.device:
    """Resolve device string to torch.device with auto-detection."""
    if device_str == "auto":
        if torch.cuda.is_available():
            return torch.device("cuda")
        elif hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
            return torch.device("mps")
        return torch.device("cpu")
    return torch.device(device_str)


def synthetic_weight(vocab_size: int, hidden_size: int,
                     spectrum_decay: float = 0.97,
                     generator: torch.Generator = None) -> Tensor:
    """
    Random (V, D) weight U diag(S) Q^T with S_i = sqrt(V) * decay^i.

    Trained output projections have a fast-decaying spectrum, which is
    what makes a small preview rank informative.
    """
    U, _ = torch.linalg.qr(torch.randn(vocab_size, hidden_size,
                                       generator=generator))
    Q, _ = torch.linalg.qr(torch.randn(hidden_size, hidden_size,
                                       generator=generator))
    S = (vocab_size ** 0.5) * spectrum_decay ** torch.arange(
        hidden_size, dtype=torch.float32)
    return (U * S.unsqueeze(0)) @ Q.t()


def load_weight_from_checkpoint(checkpoint_path: str, weight_key: str,
                                bias_key: str = None) -> tuple:
    """
    Load an output projection (V, D) and optional bias (V,) from a state dict.

    Accepts raw state dicts and checkpoints wrapping one under
    'model_state_dict' or 'state_dict'.
    """
    if not os.path.isfile(checkpoint_path):
        raise FileNotFoundError(f"Checkpoint not found: {checkpoint_path}")
    state_dict = torch.load(checkpoint_path, map_location='cpu',
                            weights_only=True)
    for wrapper in ('model_state_dict', 'state_dict'):
        if wrapper in state_dict:
            state_dict = state_dict[wrapper]
            break

    if weight_key not in state_dict:
        candidates = [k for k, v in state_dict.items()
                      if torch.is_tensor(v) and v.dim() == 2]
        raise KeyError(f"'{weight_key}' not in {checkpoint_path}; "
                       f"2-D tensors available: {candidates}")
    weight = state_dict[weight_key]
    bias = state_dict[bias_key] if bias_key else None
    logger.info(f"Loaded {weight_key} {tuple(weight.shape)} from "
                f"{checkpoint_path}")
    return weight, bias


def create_backbone(model_name: str, pretrained: bool = True,
                    num_classes: int = None,
                    checkpoint_path: str = None) -> nn.Module:
    """
    Load a timm classifier whose head serves as the output projection.

    Returns the model in eval mode with requires_grad=False.
    """
    kwargs = {} if num_classes is None else {'num_classes': num_classes}
    model = timm.create_model(model_name, pretrained=pretrained, **kwargs)

    if checkpoint_path is not None:
        state_dict = torch.load(checkpoint_path, map_location='cpu',
                                weights_only=True)
        if 'model_state_dict' in state_dict:
            state_dict = state_dict['model_state_dict']
        model.load_state_dict(state_dict)
        logger.info(f"Loaded backbone checkpoint from {checkpoint_path}")

    model.eval()
    for param in model.parameters():
        param.requires_grad = False

    head = get_classifier_head(model)
    logger.info(f"Backbone: {model_name}, head {head.out_features}x"
                f"{head.in_features}")
    return model


def get_classifier_head(model: nn.Module) -> nn.Linear:
    """The final nn.Linear of a timm classifier."""
    head = model.get_classifier() if hasattr(model, 'get_classifier') else model.head
    if not isinstance(head, nn.Linear):
        raise ValueError(f"Classifier head is {type(head).__name__}, "
                         f"expected nn.Linear")
    return head


class HeadCapture:
    """
    Runs a timm classifier and captures the input and output of its head.

    Usage:
        capture = HeadCapture(model)
        out = capture(images)
        # out["hidden"]: (B, D) head input, out["logits"]: (B, V) exact logits
    """

    def __init__(self, model: nn.Module):
        self.model = model
        self.head = get_classifier_head(model)
        self._captured = {}
        self.hooks = [self.head.register_forward_hook(self._hook)]

    def _hook(self, module, input, output):
        self._captured['hidden'] = input[0].detach()
        self._captured['logits'] = output.detach()

    @torch.no_grad()
    def __call__(self, images: Tensor) -> dict:
        self._captured.clear()
        self.model(images)
        return {
            'hidden': self._captured['hidden'],
            'logits': self._captured['logits'],
        }

    def remove_hooks(self):
        """Remove all registered hooks."""
        for h in self.hooks:
            h.remove()
        self.hooks.clear()
