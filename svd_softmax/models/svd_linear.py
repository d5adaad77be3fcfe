"""
SVD-softmax output layer: drop-in replacement for the nn.Linear before a softmax.

Implements Shim et al., "SVD-Softmax: Fast Softmax Approximation on Large
Vocabulary Neural Networks", NIPS 2017.
"""

import logging
import math
import threading
from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F
from torch import Tensor

from .decomposition import SVDDecomposition, SVDSoftmaxState, configure, do_svd
from .evaluator import Workspace, evaluate
from .full_view import DEFAULT_PARALLEL_THRESHOLD

logger = logging.getLogger(__name__)


class SVDSoftmaxLinear(nn.Module):
    """
    Output projection W ∈ R^{V x D} with an exact and an approximate path.

    forward(x) dispatches on a flag instead of subclassing nn.Linear:
      - exact:       F.linear(x, weight, bias), used in training mode or when
                     approximate=False
      - approximate: SVD-softmax evaluation (eval mode, approximate=True)

    The SVD is a snapshot of the weight. Call do_svd() again after the weight
    changes (training steps, load_state_dict, moving to another device).
    Configure with set_svd_param() / prepare() before serving from several
    threads; an unconfigured layer sets itself up with defaults on the first
    approximate call, guarded by a lock.
    """

    def __init__(self, in_features: int, out_features: int, bias: bool = True,
                 approximate: bool = True, num_workers: Optional[int] = None,
                 parallel_threshold: int = DEFAULT_PARALLEL_THRESHOLD,
                 reuse_buffers: bool = False):
        super().__init__()
        self.in_features = in_features
        self.out_features = out_features
        self.approximate = approximate
        self.num_workers = num_workers
        self.parallel_threshold = parallel_threshold
        # Outputs alias a per-thread workspace when set; the next call
        # on the same thread overwrites them.
        self.reuse_buffers = reuse_buffers

        self.weight = nn.Parameter(torch.empty(out_features, in_features))
        if bias:
            self.bias = nn.Parameter(torch.empty(out_features))
        else:
            self.register_parameter('bias', None)
        self.reset_parameters()

        self._decomposition = None
        self._svd_state = None
        self._lock = threading.Lock()
        self._local = threading.local()

    def reset_parameters(self):
        nn.init.kaiming_uniform_(self.weight, a=math.sqrt(5))
        if self.bias is not None:
            bound = 1 / math.sqrt(self.in_features) if self.in_features > 0 else 0
            nn.init.uniform_(self.bias, -bound, bound)

    @staticmethod
    def from_linear(linear: nn.Linear, **kwargs) -> 'SVDSoftmaxLinear':
        """Copy weight and bias of a trained nn.Linear (V x D)."""
        layer = SVDSoftmaxLinear(linear.in_features, linear.out_features,
                                 bias=(linear.bias is not None), **kwargs)
        layer = layer.to(device=linear.weight.device, dtype=linear.weight.dtype)
        with torch.no_grad():
            layer.weight.copy_(linear.weight)
            if linear.bias is not None:
                layer.bias.copy_(linear.bias)
        return layer

    @property
    def decomposition(self) -> Optional[SVDDecomposition]:
        return self._decomposition

    @property
    def svd_state(self) -> Optional[SVDSoftmaxState]:
        return self._svd_state

    @property
    def is_configured(self) -> bool:
        return self._svd_state is not None

    def do_svd(self) -> SVDDecomposition:
        """(Re)decompose the current weight; keeps W and N if already set."""
        decomposition = do_svd(self.weight)
        state = self._svd_state
        if state is not None:
            state = configure(self.weight, state.preview_rank,
                              state.correction_budget, bias=self.bias,
                              decomposition=decomposition)
        self._decomposition = decomposition
        self._svd_state = state
        return decomposition

    def set_svd_param(self, W: Optional[int] = None,
                      N: Optional[int] = None) -> SVDSoftmaxState:
        """
        Set preview rank W and correction budget N (defaults ceil(D/5), ceil(V/10)).

        Decomposes the weight on first use only. On ParameterError the
        previous configuration stays in place.
        """
        state = configure(self.weight, W, N, bias=self.bias,
                          decomposition=self._decomposition)
        self._decomposition = state.decomposition
        self._svd_state = state
        return state

    def prepare(self) -> SVDSoftmaxState:
        """Configure with defaults unless already configured (idempotent)."""
        state = self._svd_state
        if state is None:
            with self._lock:
                state = self._svd_state
                if state is None:
                    logger.info("SVD-softmax parameters not set; "
                                "using defaults")
                    state = self.set_svd_param()
        return state

    def _workspace(self) -> Optional[Workspace]:
        if not self.reuse_buffers:
            return None
        workspace = getattr(self._local, 'workspace', None)
        if workspace is None:
            workspace = Workspace()
            self._local.workspace = workspace
        return workspace

    def forward_approximate(self, x: Tensor) -> Tensor:
        return evaluate(x, self.prepare(), workspace=self._workspace(),
                        num_workers=self.num_workers,
                        parallel_threshold=self.parallel_threshold)

    def forward(self, x: Tensor) -> Tensor:
        if self.training or not self.approximate:
            return F.linear(x, self.weight, self.bias)
        return self.forward_approximate(x)

    def __getstate__(self):
        state = self.__dict__.copy()
        state.pop('_lock', None)
        state.pop('_local', None)
        return state

    def __setstate__(self, state):
        super().__setstate__(state)
        self._lock = threading.Lock()
        self._local = threading.local()

    def extra_repr(self) -> str:
        state = self._svd_state
        svd = (f'W={state.preview_rank}, N={state.correction_budget}'
               if state is not None else 'unconfigured')
        return (f'in_features={self.in_features}, '
                f'out_features={self.out_features}, '
                f'bias={self.bias is not None}, '
                f'approximate={self.approximate}, {svd}')
