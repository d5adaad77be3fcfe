"""SVD-softmax: fast approximation of large-vocabulary output projections.

The two entry points are ``configure`` (decompose a V x D weight and set the
preview rank W and correction budget N) and ``evaluate`` (approximate
outputs for a hidden state or a batch). ``SVDSoftmaxLinear`` wraps both in
an ``nn.Module`` that switches between the exact and approximate paths.
"""

from .errors import ParameterError, ShapeError, SVDSoftmaxError
from .models.decomposition import (SVDDecomposition, SVDParams, SVDSoftmaxState,
                                   configure, do_svd, set_svd_param)
from .models.evaluator import Workspace, evaluate, preview
from .models.svd_linear import SVDSoftmaxLinear

__version__ = "0.1.0"
