from .decomposition import (SVDDecomposition, SVDParams, SVDSoftmaxState, configure,
                            default_svd_params, do_svd, orthonormality_error,
                            set_svd_param)
from .selection import select_candidates
from .full_view import update_full_view, update_full_view_batched, update_full_view_single
from .evaluator import Workspace, evaluate, preview
from .svd_linear import SVDSoftmaxLinear
