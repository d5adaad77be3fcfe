"""
Exception types raised by the SVD-softmax core.

Both are ValueError subclasses so callers that already guard tensor code
with ``except ValueError`` keep working.
"""


class SVDSoftmaxError(Exception):
    """Base class for SVD-softmax errors."""


class ShapeError(SVDSoftmaxError, ValueError):
    """A tensor has the wrong rank or an incompatible dimension."""


class ParameterError(SVDSoftmaxError, ValueError):
    """Preview rank / correction budget (or a supplied decomposition) is invalid."""
