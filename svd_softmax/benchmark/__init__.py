from .runner import SVDSoftmaxBenchmark
from .pipeline import run_benchmark
