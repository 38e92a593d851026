"""
iomatrix - fio benchmark matrices.

Expand a parameter space, run every point through fio, compare the results.
"""

from iomatrix.config import MatrixConfig, RunOptions, load_config
from iomatrix.matrix import run_matrix

__version__ = "0.1.0"
__all__ = ["MatrixConfig", "RunOptions", "__version__", "load_config", "run_matrix"]
