"""
Shared compute infrastructure for plsmm.

Submodules:
    timing: Execution timing utilities
"""

from plsmm.core.compute.timing import Timer

__all__ = [
    "Timer",
]
