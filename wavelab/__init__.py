"""Wavelab compute offload package.

This package runs the heavy numeric work behind the wavelab visualization
surface: spectral image mixing, phased-array beam simulation and spectral
histogram analysis, executed on a bounded pool of worker processes.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("wavelab")
except PackageNotFoundError:
    __version__ = "0.0.0"
