"""
Azure Resource Graph exporter package.

This package hosts the Prometheus exporter that runs Azure Resource Graph
queries, maps their tabular results to gauges and serves them on a probe
endpoint. See README.md for usage.
"""

from .__version__ import __version__

__all__ = ["__version__"]
