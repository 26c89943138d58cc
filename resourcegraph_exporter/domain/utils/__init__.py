"""
Shared utilities for the result-to-metric mapper.

Modules
-------
validation
    Cell coercion (label strings, float sample values) and Prometheus
    metric/label name checks
"""

__all__ = []
