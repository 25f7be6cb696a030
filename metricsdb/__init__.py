"""Time-windowed metrics persistence and aggregation.

Exports for testing and module access.
"""

from metricsdb import lib, models

__all__ = ['lib', 'models']
