"""
Mapping & Migration Engine

Declares column/table/stream correspondences between data resources and
executes transformation-aware data movement across them.
"""

__version__ = "0.4.0"
