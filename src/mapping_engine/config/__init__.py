"""
Configuration package for the mapping engine.
"""

from .settings import Settings

__all__ = ["Settings"]
