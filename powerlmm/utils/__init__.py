"""
powerlmm utilities package.
Internal utilities - not part of public API.
"""

from . import formula, validators

__all__ = ["formula", "validators"]
