"""
chaincore - Core library for chainbooks components

Provides shared Bitcoin primitives, settings and logging setup.
"""

__version__ = "0.3.0"

from chaincore.models import AddressType, NetworkType, ShortfallPolicy

__all__ = [
    "AddressType",
    "NetworkType",
    "ShortfallPolicy",
]
