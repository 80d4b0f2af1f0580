"""
sri-shield - Subresource Integrity and CSP hardening for generated HTML
"""

__version__ = "0.1.0"

from sri_shield.core.collection import GlobalHashTable, HashCollection, PerPageHashes
from sri_shield.core.hashing import generate_sri_hash

__all__ = ["GlobalHashTable", "HashCollection", "PerPageHashes", "generate_sri_hash"]
