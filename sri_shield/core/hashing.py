"""SRI hash literals: computation and syntactic validation."""

from __future__ import annotations

import base64
import hashlib
import re

SRI_HASH_RE = re.compile(r"^sha256-[A-Za-z0-9+/]{43}=$")


def generate_sri_hash(data: str | bytes) -> str:
    """Return the ``sha256-<base64>`` literal for text (UTF-8) or raw bytes.

    Example:
        >>> generate_sri_hash("")
        'sha256-47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU='
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    digest = hashlib.sha256(data).digest()
    return f"sha256-{base64.b64encode(digest).decode('ascii')}"


def is_valid_sri_hash(value: str | None) -> bool:
    """True if ``value`` is a well-formed sha256 integrity literal."""
    return bool(value) and SRI_HASH_RE.fullmatch(value) is not None
