"""Process-wide state for dynamic mode, built once at startup."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from sri_shield.config.loader import ShieldSettings
from sri_shield.core.collection import GlobalHashTable
from sri_shield.core.persistence import ensure_provisional_hashes_module, load_global_hash_table
from sri_shield.core.scanner import InlinePolicy

logger = structlog.get_logger()


@dataclass(frozen=True)
class ShieldContext:
    """Everything a request handler needs, passed by reference.

    The hash table is loaded eagerly and never mutated afterwards, so
    concurrent requests can share it without locking.
    """

    global_hashes: GlobalHashTable
    allow_inline_scripts: InlinePolicy = InlinePolicy.ALL
    allow_inline_styles: InlinePolicy = InlinePolicy.ALL
    csp_directives: dict[str, str] | None = None


def build_context(settings: ShieldSettings) -> ShieldContext:
    """Load the persisted hashes module (writing a provisional one if needed)."""
    table = GlobalHashTable()
    if settings.enable_static and settings.hashes_module:
        if ensure_provisional_hashes_module(settings.hashes_module, settings.public_dir):
            logger.warning(
                "hashes_module_provisional",
                path=settings.hashes_module,
                hint="Hashes for build-generated assets are missing until the next build.",
            )
        table = load_global_hash_table(settings.hashes_module)
    elif settings.hashes_module:
        logger.warning("hashes_module_ignored", reason="enable_static is false")

    return ShieldContext(
        global_hashes=table,
        allow_inline_scripts=settings.allow_inline_scripts,
        allow_inline_styles=settings.allow_inline_styles,
        csp_directives=settings.csp_defaults,
    )
