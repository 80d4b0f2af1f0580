"""Health endpoint for the proxy."""

from __future__ import annotations

import httpx
import structlog
from fastapi import APIRouter

from sri_shield.config.loader import get_settings

logger = structlog.get_logger()
router = APIRouter()


async def _check_upstream() -> bool:
    """Check if upstream is reachable with a HEAD request."""
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.head(settings.upstream_url)
            return resp.status_code < 500
    except httpx.HTTPError:
        return False


@router.get("/health")
async def health():
    """Health check: upstream reachability and loaded hash table size."""
    from sri_shield.main import get_shield_context

    upstream_ok = await _check_upstream()
    shield = get_shield_context()
    hashes = shield.global_hashes if shield is not None else None

    return {
        "status": "healthy" if (upstream_ok and shield is not None) else "degraded",
        "proxy": "up",
        "upstream": "up" if upstream_ok else "down",
        "global_hashes": {
            "scripts": len(hashes.scripts) if hashes is not None else 0,
            "styles": len(hashes.styles) if hashes is not None else 0,
        },
    }
