"""Vercel ``config.json``: parse, serialise, build and merge routes."""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import structlog
from pydantic import ValidationError

from sri_shield.core.collection import PerPageHashes
from sri_shield.errors import VercelConfigError
from sri_shield.middleware.csp_builder import build_page_csp
from sri_shield.models.vercel import VercelConfig, VercelRoute

logger = structlog.get_logger()

SUPPORTED_VERSION = 3
CSP_HEADER_NAME = "content-security-policy"

TrailingSlash = Literal["always", "never", "ignore"]


def parse_vercel_config(raw: str | bytes | Mapping[str, Any]) -> VercelConfig:
    """Validate a Vercel config given as JSON text or an already-decoded mapping.

    A missing ``version`` is fatal; an unexpected version only logs a warning.
    """
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise VercelConfigError("<root>", f"invalid JSON: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise VercelConfigError("<root>", "expected a JSON object")
    if "version" not in raw:
        raise VercelConfigError("version", "missing required field")

    try:
        config = VercelConfig.model_validate(dict(raw))
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(part) for part in first["loc"]) or "<root>"
        raise VercelConfigError(loc, first["msg"]) from exc

    if config.version != SUPPORTED_VERSION:
        logger.warning("vercel_config_version_unsupported", version=config.version, expected=SUPPORTED_VERSION)
    return config


def serialise_vercel_config(config: VercelConfig) -> str:
    return json.dumps(config.model_dump(by_alias=True, exclude_none=True), indent=2) + "\n"


def read_vercel_config(path: str | Path) -> VercelConfig:
    """Parse ``config.json``; a missing file is an empty version-3 config."""
    path = Path(path)
    if not path.exists():
        return VercelConfig(version=SUPPORTED_VERSION)
    return parse_vercel_config(path.read_text(encoding="utf-8"))


def _anchored(path: str, optional_slash: bool = False) -> str:
    pattern = re.escape(path)
    if optional_slash:
        pattern += "/?"
    return f"^{pattern}$"


def page_route_sources(page: str, trailing_slash: TrailingSlash = "ignore") -> list[str]:
    """Anchored ``src`` patterns for a built page.

    ``about/index.html`` answers to its directory (with the trailing-slash
    policy applied) and to the literal file; ``about.html`` likewise to its
    extensionless path and to the literal file.
    """
    literal = "/" + page.replace("\\", "/").lstrip("/")
    if literal == "/index.html":
        return [_anchored("/"), _anchored(literal)]

    if literal.endswith("/index.html"):
        base = literal[: -len("/index.html")]
    elif literal.endswith(".html"):
        base = literal[: -len(".html")]
    else:
        return [_anchored(literal)]

    if trailing_slash == "always":
        pretty = _anchored(f"{base}/")
    elif trailing_slash == "never":
        pretty = _anchored(base)
    else:
        pretty = _anchored(base, optional_slash=True)
    return [pretty, _anchored(literal)]


def build_vercel_config(
    per_page_hashes: Mapping[str, PerPageHashes],
    csp_directives: Mapping[str, str] | None,
    trailing_slash: TrailingSlash = "ignore",
) -> VercelConfig:
    """One ``continue: true`` route per page form; pages without headers are skipped."""
    routes: list[VercelRoute] = []
    for page in sorted(per_page_hashes):
        headers: dict[str, str] = {}
        if csp_directives is not None:
            headers[CSP_HEADER_NAME] = build_page_csp(per_page_hashes[page], csp_directives)
        if not headers:
            continue
        for src in page_route_sources(page, trailing_slash):
            routes.append(VercelRoute(src=src, headers=dict(headers), continue_=True))
    return VercelConfig(version=SUPPORTED_VERSION, routes=routes)


def merge_vercel_config(base: VercelConfig, patch: VercelConfig) -> VercelConfig:
    """Patch routes go first so they win for matching paths; ``version`` comes from base."""
    return base.model_copy(update={"routes": [*patch.routes, *base.routes]})
