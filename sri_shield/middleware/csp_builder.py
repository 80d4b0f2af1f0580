"""Pure-function CSP (Content-Security-Policy) utilities."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, MutableMapping

from sri_shield.core.collection import PerPageHashes
from sri_shield.core.hashing import is_valid_sri_hash

CSP_HEADER = "content-security-policy"


def parse_csp(csp_string: str) -> dict[str, str]:
    """Parse a CSP string into {directive: value} dict.

    Each entry is split on its first run of whitespace only, so the value keeps
    its original spacing.

    Example:
        >>> parse_csp("default-src 'self'; script-src 'self' https:")
        {"default-src": "'self'", "script-src": "'self' https:"}
    """
    result: dict[str, str] = {}
    if not csp_string or not csp_string.strip():
        return result
    for part in csp_string.split(";"):
        part = part.strip()
        if not part:
            continue
        parts = part.split(None, 1)
        result[parts[0].lower()] = parts[1] if len(parts) > 1 else ""
    return result


def build_csp(directives: Mapping[str, str]) -> str:
    """Build a CSP string from {directive: value}, sorted by directive name.

    Example:
        >>> build_csp({"script-src": "'self'", "default-src": "'none'"})
        "default-src 'none'; script-src 'self'"
    """
    parts = []
    for directive, value in sorted(directives.items()):
        if value:
            parts.append(f"{directive} {value}")
        else:
            parts.append(directive)
    return "; ".join(parts)


def serialise_hashes(sources: Iterable[str]) -> str:
    """Sort source expressions, quoting bare hash literals (`sha256-...`)."""
    return " ".join(sorted(f"'{s}'" if is_valid_sri_hash(s) else s for s in sources))


def _unquote(source: str) -> str:
    if len(source) > 2 and source[0] == source[-1] == "'" and is_valid_sri_hash(source[1:-1]):
        return source[1:-1]
    return source


def set_src_directive(directives: MutableMapping[str, str], directive: str, hashes: Iterable[str]) -> None:
    """Set ``directive`` to ``'self'`` plus the page hashes.

    Sources already present for the directive (other than ``'self'``) are kept
    and sorted together with the hashes. No hashes at all means ``'none'``.
    """
    hashes = set(hashes)
    if not hashes:
        directives[directive] = "'none'"
        return
    sources = {_unquote(v) for v in directives.get(directive, "").split() if v not in ("'self'", "'none'")}
    sources.update(hashes)
    directives[directive] = f"'self' {serialise_hashes(sources)}"


def build_page_csp(
    page_hashes: PerPageHashes,
    default_directives: Mapping[str, str] | None = None,
    existing_header: str | None = None,
) -> str:
    """Compute a page's CSP header value.

    Precedence (lowest to highest): configured defaults, the existing header
    value, then the freshly computed ``script-src`` / ``style-src``.
    """
    directives: dict[str, str] = dict(default_directives or {})
    if existing_header:
        directives.update(parse_csp(existing_header))
    set_src_directive(directives, "script-src", page_hashes.scripts)
    set_src_directive(directives, "style-src", page_hashes.styles)
    return build_csp(directives)


def patch_csp_header(
    headers: MutableMapping[str, str],
    page_hashes: PerPageHashes,
    default_directives: Mapping[str, str] | None = None,
) -> None:
    """Rewrite the ``content-security-policy`` entry of a lowercase-keyed header map."""
    headers[CSP_HEADER] = build_page_csp(page_hashes, default_directives, headers.get(CSP_HEADER))
