"""Locate script/style/link elements, compute their SRI hashes and rewrite the markup.

The matching is pattern based rather than a full HTML parser. Everything that
touches the patterns lives behind :class:`ElementScanner`, so the hashing and
CSP logic only ever sees :class:`ElementMatch` objects.

Two entry points:

- :func:`rewrite_static_page`: build time. May read local files and fetch
  remote resources, and records everything into a :class:`HashCollection`.
- :func:`rewrite_dynamic_page`: request time. Never performs I/O; external
  resources are validated against a read-only :class:`GlobalHashTable`.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Protocol

import structlog

from sri_shield.core.collection import Category, GlobalHashTable, HashCollection, PerPageHashes
from sri_shield.core.hashing import generate_sri_hash, is_valid_sri_hash
from sri_shield.core.resources import is_local, is_remote

logger = structlog.get_logger()


class InlinePolicy(str, Enum):
    """Where inline scripts/styles may be hashed (and therefore allowed by CSP)."""

    ALL = "all"
    STATIC_ONLY = "static-only"
    DISABLED = "disabled"

    def allows(self, dynamic: bool) -> bool:
        if self is InlinePolicy.ALL:
            return True
        return self is InlinePolicy.STATIC_ONLY and not dynamic


# ── Patterns ────────────────────────────────────────────────────────────

# Everything up to the ``>`` that closes the start tag. As in the HTML
# tokenizer, a ``>`` only hides inside a quoted attribute value, and a quote
# only opens a value right after ``=``. The alternatives are mutually
# exclusive, so hostile markup cannot cause catastrophic backtracking.
_START_TAG_REST = r"""(?P<attrs>(?:=\s*"[^"]*"|=\s*'[^']*'|=(?!\s*["'])|[^>=])*)>"""

# One attribute. ``/`` and whitespace separate attributes, a quoted value may
# be followed directly by the next name, and names run up to whitespace,
# ``/``, ``=`` or ``>`` (so ``@load`` and ``:src`` are names too).
_ATTR_ITEM_RE = re.compile(
    r"""[\s/]*(?P<name>=?[^\s/>=]+)"""
    r"""(?:\s*=\s*(?:'(?P<v1>[^']*)'|"(?P<v2>[^"]*)"|(?P<v3>[^\s>]+))?)?"""
)


def _element_re(tag: str) -> re.Pattern[str]:
    # The closing tag tolerates trailing junk (``</script foo="x">``), which
    # browsers accept as an end tag.
    return re.compile(
        rf"<{tag}(?=[\s/>]){_START_TAG_REST}(?P<content>.*?)</\s*{tag}\b[^>]*>",
        re.IGNORECASE | re.DOTALL,
    )


_SCRIPT_RE = _element_re("script")
_STYLE_RE = _element_re("style")
_LINK_RE = re.compile(rf"<link(?=[\s/>]){_START_TAG_REST}", re.IGNORECASE)

# Dev-server artefacts that are never part of a build
_DEV_PATH_PREFIXES = ("/@vite/", "/@fs/", "/@id/")
_DEV_QUERY_MARKERS = ("?astro&type=",)


def parse_attributes(attrs: str) -> list[tuple[str, str | None, tuple[int, int]]]:
    """Split a raw attribute string into ``(lowercase name, value, span)`` items."""
    items = []
    for m in _ATTR_ITEM_RE.finditer(attrs):
        value = m.group("v1")
        if value is None:
            value = m.group("v2")
        if value is None:
            value = m.group("v3")
        items.append((m.group("name").lower(), value, m.span()))
    return items


# ── Element kinds ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ElementMatch:
    """One matched element, with the attributes the rewriter cares about."""

    start: int
    end: int
    attrs: str
    content: str
    src: str | None
    integrity: str | None
    has_crossorigin: bool
    rel: str | None
    integrity_span: tuple[int, int] | None = None

    @property
    def has_valid_integrity(self) -> bool:
        return is_valid_sri_hash(self.integrity)

    def attrs_without_integrity(self) -> str:
        if self.integrity_span is None:
            return self.attrs
        start, end = self.integrity_span
        return self.attrs[:start] + self.attrs[end:]


def _crossorigin(enabled: bool) -> str:
    return ' crossorigin="anonymous"' if enabled else ""


def _render_script(attrs: str, sri_hash: str, crossorigin: bool, content: str) -> str:
    return f'<script{attrs} integrity="{sri_hash}"{_crossorigin(crossorigin)}>{content}</script>'


def _render_style(attrs: str, sri_hash: str, crossorigin: bool, content: str) -> str:
    return f'<style{attrs} integrity="{sri_hash}"{_crossorigin(crossorigin)}>{content}</style>'


def _render_link(attrs: str, sri_hash: str, crossorigin: bool, content: str) -> str:
    return f'<link{attrs} integrity="{sri_hash}"{_crossorigin(crossorigin)}/>'


def _is_stylesheet(match: ElementMatch) -> bool:
    return match.rel is not None and "stylesheet" in match.rel.lower().split()


@dataclass(frozen=True)
class ElementKind:
    """Tagged variant describing how one element type is matched and rewritten."""

    name: Literal["script", "style", "link"]
    category: Category
    pattern: re.Pattern[str]
    source_attrs: tuple[str, ...]
    has_content: bool
    render: Callable[[str, str, bool, str], str]
    applies: Callable[[ElementMatch], bool] | None = None


SCRIPT = ElementKind(
    name="script",
    category="scripts",
    pattern=_SCRIPT_RE,
    source_attrs=("src",),
    has_content=True,
    render=_render_script,
)
STYLE = ElementKind(
    name="style",
    category="styles",
    pattern=_STYLE_RE,
    source_attrs=("href", "src"),
    has_content=True,
    render=_render_style,
)
LINK_STYLESHEET = ElementKind(
    name="link",
    category="styles",
    pattern=_LINK_RE,
    source_attrs=("href",),
    has_content=False,
    render=_render_link,
    applies=_is_stylesheet,
)

ELEMENT_KINDS: tuple[ElementKind, ...] = (SCRIPT, STYLE, LINK_STYLESHEET)


class ElementScanner(Protocol):
    """Strategy for finding elements of one kind in a document."""

    def scan(self, text: str, kind: ElementKind) -> Iterator[ElementMatch]:
        ...


class RegexElementScanner:
    """Default :class:`ElementScanner` driven by each kind's regular expression."""

    def scan(self, text: str, kind: ElementKind) -> Iterator[ElementMatch]:
        for m in kind.pattern.finditer(text):
            attrs = m.group("attrs") or ""
            items = parse_attributes(attrs)
            # Drop the separators (`` /``) in front of the closing ``>``
            attrs = attrs[:items[-1][2][1]] if items else ""
            content = m.groupdict().get("content") or ""
            src = integrity = rel = None
            integrity_span = None
            has_crossorigin = False
            for name, value, span in items:
                # Browsers honour the first occurrence of a duplicated attribute
                if name in kind.source_attrs and src is None:
                    src = value or None
                elif name == "integrity" and integrity_span is None:
                    integrity = value
                    integrity_span = span
                elif name == "crossorigin":
                    has_crossorigin = True
                elif name == "rel" and rel is None:
                    rel = value
            yield ElementMatch(
                start=m.start(),
                end=m.end(),
                attrs=attrs,
                content=content,
                src=src,
                integrity=integrity,
                has_crossorigin=has_crossorigin,
                rel=rel,
                integrity_span=integrity_span,
            )


# ── Rewrite loop ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Decision:
    action: Literal["keep", "strip", "patch"]
    sri_hash: str | None = None
    crossorigin: bool = False


KEEP = Decision("keep")
STRIP = Decision("strip")


def _patch(sri_hash: str, crossorigin: bool = False) -> Decision:
    return Decision("patch", sri_hash, crossorigin)


@dataclass
class RewriteResult:
    content: str
    page_hashes: PerPageHashes


def _opaque_spans(text: str, scanner: ElementScanner, kinds: tuple[ElementKind, ...]) -> list[tuple[int, int]]:
    """Spans of already-processed script/style elements.

    Markup inside them (``document.write('<link ...>')``) is script or style
    text, and must not be rewritten or its hash would change.
    """
    return [(m.start, m.end) for kind in kinds for m in scanner.scan(text, kind)]


def _candidates(
    text: str, scanner: ElementScanner, kind: ElementKind, processed: list[ElementKind],
) -> Iterator[ElementMatch]:
    spans = _opaque_spans(text, scanner, tuple(processed))
    for m in scanner.scan(text, kind):
        if any(start <= m.start < end for start, end in spans):
            continue
        if kind.applies is not None and not kind.applies(m):
            continue
        yield m


def _apply(text: str, kind: ElementKind, match: ElementMatch, decision: Decision) -> str:
    if decision.action == "strip":
        return ""
    if decision.action == "patch" and decision.sri_hash:
        return kind.render(match.attrs_without_integrity(), decision.sri_hash, decision.crossorigin, match.content)
    return text[match.start:match.end]


def _splice(text: str, edits: list[tuple[ElementMatch, str]]) -> str:
    """Replace each matched span (in document order) with its new markup."""
    pieces: list[str] = []
    last = 0
    for m, replacement in edits:
        pieces.append(text[last:m.start])
        pieces.append(replacement)
        last = m.end
    pieces.append(text[last:])
    return "".join(pieces)


def _is_dual(match: ElementMatch) -> bool:
    return match.src is not None and bool(match.content.strip())


def _is_dev_resource(src: str) -> bool:
    return src.startswith(_DEV_PATH_PREFIXES) or any(marker in src for marker in _DEV_QUERY_MARKERS)


def _policy_for(kind: ElementKind, scripts: InlinePolicy, styles: InlinePolicy) -> InlinePolicy:
    return scripts if kind.category == "scripts" else styles


async def rewrite_static_page(
    content: str,
    page_path: str,
    h: HashCollection,
    loader,
    *,
    allow_inline_scripts: InlinePolicy = InlinePolicy.ALL,
    allow_inline_styles: InlinePolicy = InlinePolicy.ALL,
    scanner: ElementScanner | None = None,
) -> RewriteResult:
    """Add integrity attributes to a pre-rendered page and record its hashes.

    ``loader`` is anything with an ``async load(src) -> bytes`` method (see
    :class:`~sri_shield.core.resources.ResourceLoader`). Existing valid
    integrity attributes are trusted. Resource read/fetch failures propagate.
    """
    scanner = scanner or RegexElementScanner()
    page = h.page(page_path)

    async def decide(kind: ElementKind, m: ElementMatch) -> Decision:
        category = kind.category

        if _is_dual(m):
            logger.warning("sri_src_and_content", element=kind.name, src=m.src, page=page_path)
            return STRIP

        if m.has_valid_integrity:
            if m.src:
                h.add_external(category, m.integrity)
                h.cache_resource(category, m.src, m.integrity)
            elif not kind.has_content:
                return KEEP
            else:
                h.add_inline(category, m.integrity)
            page.add(category, m.integrity)
            return KEEP

        if m.src:
            remote = is_remote(m.src)
            if not remote and not is_local(m.src):
                logger.warning("sri_unprocessable_resource", src=m.src, page=page_path)
                return KEEP
            sri_hash = h.per_resource_hashes.get(category, m.src)
            if sri_hash is None:
                sri_hash = generate_sri_hash(await loader.load(m.src))
                h.cache_resource(category, m.src, sri_hash)
            h.add_external(category, sri_hash)
            page.add(category, sri_hash)
            return _patch(sri_hash, remote and not m.has_crossorigin)

        if not kind.has_content:
            return KEEP

        if not _policy_for(kind, allow_inline_scripts, allow_inline_styles).allows(dynamic=False):
            logger.warning("sri_inline_disabled", element=kind.name, page=page_path)
            return STRIP
        sri_hash = generate_sri_hash(m.content)
        h.add_inline(category, sri_hash)
        page.add(category, sri_hash)
        return _patch(sri_hash)

    text = content
    processed: list[ElementKind] = []
    for kind in ELEMENT_KINDS:
        edits = []
        for m in _candidates(text, scanner, kind, processed):
            edits.append((m, _apply(text, kind, m, await decide(kind, m))))
        text = _splice(text, edits)
        if kind.has_content:
            processed.append(kind)

    return RewriteResult(content=text, page_hashes=page)


def rewrite_dynamic_page(
    content: str,
    table: GlobalHashTable,
    *,
    allow_inline_scripts: InlinePolicy = InlinePolicy.ALL,
    allow_inline_styles: InlinePolicy = InlinePolicy.ALL,
    scanner: ElementScanner | None = None,
) -> RewriteResult:
    """Validate and patch a dynamically rendered response.

    Only resources present in ``table`` are trusted. Anything carrying an
    integrity value that cannot be verified, and any cross-origin resource
    missing from the table, is removed from the markup.
    """
    scanner = scanner or RegexElementScanner()
    page = PerPageHashes()

    def decide(kind: ElementKind, m: ElementMatch) -> Decision:
        category = kind.category
        inline_allowed = _policy_for(kind, allow_inline_scripts, allow_inline_styles).allows(dynamic=True)

        if _is_dual(m):
            logger.warning("sri_src_and_content", element=kind.name, src=m.src)
            return STRIP

        if m.has_valid_integrity:
            if m.src:
                expected = table.get(category, m.src)
                if expected is None:
                    logger.warning("sri_resource_not_allowed", element=kind.name, src=m.src)
                    return STRIP
                if expected != m.integrity:
                    logger.warning(
                        "sri_hash_mismatch", element=kind.name, src=m.src, expected=expected, got=m.integrity,
                    )
                    return STRIP
            elif not kind.has_content:
                return KEEP
            elif not inline_allowed:
                logger.warning("sri_inline_disabled", element=kind.name)
                return STRIP
            elif generate_sri_hash(m.content) != m.integrity:
                logger.warning("sri_hash_mismatch", element=kind.name, src=None, got=m.integrity)
                return STRIP
            page.add(category, m.integrity)
            return KEEP

        if m.src:
            if is_local(m.src):
                sri_hash = table.get(category, m.src)
                if sri_hash is None:
                    if not _is_dev_resource(m.src):
                        logger.warning("sri_hash_unavailable", element=kind.name, src=m.src)
                    return KEEP
                page.add(category, sri_hash)
                return _patch(sri_hash)
            if is_remote(m.src):
                sri_hash = table.get(category, m.src)
                if sri_hash is None:
                    logger.warning("sri_resource_not_allowed", element=kind.name, src=m.src)
                    return STRIP
                page.add(category, sri_hash)
                return _patch(sri_hash, not m.has_crossorigin)
            logger.warning("sri_unprocessable_resource", element=kind.name, src=m.src)
            return KEEP

        if not kind.has_content:
            return KEEP

        if not inline_allowed:
            logger.warning("sri_inline_disabled", element=kind.name)
            return STRIP
        sri_hash = generate_sri_hash(m.content)
        page.add(category, sri_hash)
        return _patch(sri_hash)

    text = content
    processed: list[ElementKind] = []
    for kind in ELEMENT_KINDS:
        edits = [(m, _apply(text, kind, m, decide(kind, m))) for m in _candidates(text, scanner, kind, processed)]
        text = _splice(text, edits)
        if kind.has_content:
            processed.append(kind)

    return RewriteResult(content=text, page_hashes=page)
