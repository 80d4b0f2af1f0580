"""Netlify ``_headers`` file: parse, serialise, build and merge.

Grammar, one item per line::

    # comment
    /path
      Header-Name: value
      # comment inside a block

Blank lines and comments are kept so a parsed file serialises back to the
same structure. The indentation string is inferred from the first indented
line and must not change within a file.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import structlog

from sri_shield.core.collection import PerPageHashes
from sri_shield.errors import NetlifyParseError
from sri_shield.middleware.csp_builder import build_page_csp

logger = structlog.get_logger()

DEFAULT_INDENT = "\t"
CSP_HEADER_NAME = "Content-Security-Policy"

_HEADER_RE = re.compile(r"^(?P<name>[A-Za-z0-9!#$%&'*+.^_`|~-]+)\s*:\s*(?P<value>.*?)\s*$")
_PATH_RE = re.compile(r"^(?:/|https?://)\S*$")


@dataclass(frozen=True)
class Comment:
    """A comment line, ``#`` included, without the block indentation."""

    text: str


@dataclass(frozen=True)
class EmptyLine:
    pass


@dataclass(frozen=True)
class HeaderEntry:
    name: str
    value: str


BlockEntry = Union[Comment, HeaderEntry]


@dataclass
class PathBlock:
    path: str
    entries: list[BlockEntry] = field(default_factory=list)

    @property
    def headers(self) -> list[HeaderEntry]:
        return [e for e in self.entries if isinstance(e, HeaderEntry)]


TopLevelEntry = Union[Comment, EmptyLine, PathBlock]


@dataclass
class NetlifyHeadersConfig:
    indent_with: str = DEFAULT_INDENT
    entries: list[TopLevelEntry] = field(default_factory=list)

    @property
    def blocks(self) -> list[PathBlock]:
        return [e for e in self.entries if isinstance(e, PathBlock)]


# ── Parsing ─────────────────────────────────────────────────────────────


def parse_netlify_headers(text: str) -> NetlifyHeadersConfig:
    """Parse the contents of a ``_headers`` file.

    Raises NetlifyParseError (with the 1-based line number) on inconsistent
    indentation, empty path blocks, indented lines outside a block, or any
    line that fits no rule.
    """
    indent_with: str | None = None
    entries: list[TopLevelEntry] = []
    block: PathBlock | None = None
    block_line = 0

    def close_block() -> None:
        nonlocal block
        if block is not None and not block.entries:
            raise NetlifyParseError(block_line, f'path "{block.path}" has no entries')
        block = None

    for lineno, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            close_block()
            entries.append(EmptyLine())
            continue

        stripped = line.lstrip()
        indent = line[: len(line) - len(stripped)]

        if not indent:
            close_block()
            if stripped.startswith("#"):
                entries.append(Comment(line))
            elif _PATH_RE.match(stripped.rstrip()):
                block = PathBlock(path=stripped.rstrip())
                block_line = lineno
                entries.append(block)
            else:
                raise NetlifyParseError(lineno, f"unexpected line {line!r}")
            continue

        if block is None:
            raise NetlifyParseError(lineno, "indented line outside of a path block")
        if indent_with is None:
            indent_with = indent
        elif indent != indent_with:
            raise NetlifyParseError(lineno, "inconsistent indentation")

        if stripped.startswith("#"):
            block.entries.append(Comment(stripped))
            continue
        m = _HEADER_RE.match(stripped)
        if m is None:
            raise NetlifyParseError(lineno, f"invalid header line {stripped!r}")
        block.entries.append(HeaderEntry(name=m.group("name"), value=m.group("value")))

    close_block()
    return NetlifyHeadersConfig(indent_with=indent_with or DEFAULT_INDENT, entries=entries)


def serialise_netlify_headers(config: NetlifyHeadersConfig) -> str:
    lines: list[str] = []
    for entry in config.entries:
        if isinstance(entry, EmptyLine):
            lines.append("")
        elif isinstance(entry, Comment):
            lines.append(entry.text)
        else:
            lines.append(entry.path)
            for item in entry.entries:
                if isinstance(item, Comment):
                    lines.append(f"{config.indent_with}{item.text}")
                else:
                    lines.append(f"{config.indent_with}{item.name}: {item.value}")
    return "\n".join(lines) + "\n" if lines else ""


def read_netlify_headers(path: str | Path) -> NetlifyHeadersConfig:
    """Parse a ``_headers`` file; a missing file is an empty config."""
    path = Path(path)
    if not path.exists():
        return NetlifyHeadersConfig()
    return parse_netlify_headers(path.read_text(encoding="utf-8"))


# ── Building ────────────────────────────────────────────────────────────


def page_paths(page: str) -> list[str]:
    """URL paths a built page answers to: itself plus its directory form."""
    path = "/" + page.replace("\\", "/").lstrip("/")
    paths = [path]
    if path.endswith("/index.html"):
        paths.append(path[: -len("index.html")])
    return paths


def build_netlify_headers(
    per_page_hashes: Mapping[str, PerPageHashes],
    csp_directives: Mapping[str, str] | None,
    indent_with: str = DEFAULT_INDENT,
) -> NetlifyHeadersConfig:
    """One block per page path with its CSP; ``csp_directives=None`` disables CSP."""
    blocks: dict[str, list[HeaderEntry]] = {}
    for page, hashes in per_page_hashes.items():
        headers: list[HeaderEntry] = []
        if csp_directives is not None:
            headers.append(HeaderEntry(CSP_HEADER_NAME, build_page_csp(hashes, csp_directives)))
        if not headers:
            continue
        headers.sort(key=lambda e: (e.name, e.value))
        for path in page_paths(page):
            blocks[path] = list(headers)

    entries: list[TopLevelEntry] = [PathBlock(path, list(blocks[path])) for path in sorted(blocks)]
    return NetlifyHeadersConfig(indent_with=indent_with, entries=entries)


# ── Merging ─────────────────────────────────────────────────────────────


def _merge_block(base: PathBlock, patch: PathBlock, first: bool = True) -> PathBlock:
    """Replace ``base`` entries named in ``patch``.

    Only the ``first`` block for a path receives the patch entries; repeated
    blocks just lose the headers the patch overrides.
    """
    overrides: dict[str, list[HeaderEntry]] = {}
    for entry in patch.headers:
        overrides.setdefault(entry.name.lower(), []).append(entry)

    merged: list[BlockEntry] = []
    emitted: set[str] = set() if first else set(overrides)
    for entry in base.entries:
        if isinstance(entry, HeaderEntry) and entry.name.lower() in overrides:
            key = entry.name.lower()
            if key not in emitted:
                merged.extend(overrides[key])
                emitted.add(key)
            continue
        merged.append(entry)
    for key, patch_entries in overrides.items():
        if key not in emitted:
            merged.extend(patch_entries)
    return PathBlock(base.path, merged)


def merge_netlify_headers(base: NetlifyHeadersConfig, patch: NetlifyHeadersConfig) -> NetlifyHeadersConfig:
    """Apply ``patch`` on top of ``base``.

    Blocks match by path and entries by header name; patch entries replace
    same-named base entries. When the base repeats a path, only its first
    block takes the patch entries. Patch comments are dropped, as are blocks
    left without headers. Unmatched base and patch items keep their relative
    order.
    """
    patch_blocks: dict[str, PathBlock] = {}
    for block in patch.blocks:
        if block.path in patch_blocks:
            patch_blocks[block.path] = PathBlock(block.path, patch_blocks[block.path].headers + block.headers)
        else:
            patch_blocks[block.path] = PathBlock(block.path, list(block.headers))

    entries: list[TopLevelEntry] = []
    used: set[str] = set()
    for entry in base.entries:
        if isinstance(entry, PathBlock):
            if entry.path in patch_blocks:
                entry = _merge_block(entry, patch_blocks[entry.path], first=entry.path not in used)
                used.add(entry.path)
            if not entry.headers:
                continue
        entries.append(entry)

    for path, block in patch_blocks.items():
        if path not in used and block.headers:
            entries.append(block)

    return NetlifyHeadersConfig(indent_with=base.indent_with, entries=entries)
