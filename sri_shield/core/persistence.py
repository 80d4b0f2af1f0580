"""Persist the hash collection as a declarative Python module, and seed it.

The generated module only contains literal assignments. It is read back with
:mod:`ast` rather than imported, so loading it never executes code.
"""

from __future__ import annotations

import ast
import json
from pathlib import Path
from typing import Any

import structlog

from sri_shield.core.collection import Category, GlobalHashTable, HashCollection
from sri_shield.core.hashing import generate_sri_hash, is_valid_sri_hash
from sri_shield.errors import HashesModuleError

logger = structlog.get_logger()

_HEADER = "# Do not edit this file manually\n"

_SET_NAMES = (
    "inline_script_hashes",
    "inline_style_hashes",
    "ext_script_hashes",
    "ext_style_hashes",
)
_PER_PAGE = "per_page_sri_hashes"
_PER_RESOURCE = "per_resource_sri_hashes"

_NESTED_EXTENSIONS: dict[str, Category] = {
    ".js": "scripts",
    ".mjs": "scripts",
    ".css": "styles",
}


# ── Snapshot & equality ─────────────────────────────────────────────────


def snapshot(h: HashCollection) -> dict[str, Any]:
    """Deterministic plain-data view of a collection (sorted lists and keys)."""
    data: dict[str, Any] = {name: sorted(getattr(h, name)) for name in _SET_NAMES}
    data[_PER_PAGE] = {
        page: {"scripts": sorted(hashes.scripts), "styles": sorted(hashes.styles)}
        for page, hashes in sorted(h.per_page_hashes.items())
    }
    data[_PER_RESOURCE] = {
        "scripts": dict(sorted(h.per_resource_hashes.scripts.items())),
        "styles": dict(sorted(h.per_resource_hashes.styles.items())),
    }
    return data


def _normalise(data: dict[str, Any]) -> dict[str, Any]:
    """Bring a loaded module into snapshot shape, filling in missing parts."""
    result: dict[str, Any] = {name: sorted(data.get(name) or []) for name in _SET_NAMES}
    result[_PER_PAGE] = {
        page: {
            "scripts": sorted((hashes or {}).get("scripts") or []),
            "styles": sorted((hashes or {}).get("styles") or []),
        }
        for page, hashes in (data.get(_PER_PAGE) or {}).items()
    }
    resources = data.get(_PER_RESOURCE) or {}
    result[_PER_RESOURCE] = {
        "scripts": dict(resources.get("scripts") or {}),
        "styles": dict(resources.get("styles") or {}),
    }
    return result


def resource_hashes_equal(a: dict[str, Any], b: dict[str, Any]) -> bool:
    return a[_PER_RESOURCE] == b[_PER_RESOURCE]


def snapshots_equal(a: dict[str, Any], b: dict[str, Any]) -> bool:
    """Structural equality; dicts compare by key set, lists are pre-sorted."""
    return _normalise(a) == _normalise(b)


# ── Rendering ───────────────────────────────────────────────────────────


def _lit(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _render_list(items: list[str], indent: str) -> str:
    if not items:
        return "[]"
    inner = "".join(f"{indent}    {_lit(item)},\n" for item in items)
    return f"[\n{inner}{indent}]"


def _render_map(items: dict[str, str], indent: str) -> str:
    if not items:
        return "{}"
    inner = "".join(f"{indent}    {_lit(k)}: {_lit(v)},\n" for k, v in items.items())
    return f"{{\n{inner}{indent}}}"


def render_hashes_module(data: dict[str, Any]) -> str:
    """Render a snapshot as Python source."""
    out = [_HEADER]
    for name in _SET_NAMES:
        out.append(f"\n{name} = {_render_list(data[name], '')}\n")

    pages = data[_PER_PAGE]
    if pages:
        body = "".join(
            f"    {_lit(page)}: {{\n"
            f"        \"scripts\": {_render_list(hashes['scripts'], '        ')},\n"
            f"        \"styles\": {_render_list(hashes['styles'], '        ')},\n"
            f"    }},\n"
            for page, hashes in pages.items()
        )
        out.append(f"\n{_PER_PAGE} = {{\n{body}}}\n")
    else:
        out.append(f"\n{_PER_PAGE} = {{}}\n")

    resources = data[_PER_RESOURCE]
    out.append(
        f"\n{_PER_RESOURCE} = {{\n"
        f"    \"scripts\": {_render_map(resources['scripts'], '    ')},\n"
        f"    \"styles\": {_render_map(resources['styles'], '    ')},\n"
        f"}}\n"
    )
    return "".join(out)


# ── Loading ─────────────────────────────────────────────────────────────


def _invalid(path: Path, where: str, value: Any) -> HashesModuleError:
    return HashesModuleError(f"{path}: {where} is not a sha256 SRI hash: {value!r}")


def _check_hash_list(path: Path, where: str, values: Any) -> None:
    if not isinstance(values, (list, tuple, set)):
        raise HashesModuleError(f"{path}: {where} must be a list")
    for value in values:
        if not isinstance(value, str) or not is_valid_sri_hash(value):
            raise _invalid(path, where, value)


def _validate(path: Path, data: dict[str, Any]) -> None:
    """Reject any value a hand edit or a foreign tool could have broken."""
    for name in _SET_NAMES:
        _check_hash_list(path, name, data.get(name) or [])

    pages = data.get(_PER_PAGE) or {}
    if not isinstance(pages, dict):
        raise HashesModuleError(f"{path}: {_PER_PAGE} must be a dict")
    for page, hashes in pages.items():
        if not isinstance(hashes, dict):
            raise HashesModuleError(f"{path}: {_PER_PAGE}[{page!r}] must be a dict")
        for category in ("scripts", "styles"):
            _check_hash_list(path, f"{_PER_PAGE}[{page!r}][{category!r}]", hashes.get(category) or [])

    resources = data.get(_PER_RESOURCE) or {}
    if not isinstance(resources, dict):
        raise HashesModuleError(f"{path}: {_PER_RESOURCE} must be a dict")
    for category in ("scripts", "styles"):
        mapping = resources.get(category) or {}
        if not isinstance(mapping, dict):
            raise HashesModuleError(f"{path}: {_PER_RESOURCE}[{category!r}] must be a dict")
        for src, value in mapping.items():
            if not isinstance(src, str) or not isinstance(value, str) or not is_valid_sri_hash(value):
                raise _invalid(path, f"{_PER_RESOURCE}[{category!r}][{src!r}]", value)


def load_hashes_module(path: str | Path) -> dict[str, Any] | None:
    """Read a persisted hashes module. Returns None when it does not exist."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        tree = ast.parse(path.read_text(encoding="utf-8"), filename=str(path))
    except (OSError, SyntaxError) as exc:
        raise HashesModuleError(f"Unable to read hashes module {path}: {exc}") from exc

    known = set(_SET_NAMES) | {_PER_PAGE, _PER_RESOURCE}
    data: dict[str, Any] = {}
    for node in tree.body:
        if not isinstance(node, ast.Assign) or len(node.targets) != 1:
            continue
        target = node.targets[0]
        if not isinstance(target, ast.Name) or target.id not in known:
            continue
        try:
            data[target.id] = ast.literal_eval(node.value)
        except (ValueError, TypeError, SyntaxError) as exc:
            raise HashesModuleError(f"{path}: {target.id} is not a literal") from exc
    _validate(path, data)
    return data


def load_global_hash_table(path: str | Path) -> GlobalHashTable:
    """Build the dynamic-mode lookup table from a persisted module."""
    data = load_hashes_module(path)
    if data is None:
        logger.warning("hashes_module_missing", path=str(path))
        return GlobalHashTable()
    resources = _normalise(data)[_PER_RESOURCE]
    table = GlobalHashTable(scripts=resources["scripts"], styles=resources["styles"])
    logger.info("global_hashes_loaded", path=str(path), scripts=len(table.scripts), styles=len(table.styles))
    return table


# ── Writing ─────────────────────────────────────────────────────────────


def generate_hashes_module(h: HashCollection, path: str | Path, enable_middleware: bool) -> bool:
    """Write ``h`` to ``path`` unless the persisted version is identical.

    Returns True when the file was (re)written.
    """
    path = Path(path)
    current = snapshot(h)
    previous = load_hashes_module(path)

    resources_changed = False
    if previous is not None:
        previous = _normalise(previous)
        resources_changed = not resource_hashes_equal(current, previous)
        if not resources_changed and snapshots_equal(current, previous):
            logger.debug("hashes_module_unchanged", path=str(path))
            return False

    if resources_changed and enable_middleware:
        logger.warning(
            "sri_resource_hashes_changed",
            path=str(path),
            hint="Static resources used by dynamic pages changed. Run the build step again.",
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_hashes_module(current), encoding="utf-8")
    logger.info("hashes_module_written", path=str(path))
    return True


# ── Seeding ─────────────────────────────────────────────────────────────


async def seed_allow_listed_resources(
    h: HashCollection,
    loader,
    scripts: list[str] | tuple[str, ...] = (),
    styles: list[str] | tuple[str, ...] = (),
) -> None:
    """Fetch and hash operator allow-listed URLs so dynamic pages can use them."""
    for category, urls in (("scripts", scripts), ("styles", styles)):
        for url in urls:
            sri_hash = h.per_resource_hashes.get(category, url)
            if sri_hash is None:
                sri_hash = generate_sri_hash(await loader.load(url))
                h.cache_resource(category, url, sri_hash)
            h.add_external(category, sri_hash)


def scan_for_nested_resources(h: HashCollection, root_dir: str | Path) -> int:
    """Hash build-output scripts/styles that no HTML page referenced directly.

    Bundler chunks are only imported from other scripts, so they never show up
    while scanning the pages. Keys are root-relative (``/assets/chunk.js``).
    Returns the number of newly hashed files.
    """
    root = Path(root_dir)
    if not root.is_dir():
        return 0
    added = 0
    for file_path in sorted(root.rglob("*")):
        category = _NESTED_EXTENSIONS.get(file_path.suffix)
        if category is None or not file_path.is_file():
            continue
        key = "/" + file_path.relative_to(root).as_posix()
        if h.per_resource_hashes.get(category, key) is not None:
            continue
        sri_hash = generate_sri_hash(file_path.read_bytes())
        h.add_external(category, sri_hash)
        h.cache_resource(category, key, sri_hash)
        added += 1
    logger.debug("nested_resources_scanned", root=str(root), added=added)
    return added


def ensure_provisional_hashes_module(path: str | Path, public_dir: str | Path) -> bool:
    """Write a provisional module from ``public_dir`` if none exists yet.

    It lacks hashes for assets produced by the build itself, but lets dynamic
    mode validate public files before the first full build.
    """
    if Path(path).exists():
        return False
    h = HashCollection()
    scan_for_nested_resources(h, public_dir)
    return generate_hashes_module(h, path, enable_middleware=False)
