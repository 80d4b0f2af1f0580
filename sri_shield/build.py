"""Static build: rewrite every page in a dist directory and persist the hashes."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog

from sri_shield.config.loader import ShieldSettings
from sri_shield.core.collection import HashCollection
from sri_shield.core.persistence import (
    generate_hashes_module,
    scan_for_nested_resources,
    seed_allow_listed_resources,
)
from sri_shield.core.resources import ResourceLoader
from sri_shield.core.scanner import rewrite_static_page
from sri_shield.providers.netlify import (
    build_netlify_headers,
    merge_netlify_headers,
    read_netlify_headers,
    serialise_netlify_headers,
)
from sri_shield.providers.vercel import (
    build_vercel_config,
    merge_vercel_config,
    read_vercel_config,
    serialise_vercel_config,
)

logger = structlog.get_logger()


@dataclass
class BuildReport:
    pages: int = 0
    pages_rewritten: int = 0
    nested_resources: int = 0
    hashes_module_written: bool = False
    provider_config: Path | None = None


async def process_html_file(
    file_path: Path,
    dist_dir: Path,
    h: HashCollection,
    loader: ResourceLoader,
    settings: ShieldSettings,
) -> bool:
    """Rewrite one page in place. Returns True when its content changed."""
    content = file_path.read_text(encoding="utf-8")
    result = await rewrite_static_page(
        content,
        file_path.relative_to(dist_dir).as_posix(),
        h,
        loader,
        allow_inline_scripts=settings.allow_inline_scripts,
        allow_inline_styles=settings.allow_inline_styles,
    )
    if result.content == content:
        return False
    file_path.write_text(result.content, encoding="utf-8")
    return True


def write_provider_config(h: HashCollection, settings: ShieldSettings) -> Path | None:
    """Merge generated per-page headers into the provider's existing config."""
    if settings.provider == "netlify":
        path = settings.netlify_headers_path
        base = read_netlify_headers(path)
        patch = build_netlify_headers(h.per_page_hashes, settings.csp_defaults, indent_with=base.indent_with)
        merged = merge_netlify_headers(base, patch)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(serialise_netlify_headers(merged), encoding="utf-8")
    elif settings.provider == "vercel":
        path = settings.vercel_config_path
        base = read_vercel_config(path)
        patch = build_vercel_config(h.per_page_hashes, settings.csp_defaults, settings.trailing_slash)
        merged = merge_vercel_config(base, patch)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(serialise_vercel_config(merged), encoding="utf-8")
    else:
        return None
    logger.info("provider_config_written", provider=settings.provider, path=str(path))
    return path


async def process_static_files(
    settings: ShieldSettings,
    client: httpx.AsyncClient | None = None,
) -> BuildReport:
    """Run the whole static pipeline over ``settings.dist_dir``.

    Pages are processed one at a time; a resource that cannot be read or
    fetched aborts the build with ResourceResolutionError.
    """
    dist_dir = Path(settings.dist_dir).resolve()
    if not dist_dir.is_dir():
        raise FileNotFoundError(f"dist directory not found: {dist_dir}")

    report = BuildReport()
    h = HashCollection()

    async with ResourceLoader(dist_dir, client=client, timeout=settings.fetch_timeout) as loader:
        await seed_allow_listed_resources(
            h, loader, settings.scripts_allow_list_urls, settings.styles_allow_list_urls,
        )
        for file_path in sorted(dist_dir.rglob("*.html")):
            if not file_path.is_file():
                continue
            report.pages += 1
            if await process_html_file(file_path, dist_dir, h, loader, settings):
                report.pages_rewritten += 1

    report.nested_resources = scan_for_nested_resources(h, dist_dir)

    if settings.hashes_module:
        report.hashes_module_written = generate_hashes_module(
            h, settings.hashes_module, settings.enable_middleware,
        )

    report.provider_config = write_provider_config(h, settings)

    logger.info(
        "static_build_processed",
        dist_dir=str(dist_dir),
        pages=report.pages,
        rewritten=report.pages_rewritten,
        nested=report.nested_resources,
    )
    return report
