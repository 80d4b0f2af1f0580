"""Resolve the bytes behind a resource reference during static builds."""

from __future__ import annotations

from pathlib import Path

import httpx
import structlog

from sri_shield.errors import ResourceResolutionError

logger = structlog.get_logger()


def is_remote(src: str) -> bool:
    """True for absolute http(s) URLs and protocol-relative references."""
    lower = src.lower()
    return lower.startswith(("http://", "https://")) or src.startswith("//")


def is_local(src: str) -> bool:
    """True for root-relative paths (``/assets/app.js``)."""
    return src.startswith("/") and not src.startswith("//")


class ResourceLoader:
    """Reads root-relative files from ``root_dir`` and fetches remote URLs.

    Usable as an async context manager; when no ``client`` is passed, one is
    created on entry and closed on exit.
    """

    def __init__(
        self,
        root_dir: str | Path,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.root_dir = Path(root_dir).resolve()
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    async def __aenter__(self) -> ResourceLoader:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self._timeout), follow_redirects=True)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def local_path(self, src: str) -> Path:
        """Map a root-relative reference to a file under ``root_dir``.

        Query strings and fragments are dropped. References escaping the root
        directory are rejected.
        """
        clean = src.split("?", 1)[0].split("#", 1)[0]
        path = (self.root_dir / clean.lstrip("/")).resolve()
        if path != self.root_dir and self.root_dir not in path.parents:
            raise ResourceResolutionError(src, "path escapes the root directory")
        return path

    async def read_local(self, src: str) -> bytes:
        path = self.local_path(src)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ResourceResolutionError(src, str(exc)) from exc

    async def fetch(self, url: str) -> bytes:
        if url.startswith("//"):
            url = f"https:{url}"
        if self._client is None:
            raise RuntimeError("ResourceLoader used outside of its context")
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("resource_fetch_failed", url=url, error=str(exc))
            raise ResourceResolutionError(url, str(exc)) from exc
        logger.debug("resource_fetched", url=url, size=len(resp.content))
        return resp.content

    async def load(self, src: str) -> bytes:
        """Return the raw bytes behind ``src`` (local or remote)."""
        if is_remote(src):
            return await self.fetch(src)
        if is_local(src):
            return await self.read_local(src)
        raise ResourceResolutionError(src, "unsupported resource reference")
