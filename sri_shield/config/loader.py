"""YAML + env var config loading with pydantic-settings."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from sri_shield.core.scanner import InlinePolicy

logger = structlog.get_logger()

_DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"
_CONFIG_FILE_ENV = "SRI_SHIELD_CONFIG_FILE"


def _load_yaml_defaults(path: Path) -> dict[str, Any]:
    """Load YAML config file, returning empty dict on failure."""
    if not path.exists():
        logger.warning("config_file_not_found", path=str(path))
        return {}
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


class ShieldSettings(BaseSettings):
    """Settings loaded from a YAML file, overridden by env vars."""

    model_config = SettingsConfigDict(
        env_prefix="SRI_SHIELD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_file: str = str(_DEFAULTS_PATH)
    log_level: str = "info"
    log_json: bool = False

    # Static builds
    dist_dir: str = "dist"
    public_dir: str = "public"
    hashes_module: str | None = None
    enable_static: bool = True
    fetch_timeout: float = 30.0

    # Dynamic (middleware) mode
    enable_middleware: bool = False

    allow_inline_scripts: InlinePolicy = InlinePolicy.ALL
    allow_inline_styles: InlinePolicy = InlinePolicy.ALL

    # Remote resources trusted in dynamic pages without being embedded statically
    scripts_allow_list_urls: list[str] = []
    styles_allow_list_urls: list[str] = []

    # Content-Security-Policy
    enable_csp: bool = True
    csp_directives: dict[str, str] = {}

    # Hosting provider header config
    provider: Literal["netlify", "vercel"] | None = None
    netlify_headers_file: str | None = None
    vercel_config_file: str | None = None
    trailing_slash: Literal["always", "never", "ignore"] = "ignore"

    # Reverse proxy
    upstream_url: str = "http://localhost:4321"
    listen_port: int = 8080
    proxy_timeout: float = 30.0
    max_body_bytes: int = 10 * 1024 * 1024

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings,
    ):
        # YAML values arrive as init kwargs; env vars and .env win over them
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @property
    def csp_defaults(self) -> dict[str, str] | None:
        """Configured CSP directives, or None when CSP generation is disabled."""
        return dict(self.csp_directives) if self.enable_csp else None

    @property
    def netlify_headers_path(self) -> Path:
        return Path(self.netlify_headers_file or Path(self.dist_dir) / "_headers")

    @property
    def vercel_config_path(self) -> Path:
        return Path(self.vercel_config_file or Path(".vercel") / "output" / "config.json")


_settings: ShieldSettings | None = None


def get_settings() -> ShieldSettings:
    """Get or create the singleton settings instance."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def load_settings(config_file: str | Path | None = None) -> ShieldSettings:
    """Load settings from YAML (``config_file`` or the packaged defaults) plus env vars."""
    global _settings
    path = Path(config_file or os.environ.get(_CONFIG_FILE_ENV) or _DEFAULTS_PATH)
    values = _load_yaml_defaults(path)
    values["config_file"] = str(path)
    _settings = ShieldSettings(**values)

    if _settings.hashes_module and not _settings.enable_static:
        logger.warning("hashes_module_ignored", reason="enable_static is false")
    logger.debug("config_loaded", config_file=str(path), provider=_settings.provider)
    return _settings
