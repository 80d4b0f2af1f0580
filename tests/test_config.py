"""Config loading tests."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError
from structlog.testing import capture_logs

from sri_shield.config import loader
from sri_shield.config.loader import ShieldSettings, get_settings, load_settings
from sri_shield.context import build_context
from sri_shield.core.scanner import InlinePolicy


class TestShieldSettings:
    """Test YAML + env var config loading."""

    def test_default_values(self, monkeypatch):
        monkeypatch.delenv("SRI_SHIELD_LOG_LEVEL", raising=False)
        monkeypatch.delenv("SRI_SHIELD_UPSTREAM_URL", raising=False)
        settings = ShieldSettings()
        assert settings.dist_dir == "dist"
        assert settings.enable_static is True
        assert settings.enable_middleware is False
        assert settings.allow_inline_scripts is InlinePolicy.ALL
        assert settings.provider is None
        assert settings.listen_port == 8080
        assert settings.log_level == "info"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SRI_SHIELD_DIST_DIR", "build")
        monkeypatch.setenv("SRI_SHIELD_ALLOW_INLINE_STYLES", "static-only")
        settings = ShieldSettings()
        assert settings.dist_dir == "build"
        assert settings.allow_inline_styles is InlinePolicy.STATIC_ONLY

    def test_list_from_env(self, monkeypatch):
        monkeypatch.setenv("SRI_SHIELD_SCRIPTS_ALLOW_LIST_URLS", '["https://cdn.example.com/a.js"]')
        assert ShieldSettings().scripts_allow_list_urls == ["https://cdn.example.com/a.js"]

    def test_invalid_policy_rejected(self):
        with pytest.raises(ValidationError):
            ShieldSettings(allow_inline_scripts="sometimes")

    def test_invalid_provider_rejected(self):
        with pytest.raises(ValidationError):
            ShieldSettings(provider="heroku")

    def test_csp_defaults(self):
        assert ShieldSettings(csp_directives={"a": "b"}).csp_defaults == {"a": "b"}
        assert ShieldSettings(enable_csp=False).csp_defaults is None

    def test_provider_paths(self):
        settings = ShieldSettings(dist_dir="out")
        assert settings.netlify_headers_path == Path("out") / "_headers"
        assert settings.vercel_config_path == Path(".vercel") / "output" / "config.json"
        assert ShieldSettings(netlify_headers_file="x/_h").netlify_headers_path == Path("x/_h")


class TestLoadSettings:
    def test_packaged_defaults(self):
        settings = load_settings()
        assert settings.csp_directives["default-src"] == "'none'"
        assert settings.csp_directives["frame-ancestors"] == "'none'"
        assert settings.trailing_slash == "ignore"
        assert settings.config_file.endswith("defaults.yaml")

    def test_custom_yaml(self, tmp_path):
        path = tmp_path / "shield.yaml"
        path.write_text("dist_dir: site\nprovider: netlify\nallow_inline_scripts: disabled\n")
        settings = load_settings(path)
        assert settings.dist_dir == "site"
        assert settings.provider == "netlify"
        assert settings.allow_inline_scripts is InlinePolicy.DISABLED

    def test_env_beats_yaml(self, tmp_path, monkeypatch):
        path = tmp_path / "shield.yaml"
        path.write_text("dist_dir: site\n")
        monkeypatch.setenv("SRI_SHIELD_DIST_DIR", "from-env")
        assert load_settings(path).dist_dir == "from-env"

    def test_config_file_from_env(self, tmp_path, monkeypatch):
        path = tmp_path / "shield.yaml"
        path.write_text("public_dir: static\n")
        monkeypatch.setenv("SRI_SHIELD_CONFIG_FILE", str(path))
        assert load_settings().public_dir == "static"

    def test_missing_yaml_falls_back_to_defaults(self, tmp_path):
        with capture_logs() as logs:
            settings = load_settings(tmp_path / "missing.yaml")
        assert settings.dist_dir == "dist"
        assert logs[0]["event"] == "config_file_not_found"

    def test_hashes_module_without_static_warns(self, tmp_path):
        path = tmp_path / "shield.yaml"
        path.write_text("enable_static: false\nhashes_module: sri.py\n")
        with capture_logs() as logs:
            load_settings(path)
        assert "hashes_module_ignored" in [log["event"] for log in logs]

    def test_get_settings_caches(self):
        assert loader._settings is None
        first = get_settings()
        assert get_settings() is first


class TestBuildContext:
    def test_no_hashes_module(self):
        context = build_context(ShieldSettings())
        assert len(context.global_hashes) == 0
        assert context.csp_directives == {}

    def test_static_disabled_ignores_module(self, tmp_path):
        settings = ShieldSettings(enable_static=False, hashes_module=str(tmp_path / "sri.py"))
        context = build_context(settings)
        assert len(context.global_hashes) == 0
        assert not (tmp_path / "sri.py").exists()

    def test_provisional_module_warns(self, tmp_path):
        settings = ShieldSettings(hashes_module=str(tmp_path / "sri.py"), public_dir=str(tmp_path / "public"))
        with capture_logs() as logs:
            build_context(settings)
        assert "hashes_module_provisional" in [log["event"] for log in logs]
        assert (tmp_path / "sri.py").exists()
