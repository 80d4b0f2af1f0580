"""Command line interface tests."""

from __future__ import annotations

import os
from unittest.mock import patch

from sri_shield.__main__ import main
from sri_shield.core.collection import HashCollection
from sri_shield.core.hashing import generate_sri_hash
from sri_shield.core.persistence import generate_hashes_module, load_hashes_module
from sri_shield.middleware.csp_builder import parse_csp


class TestBuildCommand:
    def test_build(self, tmp_path, capsys):
        dist = tmp_path / "dist"
        dist.mkdir()
        (dist / "index.html").write_text('<script src="/app.js"></script><script>go()</script>')
        (dist / "app.js").write_text("app")
        module = tmp_path / "sri.py"

        code = main(["build", "--dist-dir", str(dist), "--hashes-module", str(module), "--provider", "netlify"])

        assert code == 0
        out = capsys.readouterr().out
        assert "Pages scanned:      1" in out
        assert "(written)" in out
        assert f'integrity="{generate_sri_hash("app")}"' in (dist / "index.html").read_text()
        assert load_hashes_module(module)["inline_script_hashes"] == [generate_sri_hash("go()")]
        assert (dist / "_headers").read_text().startswith("/\n\tContent-Security-Policy: ")

    def test_build_missing_dist(self, tmp_path, capsys):
        code = main(["build", "--dist-dir", str(tmp_path / "nope")])
        assert code == 1
        assert "Error:" in capsys.readouterr().err

    def test_build_disabled(self, tmp_path, capsys):
        config = tmp_path / "shield.yaml"
        config.write_text("enable_static: false\n")
        assert main(["--config", str(config), "build"]) == 0
        assert "disabled" in capsys.readouterr().out

    def test_invalid_config(self, tmp_path, capsys):
        config = tmp_path / "shield.yaml"
        config.write_text("allow_inline_scripts: sometimes\n")
        assert main(["--config", str(config), "build"]) == 1
        assert "invalid configuration" in capsys.readouterr().err


class TestCspCommand:
    def test_prints_page_csp(self, tmp_path, capsys):
        h = HashCollection()
        h.page("blog/index.html").add("styles", generate_sri_hash("css"))
        module = tmp_path / "sri.py"
        generate_hashes_module(h, module, enable_middleware=False)

        assert main(["csp", str(module), "blog/index.html"]) == 0
        directives = parse_csp(capsys.readouterr().out.strip())
        assert directives["style-src"] == f"'self' '{generate_sri_hash('css')}'"
        assert directives["script-src"] == "'none'"
        assert directives["frame-ancestors"] == "'none'"

    def test_unknown_page(self, tmp_path, capsys):
        module = tmp_path / "sri.py"
        generate_hashes_module(HashCollection(), module, enable_middleware=False)
        assert main(["csp", str(module), "nope.html"]) == 1
        assert "no hashes recorded" in capsys.readouterr().err

    def test_missing_module(self, tmp_path):
        assert main(["csp", str(tmp_path / "nope.py"), "index.html"]) == 1


class TestServeCommand:
    def test_runs_uvicorn_on_listen_port(self):
        with patch("sri_shield.__main__.uvicorn.run") as run:
            assert main(["serve"]) == 0
        run.assert_called_once()
        assert run.call_args.args == ("sri_shield.main:app",)
        assert run.call_args.kwargs["host"] == "0.0.0.0"
        assert run.call_args.kwargs["port"] == 8080

    def test_host_and_port_override(self):
        with patch("sri_shield.__main__.uvicorn.run") as run:
            assert main(["serve", "--host", "127.0.0.1", "--port", "9000"]) == 0
        assert run.call_args.kwargs["host"] == "127.0.0.1"
        assert run.call_args.kwargs["port"] == 9000

    def test_config_passed_to_app(self, tmp_path, monkeypatch):
        config = tmp_path / "shield.yaml"
        config.write_text("listen_port: 9100\n")
        # Recorded so the value serve writes is rolled back afterwards
        monkeypatch.setenv("SRI_SHIELD_CONFIG_FILE", "")
        with patch("sri_shield.__main__.uvicorn.run") as run:
            assert main(["--config", str(config), "serve"]) == 0
        assert run.call_args.kwargs["port"] == 9100
        assert os.environ["SRI_SHIELD_CONFIG_FILE"] == str(config)


def test_no_command(capsys):
    assert main([]) == 1
