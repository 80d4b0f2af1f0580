"""Hashes module persistence, loading and seeding tests."""

from __future__ import annotations

import pytest
from structlog.testing import capture_logs

from sri_shield.core.collection import HashCollection
from sri_shield.core.hashing import generate_sri_hash
from sri_shield.core.persistence import (
    ensure_provisional_hashes_module,
    generate_hashes_module,
    load_global_hash_table,
    load_hashes_module,
    render_hashes_module,
    scan_for_nested_resources,
    seed_allow_listed_resources,
    snapshot,
    snapshots_equal,
)
from sri_shield.errors import HashesModuleError

H1 = generate_sri_hash("one")
H2 = generate_sri_hash("two")
H3 = generate_sri_hash("three")


def _collection() -> HashCollection:
    h = HashCollection()
    h.add_inline("scripts", H1)
    h.add_external("styles", H2)
    h.cache_resource("styles", "/site.css", H2)
    h.page("index.html").add("scripts", H1)
    h.page("index.html").add("styles", H2)
    h.page("about/index.html")
    return h


class TestRender:
    def test_header_and_names(self):
        source = render_hashes_module(snapshot(HashCollection()))
        assert source.startswith("# Do not edit this file manually\n")
        for name in (
            "inline_script_hashes",
            "inline_style_hashes",
            "ext_script_hashes",
            "ext_style_hashes",
            "per_page_sri_hashes",
            "per_resource_sri_hashes",
        ):
            assert f"\n{name} = " in source

    def test_snapshot_is_sorted(self):
        h = HashCollection()
        h.add_inline("scripts", H3)
        h.add_inline("scripts", H1)
        h.add_inline("scripts", H2)
        assert snapshot(h)["inline_script_hashes"] == sorted([H1, H2, H3])

    def test_deterministic(self):
        assert render_hashes_module(snapshot(_collection())) == render_hashes_module(snapshot(_collection()))


class TestRoundTrip:
    def test_write_then_load(self, tmp_path):
        path = tmp_path / "generated" / "sri.py"
        h = _collection()
        assert generate_hashes_module(h, path, enable_middleware=False) is True
        loaded = load_hashes_module(path)
        assert snapshots_equal(loaded, snapshot(h))
        assert loaded["per_page_sri_hashes"]["about/index.html"] == {"scripts": [], "styles": []}

    def test_unchanged_collection_not_rewritten(self, tmp_path):
        path = tmp_path / "sri.py"
        generate_hashes_module(_collection(), path, enable_middleware=False)
        path.write_text(path.read_text() + "\n# trailing note\n")
        assert generate_hashes_module(_collection(), path, enable_middleware=False) is False
        assert path.read_text().endswith("# trailing note\n")

    def test_changed_collection_rewritten(self, tmp_path):
        path = tmp_path / "sri.py"
        generate_hashes_module(_collection(), path, enable_middleware=False)
        h = _collection()
        h.add_inline("styles", H3)
        assert generate_hashes_module(h, path, enable_middleware=False) is True
        assert load_hashes_module(path)["inline_style_hashes"] == [H3]

    def test_resource_change_warns_in_middleware_mode(self, tmp_path):
        path = tmp_path / "sri.py"
        generate_hashes_module(_collection(), path, enable_middleware=True)
        h = _collection()
        h.cache_resource("scripts", "/app.js", H3)
        with capture_logs() as logs:
            generate_hashes_module(h, path, enable_middleware=True)
        assert "sri_resource_hashes_changed" in [log["event"] for log in logs]

    def test_resource_change_silent_without_middleware(self, tmp_path):
        path = tmp_path / "sri.py"
        generate_hashes_module(_collection(), path, enable_middleware=False)
        h = _collection()
        h.cache_resource("scripts", "/app.js", H3)
        with capture_logs() as logs:
            generate_hashes_module(h, path, enable_middleware=False)
        assert "sri_resource_hashes_changed" not in [log["event"] for log in logs]


class TestLoad:
    def test_missing_returns_none(self, tmp_path):
        assert load_hashes_module(tmp_path / "nope.py") is None

    def test_module_is_never_executed(self, tmp_path):
        path = tmp_path / "sri.py"
        marker = tmp_path / "executed"
        path.write_text(
            f"open({str(marker)!r}, 'w').close()\n"
            f"ext_script_hashes = [{H1!r}]\n"
        )
        data = load_hashes_module(path)
        assert data == {"ext_script_hashes": [H1]}
        assert not marker.exists()

    def test_non_literal_value_rejected(self, tmp_path):
        path = tmp_path / "sri.py"
        path.write_text("inline_script_hashes = sorted(['a'])\n")
        with pytest.raises(HashesModuleError):
            load_hashes_module(path)

    def test_syntax_error_rejected(self, tmp_path):
        path = tmp_path / "sri.py"
        path.write_text("inline_script_hashes = [\n")
        with pytest.raises(HashesModuleError):
            load_hashes_module(path)

    @pytest.mark.parametrize(
        "source",
        [
            "per_resource_sri_hashes = {'scripts': {'/app.js': 'sha256-forged'}, 'styles': {}}\n",
            f"per_resource_sri_hashes = {{'scripts': {{}}, 'styles': {{'/a.css': {H1.replace('sha256', 'sha384')!r}}}}}\n",
            "per_resource_sri_hashes = {'scripts': {'/app.js': 1}}\n",
            "per_resource_sri_hashes = {'scripts': ['/app.js']}\n",
            "inline_style_hashes = ['not-a-hash']\n",
            "ext_script_hashes = 'sha256-x'\n",
            "per_page_sri_hashes = {'index.html': {'scripts': ['nope'], 'styles': []}}\n",
        ],
    )
    def test_invalid_hash_values_rejected(self, tmp_path, source):
        path = tmp_path / "sri.py"
        path.write_text(source)
        with pytest.raises(HashesModuleError):
            load_hashes_module(path)

    def test_invalid_value_fails_global_table_load(self, tmp_path):
        path = tmp_path / "sri.py"
        path.write_text(f"per_resource_sri_hashes = {{'scripts': {{'/app.js': {H1 + 'x'!r}}}}}\n")
        with pytest.raises(HashesModuleError, match="/app.js"):
            load_global_hash_table(path)

    def test_global_table_from_module(self, tmp_path):
        path = tmp_path / "sri.py"
        generate_hashes_module(_collection(), path, enable_middleware=False)
        table = load_global_hash_table(path)
        assert table.get("styles", "/site.css") == H2
        assert len(table) == 1

    def test_global_table_missing_module(self, tmp_path):
        with capture_logs() as logs:
            table = load_global_hash_table(tmp_path / "nope.py")
        assert len(table) == 0
        assert logs[0]["event"] == "hashes_module_missing"


class TestNestedResources:
    def test_hashes_unreferenced_build_files(self, tmp_path):
        (tmp_path / "assets").mkdir()
        (tmp_path / "assets" / "chunk.js").write_text("export const a = 1")
        (tmp_path / "assets" / "worker.mjs").write_text("self.onmessage = null")
        (tmp_path / "assets" / "extra.css").write_text("a{}")
        (tmp_path / "robots.txt").write_text("User-agent: *")

        h = HashCollection()
        assert scan_for_nested_resources(h, tmp_path) == 3
        assert h.per_resource_hashes.get("scripts", "/assets/chunk.js") == generate_sri_hash("export const a = 1")
        assert h.per_resource_hashes.get("scripts", "/assets/worker.mjs") is not None
        assert h.per_resource_hashes.get("styles", "/assets/extra.css") == generate_sri_hash("a{}")
        assert generate_sri_hash("a{}") in h.ext_style_hashes

    def test_known_resources_not_rehashed(self, tmp_path):
        (tmp_path / "app.js").write_text("changed on disk")
        h = HashCollection()
        h.cache_resource("scripts", "/app.js", H1)
        assert scan_for_nested_resources(h, tmp_path) == 0
        assert h.per_resource_hashes.get("scripts", "/app.js") == H1

    def test_missing_directory(self, tmp_path):
        assert scan_for_nested_resources(HashCollection(), tmp_path / "missing") == 0


class TestProvisionalModule:
    def test_written_from_public_dir(self, tmp_path):
        public = tmp_path / "public"
        (public / "js").mkdir(parents=True)
        (public / "js" / "analytics.js").write_text("track()")
        path = tmp_path / "sri.py"

        assert ensure_provisional_hashes_module(path, public) is True
        table = load_global_hash_table(path)
        assert table.get("scripts", "/js/analytics.js") == generate_sri_hash("track()")

    def test_existing_module_left_alone(self, tmp_path):
        path = tmp_path / "sri.py"
        path.write_text("# hand written\n")
        assert ensure_provisional_hashes_module(path, tmp_path) is False
        assert path.read_text() == "# hand written\n"


class TestSeeding:
    @pytest.mark.asyncio
    async def test_allow_listed_urls_hashed(self, fake_loader):
        loader = fake_loader({
            "https://cdn.example.com/lib.js": b"lib",
            "https://fonts.example.com/font.css": b"@font-face{}",
        })
        h = HashCollection()
        await seed_allow_listed_resources(
            h, loader,
            scripts=["https://cdn.example.com/lib.js"],
            styles=["https://fonts.example.com/font.css"],
        )
        assert h.per_resource_hashes.get("scripts", "https://cdn.example.com/lib.js") == generate_sri_hash(b"lib")
        assert h.ext_style_hashes == {generate_sri_hash(b"@font-face{}")}
        assert h.per_page_hashes == {}

    @pytest.mark.asyncio
    async def test_already_known_url_not_fetched(self, fake_loader):
        loader = fake_loader({})
        h = HashCollection()
        h.cache_resource("scripts", "https://cdn.example.com/lib.js", H1)
        await seed_allow_listed_resources(h, loader, scripts=["https://cdn.example.com/lib.js"])
        assert loader.calls == []
        assert h.ext_script_hashes == {H1}
