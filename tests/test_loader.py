"""Tests for module resolution and loading."""

import httpx
import pytest

from sandterm.loader import CDN_ROOT, LoadError, ModuleLoader, resolve


class TestResolve:
    """Tests for spec resolution."""

    def test_alias(self):
        assert resolve("lodash") == "https://cdn.jsdelivr.net/npm/lodash@latest/lodash.min.js"
        assert resolve("rxjs") == f"{CDN_ROOT}rxjs@7/dist/bundles/rxjs.umd.min.js"

    def test_unknown_name(self):
        assert resolve("some-unknown-pkg") == "https://cdn.jsdelivr.net/npm/some-unknown-pkg@latest"

    def test_whitespace_is_stripped(self):
        assert resolve("  lodash ") == resolve("lodash")

    def test_locators_pass_through(self):
        for spec in ("https://example.com/m.py", "/abs/m.py", "./m.py", "../m.py"):
            assert resolve(spec) == spec


class TestModuleLoader:
    """Tests for fetching and executing modules."""

    def test_load_file(self, tmp_path):
        module = tmp_path / "mod.py"
        module.write_text("answer = 42\n")
        namespace = {}

        locator = ModuleLoader().load(str(module), namespace)

        assert locator == str(module)
        assert namespace["answer"] == 42

    def test_missing_file(self, tmp_path):
        with pytest.raises(LoadError) as info:
            ModuleLoader().load(str(tmp_path / "missing.py"), {})

        assert isinstance(info.value.cause, FileNotFoundError)

    def test_syntax_error(self, tmp_path):
        module = tmp_path / "bad.py"
        module.write_text("def (:\n")

        with pytest.raises(LoadError) as info:
            ModuleLoader().load(str(module), {})

        assert isinstance(info.value.cause, SyntaxError)

    def test_module_calling_exit(self, tmp_path):
        module = tmp_path / "quits.py"
        module.write_text("import sys\nsys.exit(0)\n")

        with pytest.raises(LoadError) as info:
            ModuleLoader().load(str(module), {})

        assert isinstance(info.value.cause, SystemExit)

    def test_load_url(self):
        requested = []

        def handler(request):
            requested.append(str(request.url))
            return httpx.Response(200, text="greeting = 'hi'\n")

        loader = ModuleLoader(client=httpx.Client(transport=httpx.MockTransport(handler)))
        namespace = {}

        loader.load("https://example.com/greet.py", namespace)
        loader.close()

        assert requested == ["https://example.com/greet.py"]
        assert namespace["greeting"] == "hi"

    def test_http_error(self):
        def handler(request):
            return httpx.Response(404)

        loader = ModuleLoader(client=httpx.Client(transport=httpx.MockTransport(handler)))

        with pytest.raises(LoadError) as info:
            loader.load("https://example.com/missing.py", {})

        assert isinstance(info.value.cause, httpx.HTTPStatusError)
        assert info.value.locator == "https://example.com/missing.py"
