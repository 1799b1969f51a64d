"""
Tree-sitter Analyzer Tests

Runs the real grammars over small Python and JavaScript sources. Skipped
when tree-sitter-language-pack is not installed.
"""
import pytest

pytest.importorskip("tree_sitter_language_pack")

from mnemo.analyzer.treesitter import (  # noqa: E402
    CLASS_CONFIDENCE,
    FUNCTION_CONFIDENCE,
    TreeSitterAnalyzer,
    naming_style,
)

PYTHON_SOURCE = '''class Greeter:
    def greet_user(self, name):
        if name:
            return f"hi {name}"
        return "hi"


def load_config(path):
    return path


def test_greet_user():
    assert Greeter().greet_user("a") == "hi a"
'''

JS_SOURCE = '''class UserStore {
  findUser(id) {
    return this.users[id];
  }
}

function loadConfig(path) {
  return path;
}
'''


def by_name(concepts):
    return {c["name"]: c for c in concepts}


@pytest.fixture
def mixed_project(tmp_path):
    root = tmp_path / "mixed"
    (root / "web").mkdir(parents=True)
    (root / "app.py").write_text(PYTHON_SOURCE)
    (root / "web" / "store.js").write_text(JS_SOURCE)
    return root


@pytest.fixture
def feature_project(tmp_path):
    root = tmp_path / "shop_project"
    cart = root / "src" / "shop" / "cart"
    billing = root / "src" / "shop" / "billing"
    cart.mkdir(parents=True)
    billing.mkdir(parents=True)
    (root / "src" / "shop" / "__init__.py").write_text("")
    (cart / "__init__.py").write_text("")
    (cart / "totals.py").write_text("from shop.billing import charge\n\n\ndef cart_total(items):\n    return sum(items)\n")
    (billing / "billing.py").write_text("def charge(amount):\n    return amount\n")
    return root


class TestNamingStyle:

    def test_styles(self):
        assert naming_style("load_config") == "snake_case"
        assert naming_style("_private_helper") == "snake_case"
        assert naming_style("loadConfig") == "camelCase"
        assert naming_style("UserStore") == "PascalCase"

    def test_unclassified(self):
        assert naming_style("load") is None
        assert naming_style("LOAD_ALL") is None


class TestConcepts:
    """analyze_file over real grammars."""

    @pytest.mark.asyncio
    async def test_python_symbols(self):
        analyzer = await TreeSitterAnalyzer.create()
        concepts = by_name(await analyzer.analyze_file("/repo/app.py", PYTHON_SOURCE))

        assert set(concepts) == {"Greeter", "greet_user", "load_config", "test_greet_user"}
        assert concepts["Greeter"]["type"] == "class"
        assert concepts["Greeter"]["confidence"] == CLASS_CONFIDENCE
        assert concepts["Greeter"]["line_range"] == {"start": 1, "end": 5}
        assert concepts["greet_user"]["type"] == "function"
        assert concepts["greet_user"]["confidence"] == FUNCTION_CONFIDENCE
        assert concepts["load_config"]["line_range"] == {"start": 8, "end": 9}
        assert concepts["load_config"]["file_path"] == "/repo/app.py"

    @pytest.mark.asyncio
    async def test_javascript_symbols(self):
        analyzer = await TreeSitterAnalyzer.create()
        concepts = by_name(await analyzer.analyze_file("/repo/store.js", JS_SOURCE))

        assert set(concepts) == {"UserStore", "findUser", "loadConfig"}
        assert concepts["UserStore"]["type"] == "class"
        assert concepts["findUser"]["type"] == "function"
        assert concepts["loadConfig"]["line_range"] == {"start": 7, "end": 9}

    @pytest.mark.asyncio
    async def test_unsupported_language_yields_nothing(self):
        analyzer = await TreeSitterAnalyzer.create()
        assert await analyzer.analyze_file("/repo/notes.txt", "def looks_like_code(): pass\n") == []


class TestPatterns:
    """Per-file pattern detection and project aggregation."""

    @pytest.mark.asyncio
    async def test_python_file_patterns(self):
        analyzer = await TreeSitterAnalyzer.create()
        patterns = {p["type"]: p for p in await analyzer.analyze_file_patterns("/repo/app.py", PYTHON_SOURCE)}

        assert set(patterns) == {"snake_case_function_naming", "PascalCase_class_naming", "testing"}
        assert patterns["snake_case_function_naming"]["frequency"] == 3
        assert patterns["snake_case_function_naming"]["confidence"] == 1.0
        assert patterns["testing"]["frequency"] == 1

    @pytest.mark.asyncio
    async def test_javascript_file_patterns(self):
        analyzer = await TreeSitterAnalyzer.create()
        patterns = {p["type"]: p for p in await analyzer.analyze_file_patterns("/repo/store.js", JS_SOURCE)}

        assert set(patterns) == {"camelCase_function_naming", "PascalCase_class_naming"}
        assert patterns["camelCase_function_naming"]["frequency"] == 2

    @pytest.mark.asyncio
    async def test_learn_patterns_aggregates_by_type(self, mixed_project):
        analyzer = await TreeSitterAnalyzer.create()
        learned = {p["id"]: p for p in await analyzer.learn_patterns(str(mixed_project))}

        assert set(learned) == {
            "ts_snake_case_function_naming",
            "ts_camelCase_function_naming",
            "ts_PascalCase_class_naming",
            "ts_testing",
        }
        classes = learned["ts_PascalCase_class_naming"]
        assert classes["frequency"] == 2
        assert classes["contexts"] == ["javascript", "python"]
        assert len(classes["examples"]) == 2
        assert learned["ts_testing"]["contexts"] == ["python"]

        # most frequent first
        frequencies = [p["frequency"] for p in await analyzer.extract_patterns(str(mixed_project))]
        assert frequencies == sorted(frequencies, reverse=True)


class TestCodebase:
    """Whole-project analysis and feature mapping."""

    @pytest.mark.asyncio
    async def test_analyze_codebase(self, mixed_project):
        analyzer = await TreeSitterAnalyzer.create()
        result = await analyzer.analyze_codebase(str(mixed_project))

        assert set(result["languages"]) == {"python", "javascript"}
        assert result["frameworks"] == []
        assert set(result["complexity"]) == {"cyclomatic", "cognitive", "lines"}
        assert result["complexity"]["cyclomatic"] > 1
        assert result["complexity"]["lines"] == PYTHON_SOURCE.count("\n") + JS_SOURCE.count("\n") + 2
        assert len(result["concepts"]) == 7

    @pytest.mark.asyncio
    async def test_learn_from_codebase(self, mixed_project):
        analyzer = await TreeSitterAnalyzer.create()
        concepts = await analyzer.learn_from_codebase(str(mixed_project))
        assert {c["file_path"] for c in concepts} == {
            str(mixed_project / "app.py"),
            str(mixed_project / "web" / "store.js"),
        }

    @pytest.mark.asyncio
    async def test_feature_map_under_src_package(self, feature_project):
        analyzer = await TreeSitterAnalyzer.create()
        features = {f["feature_name"]: f for f in await analyzer.build_feature_map(str(feature_project))}

        assert set(features) == {"cart", "billing"}
        cart = features["cart"]
        assert cart["primary_files"] == ["src/shop/cart/__init__.py"]
        assert cart["related_files"] == ["src/shop/cart/totals.py"]
        assert cart["dependencies"] == ["billing"]
        assert features["billing"]["primary_files"] == ["src/shop/billing/billing.py"]
        assert features["billing"]["dependencies"] == []
