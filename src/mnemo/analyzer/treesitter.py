"""
Mnemo Tree-sitter Analyzer

Primary analyzer backed by tree-sitter grammars from
tree-sitter-language-pack. Implements both the SemanticAnalyzer and the
PatternLearner contracts. Parsing is CPU bound and runs in the default
executor; the engines still treat every call as untrusted.
"""

import asyncio
import logging
import re
import uuid
from collections import Counter, defaultdict
from pathlib import Path
from typing import Any, Optional

from mnemo.helpers.codebase import (
    detect_frameworks,
    detect_language,
    iter_source_files,
    should_skip_dir,
)

logger = logging.getLogger(__name__)

MAX_FILES = 2000
MAX_FILE_BYTES = 512 * 1024

CLASS_CONFIDENCE = 0.9
FUNCTION_CONFIDENCE = 0.85

# Our language names -> tree-sitter-language-pack grammar names
GRAMMARS = {
    "python": "python",
    "javascript": "javascript",
    "typescript": "typescript",
    "rust": "rust",
    "go": "go",
    "java": "java",
    "c": "c",
    "cpp": "cpp",
    "csharp": "csharp",
    "php": "php",
    "ruby": "ruby",
}

CLASS_NODES = {
    "class_definition", "class_declaration", "class_specifier",
    "interface_declaration", "struct_item", "trait_item", "enum_item",
    "struct_specifier", "type_spec", "class",
}
FUNCTION_NODES = {
    "function_definition", "function_declaration", "method_definition",
    "method_declaration", "function_item", "method",
}
BRANCH_NODES = {
    "if_statement", "elif_clause", "if_expression", "for_statement",
    "for_in_statement", "for_expression", "while_statement", "while_expression",
    "case_clause", "switch_case", "match_arm", "catch_clause", "except_clause",
    "conditional_expression", "ternary_expression", "boolean_operator",
}

NAMING_STYLES = [
    ("snake_case", re.compile(r"^_*[a-z][a-z0-9]*(?:_[a-z0-9]+)+$")),
    ("camelCase", re.compile(r"^_*[a-z][a-z0-9]*(?:[A-Z][a-z0-9]*)+$")),
    ("PascalCase", re.compile(r"^_*[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)*$")),
]

IMPORT_RE = re.compile(r"^\s*(?:from\s+(\S+)\s+import|import\s+(\S+)|use\s+(\S+)|.*require\(['\"]([^'\"]+))")


def naming_style(name: str) -> Optional[str]:
    for style, regex in NAMING_STYLES:
        if regex.match(name):
            return style
    return None


class TreeSitterAnalyzer:
    """Symbol extraction and pattern mining over tree-sitter syntax trees.

    Create with ``await TreeSitterAnalyzer.create()``; grammar packages are
    imported there so a missing install surfaces as an initialization
    failure the engines can fall back from.
    """

    def __init__(self):
        self._ts_pack = None
        self._parser_cls = None
        self._parsers: dict[str, Any] = {}

    @classmethod
    async def create(cls) -> "TreeSitterAnalyzer":
        analyzer = cls()
        await analyzer.initialize()
        return analyzer

    async def initialize(self) -> None:
        import tree_sitter_language_pack as ts_pack
        from tree_sitter import Parser

        self._ts_pack = ts_pack
        self._parser_cls = Parser
        logger.info("Tree-sitter analyzer initialized")

    def _parser_for(self, path: str):
        language = detect_language(path)
        grammar = GRAMMARS.get(language)
        if grammar is None:
            return None
        if grammar == "typescript" and path.endswith(".tsx"):
            grammar = "tsx"
        if grammar not in self._parsers:
            self._parsers[grammar] = self._parser_cls(self._ts_pack.get_language(grammar))
        return self._parsers[grammar]

    # =========================================================================
    # Tree walking
    # =========================================================================

    def _symbols(self, path: str, content: str) -> dict:
        """Parse one file into symbols plus complexity counters."""
        parser = self._parser_for(path)
        result = {"symbols": [], "branches": 0, "nested": 0, "lines": content.count("\n") + 1}
        if parser is None:
            return result
        source = content.encode("utf-8", errors="replace")
        tree = parser.parse(source)

        stack = [(tree.root_node, 0)]
        while stack:
            node, depth = stack.pop()
            node_type = node.type
            if node_type in CLASS_NODES or node_type in FUNCTION_NODES:
                name_node = node.child_by_field_name("name")
                if name_node is not None:
                    result["symbols"].append({
                        "name": name_node.text.decode("utf-8", errors="replace"),
                        "type": "class" if node_type in CLASS_NODES else "function",
                        "line_start": node.start_point[0] + 1,
                        "line_end": node.end_point[0] + 1,
                    })
            if node_type in BRANCH_NODES:
                result["branches"] += 1
                result["nested"] += depth
                depth += 1
            stack.extend((child, depth) for child in node.children)
        return result

    def _concepts(self, path: str, content: str, symbols: Optional[list[dict]] = None) -> list[dict]:
        if symbols is None:
            symbols = self._symbols(path, content)["symbols"]
        return [
            {
                "name": s["name"],
                "type": s["type"],
                "confidence": CLASS_CONFIDENCE if s["type"] == "class" else FUNCTION_CONFIDENCE,
                "file_path": path,
                "line_range": {"start": s["line_start"], "end": s["line_end"]},
            }
            for s in symbols
        ]

    def _iter_files(self, root: str):
        for i, path in enumerate(iter_source_files(root)):
            if i >= MAX_FILES:
                logger.info(f"Analysis of {root} capped at {MAX_FILES} files")
                return
            try:
                if path.stat().st_size > MAX_FILE_BYTES:
                    continue
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                logger.debug(f"Skipping {path}: {e}")
                continue
            yield str(path), content

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    # =========================================================================
    # SemanticAnalyzer
    # =========================================================================

    async def analyze_file(self, path: str, content: str) -> list[dict]:
        return await self._run(self._concepts, path, content)

    def _analyze_codebase(self, root: str) -> dict:
        languages: Counter = Counter()
        concepts = []
        branches = nested = lines = functions = 0
        for path, content in self._iter_files(root):
            languages[detect_language(path)] += 1
            parsed = self._symbols(path, content)
            branches += parsed["branches"]
            nested += parsed["nested"]
            lines += parsed["lines"]
            functions += sum(1 for s in parsed["symbols"] if s["type"] == "function")
            concepts.extend(self._concepts(path, content, parsed["symbols"]))

        per_function = max(functions, 1)
        return {
            "languages": [lang for lang, _ in languages.most_common() if lang != "unknown"],
            "frameworks": detect_frameworks(root),
            "complexity": {
                "cyclomatic": round(1 + branches / per_function, 2),
                "cognitive": round((branches + nested) / per_function, 2),
                "lines": lines,
            },
            "concepts": concepts,
        }

    async def analyze_codebase(self, path: str) -> dict:
        return await self._run(self._analyze_codebase, path)

    def _learn_concepts(self, root: str) -> list[dict]:
        concepts = []
        for path, content in self._iter_files(root):
            concepts.extend(self._concepts(path, content))
        return concepts

    async def learn_from_codebase(self, path: str) -> list[dict]:
        return await self._run(self._learn_concepts, path)

    # =========================================================================
    # PatternLearner
    # =========================================================================

    def _file_patterns(self, path: str, content: str) -> list[dict]:
        symbols = self._symbols(path, content)["symbols"]
        patterns = []
        for kind in ("function", "class"):
            styles = Counter(
                style for style in (naming_style(s["name"]) for s in symbols if s["type"] == kind)
                if style
            )
            if not styles:
                continue
            style, count = styles.most_common(1)[0]
            patterns.append({
                "type": f"{style}_{kind}_naming",
                "description": f"{kind.capitalize()}s use {style} naming convention",
                "confidence": round(count / sum(styles.values()), 2),
                "frequency": count,
            })
        tests = [s for s in symbols if s["type"] == "function" and s["name"].lower().startswith("test")]
        if tests:
            patterns.append({
                "type": "testing",
                "description": "Test functions named with a test prefix",
                "confidence": 0.9,
                "frequency": len(tests),
            })
        return patterns

    async def analyze_file_patterns(self, path: str, content: str) -> list[dict]:
        return await self._run(self._file_patterns, path, content)

    def _aggregate_patterns(self, root: str) -> list[dict]:
        merged: dict[str, dict] = {}
        for path, content in self._iter_files(root):
            language = detect_language(path)
            for pattern in self._file_patterns(path, content):
                entry = merged.setdefault(pattern["type"], {
                    "id": f"ts_{pattern['type']}",
                    "type": pattern["type"],
                    "description": pattern["description"],
                    "frequency": 0,
                    "confidence_total": 0.0,
                    "files": 0,
                    "contexts": set(),
                    "examples": [],
                })
                entry["frequency"] += pattern["frequency"]
                entry["confidence_total"] += pattern["confidence"]
                entry["files"] += 1
                entry["contexts"].add(language)
                if len(entry["examples"]) < 3:
                    entry["examples"].append({"file": path})

        return [
            {
                "id": e["id"],
                "type": e["type"],
                "description": e["description"],
                "frequency": e["frequency"],
                "confidence": round(e["confidence_total"] / e["files"], 2),
                "contexts": sorted(e["contexts"]),
                "examples": e["examples"],
            }
            for e in sorted(merged.values(), key=lambda e: -e["frequency"])
        ]

    async def extract_patterns(self, path: str) -> list[dict]:
        return await self._run(self._aggregate_patterns, path)

    async def learn_patterns(self, path: str) -> list[dict]:
        return await self._run(self._aggregate_patterns, path)

    def _feature_map(self, root: str) -> list[dict]:
        base = Path(root).resolve()
        source_root = base / "src" if (base / "src").is_dir() else base
        packages = [
            d for d in source_root.iterdir()
            if d.is_dir() and not should_skip_dir(d.name) and not d.name.startswith(".")
        ]
        if source_root != base and len(packages) == 1:
            # src/<package>/<feature>/...
            source_root = packages[0]

        files_by_feature: dict[str, list[str]] = defaultdict(list)
        imports_by_feature: dict[str, set[str]] = defaultdict(set)
        for path, content in self._iter_files(str(source_root)):
            parts = Path(path).relative_to(source_root).parts
            if len(parts) < 2:
                continue
            feature = parts[0]
            files_by_feature[feature].append(str(Path(path).relative_to(base)))
            for line in content.splitlines()[:200]:
                match = IMPORT_RE.match(line)
                if match:
                    target = next(g for g in match.groups() if g)
                    imports_by_feature[feature].update(re.split(r"[./:\\]+", target))

        features = []
        for feature, files in sorted(files_by_feature.items()):
            stem = Path(feature).stem
            primary = [f for f in files if Path(f).stem in (stem, "__init__", "index", "mod", "main")]
            related = [f for f in files if f not in primary]
            if not primary:
                primary, related = files[:1], files[1:]
            features.append({
                "id": uuid.uuid4().hex,
                "feature_name": feature,
                "primary_files": sorted(primary),
                "related_files": sorted(related),
                "dependencies": sorted(
                    other for other in files_by_feature
                    if other != feature and other in imports_by_feature[feature]
                ),
            })
        return features

    async def build_feature_map(self, path: str) -> list[dict]:
        return await self._run(self._feature_map, path)
