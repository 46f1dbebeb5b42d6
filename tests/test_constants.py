"""Tests for constants consolidation into constants.py.

Verifies that tunables are accessible from the constants module and that
the metric and similarity modules import them instead of redefining them.
"""

import ast
from pathlib import Path

import signograph.constants as constants

SRC = Path(__file__).parent.parent / "src" / "signograph"


class TestConstantsAccessible:
    """Verify every constant is importable from the constants module."""

    def test_node_defaults(self):
        assert constants.DEFAULT_NODE_TYPE == "concept"
        assert constants.DEFAULT_IMPORTANCE == 0.5
        assert constants.UNKNOWN_REGION == "Unknown"
        assert constants.DEFAULT_CERTAINTY == "confirmed"

    def test_pagerank(self):
        assert constants.PAGERANK_DAMPING == 0.85
        assert constants.PAGERANK_FALLBACK == 0.01

    def test_resolutions_coarse_to_fine(self):
        assert list(constants.RAG_RESOLUTIONS) == sorted(constants.RAG_RESOLUTIONS)

    def test_negative_keywords_lowercase(self):
        assert all(k == k.lower() for k in constants.NEGATIVE_EDGE_KEYWORDS)
        assert "konflikt" in constants.NEGATIVE_EDGE_KEYWORDS

    def test_security_scoring(self):
        assert constants.BROKER_BETWEENNESS_THRESHOLD == 0.1
        assert constants.BROKER_RISK_INCREMENT == 0.3
        assert constants.CROSS_REGION_EDGE_THRESHOLD == 3
        assert constants.CROSS_REGION_RISK_INCREMENT == 0.2

    def test_duplicate_thresholds(self):
        assert 0 < constants.LEXICAL_DUPLICATE_THRESHOLD < 1
        assert 0 < constants.SEMANTIC_DUPLICATE_THRESHOLD < 1

    def test_history_and_persistence(self):
        assert constants.HISTORY_CAPACITY == 50
        assert constants.AUTOSAVE_INTERVAL_SECONDS == 10.0


class TestNoDuplicateDefinitions:
    """Verify tunables are NOT redefined outside constants.py."""

    def _get_module_level_assignments(self, filepath: Path) -> set[str]:
        """Parse a Python file and return top-level assignment names."""
        tree = ast.parse(filepath.read_text(encoding="utf-8"))
        names = set()
        for node in ast.iter_child_nodes(tree):
            if isinstance(node, ast.Assign):
                for target in node.targets:
                    if isinstance(target, ast.Name) and target.id.isupper():
                        names.add(target.id)
        return names

    def test_no_module_redefines_constants(self):
        defined = self._get_module_level_assignments(SRC / "constants.py")
        for path in SRC.glob("*.py"):
            if path.name == "constants.py":
                continue
            overlap = self._get_module_level_assignments(path) & defined
            assert overlap == set(), f"Constants redefined in {path.name}: {overlap}"

    def test_metrics_imports_from_constants(self):
        assert "from .constants import" in (SRC / "metrics.py").read_text(encoding="utf-8")

    def test_similarity_imports_from_constants(self):
        assert "from .constants import" in (SRC / "similarity.py").read_text(encoding="utf-8")
