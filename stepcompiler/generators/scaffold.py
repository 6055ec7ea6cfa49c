"""Support files for the generated test tree and the artifact bundle type."""
from __future__ import annotations

import ast
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

CONFTEST_REGION = "conftest:evidence"
EVIDENCE_ENV = "STEPC_EVIDENCE_DIR"

CONFTEST_BODY = '''"""Evidence capture for generated journey tests."""
import os
from pathlib import Path

import pytest
from playwright.sync_api import Error as PlaywrightError


@pytest.hookimpl(tryfirst=True, hookwrapper=True)
def pytest_runtest_makereport(item, call):
    outcome = yield
    report = outcome.get_result()
    setattr(item, f"rep_{report.when}", report)


@pytest.fixture(autouse=True)
def stepc_evidence(request, page):
    yield
    report = getattr(request.node, "rep_call", None)
    evidence_dir = os.environ.get("STEPC_EVIDENCE_DIR")
    if report is None or not report.failed or not evidence_dir:
        return
    target = Path(evidence_dir)
    target.mkdir(parents=True, exist_ok=True)
    try:
        snapshot = page.locator("body").aria_snapshot()
    except PlaywrightError as exc:
        snapshot = f"# accessibility snapshot unavailable: {exc}"
    (target / "aria-snapshot.yml").write_text(snapshot, encoding="utf-8")
    (target / "page-url.txt").write_text(page.url, encoding="utf-8")
'''

PYTEST_INI = """[pytest]
pythonpath = .
testpaths = tests
markers =
    smoke: smoke-tier journeys
    release: release-tier journeys
    regression: regression-tier journeys
"""


def conftest_regions() -> List[Tuple[str, str]]:
    return [(CONFTEST_REGION, CONFTEST_BODY)]


def find_syntax_error(files: Dict[Path, str]) -> Optional[Tuple[Path, SyntaxError]]:
    """First ``.py`` file in ``files`` that does not parse, if any."""
    for relative, content in sorted(files.items()):
        if relative.suffix != ".py":
            continue
        try:
            ast.parse(content, filename=str(relative))
        except SyntaxError as exc:
            return relative, exc
    return None


@dataclass
class GeneratedArtifacts:
    """Rendered files for one journey, keyed by path relative to the output directory."""

    journey_id: str
    test_path: Path
    files: Dict[Path, str] = field(default_factory=dict)
    create_only: Dict[Path, str] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    def add(self, relative: Path, content: str) -> None:
        self.files[Path(relative)] = content

    def invalid_python(self) -> Optional[Tuple[Path, SyntaxError]]:
        return find_syntax_error(self.files)
