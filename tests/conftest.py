"""Shared fixtures for the step compiler tests."""

import textwrap
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

import pytest

from stepcompiler.executor import RunResult


def _frontmatter(journey_id: str, status: str, extra: str) -> str:
    head = textwrap.dedent(
        f"""\
        ---
        id: {journey_id}
        title: User can save a profile
        status: {status}
        tier: smoke
        actor: standard-user
        """
    )
    return head + textwrap.dedent(extra) + "---\n"


@pytest.fixture
def make_journey():
    """Build a journey document from a list of step strings."""

    def build(steps: Iterable[str], journey_id: str = "JRN-0001", extra: str = "",
              status: str = "clarified", heading: Optional[str] = "## Steps") -> str:
        lines = [f"{number}. {text}" for number, text in enumerate(steps, start=1)]
        body = (heading + "\n" if heading else "") + "\n".join(lines) + "\n"
        return _frontmatter(journey_id, status, extra) + "\n" + body

    return build


@pytest.fixture
def profile_steps():
    return [
        "Navigate to /profile",
        'Enter "Ada" in the "First name" field',
        'Click the "Save" button',
        'A success toast appears with "Profile saved"',
    ]


def not_found_error(expression: str) -> str:
    """Playwright-style failure text for a locator that matched nothing."""
    return (
        "E   AssertionError: Locator expected to be visible\n"
        "E   Actual value: <element(s) not found>\n"
        "E   Call log:\n"
        "E     - Expect \"to_be_visible\" with timeout 5000ms\n"
        f"E     - waiting for {expression}\n"
    )


class ScriptedRunner:
    """Stands in for ``PytestRunner``; ``script(run_number, test_path)`` decides each run."""

    def __init__(self, script: Callable[[int, Path], Tuple[int, str]]):
        self.script = script
        self.evidence_dirs: List[Optional[Path]] = []

    @property
    def runs(self) -> int:
        return len(self.evidence_dirs)

    def run(self, test_path, timeout, cancel_event=None, evidence_dir=None):
        self.evidence_dirs.append(evidence_dir)
        returncode, stderr = self.script(self.runs, Path(test_path))
        return RunResult(
            test_path=Path(test_path),
            command=["pytest", str(test_path)],
            returncode=returncode,
            stderr=stderr,
            evidence_dir=evidence_dir,
        )


@pytest.fixture
def scripted_runner():
    return ScriptedRunner


@pytest.fixture
def locator_not_found():
    return not_found_error
