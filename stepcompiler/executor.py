# executor.py
"""Run one generated pytest-playwright test file in a subprocess."""
from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from .generators.scaffold import EVIDENCE_ENV

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JUnitCase:
    name: str
    outcome: str
    message: str = ""
    text: str = ""


@dataclass(frozen=True)
class JUnitSummary:
    tests: int = 0
    failures: int = 0
    errors: int = 0
    skipped: int = 0
    cases: Tuple[JUnitCase, ...] = ()

    @property
    def executed(self) -> int:
        return self.tests - self.skipped

    @property
    def failed_cases(self) -> List[JUnitCase]:
        return [case for case in self.cases if case.outcome in ("failure", "error")]


def parse_junit(path: Path) -> JUnitSummary:
    """Summarise a pytest ``--junitxml`` report. Missing or broken reports count as empty."""
    if not path.exists():
        return JUnitSummary()
    try:
        root = ET.parse(path).getroot()
    except ET.ParseError as exc:
        logger.warning("[Executor] Unreadable JUnit report %s: %s", path, exc)
        return JUnitSummary()

    cases: List[JUnitCase] = []
    for testcase in root.iter("testcase"):
        outcome, message, text = "passed", "", ""
        for tag in ("failure", "error", "skipped"):
            node = testcase.find(tag)
            if node is not None:
                outcome = tag
                message = node.get("message", "")
                text = node.text or ""
                break
        cases.append(JUnitCase(name=testcase.get("name", ""), outcome=outcome, message=message, text=text))

    return JUnitSummary(
        tests=len(cases),
        failures=sum(1 for c in cases if c.outcome == "failure"),
        errors=sum(1 for c in cases if c.outcome == "error"),
        skipped=sum(1 for c in cases if c.outcome == "skipped"),
        cases=tuple(cases),
    )


@dataclass
class RunResult:
    test_path: Path
    command: List[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0
    evidence_dir: Optional[Path] = None
    junit: JUnitSummary = field(default_factory=JUnitSummary)
    timed_out: bool = False
    cancelled: bool = False

    @property
    def only_skipped(self) -> bool:
        return self.junit.tests > 0 and self.junit.executed == 0

    @property
    def passed(self) -> bool:
        if self.timed_out or self.cancelled:
            return False
        return self.returncode == 0 and not self.only_skipped

    @property
    def logs(self) -> str:
        header = f"$ {' '.join(self.command)}\n"
        note = "\n[notice] All tests were skipped; marking run as not executed.\n" if self.only_skipped else ""
        return header + self.stdout + "\n" + self.stderr + note


class PytestRunner:
    """Runs generated tests with pytest-playwright from the output directory.

    Each run is a separate process group so a timeout or cancellation can
    terminate the browser together with pytest.
    """

    def __init__(
        self,
        out_dir: Path,
        base_url: Optional[str] = None,
        browser: str = "chromium",
        headless: bool = True,
        python: Optional[str] = None,
        poll_interval: float = 0.5,
    ) -> None:
        self.out_dir = Path(out_dir)
        self.base_url = base_url
        self.browser = browser
        self.headless = headless
        self.python = python or sys.executable
        self.poll_interval = poll_interval

    def build_command(self, test_path: Path, junit_path: Path, evidence_dir: Path) -> List[str]:
        try:
            target = Path(test_path).resolve().relative_to(self.out_dir.resolve()).as_posix()
        except ValueError:
            target = str(test_path)
        cmd = [
            self.python, "-m", "pytest", target,
            f"--junitxml={junit_path}",
            "--tracing", "retain-on-failure",
            "--screenshot", "only-on-failure",
            "--output", str(evidence_dir),
            "-p", "no:cacheprovider",
            "-q",
        ]
        if self.base_url:
            cmd += ["--base-url", self.base_url]
        if self.browser:
            cmd += ["--browser", self.browser]
        if not self.headless:
            cmd.append("--headed")
        return cmd

    def run(
        self,
        test_path: Path,
        timeout: float,
        cancel_event: Optional[threading.Event] = None,
        evidence_dir: Optional[Path] = None,
    ) -> RunResult:
        evidence_dir = Path(evidence_dir or self.out_dir / "evidence" / Path(test_path).stem)
        evidence_dir.mkdir(parents=True, exist_ok=True)
        junit_path = evidence_dir / "junit.xml"
        cmd = self.build_command(test_path, junit_path, evidence_dir)

        env = os.environ.copy()
        env[EVIDENCE_ENV] = str(evidence_dir)

        logger.info("[Executor] Running %s (timeout %.0fs)", test_path, timeout)
        started = time.monotonic()
        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            cwd=str(self.out_dir),
            env=env,
            start_new_session=(os.name == "posix"),
        )

        timed_out = cancelled = False
        deadline = started + timeout
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                elif time.monotonic() >= deadline:
                    timed_out = True
                else:
                    continue
                stdout, stderr = self._stop(process)
                break

        duration = time.monotonic() - started
        result = RunResult(
            test_path=Path(test_path),
            command=cmd,
            returncode=process.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration=duration,
            evidence_dir=evidence_dir,
            junit=parse_junit(junit_path),
            timed_out=timed_out,
            cancelled=cancelled,
        )
        if timed_out:
            logger.warning("[Executor] %s timed out after %.0fs", test_path, timeout)
        elif cancelled:
            logger.warning("[Executor] %s cancelled", test_path)
        else:
            logger.info("[Executor] %s %s in %.1fs", test_path, "passed" if result.passed else "failed", duration)
        return result

    @staticmethod
    def _signal(process: subprocess.Popen, sig: int) -> None:
        if os.name == "posix":
            try:
                os.killpg(process.pid, sig)
                return
            except ProcessLookupError:
                return
        if sig == signal.SIGTERM:
            process.terminate()
        else:
            process.kill()

    def _stop(self, process: subprocess.Popen) -> Tuple[str, str]:
        """Terminate the process group, then kill it if it does not exit."""
        self._signal(process, signal.SIGTERM)
        try:
            return process.communicate(timeout=10)
        except subprocess.TimeoutExpired:
            self._signal(process, getattr(signal, "SIGKILL", signal.SIGTERM))
            return process.communicate(timeout=5)
