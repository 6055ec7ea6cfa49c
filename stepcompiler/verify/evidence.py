"""Evidence gathered from a failed verification run.

Playwright traces (``trace.zip``) contain a ``trace.trace`` member with one
JSON event per line. Failed actions carry an ``error`` either on an
``action`` event or on the ``after`` event that closes a ``before`` call.
"""
from __future__ import annotations

import json
import logging
import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..executor import RunResult

logger = logging.getLogger(__name__)

ARIA_LINE_PATTERN = re.compile(r'^\s*-\s+(?P<role>[a-z]+)(?:\s+"(?P<name>(?:[^"\\]|\\.)*)")?')


class TraceAnalyzer:
    """Extract Playwright API calls and their errors from a trace archive."""

    def __init__(self, trace_path: Path):
        self.trace_path = trace_path
        self.trace_events: List[Dict[str, Any]] = []

    def load_trace(self) -> None:
        if not self.trace_path.exists():
            raise FileNotFoundError(f"Trace not found: {self.trace_path}")

        with zipfile.ZipFile(self.trace_path, "r") as zf:
            for member in zf.namelist():
                if not member.endswith(".trace"):
                    continue
                for line in zf.read(member).decode("utf-8", errors="replace").splitlines():
                    if not line.strip():
                        continue
                    try:
                        self.trace_events.append(json.loads(line))
                    except json.JSONDecodeError:
                        continue

    def extract_actions(self) -> List[Dict[str, Any]]:
        """API calls in start order, each with its selector and error (if any)."""
        calls: Dict[str, Dict[str, Any]] = {}
        order: List[str] = []
        for index, event in enumerate(self.trace_events):
            event_type = event.get("type", "")
            if event_type in ("action", "before"):
                call_id = event.get("callId") or f"event-{index}"
                params = event.get("params") or {}
                calls[call_id] = {
                    "method": event.get("method", ""),
                    "selector": params.get("selector"),
                    "url": params.get("url"),
                    "startTime": event.get("startTime", 0),
                    "error": _error_message(event.get("error")),
                }
                order.append(call_id)
            elif event_type == "after":
                call = calls.get(event.get("callId", ""))
                if call is not None and event.get("error"):
                    call["error"] = _error_message(event.get("error"))
        return [calls[call_id] for call_id in order]

    def failed_actions(self) -> List[Dict[str, Any]]:
        return [action for action in self.extract_actions() if action.get("error")]


def _error_message(error: Any) -> Optional[str]:
    if not error:
        return None
    if isinstance(error, dict):
        inner = error.get("error", error)
        return inner.get("message") or json.dumps(inner, sort_keys=True)
    return str(error)


@dataclass(frozen=True)
class AriaNode:
    role: str
    name: Optional[str] = None


def parse_aria_snapshot(text: str) -> List[AriaNode]:
    """Roles and accessible names from a Playwright ``aria_snapshot()`` YAML dump."""
    nodes: List[AriaNode] = []
    for line in text.splitlines():
        match = ARIA_LINE_PATTERN.match(line)
        if not match:
            continue
        name = match.group("name")
        if name is not None:
            name = name.replace('\\"', '"')
        nodes.append(AriaNode(role=match.group("role"), name=name))
    return nodes


@dataclass
class Evidence:
    error_text: str
    logs: str = ""
    evidence_dir: Optional[Path] = None
    trace_path: Optional[Path] = None
    screenshots: List[Path] = field(default_factory=list)
    aria_snapshot: Optional[str] = None
    page_url: Optional[str] = None
    failed_actions: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def aria_nodes(self) -> List[AriaNode]:
        return parse_aria_snapshot(self.aria_snapshot) if self.aria_snapshot else []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "errorText": self.error_text[:2000],
            "evidenceDir": str(self.evidence_dir) if self.evidence_dir else None,
            "trace": str(self.trace_path) if self.trace_path else None,
            "screenshots": [str(p) for p in self.screenshots],
            "ariaSnapshot": bool(self.aria_snapshot),
            "pageUrl": self.page_url,
        }


def _first(directory: Path, pattern: str) -> Optional[Path]:
    matches = sorted(directory.rglob(pattern))
    return matches[0] if matches else None


def collect_evidence(run_result: RunResult) -> Evidence:
    """Gather error text, trace, screenshots and the accessibility snapshot of a run."""
    failures = run_result.junit.failed_cases
    if failures:
        error_text = "\n\n".join(f"{case.message}\n{case.text}".strip() for case in failures)
    else:
        error_text = (run_result.stderr or run_result.stdout)[-4000:]

    evidence = Evidence(error_text=error_text, logs=run_result.logs, evidence_dir=run_result.evidence_dir)
    directory = run_result.evidence_dir
    if directory is None or not directory.exists():
        return evidence

    evidence.trace_path = _first(directory, "trace.zip")
    evidence.screenshots = sorted(directory.rglob("*.png"))
    snapshot = _first(directory, "aria-snapshot.yml")
    if snapshot is not None:
        evidence.aria_snapshot = snapshot.read_text(encoding="utf-8")
    url_file = _first(directory, "page-url.txt")
    if url_file is not None:
        evidence.page_url = url_file.read_text(encoding="utf-8").strip()

    if evidence.trace_path is not None:
        analyzer = TraceAnalyzer(evidence.trace_path)
        try:
            analyzer.load_trace()
        except zipfile.BadZipFile as exc:
            logger.warning("[SelfHealing] Unreadable trace %s: %s", evidence.trace_path, exc)
        else:
            evidence.failed_actions = analyzer.failed_actions()
    return evidence
