"""Classify verification failures into the categories the heal loop understands."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

from ..generators.module_generator import parse_locator_expression
from ..ir.ops import LocatorSpec
from .evidence import Evidence


class FailureType(str, Enum):
    SELECTOR_NOT_FOUND = "selector_not_found"
    TIMING = "timing"
    STRICT_MODE = "strict_mode"
    UNCLASSIFIABLE = "unclassifiable"


_STRING = r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\''
_ARGS = rf"\((?:{_STRING}|[^()\"'])*\)"
LOCATOR_EXPRESSION = re.compile(
    rf"(?:page\.)?(?P<expr>(?:get_by_(?:role|label|text|test_id)|locator){_ARGS}"
    rf"(?:\.or_\((?:page\.)?get_by_role{_ARGS}\))?(?:\.first|\.nth\(\d+\))?)"
)

STRICT_MARKERS = ("strict mode violation",)
RESOLVED_MANY = re.compile(r"resolved to (\d+) elements")
NOT_FOUND_MARKERS = ("element(s) not found", "<element(s) not found>")
TIMEOUT_PATTERN = re.compile(r"Timeout \d+(?:\.\d+)?ms exceeded", re.IGNORECASE)
READINESS_MARKERS = (
    "locator resolved to",
    "element is not visible",
    "element is not enabled",
    "element is not stable",
    "element is outside of the viewport",
    "waiting for element to be visible",
)
NAVIGATION_MARKERS = (
    "waiting for navigation",
    "wait_for_url",
    "waiting for event \"response\"",
    "expect_response",
    "wait_for_response",
)


@dataclass(frozen=True)
class FailedLocator:
    expression: str
    spec: Optional[LocatorSpec]
    context: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"locator": self.expression, "context": self.context}


@dataclass
class FailureClassification:
    failure_type: FailureType
    message: str
    failed_locators: List[FailedLocator] = field(default_factory=list)

    @property
    def primary_locator(self) -> Optional[FailedLocator]:
        for failed in self.failed_locators:
            if failed.spec is not None:
                return failed
        return None

    def to_dict(self) -> Dict[str, object]:
        return {
            "failureType": self.failure_type.value,
            "message": self.message,
            "failedLocators": [f.to_dict() for f in self.failed_locators],
        }


def extract_failed_locators_from_logs(logs: str) -> List[FailedLocator]:
    """Python Playwright locator expressions that appear near an error in ``logs``."""
    failed: List[FailedLocator] = []
    seen = set()
    for match in LOCATOR_EXPRESSION.finditer(logs):
        expression = match.group("expr")
        context_start = max(0, match.start() - 200)
        context_end = min(len(logs), match.end() + 200)
        context = logs[context_start:context_end]
        if not any(err in context.lower() for err in ("timeout", "error", "not found", "violation", "expected")):
            continue
        if expression in seen:
            continue
        seen.add(expression)
        failed.append(
            FailedLocator(
                expression=expression,
                spec=parse_locator_expression(f"page.{expression}"),
                context=logs[max(0, match.start() - 100):min(len(logs), match.end() + 100)].strip(),
            )
        )
    return failed


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:300]
    return ""


def classify_failure(evidence: Evidence) -> FailureClassification:
    """Classify a failed run from its error text and trace.

    Args:
        evidence: Collected output of the failed run.

    Returns:
        FailureClassification with the failure type and the locators named in
        the error, most specific first
    """
    text = evidence.error_text or ""
    for action in evidence.failed_actions:
        if action.get("error"):
            text += "\n" + str(action["error"])
            if action.get("selector"):
                text += f"\nselector: {action['selector']}"
    lowered = text.lower()
    failed = extract_failed_locators_from_logs(text)
    message = _first_line(evidence.error_text or text)

    def result(kind: FailureType) -> FailureClassification:
        return FailureClassification(failure_type=kind, message=message, failed_locators=failed)

    many = RESOLVED_MANY.search(text)
    if any(marker in lowered for marker in STRICT_MARKERS) or (many and int(many.group(1)) > 1):
        return result(FailureType.STRICT_MODE)
    if any(marker in lowered for marker in NOT_FOUND_MARKERS):
        return result(FailureType.SELECTOR_NOT_FOUND)
    if any(marker in lowered for marker in NAVIGATION_MARKERS) and TIMEOUT_PATTERN.search(text):
        return result(FailureType.TIMING)
    if TIMEOUT_PATTERN.search(text) or "waiting for" in lowered:
        if any(marker in lowered for marker in READINESS_MARKERS):
            return result(FailureType.TIMING)
        if failed:
            return result(FailureType.SELECTOR_NOT_FOUND)
        return result(FailureType.TIMING)
    return result(FailureType.UNCLASSIFIABLE)
