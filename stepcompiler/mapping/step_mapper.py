from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import List, Optional, Tuple

from ..ir.ops import (
    CustomStep,
    ExpectTitle,
    ExpectToast,
    ExpectUrl,
    ExpectVisible,
    IROp,
    LocatorRequest,
    WaitForResponse,
)
from ..journey.glossary import Glossary
from ..journey.models import CompletionSignal, Journey, Step
from .patterns import PATTERNS, StepPattern, analyze_target, missing_anchor

logger = logging.getLogger(__name__)

_GHERKIN = re.compile(r"^(?:given|when|then|and|but)\s+", re.IGNORECASE)
_SUBJECT = re.compile(
    r"^(?:(?:the\s+)?user|i)\s+(?=(?:should|can|must|will|is|gets?|clicks?|enters?|navigates?|selects?|checks?|"
    r"unchecks?|fills?|press(?:es)?|sees?|waits?|be|types?)\b)",
    re.IGNORECASE,
)
_MODAL = re.compile(r"^(?:should|can|must|will)\s+(?!be\s+(?:visible|hidden)\b)", re.IGNORECASE)
_VERIFY = re.compile(r"^(?:(?:verify|ensure|confirm|assert)\s+(?:that\s+)?|check\s+that\s+)", re.IGNORECASE)
_THIRD_PERSON = re.compile(
    r"^(click|enter|navigate|select|check|uncheck|fill|see|wait|type)s\b|^(press)es\b",
    re.IGNORECASE,
)

NO_PATTERN_SUGGESTION = (
    'Rephrase using a supported form, e.g. Click the "Name" button | Enter "value" in the "Field" field | '
    'Select "Option" from the "Field" dropdown | "Text" is visible | A success toast appears with "Message"'
)


@dataclass(frozen=True)
class MappedStep:
    number: int
    op: IROp
    pattern: Optional[str] = None
    line: Optional[int] = None
    fingerprint: Optional[str] = None
    completion: bool = False

    @property
    def blocked(self) -> bool:
        return isinstance(self.op, CustomStep)


def prepare_text(text: str) -> str:
    """Strip Gherkin keywords, subjects, modals and verify phrasing from a step."""
    prepared = text.strip().rstrip(".").strip()
    prepared = _GHERKIN.sub("", prepared)
    prepared = _VERIFY.sub("", prepared)
    prepared = _SUBJECT.sub("", prepared)
    prepared = _MODAL.sub("", prepared)
    prepared = _THIRD_PERSON.sub(lambda m: m.group(1) or m.group(2), prepared)
    return prepared.strip()


def _needs_anchor(op: IROp) -> bool:
    target = op.target
    return isinstance(target, LocatorRequest) and target.anchor is None


def match_text(text: str) -> Tuple[Optional[IROp], Optional[StepPattern]]:
    prepared = prepare_text(text)
    for pattern in PATTERNS:
        op = pattern.apply(prepared)
        if op is not None:
            return op, pattern
    return None, None


def map_step(step: Step, glossary: Optional[Glossary] = None, declared_reason: Optional[str] = None) -> MappedStep:
    """Map one normalised step to exactly one IR operation.

    Unmatched steps and page-state assertions without an anchor become
    ``CustomStep``. Actions without an anchor keep their request so the
    resolver can still satisfy them from a hint or the catalog.

    Args:
        step: Parsed journey step.
        glossary: Re-normalise the raw step text with this glossary instead of
            using the parser's normalised text.
        declared_reason: Reason from ``autogen.blockedSteps``; the step is
            blocked without trying any pattern.

    Returns:
        MappedStep carrying the operation and the name of the matching pattern
    """
    base = dict(number=step.number, line=step.line, fingerprint=step.fingerprint)
    if declared_reason is not None:
        op = CustomStep(reason=f"marked blocked by the journey author: {declared_reason}")
        return MappedStep(op=op, pattern="declared-blocked", **base)

    text = glossary.normalize(step.raw_text) if glossary is not None else step.text
    op, pattern = match_text(text)
    if op is None:
        reason = "no pattern matched the step text"
        logger.debug("[Mapper] step %d: %s: %r", step.number, reason, step.raw_text)
        return MappedStep(op=CustomStep(reason=reason, suggestion=NO_PATTERN_SUGGESTION), **base)

    target = op.target
    if isinstance(target, LocatorRequest) and step.hint is not None:
        target = replace(target, hint=step.hint)
        op = replace(op, locator=target)

    has_hint = bool(step.hint and step.hint.has_locator)
    if op.is_assertion and _needs_anchor(op) and not has_hint:
        op = missing_anchor(target, "assert")

    return MappedStep(op=op, pattern=pattern.name, **base)


def completion_ops(signals: List[CompletionSignal]) -> List[IROp]:
    """Final assertions derived from the journey's completion signals."""
    ops: List[IROp] = []
    for signal in signals:
        if signal.type == "url":
            ops.append(ExpectUrl(pattern=signal.value))
        elif signal.type == "title":
            ops.append(ExpectTitle(title=signal.value))
        elif signal.type == "toast":
            toast_type = str(signal.options.get("type", "any")).lower()
            ops.append(
                ExpectToast(
                    toast_type=toast_type,
                    message=signal.value,
                    locator=LocatorRequest(description=f"{toast_type} toast", anchor="toast", toast_type=toast_type),
                )
            )
        elif signal.type == "element":
            request = analyze_target(signal.value)
            if request.anchor is None:
                request = LocatorRequest(description=signal.value, anchor="text", name=signal.value)
            ops.append(ExpectVisible(locator=request))
        elif signal.type == "api":
            status = signal.options.get("status")
            ops.append(WaitForResponse(url_contains=signal.value, status=int(status) if status else None))
    return ops


def map_steps(journey: Journey, glossary: Optional[Glossary] = None) -> List[MappedStep]:
    """Map every step of ``journey`` plus its completion signals.

    Steps arrive normalised by the parser; a ``glossary`` passed here
    re-normalises the raw step text instead.
    """
    declared = journey.declared_blocks()
    mapped: List[MappedStep] = []
    for step in journey.steps:
        mapped.append(map_step(step, glossary, declared.get(step.number)))

    next_number = len(journey.steps) + 1
    for offset, op in enumerate(completion_ops(journey.frontmatter.completion)):
        mapped.append(
            MappedStep(number=next_number + offset, op=op, pattern="completion-signal", completion=True)
        )

    blocked = sum(1 for m in mapped if m.blocked)
    logger.info("[Mapper] %s: mapped %d/%d steps", journey.id, len(mapped) - blocked, len(mapped))
    return mapped
