"""Journey document parsing.

A journey is a markdown document with a YAML frontmatter block and a numbered
step list::

    ---
    id: JRN-0001
    title: User can log in
    status: clarified
    tier: smoke
    actor: standard-user
    ---

    ## Steps
    1. Navigate to /login
    2. Enter "user@example.com" in the Email field
    3. Click the Sign in button (role=button, name="Sign in")
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml
from pydantic import ValidationError

from ..core.errors import JourneyNotReadyError, JourneyStructureError
from .glossary import Glossary
from .hints import extract_hints
from .models import STATUS_ORDER, Journey, JourneyFrontmatter, JourneyStatus, Step

logger = logging.getLogger(__name__)

FRONTMATTER_PATTERN = re.compile(r"\A\ufeff?---[ \t]*\r?\n([\s\S]*?)\r?\n---[ \t]*(?:\r?\n|\Z)")
STEP_SECTION_PATTERN = re.compile(r"^#{2,3}\s+(?:procedural\s+)?steps\b", re.IGNORECASE)
HEADING_PATTERN = re.compile(r"^#{1,6}\s+")
NUMBERED_STEP_PATTERN = re.compile(r"^\s{0,3}(\d+)[.)]\s+(.+?)\s*$")
AC_REF_PATTERN = re.compile(r"\s*\((AC-\d+(?:\s*,\s*AC-\d+)*)\)")

REQUIRED_FIELDS = ("id", "title", "status", "tier", "actor")


@dataclass(frozen=True)
class RawStep:
    number: int
    text: str
    line: int


def extract_frontmatter(text: str, source: str = "<journey>") -> Tuple[Dict[str, Any], str, int]:
    """Split ``text`` into (metadata, body, number of lines before the body)."""
    match = FRONTMATTER_PATTERN.match(text)
    if not match:
        raise JourneyStructureError("missing frontmatter block delimited by '---' lines", source, 1)

    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        line = mark.line + 2 if mark is not None else 1
        problem = getattr(exc, "problem", None) or str(exc)
        raise JourneyStructureError(f"invalid YAML in frontmatter: {problem}", source, line) from exc

    if not isinstance(data, dict):
        raise JourneyStructureError("frontmatter must be a mapping of metadata fields", source, 2)

    offset = match.group(0).count("\n")
    if not match.group(0).endswith("\n"):
        offset += 1
    return data, text[match.end():], offset


def _field_line(frontmatter_lines: List[str], name: str) -> Optional[int]:
    pattern = re.compile(rf"^\s*{re.escape(name)}\s*:")
    for index, line in enumerate(frontmatter_lines):
        if pattern.match(line):
            return index + 2
    return None


def _validate_frontmatter(data: Dict[str, Any], text: str, source: str) -> JourneyFrontmatter:
    lines = text.splitlines()[1:]
    for name in REQUIRED_FIELDS:
        if data.get(name) in (None, ""):
            raise JourneyStructureError(f"missing required metadata '{name}'", source, 1)

    status = str(data.get("status", "")).strip().lower()
    if status not in {s.value for s in JourneyStatus}:
        raise JourneyStructureError(
            f"unknown status value '{data.get('status')}' (expected one of: "
            + ", ".join(s.value for s in JourneyStatus) + ")",
            source,
            _field_line(lines, "status"),
        )
    data = dict(data, status=status)

    try:
        return JourneyFrontmatter.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = [str(part) for part in first.get("loc", ())]
        field_name = loc[0] if loc else "frontmatter"
        raise JourneyStructureError(
            f"invalid metadata '{'.'.join(loc) or field_name}': {first.get('msg')}",
            source,
            _field_line(lines, field_name),
        ) from exc


def extract_steps(body: str, line_offset: int = 0, source: str = "<journey>") -> List[RawStep]:
    """Collect numbered steps from the ``## Steps`` section (or the whole body).

    Indented lines directly below a step are folded into it. Numbering must
    start at 1 and increase by one.
    """
    lines = body.splitlines()
    start, end = 0, len(lines)
    for index, line in enumerate(lines):
        if STEP_SECTION_PATTERN.match(line):
            start = index + 1
            for later in range(start, len(lines)):
                if HEADING_PATTERN.match(lines[later]):
                    end = later
                    break
            break

    steps: List[RawStep] = []
    current: Optional[List[Any]] = None
    for index in range(start, end):
        line = lines[index]
        lineno = line_offset + index + 1
        match = NUMBERED_STEP_PATTERN.match(line)
        if match:
            if current is not None:
                steps.append(RawStep(current[0], current[1], current[2]))
            number = int(match.group(1))
            expected = len(steps) + 1
            if number != expected:
                raise JourneyStructureError(
                    f"malformed step numbering: expected step {expected}, found {number}",
                    source,
                    lineno,
                    line,
                )
            current = [number, match.group(2), lineno]
        elif current is not None and line.strip() and line[:1].isspace():
            current[1] = f"{current[1]} {line.strip()}"
        elif not line.strip():
            continue
        elif current is not None:
            steps.append(RawStep(current[0], current[1], current[2]))
            current = None
    if current is not None:
        steps.append(RawStep(current[0], current[1], current[2]))

    if not steps:
        raise JourneyStructureError("journey has no numbered steps", source, line_offset + start + 1)
    return steps


def parse_journey(text: str, source: str = "<journey>", glossary: Optional[Glossary] = None) -> Journey:
    """Parse and normalise a journey document.

    Raises:
        JourneyStructureError: when metadata or step numbering is malformed.
    """
    glossary = glossary or Glossary.default()
    data, body, offset = extract_frontmatter(text, source)
    frontmatter = _validate_frontmatter(data, text, source)
    raw_steps = extract_steps(body, offset, source)

    warnings: List[str] = []
    use_hints = frontmatter.autogen.machineHints
    steps: List[Step] = []
    for raw in raw_steps:
        ac_refs: Tuple[str, ...] = ()
        ac_match = AC_REF_PATTERN.search(raw.text)
        prose = raw.text
        if ac_match:
            ac_refs = tuple(ref.strip() for ref in ac_match.group(1).split(","))
            prose = AC_REF_PATTERN.sub("", prose)

        extraction = extract_hints(prose)
        warnings.extend(f"step {raw.number}: {w}" for w in extraction.warnings)
        hint = extraction.hint
        if hint is not None and not use_hints:
            warnings.append(f"step {raw.number}: machine hints disabled; hint ignored")
            hint = None

        clean = extraction.text.rstrip(".").strip()
        if not clean:
            raise JourneyStructureError("step has no text besides its hint", source, raw.line, raw.text)
        steps.append(
            Step(
                number=raw.number,
                text=glossary.normalize(clean),
                raw_text=clean,
                line=raw.line,
                hint=hint,
                ac_refs=ac_refs,
            )
        )

    declared = {b.step for b in frontmatter.autogen.blockedSteps}
    unknown = sorted(n for n in declared if n > len(steps))
    if unknown:
        raise JourneyStructureError(
            f"autogen.blockedSteps references missing step(s): {', '.join(map(str, unknown))}",
            source,
            _field_line(text.splitlines()[1:], "autogen"),
        )

    logger.debug("[Parser] %s: parsed %d steps (%d warnings)", frontmatter.id, len(steps), len(warnings))
    return Journey(frontmatter=frontmatter, steps=tuple(steps), source=source, warnings=tuple(warnings),
                   status_line=_field_line(text.splitlines()[1:], "status"))


def parse_journey_file(path: Path, glossary: Optional[Glossary] = None) -> Journey:
    """Read and parse a journey file.

    Args:
        path: Markdown journey document, UTF-8 encoded.
        glossary: Synonym glossary; defaults to ``Glossary.default()``.

    Returns:
        The parsed Journey

    Raises:
        JourneyStructureError: when the file cannot be read or decoded, or is malformed.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise JourneyStructureError(f"cannot read journey: {exc.strerror or exc}", str(path)) from exc
    except UnicodeDecodeError as exc:
        raise JourneyStructureError(f"journey is not valid UTF-8 (byte {exc.start})", str(path)) from exc
    return parse_journey(text, source=str(path), glossary=glossary)


def ensure_compilable(journey: Journey) -> None:
    """Raise unless the journey's lifecycle status allows compilation."""
    if not journey.is_compilable:
        minimum = JourneyStatus.CLARIFIED.value
        raise JourneyNotReadyError(
            f"journey status '{journey.status.value}' is below '{minimum}'; "
            f"clarify the journey before compiling (order: {', '.join(s.value for s in STATUS_ORDER)})",
            journey.source,
            journey.status_line,
        )
