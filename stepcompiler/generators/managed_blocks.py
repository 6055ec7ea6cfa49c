"""Managed regions inside generated files.

A region looks like::

    # stepc:begin id=test:JRN-1 hash=3f2a9c0d1e4b
    ...generated code...
    # stepc:end id=test:JRN-1

The hash is taken over the body. A body that no longer matches its hash was
edited by hand and is never overwritten. Everything outside regions belongs
to the user and is preserved verbatim.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from ..core.errors import GenerationConflictError
from ..core.hashstore import short_hash

BEGIN_PATTERN = re.compile(r"^# stepc:begin id=(?P<id>\S+) hash=(?P<hash>[0-9a-f]+)[ \t]*$")
END_PATTERN = re.compile(r"^# stepc:end id=(?P<id>\S+)[ \t]*$")


@dataclass(frozen=True)
class ManagedRegion:
    region_id: str
    recorded_hash: str
    body: str
    start: int
    end: int
    line: int

    @property
    def edited(self) -> bool:
        return short_hash(self.body) != self.recorded_hash


def _normalize_body(body: str) -> str:
    if body and not body.endswith("\n"):
        return body + "\n"
    return body


def render_region(region_id: str, body: str) -> str:
    body = _normalize_body(body)
    return f"# stepc:begin id={region_id} hash={short_hash(body)}\n{body}# stepc:end id={region_id}\n"


def find_regions(text: str, path: str = "<generated>") -> Dict[str, ManagedRegion]:
    """Locate every managed region in ``text``, keyed by region id."""
    regions: Dict[str, ManagedRegion] = {}
    lines = text.splitlines(keepends=True)
    offset = 0
    open_region: Optional[Tuple[str, str, int, int, int]] = None
    for number, line in enumerate(lines, start=1):
        stripped = line.rstrip("\r\n")
        begin = BEGIN_PATTERN.match(stripped)
        end = END_PATTERN.match(stripped)
        if begin:
            if open_region is not None:
                raise GenerationConflictError(path, open_region[0], open_region[4])
            open_region = (begin.group("id"), begin.group("hash"), offset, offset + len(line), number)
        elif end:
            if open_region is None or end.group("id") != open_region[0]:
                raise GenerationConflictError(path, end.group("id"), number)
            region_id, recorded, start, body_start, begin_line = open_region
            if region_id in regions:
                raise GenerationConflictError(path, region_id, begin_line)
            regions[region_id] = ManagedRegion(
                region_id=region_id,
                recorded_hash=recorded,
                body=text[body_start:offset],
                start=start,
                end=offset + len(line),
                line=begin_line,
            )
            open_region = None
        offset += len(line)
    if open_region is not None:
        raise GenerationConflictError(path, open_region[0], open_region[4])
    return regions


def merge_managed_region(existing_text: Optional[str], region_id: str, body: str,
                         path: str = "<generated>") -> str:
    return merge_regions(existing_text, [(region_id, body)], path)


def merge_regions(
    existing_text: Optional[str],
    regions: Iterable[Tuple[str, str]],
    path: str = "<generated>",
) -> str:
    """Rewrite or append managed regions, leaving all other text untouched.

    Raises ``GenerationConflictError`` when a region that would change was
    edited by hand since it was generated.
    """
    text = existing_text or ""
    found = find_regions(text, path)
    replacements: List[Tuple[int, int, str]] = []
    appended: List[str] = []
    for region_id, body in regions:
        rendered = render_region(region_id, body)
        current = found.get(region_id)
        if current is None:
            appended.append(rendered)
            continue
        if text[current.start:current.end] == rendered:
            continue
        if current.edited and current.body != _normalize_body(body):
            raise GenerationConflictError(path, region_id, current.line)
        replacements.append((current.start, current.end, rendered))

    for start, end, rendered in sorted(replacements, reverse=True):
        text = text[:start] + rendered + text[end:]

    for rendered in appended:
        if text and not text.endswith("\n"):
            text += "\n"
        if text:
            text += "\n\n"
        text += rendered
    return text


def hand_edited_regions(text: str, path: str = "<generated>") -> List[str]:
    return [region.region_id for region in find_regions(text, path).values() if region.edited]
