"""Inline machine hints such as ``(role=button, name="Save")``.

Hints are stripped out of the step prose before matching and carried along as
structured data so the resolver can use them verbatim.
"""
from __future__ import annotations

import re
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional, Tuple

HINTS_SECTION_PATTERN = re.compile(
    r"\s*\((?:\s*[a-z]+=(?:\"[^\"]+\"|'[^']+'|[^,)\s]+)\s*,?\s*)+\)"
)
HINT_PAIR_PATTERN = re.compile(r"([a-z]+)=(?:\"([^\"]+)\"|'([^']+)'|([^,)\s]+))")

HINT_KEYS = frozenset(
    {"role", "name", "label", "testid", "text", "exact", "level", "timeout", "module", "signal", "wait"}
)

VALID_ROLES = frozenset(
    {
        "alert", "alertdialog", "application", "article", "banner", "blockquote", "button",
        "caption", "cell", "checkbox", "code", "columnheader", "combobox", "complementary",
        "contentinfo", "definition", "deletion", "dialog", "directory", "document", "emphasis",
        "feed", "figure", "form", "generic", "grid", "gridcell", "group", "heading", "img",
        "insertion", "link", "list", "listbox", "listitem", "log", "main", "marquee", "math",
        "menu", "menubar", "menuitem", "menuitemcheckbox", "menuitemradio", "meter", "navigation",
        "none", "note", "option", "paragraph", "presentation", "progressbar", "radio",
        "radiogroup", "region", "row", "rowgroup", "rowheader", "scrollbar", "search",
        "searchbox", "separator", "slider", "spinbutton", "status", "strong", "subscript",
        "superscript", "switch", "tab", "table", "tablist", "tabpanel", "term", "textbox",
        "time", "timer", "toolbar", "tooltip", "tree", "treegrid", "treeitem",
    }
)

WAIT_STATES = frozenset({"visible", "attached", "hidden", "detached"})


@dataclass(frozen=True)
class MachineHint:
    role: Optional[str] = None
    name: Optional[str] = None
    label: Optional[str] = None
    testid: Optional[str] = None
    text: Optional[str] = None
    exact: Optional[bool] = None
    level: Optional[int] = None
    timeout: Optional[int] = None
    module: Optional[str] = None
    signal: Optional[str] = None
    wait: Optional[str] = None

    @property
    def has_locator(self) -> bool:
        return any((self.role, self.label, self.testid, self.text))

    def to_dict(self) -> Dict[str, object]:
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class HintExtraction:
    text: str
    hint: Optional[MachineHint]
    warnings: Tuple[str, ...] = ()


def _parse_bool(value: str) -> Optional[bool]:
    lowered = value.lower()
    if lowered in {"true", "yes", "1"}:
        return True
    if lowered in {"false", "no", "0"}:
        return False
    return None


def extract_hints(text: str) -> HintExtraction:
    """Strip every hint section from ``text`` and merge them into one hint."""
    values: Dict[str, object] = {}
    warnings: List[str] = []

    sections = list(HINTS_SECTION_PATTERN.finditer(text))
    if not sections:
        return HintExtraction(text=text.strip(), hint=None)

    for section in sections:
        for pair in HINT_PAIR_PATTERN.finditer(section.group(0)):
            key = pair.group(1)
            raw = next(g for g in pair.groups()[1:] if g is not None)
            if key not in HINT_KEYS:
                warnings.append(f"Unknown hint key '{key}' ignored")
                continue
            if key == "role":
                role = raw.lower()
                if role not in VALID_ROLES:
                    warnings.append(f"Invalid ARIA role '{raw}' in hint ignored")
                    continue
                values["role"] = role
            elif key == "exact":
                parsed = _parse_bool(raw)
                if parsed is None:
                    warnings.append(f"Hint exact={raw} is not a boolean")
                    continue
                values["exact"] = parsed
            elif key in {"level", "timeout"}:
                if not raw.isdigit():
                    warnings.append(f"Hint {key}={raw} is not a positive integer")
                    continue
                values[key] = int(raw)
            elif key == "wait":
                if raw not in WAIT_STATES:
                    warnings.append(f"Hint wait={raw} must be one of {sorted(WAIT_STATES)}")
                    continue
                values["wait"] = raw
            else:
                values[key] = raw

    stripped = HINTS_SECTION_PATTERN.sub("", text)
    stripped = re.sub(r"\s{2,}", " ", stripped).strip()
    hint = MachineHint(**values) if values else None
    return HintExtraction(text=stripped, hint=hint, warnings=tuple(warnings))
