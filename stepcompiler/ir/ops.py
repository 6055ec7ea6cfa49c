"""Intermediate representation shared by the mapper, the resolver and the code generator.

Operations are frozen dataclasses tagged with ``kind``. After mapping, element
references are ``LocatorRequest`` objects; the resolver replaces them with
concrete ``LocatorSpec`` values before code generation.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, fields, replace
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Tuple, Union

from ..journey.hints import MachineHint


class LocatorStrategy(str, Enum):
    ROLE = "role"
    LABEL = "label"
    TESTID = "testid"
    TEXT = "text"
    TOAST = "toast"
    STRUCTURAL = "structural"


class Provenance(str, Enum):
    HINT = "hint"
    PATTERN = "pattern"
    CATALOG = "catalog"
    KNOWLEDGE = "knowledge"


@dataclass(frozen=True)
class LocatorRequest:
    """What the step text says about an element, before resolution."""

    description: str
    anchor: Optional[str] = None
    role: Optional[str] = None
    name: Optional[str] = None
    exact: bool = False
    toast_type: Optional[str] = None
    hint: Optional[MachineHint] = None


@dataclass(frozen=True)
class LocatorSpec:
    """A resolved locator plus how much we trust it and where it came from.

    ``value`` holds the role for ROLE, the label/test id/text for the matching
    strategies, the toast flavour for TOAST, and a ``css=``/``xpath=`` selector
    for STRUCTURAL. ``nth`` and ``wait_timeout`` are only ever set by healing
    or by explicit hints.
    """

    strategy: LocatorStrategy
    value: str
    name: Optional[str] = None
    exact: bool = False
    level: Optional[int] = None
    nth: Optional[int] = None
    wait_timeout: Optional[int] = None
    confidence: float = 1.0
    provenance: Provenance = Provenance.PATTERN
    description: str = ""

    @property
    def is_structural(self) -> bool:
        return self.strategy is LocatorStrategy.STRUCTURAL

    def key(self) -> Tuple[Any, ...]:
        """Structural identity of the locator, ignoring provenance and confidence."""
        return (
            self.strategy.value,
            _canon(self.value) if self.strategy is not LocatorStrategy.STRUCTURAL else self.value.strip(),
            _canon(self.name) if self.name else None,
            self.exact,
            self.level,
            self.nth,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"strategy": self.strategy.value, "value": self.value}
        for name in ("name", "level", "nth", "wait_timeout"):
            value = getattr(self, name)
            if value is not None:
                data[name] = value
        if self.exact:
            data["exact"] = True
        data["confidence"] = round(self.confidence, 3)
        data["provenance"] = self.provenance.value
        return data


def _canon(text: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (text or "").strip()).casefold()


Target = Union[LocatorRequest, LocatorSpec]


@dataclass(frozen=True)
class ValueSpec:
    kind: str
    value: str

    @classmethod
    def parse(cls, raw: str) -> "ValueSpec":
        match = re.fullmatch(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}", raw.strip())
        if match:
            return cls("actor", match.group(1))
        return cls("literal", raw)

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "value": self.value}


@dataclass(frozen=True)
class IROp:
    kind: ClassVar[str] = "op"
    is_assertion: ClassVar[bool] = False

    @property
    def target(self) -> Optional[Target]:
        return getattr(self, "locator", None)

    def with_target(self, locator: LocatorSpec) -> "IROp":
        return replace(self, locator=locator)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, LocatorSpec):
                data[f.name] = value.to_dict()
            elif isinstance(value, LocatorRequest):
                data[f.name] = {
                    "request": value.description,
                    "anchor": value.anchor,
                    "role": value.role,
                    "name": value.name,
                }
            elif isinstance(value, ValueSpec):
                data[f.name] = value.to_dict()
            else:
                data[f.name] = value
        return data


@dataclass(frozen=True)
class Goto(IROp):
    kind: ClassVar[str] = "goto"
    target_url: str = "/"


@dataclass(frozen=True)
class Click(IROp):
    kind: ClassVar[str] = "click"
    locator: Target = None


@dataclass(frozen=True)
class Fill(IROp):
    kind: ClassVar[str] = "fill"
    locator: Target = None
    value: ValueSpec = None


@dataclass(frozen=True)
class Select(IROp):
    kind: ClassVar[str] = "select"
    locator: Target = None
    option: ValueSpec = None


@dataclass(frozen=True)
class Check(IROp):
    kind: ClassVar[str] = "check"
    locator: Target = None
    checked: bool = True


@dataclass(frozen=True)
class Press(IROp):
    kind: ClassVar[str] = "press"
    key: str = "Enter"


@dataclass(frozen=True)
class ExpectVisible(IROp):
    kind: ClassVar[str] = "expectVisible"
    is_assertion: ClassVar[bool] = True
    locator: Target = None


@dataclass(frozen=True)
class ExpectHidden(IROp):
    kind: ClassVar[str] = "expectHidden"
    is_assertion: ClassVar[bool] = True
    locator: Target = None


@dataclass(frozen=True)
class ExpectText(IROp):
    kind: ClassVar[str] = "expectText"
    is_assertion: ClassVar[bool] = True
    locator: Target = None
    text: str = ""


@dataclass(frozen=True)
class ExpectToast(IROp):
    kind: ClassVar[str] = "expectToast"
    is_assertion: ClassVar[bool] = True
    toast_type: str = "any"
    message: Optional[str] = None
    locator: Target = None


@dataclass(frozen=True)
class ExpectUrl(IROp):
    kind: ClassVar[str] = "expectUrl"
    is_assertion: ClassVar[bool] = True
    pattern: str = ""


@dataclass(frozen=True)
class ExpectTitle(IROp):
    kind: ClassVar[str] = "expectTitle"
    is_assertion: ClassVar[bool] = True
    title: str = ""


@dataclass(frozen=True)
class WaitForUrl(IROp):
    kind: ClassVar[str] = "waitForUrl"
    pattern: str = ""


@dataclass(frozen=True)
class WaitForResponse(IROp):
    """Wait for a network response whose URL contains ``url_contains``."""

    kind: ClassVar[str] = "waitForResponse"
    url_contains: str = ""
    method: Optional[str] = None
    status: Optional[int] = None


@dataclass(frozen=True)
class CustomStep(IROp):
    kind: ClassVar[str] = "custom"
    reason: str = ""
    suggestion: Optional[str] = None


ELEMENT_OPS = (Click, Fill, Select, Check, ExpectVisible, ExpectHidden, ExpectText, ExpectToast)
ACTION_OPS = (Goto, Click, Fill, Select, Check, Press)


def describe_op(op: IROp) -> str:
    """Short human-readable rendering of an operation for comments and reports."""
    target = op.target
    element = ""
    if isinstance(target, LocatorSpec):
        element = target.description or target.name or target.value
    elif isinstance(target, LocatorRequest):
        element = target.description

    if isinstance(op, Goto):
        return f"navigate to {op.target_url}"
    if isinstance(op, Click):
        return f"click {element}"
    if isinstance(op, Fill):
        shown = f"{{{{{op.value.value}}}}}" if op.value.kind == "actor" else op.value.value
        return f"fill {element} with \"{shown}\""
    if isinstance(op, Select):
        return f"select \"{op.option.value}\" in {element}"
    if isinstance(op, Check):
        return f"{'check' if op.checked else 'uncheck'} {element}"
    if isinstance(op, Press):
        return f"press {op.key}"
    if isinstance(op, ExpectVisible):
        return f"expect {element} to be visible"
    if isinstance(op, ExpectHidden):
        return f"expect {element} to be hidden"
    if isinstance(op, ExpectText):
        return f"expect {element} to contain \"{op.text}\""
    if isinstance(op, ExpectToast):
        flavour = "" if op.toast_type == "any" else f"{op.toast_type} "
        suffix = f" with \"{op.message}\"" if op.message else ""
        return f"expect {flavour}toast{suffix}"
    if isinstance(op, ExpectUrl):
        return f"expect url to contain {op.pattern}"
    if isinstance(op, ExpectTitle):
        return f"expect title \"{op.title}\""
    if isinstance(op, WaitForUrl):
        return f"wait for url {op.pattern}"
    if isinstance(op, WaitForResponse):
        return f"wait for response from {op.url_contains}"
    if isinstance(op, CustomStep):
        return f"blocked: {op.reason}"
    return op.kind
