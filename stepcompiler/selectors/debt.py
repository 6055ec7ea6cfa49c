from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from ..ir.ops import LocatorSpec


@dataclass(frozen=True)
class SelectorDebt:
    """A step that could only be resolved with a structural selector."""

    application: str
    element: str
    selector: str
    remediation: str
    step: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "application": self.application,
            "element": self.element,
            "selector": self.selector,
            "remediation": self.remediation,
            "step": self.step,
        }


def record_debt(spec: LocatorSpec, application: str, element: str, step: Optional[int] = None) -> SelectorDebt:
    name = element.strip() or "element"
    remediation = (
        f"Add a data-testid or an accessible name to '{name}' in {application}, "
        f"then add a hint such as (testid=...) or (role=..., name=...) to the step"
    )
    return SelectorDebt(
        application=application,
        element=name,
        selector=spec.value,
        remediation=remediation,
        step=step,
    )
