"""Allow-list / deny-list gate for automatic heals."""
from __future__ import annotations

import ast
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, FrozenSet, List, Optional

from ..core.errors import HealPolicyViolation
from ..ir.ops import LocatorSpec

logger = logging.getLogger(__name__)

LOCATOR_SUBSTITUTION = "locator-substitution"
WAIT_STRENGTHENING = "wait-strengthening"
LOCATOR_NARROWING = "locator-narrowing"

ALLOWED_FIXES: FrozenSet[str] = frozenset({LOCATOR_SUBSTITUTION, WAIT_STRENGTHENING, LOCATOR_NARROWING})
FORBIDDEN_FIXES: FrozenSet[str] = frozenset(
    {"remove-assertion", "weaken-assertion", "add-sleep", "force-click", "alter-acceptance", "bypass-auth"}
)
FORBIDDEN_CODE = {
    "time.sleep(": "add-sleep",
    ".wait_for_timeout(": "add-sleep",
    "force=True": "force-click",
}
MAX_WAIT_MS = 30000


@dataclass(frozen=True)
class HealAction:
    fix_type: str
    module_path: Path
    function: str
    before: LocatorSpec
    after: LocatorSpec
    detail: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "fixType": self.fix_type,
            "module": str(self.module_path),
            "function": self.function,
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "detail": self.detail,
        }


def assertion_statements(text: str) -> List[str]:
    """Normalised dumps of every ``expect(...)`` assertion call in ``text``."""
    try:
        tree = ast.parse(text)
    except SyntaxError:
        return []
    found: List[str] = []
    for node in ast.walk(tree):
        if not (isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute)):
            continue
        subject = node.func.value
        if isinstance(subject, ast.Call) and isinstance(subject.func, ast.Name) and subject.func.id == "expect":
            found.append(ast.dump(node))
    return sorted(found)


class HealPolicy:
    """Decides whether a proposed heal may be written."""

    def __init__(self, allowed: FrozenSet[str] = ALLOWED_FIXES, max_wait_ms: int = MAX_WAIT_MS) -> None:
        self.allowed = allowed
        self.max_wait_ms = max_wait_ms

    def _check_shape(self, action: HealAction) -> None:
        before, after = action.before, action.after
        if action.fix_type == WAIT_STRENGTHENING:
            if (before.key() != after.key() or after.wait_timeout is None
                    or (before.wait_timeout or 0) >= after.wait_timeout):
                raise HealPolicyViolation(action.fix_type, "a wait heal may only add or lengthen the wait")
            if after.wait_timeout > self.max_wait_ms:
                raise HealPolicyViolation(action.fix_type, f"wait exceeds {self.max_wait_ms} ms")
        elif action.fix_type == LOCATOR_NARROWING:
            same_target = (before.strategy, before.value, before.name) == (after.strategy, after.value, after.name)
            if not same_target or before.key() == after.key():
                raise HealPolicyViolation(action.fix_type, "narrowing may only add exact matching or pick the first match")
        elif action.fix_type == LOCATOR_SUBSTITUTION and before.key() == after.key():
            raise HealPolicyViolation(action.fix_type, "substitution did not change the locator")

    def check(self, action: HealAction, before: str, after: str,
              test_before: Optional[str] = None, test_after: Optional[str] = None) -> None:
        """Raise ``HealPolicyViolation`` unless the heal is allowed.

        ``before``/``after`` are the edited module file; ``test_before`` and
        ``test_after`` the journey's test file around the same edit.
        """
        if action.fix_type in FORBIDDEN_FIXES:
            raise HealPolicyViolation(action.fix_type, "fix type is forbidden")
        if action.fix_type not in self.allowed:
            raise HealPolicyViolation(action.fix_type, "fix type is not allow-listed")
        self._check_shape(action)

        for pattern, category in FORBIDDEN_CODE.items():
            if after.count(pattern) > before.count(pattern):
                raise HealPolicyViolation(category, f"heal introduces '{pattern}'")

        if assertion_statements(before) != assertion_statements(after):
            raise HealPolicyViolation("weaken-assertion", "assertion statements changed in the module file")
        if test_before is not None and test_after is not None:
            if assertion_statements(test_before) != assertion_statements(test_after):
                raise HealPolicyViolation("weaken-assertion", "assertion statements changed in the test file")
            if test_before != test_after:
                raise HealPolicyViolation("alter-acceptance", "heals may not edit the test file")
        logger.debug("[SelfHealing] Policy accepted %s on %s", action.fix_type, action.function)
