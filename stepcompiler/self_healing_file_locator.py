"""Locate and modify generated module files during self-healing."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple

from .core.fileio import atomic_write_text, read_text
from .generators.module_generator import (
    ElementFunction,
    ModulePlan,
    read_module_functions,
    render_locator,
    render_module,
)
from .verify.classifier import FailedLocator
from .verify.policy import HealAction, HealPolicy

logger = logging.getLogger(__name__)

_FILE_LOCKS: Dict[Path, threading.Lock] = {}
_FILE_LOCKS_GUARD = threading.Lock()


def file_lock(path: Path) -> threading.Lock:
    """One lock per module file, shared by every heal loop in the process."""
    key = Path(path).resolve()
    with _FILE_LOCKS_GUARD:
        return _FILE_LOCKS.setdefault(key, threading.Lock())


def find_owning_function(
    failed: FailedLocator,
    plans: Dict[Path, ModulePlan],
) -> Optional[Tuple[Path, ElementFunction]]:
    """The module function whose locator produced ``failed``."""
    if failed.spec is None:
        return None
    rendered = render_locator(failed.spec)
    loose = None
    for path, plan in sorted(plans.items()):
        for function in plan.functions.values():
            if render_locator(function.spec) == rendered:
                return path, function
            if loose is None and function.spec.key()[:3] == failed.spec.key()[:3]:
                loose = (path, function)
    return loose


def extract_locator_changes(original_text: str, healed_text: str) -> Dict[str, Tuple[str, str]]:
    """Per function, the (old, new) locator expressions that differ between two module versions."""
    before = read_module_functions(original_text)
    after = read_module_functions(healed_text)
    changes: Dict[str, Tuple[str, str]] = {}
    for name, old_spec in before.items():
        new_spec = after.get(name)
        if new_spec is None:
            continue
        old, new = render_locator(old_spec), render_locator(new_spec)
        if old != new or old_spec.wait_timeout != new_spec.wait_timeout:
            if old_spec.wait_timeout != new_spec.wait_timeout:
                old += f" [wait {old_spec.wait_timeout}]"
                new += f" [wait {new_spec.wait_timeout}]"
            changes[name] = (old, new)
    return changes


@dataclass(frozen=True)
class AppliedHeal:
    action: HealAction
    changes: Dict[str, Tuple[str, str]]


class ModuleFileUpdater:
    """Applies policy-checked locator edits to module files atomically."""

    def __init__(self, policy: HealPolicy) -> None:
        self.policy = policy

    def apply(
        self,
        action: HealAction,
        plan: ModulePlan,
        test_path: Optional[Path] = None,
    ) -> AppliedHeal:
        path = action.module_path
        with file_lock(path):
            test_before = read_text(test_path) if test_path is not None else None
            before = read_text(path) or ""
            previous = plan.functions[action.function].spec
            plan.replace_spec(action.function, action.after)
            try:
                after = render_module(plan, before, str(path), names=[action.function], header=not before)
                test_after = read_text(test_path) if test_path is not None else None
                self.policy.check(action, before, after, test_before, test_after)
            except Exception:
                plan.replace_spec(action.function, previous)
                raise
            atomic_write_text(path, after)
        changes = extract_locator_changes(before, after)
        logger.info("[SelfHealing] %s on %s.%s: %s", action.fix_type, path.stem, action.function,
                    "; ".join(f"{old} -> {new}" for old, new in changes.values()) or "no textual change")
        return AppliedHeal(action=action, changes=changes)


def module_paths(plans: Iterable[ModulePlan], modules_dir: Path) -> Dict[Path, ModulePlan]:
    return {Path(modules_dir) / plan.filename: plan for plan in plans}
