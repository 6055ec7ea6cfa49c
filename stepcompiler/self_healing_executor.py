"""Verification runner with bounded, policy-gated self-healing.

State machine::

    GENERATED -> RUNNING -> PASSED
                         -> FAILED -> HEALING -> RUNNING ...
                                   -> BLOCKED

Only module functions are ever edited. A heal either substitutes another
locator for the same element, adds or lengthens a condition-based wait, or
narrows an ambiguous locator. Anything else ends the loop as BLOCKED.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from difflib import SequenceMatcher
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Set

from .core.errors import HealPolicyViolation, StepCompilerError
from .executor import RunResult
from .generators.module_generator import ElementFunction, ModulePlan
from .ir.ops import LocatorSpec, LocatorStrategy, Provenance
from .self_healing_file_locator import ModuleFileUpdater, find_owning_function
from .verify.classifier import FailureClassification, FailureType, classify_failure
from .verify.evidence import AriaNode, Evidence, collect_evidence
from .verify.policy import (
    LOCATOR_NARROWING,
    LOCATOR_SUBSTITUTION,
    MAX_WAIT_MS,
    WAIT_STRENGTHENING,
    HealAction,
    HealPolicy,
)

logger = logging.getLogger(__name__)

FIRST_WAIT_MS = 10000
SNAPSHOT_MATCH_RATIO = 0.6


class VerificationState(str, Enum):
    GENERATED = "generated"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    HEALING = "healing"
    BLOCKED = "blocked"


class Runner(Protocol):
    def run(self, test_path: Path, timeout: float, cancel_event: Optional[threading.Event] = None,
            evidence_dir: Optional[Path] = None) -> RunResult:
        ...


@dataclass
class VerificationSession:
    """Everything the heal loop may touch for one journey."""

    journey_id: str
    test_path: Path
    plans: Dict[Path, ModulePlan]
    evidence_root: Path
    tried: Dict[str, Set[tuple]] = field(default_factory=dict)

    def evidence_dir(self, run_number: int) -> Path:
        return self.evidence_root / f"attempt-{run_number}"


@dataclass
class HealAttempt:
    attempt: int
    failure_type: str
    result: str
    fix_type: Optional[str] = None
    function: Optional[str] = None
    module: Optional[str] = None
    changes: Dict[str, List[str]] = field(default_factory=dict)
    evidence: Dict[str, object] = field(default_factory=dict)
    message: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "attempt": self.attempt,
            "failureType": self.failure_type,
            "fixType": self.fix_type,
            "function": self.function,
            "module": self.module,
            "changes": self.changes,
            "evidence": self.evidence,
            "result": self.result,
            "message": self.message,
        }


@dataclass
class VerificationResult:
    state: VerificationState
    history: List[VerificationState] = field(default_factory=list)
    attempts: List[HealAttempt] = field(default_factory=list)
    runs: int = 0
    reason: str = ""
    exhausted: bool = False
    last_failure: Optional[FailureClassification] = None

    @property
    def passed(self) -> bool:
        return self.state is VerificationState.PASSED

    def to_dict(self) -> Dict[str, object]:
        return {
            "state": self.state.value,
            "history": [s.value for s in self.history],
            "runs": self.runs,
            "reason": self.reason,
            "budgetExhausted": self.exhausted,
            "lastFailure": self.last_failure.to_dict() if self.last_failure else None,
        }


def next_wait(current: Optional[int], ceiling: int = MAX_WAIT_MS) -> Optional[int]:
    if current is None:
        return FIRST_WAIT_MS
    if current >= ceiling:
        return None
    return min(current * 2, ceiling)


def _snapshot_substitute(function: ElementFunction, nodes: List[AriaNode]) -> Optional[LocatorSpec]:
    """A role + exact name for the same element, confirmed by the accessibility snapshot."""
    spec = function.spec
    if spec.strategy is LocatorStrategy.ROLE:
        role, wanted = spec.value, spec.name
    elif spec.strategy is LocatorStrategy.LABEL:
        role, wanted = "textbox", spec.value
    elif spec.strategy is LocatorStrategy.TEXT:
        role, wanted = None, spec.value
    else:
        return None
    if not wanted:
        return None

    best: Optional[AriaNode] = None
    best_score = 0.0
    for node in nodes:
        if not node.name or (role and node.role != role):
            continue
        if spec.strategy is LocatorStrategy.ROLE and node.name.casefold() == wanted.casefold():
            continue
        score = SequenceMatcher(None, wanted.casefold(), node.name.casefold()).ratio()
        if score > best_score:
            best, best_score = node, score
    if best is None or best_score < SNAPSHOT_MATCH_RATIO:
        return None
    return LocatorSpec(
        strategy=LocatorStrategy.ROLE,
        value=best.role,
        name=best.name,
        exact=True,
        wait_timeout=spec.wait_timeout,
        confidence=round(best_score, 3),
        provenance=Provenance.PATTERN,
        description=spec.description,
    )


def _wait_heal(path: Path, function: ElementFunction) -> Optional[HealAction]:
    if "expectHidden" in function.usages:
        return None
    wait = next_wait(function.spec.wait_timeout)
    if wait is None:
        return None
    return HealAction(WAIT_STRENGTHENING, path, function.name, function.spec,
                      replace(function.spec, wait_timeout=wait), f"wait up to {wait} ms for visibility")


def plan_heal(
    classification: FailureClassification,
    session: VerificationSession,
    evidence: Evidence,
) -> Optional[HealAction]:
    """Pick the next allowed heal for a classified failure, or None when there is none."""
    failed = classification.primary_locator
    if failed is None:
        return None
    owner = find_owning_function(failed, session.plans)
    if owner is None:
        logger.info("[SelfHealing] No module function owns %s", failed.expression)
        return None
    path, function = owner
    spec = function.spec
    tried = session.tried.setdefault(function.name, {spec.key()})

    if classification.failure_type is FailureType.SELECTOR_NOT_FOUND:
        confirmed = _snapshot_substitute(function, evidence.aria_nodes)
        if confirmed is not None and confirmed.key() not in tried:
            tried.add(confirmed.key())
            return HealAction(LOCATOR_SUBSTITUTION, path, function.name, spec, confirmed,
                              "role and name confirmed in the accessibility snapshot")
        for alternate in function.alternates:
            if alternate.key() not in tried:
                tried.add(alternate.key())
                return HealAction(LOCATOR_SUBSTITUTION, path, function.name, spec,
                                  replace(alternate, wait_timeout=spec.wait_timeout),
                                  f"next ranked alternate ({alternate.provenance.value}:{alternate.strategy.value})")
        return _wait_heal(path, function)

    if classification.failure_type is FailureType.TIMING:
        return _wait_heal(path, function)

    if classification.failure_type is FailureType.STRICT_MODE:
        if not spec.exact and spec.strategy in (LocatorStrategy.ROLE, LocatorStrategy.LABEL, LocatorStrategy.TEXT) \
                and (spec.name or spec.strategy is not LocatorStrategy.ROLE):
            return HealAction(LOCATOR_NARROWING, path, function.name, spec, replace(spec, exact=True),
                              "match the accessible name exactly")
        if spec.nth is None:
            return HealAction(LOCATOR_NARROWING, path, function.name, spec, replace(spec, nth=0),
                              "use the first match")
    return None


def run_with_bounded_healing(
    session: VerificationSession,
    runner: Runner,
    policy: Optional[HealPolicy] = None,
    max_attempts: int = 2,
    timeout: float = 300.0,
    cancel_event: Optional[threading.Event] = None,
) -> VerificationResult:
    """Run the journey's test, healing at most ``max_attempts`` times.

    Each failed run is classified from its evidence. Locator and timing
    failures get one policy-checked edit to the owning element function and
    the test runs again; anything else, or a rejected edit, ends the loop.

    Args:
        session: Test file, module plans and evidence directory of one journey.
        runner: Executes the test file (``PytestRunner`` in production).
        policy: Allow-list the heals are checked against.
        max_attempts: Heal budget; ``0`` verifies without healing.
        timeout: Seconds for the whole verification of the journey, across all runs.
        cancel_event: Set to stop the current run and block the journey.

    Returns:
        VerificationResult with the state history, the heal attempts and, when
        not passed, the reason. ``exhausted`` is set when the budget or the
        available heals ran out.
    """
    updater = ModuleFileUpdater(policy or HealPolicy())
    outcome = VerificationResult(state=VerificationState.GENERATED, history=[VerificationState.GENERATED])

    def move(state: VerificationState) -> None:
        outcome.state = state
        outcome.history.append(state)

    def block(reason: str) -> VerificationResult:
        move(VerificationState.BLOCKED)
        outcome.reason = reason
        logger.warning("[SelfHealing] %s blocked: %s", session.journey_id, reason)
        return outcome

    deadline = time.monotonic() + timeout
    heals = 0
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return block(f"verification timed out after {timeout:.0f}s")
        move(VerificationState.RUNNING)
        outcome.runs += 1
        logger.info("[SelfHealing] %s run %d (heals used %d/%d, %.0fs left)", session.journey_id, outcome.runs,
                    heals, max_attempts, remaining)
        try:
            result = runner.run(session.test_path, remaining, cancel_event, session.evidence_dir(outcome.runs))
        except (StepCompilerError, OSError) as exc:
            return block(f"verification run failed: {exc}")

        if result.passed:
            move(VerificationState.PASSED)
            return outcome
        if result.cancelled:
            return block("verification cancelled")
        if result.timed_out:
            return block(f"verification timed out after {timeout:.0f}s")

        move(VerificationState.FAILED)
        evidence = collect_evidence(result)
        classification = classify_failure(evidence)
        outcome.last_failure = classification
        kind = classification.failure_type

        if kind is FailureType.UNCLASSIFIABLE:
            outcome.attempts.append(HealAttempt(heals + 1, kind.value, "not-attempted", evidence=evidence.to_dict(),
                                                message=classification.message))
            return block(f"unclassifiable failure: {classification.message}")
        if heals >= max_attempts:
            outcome.exhausted = True
            return block(f"heal budget exhausted after {heals} attempt(s); last failure: {kind.value}")

        move(VerificationState.HEALING)
        heals += 1
        action = plan_heal(classification, session, evidence)
        if action is None:
            outcome.attempts.append(HealAttempt(heals, kind.value, "no-allowed-fix", evidence=evidence.to_dict(),
                                                message=classification.message))
            if heals > 1:
                # earlier heals used up every option before the budget ran out
                outcome.exhausted = True
                return block(f"heal options exhausted after {heals - 1} of {max_attempts} attempt(s); "
                             f"last failure: {kind.value}")
            return block(f"no allowed heal for {kind.value} failure")

        attempt = HealAttempt(heals, kind.value, "applied", fix_type=action.fix_type, function=action.function,
                              module=str(action.module_path), evidence=evidence.to_dict(), message=action.detail)
        plan = session.plans[action.module_path]
        try:
            applied = updater.apply(action, plan, session.test_path)
        except HealPolicyViolation as exc:
            attempt.result = "rejected"
            attempt.message = str(exc)
            outcome.attempts.append(attempt)
            return block(str(exc))
        except (StepCompilerError, OSError) as exc:
            attempt.result = "failed"
            attempt.message = str(exc)
            outcome.attempts.append(attempt)
            return block(f"heal could not be written: {exc}")
        attempt.changes = {name: list(pair) for name, pair in applied.changes.items()}
        outcome.attempts.append(attempt)
