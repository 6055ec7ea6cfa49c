"""Generation outcome reports for single journeys and batches."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class OutcomeStatus(str, Enum):
    PASSED = "passed"
    COMPILED = "compiled"
    BLOCKED_STEPS = "blocked_steps"
    VERIFICATION_FAILED = "verification_failed"
    BLOCKED = "blocked"
    SKIPPED = "skipped"
    ERROR = "error"


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_BLOCKED_STEPS = 2
EXIT_VERIFICATION_FAILED = 3

EXIT_CODES: Dict[OutcomeStatus, int] = {
    OutcomeStatus.PASSED: EXIT_OK,
    OutcomeStatus.COMPILED: EXIT_OK,
    OutcomeStatus.SKIPPED: EXIT_OK,
    OutcomeStatus.BLOCKED_STEPS: EXIT_BLOCKED_STEPS,
    OutcomeStatus.VERIFICATION_FAILED: EXIT_VERIFICATION_FAILED,
    OutcomeStatus.BLOCKED: EXIT_VERIFICATION_FAILED,
    OutcomeStatus.ERROR: EXIT_ERROR,
}

# Worst first: a structural error outranks a failing verification, which
# outranks blocked steps.
EXIT_SEVERITY = (EXIT_ERROR, EXIT_VERIFICATION_FAILED, EXIT_BLOCKED_STEPS, EXIT_OK)


def worst_exit_code(codes) -> int:
    codes = set(codes)
    for code in EXIT_SEVERITY:
        if code in codes:
            return code
    return EXIT_OK


@dataclass
class BlockedStep:
    step: int
    text: str
    reason: str
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "text": self.text, "reason": self.reason, "suggestion": self.suggestion}


@dataclass
class GenerationOutcome:
    """What happened to one journey. Always returned, written in commit mode."""

    journey_id: str
    status: OutcomeStatus
    source: str = ""
    mapped_count: int = 0
    total_steps: int = 0
    blocked_steps: List[BlockedStep] = field(default_factory=list)
    selector_debt: List[Dict[str, Any]] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    heal_attempts: List[Dict[str, Any]] = field(default_factory=list)
    verification: Optional[Dict[str, Any]] = None
    step_fingerprints: Dict[str, str] = field(default_factory=dict)
    ac_coverage: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    ir_digest: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None
    dry_run: bool = True
    previews: Dict[str, str] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.status]

    def to_dict(self, include_previews: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "journeyId": self.journey_id,
            "status": self.status.value,
            "source": self.source,
            "mappedCount": self.mapped_count,
            "totalSteps": self.total_steps,
            "blockedSteps": [b.to_dict() for b in self.blocked_steps],
            "selectorDebt": self.selector_debt,
            "files": self.files,
            "healAttempts": self.heal_attempts,
            "verification": self.verification,
            "stepFingerprints": self.step_fingerprints,
            "acCoverage": self.ac_coverage,
            "irDigest": self.ir_digest,
            "warnings": self.warnings,
            "error": self.error,
            "dryRun": self.dry_run,
            "exitCode": self.exit_code,
        }
        if include_previews:
            payload["previews"] = self.previews
        return payload


@dataclass
class BatchOutcome:
    outcomes: List[GenerationOutcome] = field(default_factory=list)
    promotion: Optional[Dict[str, Any]] = None
    files: List[str] = field(default_factory=list)
    dry_run: bool = True
    previews: Dict[str, str] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return worst_exit_code(o.exit_code for o in self.outcomes)

    def summary(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in OutcomeStatus}
        for outcome in self.outcomes:
            counts[outcome.status.value] += 1
        counts["total"] = len(self.outcomes)
        return counts

    def get(self, journey_id: str) -> Optional[GenerationOutcome]:
        for outcome in self.outcomes:
            if outcome.journey_id == journey_id:
                return outcome
        return None

    def to_dict(self, include_previews: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "exitCode": self.exit_code,
            "dryRun": self.dry_run,
            "summary": self.summary(),
            "promotion": self.promotion,
            "files": self.files,
            "outcomes": [o.to_dict(include_previews) for o in self.outcomes],
        }
        if include_previews:
            payload["previews"] = self.previews
        return payload
