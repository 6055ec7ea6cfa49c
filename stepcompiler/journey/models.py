from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..core.hashstore import payload_hash
from .hints import MachineHint


class JourneyStatus(str, Enum):
    PROPOSED = "proposed"
    DEFINED = "defined"
    CLARIFIED = "clarified"
    IMPLEMENTED = "implemented"
    QUARANTINED = "quarantined"
    DEPRECATED = "deprecated"


STATUS_ORDER: Dict[JourneyStatus, int] = {
    JourneyStatus.PROPOSED: 0,
    JourneyStatus.DEFINED: 1,
    JourneyStatus.CLARIFIED: 2,
    JourneyStatus.IMPLEMENTED: 3,
    JourneyStatus.QUARANTINED: 4,
    JourneyStatus.DEPRECATED: 4,
}


class JourneyTier(str, Enum):
    SMOKE = "smoke"
    RELEASE = "release"
    REGRESSION = "regression"


class BlockedStepDeclaration(BaseModel):
    step: int = Field(..., ge=1, description="1-based step number the author marked as not automatable.")
    reason: str = Field(..., min_length=1)


class AutogenSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    enabled: bool = True
    blockedSteps: List[BlockedStepDeclaration] = Field(default_factory=list)
    machineHints: bool = True


class CompletionSignal(BaseModel):
    type: Literal["url", "toast", "element", "title", "api"]
    value: str = Field(..., min_length=1)
    options: Dict[str, Any] = Field(default_factory=dict)


class JourneyModules(BaseModel):
    foundation: List[str] = Field(default_factory=list)
    features: List[str] = Field(default_factory=list)


class JourneyFrontmatter(BaseModel):
    """Validated journey metadata block."""

    model_config = ConfigDict(extra="allow")

    id: str = Field(..., pattern=r"^[A-Za-z][A-Za-z0-9_.-]*$")
    title: str = Field(..., min_length=1)
    status: JourneyStatus
    tier: JourneyTier
    actor: str = Field(..., min_length=1)
    scope: Optional[str] = None
    owner: Optional[str] = None
    revision: int = 1
    tags: List[str] = Field(default_factory=list)
    modules: JourneyModules = Field(default_factory=JourneyModules)
    completion: List[CompletionSignal] = Field(default_factory=list)
    autogen: AutogenSettings = Field(default_factory=AutogenSettings)

    @field_validator("id", "title", "actor", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


@dataclass(frozen=True)
class Step:
    number: int
    text: str
    raw_text: str
    line: int
    hint: Optional[MachineHint] = None
    ac_refs: Tuple[str, ...] = ()

    @property
    def fingerprint(self) -> str:
        payload = {
            "number": self.number,
            "text": self.raw_text,
            "hint": self.hint.to_dict() if self.hint else None,
        }
        return payload_hash(payload)[:16]


@dataclass(frozen=True)
class Journey:
    frontmatter: JourneyFrontmatter
    steps: Tuple[Step, ...]
    source: str = "<journey>"
    warnings: Tuple[str, ...] = field(default_factory=tuple)
    status_line: Optional[int] = None

    @property
    def id(self) -> str:
        return self.frontmatter.id

    @property
    def title(self) -> str:
        return self.frontmatter.title

    @property
    def status(self) -> JourneyStatus:
        return self.frontmatter.status

    @property
    def autogen(self) -> AutogenSettings:
        return self.frontmatter.autogen

    @property
    def is_compilable(self) -> bool:
        return STATUS_ORDER[self.status] >= STATUS_ORDER[JourneyStatus.CLARIFIED]

    def declared_blocks(self) -> Dict[int, str]:
        return {b.step: b.reason for b in self.autogen.blockedSteps}
