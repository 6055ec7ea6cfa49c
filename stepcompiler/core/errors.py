from __future__ import annotations

from typing import Optional


class StepCompilerError(RuntimeError):
    """Base class for errors that abort compilation of a journey."""


class JourneyStructureError(StepCompilerError):
    """Raised when a journey document is malformed.

    Carries the source path, the 1-based line number and the offending text so
    the author can fix the document without re-reading the whole file.
    """

    def __init__(
        self,
        message: str,
        source: str = "<journey>",
        line: Optional[int] = None,
        text: Optional[str] = None,
    ) -> None:
        self.message = message
        self.source = source
        self.line = line
        self.text = text
        location = f"{source}:{line}" if line is not None else source
        detail = f"{location}: {message}"
        if text:
            detail += f"\n    {text.strip()}"
        super().__init__(detail)

    def to_dict(self) -> dict:
        return {
            "type": "structural",
            "message": self.message,
            "source": self.source,
            "line": self.line,
            "text": self.text,
        }


class JourneyNotReadyError(JourneyStructureError):
    """Raised when a journey's lifecycle status does not allow compilation yet."""


class GenerationConflictError(StepCompilerError):
    """Raised when a managed region was edited by hand since it was generated."""

    def __init__(self, path: str, region_id: str, line: Optional[int] = None) -> None:
        self.path = path
        self.region_id = region_id
        self.line = line
        location = f"{path}:{line}" if line is not None else path
        super().__init__(
            f"{location}: managed region '{region_id}' was modified by hand; "
            "reconcile the edits (move them outside the region or delete the region) before regenerating"
        )

    def to_dict(self) -> dict:
        return {
            "type": "generation-conflict",
            "message": str(self),
            "source": self.path,
            "line": self.line,
            "region": self.region_id,
        }


class CatalogError(StepCompilerError):
    """Raised when the selector catalog or knowledge base cannot be loaded."""

    def to_dict(self) -> dict:
        return {"type": "catalog", "message": str(self)}


class HealPolicyViolation(StepCompilerError):
    """Raised when a proposed heal falls outside the allowed edit categories."""

    def __init__(self, fix_type: str, reason: str) -> None:
        self.fix_type = fix_type
        self.reason = reason
        super().__init__(f"Heal '{fix_type}' rejected: {reason}")
