from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ...core.config import CompilerConfig, load_config
from ...core.errors import StepCompilerError
from ...mapping.patterns import PATTERNS
from ...services.compile_service import CompileService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["compile"])


@lru_cache(maxsize=1)
def get_config() -> CompilerConfig:
    return load_config()


class CompileRequest(BaseModel):
    journey: str = Field(..., min_length=1, description="Journey document: YAML frontmatter plus numbered steps.")
    source: str = Field("<api>", description="Name used for the journey in error locations and file headers.")
    dryRun: bool = Field(True, description="Return previews only; write nothing unless false.")
    verify: bool = Field(False, description="Run and heal the generated test (requires dryRun=false).")
    generateModules: Optional[bool] = Field(None, description="Rewrite module files (defaults to config).")
    outputDir: Optional[str] = Field(None, description="Output directory; defaults to STEPC_OUTPUT_DIR.")
    maxHealAttempts: Optional[int] = Field(None, ge=0, le=10)
    includePreviews: bool = Field(True, description="Include rendered file contents in the response.")


class PatternInfo(BaseModel):
    name: str
    category: str


class CompileResponse(BaseModel):
    exitCode: int
    dryRun: bool
    summary: Dict[str, int]
    promotion: Optional[Dict[str, Any]] = None
    files: List[str] = Field(default_factory=list)
    outcomes: List[Dict[str, Any]]
    previews: Dict[str, str] = Field(default_factory=dict)


ERROR_STATUS = {"structural": 400, "generation-conflict": 409, "codegen": 500, "catalog": 500}


@router.post("/compile", response_model=CompileResponse)
def compile_journey(req: CompileRequest, config: CompilerConfig = Depends(get_config)) -> CompileResponse:
    effective = config.with_overrides(
        dry_run=req.dryRun,
        verify=req.verify,
        generate_modules=req.generateModules,
        output_dir=Path(req.outputDir) if req.outputDir else None,
        max_heal_attempts=req.maxHealAttempts,
    )
    try:
        service = CompileService(effective)
        batch = service.compile_text(req.journey, source=req.source)
    except StepCompilerError as exc:
        to_dict = getattr(exc, "to_dict", None)
        detail = to_dict() if callable(to_dict) else {"type": "error", "message": str(exc)}
        raise HTTPException(status_code=ERROR_STATUS.get(detail["type"], 400), detail=detail) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("[CompileService] Unexpected failure compiling %s", req.source)
        raise HTTPException(status_code=500, detail=f"Compilation failed: {exc}") from exc

    outcome = batch.outcomes[0]
    if outcome.error is not None:
        status = ERROR_STATUS.get(str(outcome.error.get("type")), 400)
        raise HTTPException(status_code=status, detail=outcome.error)

    payload = batch.to_dict(include_previews=req.includePreviews)
    if req.includePreviews:
        previews = dict(payload.pop("previews", {}))
        for item in payload["outcomes"]:
            previews.update(item.pop("previews", {}))
        payload["previews"] = previews
    return CompileResponse(**payload)


@router.get("/patterns", response_model=List[PatternInfo])
async def list_patterns() -> List[PatternInfo]:
    return [PatternInfo(name=p.name, category=p.category) for p in PATTERNS]
