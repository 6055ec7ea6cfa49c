from __future__ import annotations

import os
from fastapi import APIRouter

from ...mapping.patterns import pattern_names
from ...verify.classifier import FailureType


router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthcheck():
    return {
        "status": "ok",
        "service": "stepcompiler",
        "version": os.getenv("APP_VERSION", "dev"),
        "patterns": len(pattern_names()),
        "failureTypes": [f.value for f in FailureType],
    }
