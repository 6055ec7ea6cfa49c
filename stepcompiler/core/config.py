"""Runtime configuration for the step compiler.

Values come from the environment (optionally seeded from a ``.env`` file) and
can be overridden per invocation by the CLI or the HTTP API.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "0") -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[Config] Ignoring non-integer %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[Config] Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_path(name: str) -> Optional[Path]:
    raw = os.getenv(name, "").strip()
    return Path(raw) if raw else None


@dataclass(frozen=True)
class CompilerConfig:
    output_dir: Path = Path("generated")
    catalog_path: Optional[Path] = None
    knowledge_path: Optional[Path] = None
    application: str = "app"
    generate_modules: bool = True
    dry_run: bool = True
    verify: bool = False
    max_heal_attempts: int = 2
    verify_timeout: float = 300.0
    max_workers: int = 4
    verify_concurrency: int = 2
    promotion_similarity: float = 1.0
    base_url: Optional[str] = None
    browser: str = "chromium"
    headless: bool = True

    def with_overrides(self, **overrides) -> "CompilerConfig":
        """Return a copy with every non-None override applied."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **values)


def load_config(env_file: Optional[Path] = None) -> CompilerConfig:
    """Build a config from ``.env`` and ``STEPC_*`` environment variables."""
    if env_file is not None:
        load_dotenv(dotenv_path=env_file, override=False)
    else:
        load_dotenv()

    similarity = _env_float("STEPC_PROMOTION_SIMILARITY", 1.0)
    if not 0.0 < similarity <= 1.0:
        logger.warning("[Config] STEPC_PROMOTION_SIMILARITY must be in (0, 1]; using 1.0")
        similarity = 1.0

    return CompilerConfig(
        output_dir=Path(os.getenv("STEPC_OUTPUT_DIR", "generated")),
        catalog_path=_env_path("STEPC_CATALOG"),
        knowledge_path=_env_path("STEPC_KNOWLEDGE_BASE"),
        application=os.getenv("STEPC_APPLICATION", "app"),
        generate_modules=_env_flag("STEPC_GENERATE_MODULES", "1"),
        max_heal_attempts=max(0, _env_int("STEPC_MAX_HEAL_ATTEMPTS", 2)),
        verify_timeout=_env_float("STEPC_VERIFY_TIMEOUT", 300.0),
        max_workers=max(1, _env_int("STEPC_MAX_WORKERS", 4)),
        verify_concurrency=max(1, _env_int("STEPC_VERIFY_CONCURRENCY", 2)),
        promotion_similarity=similarity,
        base_url=os.getenv("STEPC_BASE_URL") or None,
        browser=os.getenv("STEPC_BROWSER", "chromium"),
        headless=_env_flag("STEPC_HEADLESS", "1"),
    )
