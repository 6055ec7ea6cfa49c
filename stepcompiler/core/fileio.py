"""Stage-then-commit file writes for generated artifacts."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


def _stage(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as handle:
        handle.write(content)
        handle.flush()
        os.fsync(handle.fileno())
    return Path(tmp_name)


def atomic_write_text(path: Path, content: str) -> None:
    """Write ``content`` to a temp file beside ``path`` and move it into place."""
    tmp = _stage(path, content)
    try:
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, json.dumps(payload, indent=2, ensure_ascii=False, sort_keys=True) + "\n")


def read_text(path: Path) -> Optional[str]:
    if not path.exists():
        return None
    return path.read_text(encoding="utf-8")


class StagedWriteSet:
    """Collects a journey's files and commits them together.

    Every file is staged to a temp file first. Nothing in the live tree is
    touched until all files staged successfully, so a crash while rendering or
    writing leaves either the old files or the new ones, never a half-written
    module.
    """

    def __init__(self) -> None:
        self._pending: Dict[Path, str] = {}

    def add(self, path: Path, content: str) -> None:
        self._pending[Path(path)] = content

    @property
    def paths(self) -> List[Path]:
        return sorted(self._pending)

    def __len__(self) -> int:
        return len(self._pending)

    def commit(self) -> List[Path]:
        staged: List[tuple] = []
        try:
            for path in self.paths:
                staged.append((_stage(path, self._pending[path]), path))
        except OSError:
            for tmp, _ in staged:
                tmp.unlink(missing_ok=True)
            raise
        written: List[Path] = []
        for tmp, path in staged:
            os.replace(tmp, path)
            written.append(path)
            logger.debug("[FileIO] Committed %s", path)
        self._pending.clear()
        return written
