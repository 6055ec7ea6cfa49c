"""Read-only selector catalog and knowledge-base suggestions.

Catalog file layout::

    {
      "version": 1,
      "scopes": {
        "universal": [{"id": "toast", "description": "toast", "strategy": "role", "value": "alert"}],
        "framework": [...],
        "app": [{"id": "save", "description": "save button", "strategy": "testid", "value": "save-btn",
                 "confidence": 0.9, "lastUsed": "2025-01-10"}]
      }
    }

Both structures are loaded once and frozen, so any number of compilation
threads can read them concurrently.
"""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..core.errors import CatalogError

logger = logging.getLogger(__name__)

SCOPES: Tuple[str, ...] = ("app", "framework", "universal")

Strategy = Literal["role", "label", "testid", "text", "css", "xpath"]


class LocatorOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    exact: bool = False
    level: Optional[int] = None


class CatalogEntry(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    description: str
    strategy: Strategy
    value: str = Field(..., min_length=1)
    options: LocatorOptions = Field(default_factory=LocatorOptions)
    confidence: float = Field(0.7, ge=0.0, le=1.0)
    lastUsed: Optional[str] = None
    tags: Tuple[str, ...] = ()


class KnowledgeSuggestion(BaseModel):
    model_config = ConfigDict(frozen=True)

    description: str
    strategy: Strategy
    value: str = Field(..., min_length=1)
    options: LocatorOptions = Field(default_factory=LocatorOptions)
    confidence: float = Field(0.5, ge=0.0, le=1.0)
    source: Optional[str] = None


def normalize_description(text: str) -> str:
    """Lower-case, drop quotes/punctuation and leading articles."""
    lowered = text.casefold()
    lowered = re.sub(r"[\"'`]", "", lowered)
    lowered = re.sub(r"[^\w\s-]", " ", lowered)
    lowered = re.sub(r"^(?:the|a|an)\s+", "", lowered.strip())
    return re.sub(r"\s+", " ", lowered).strip()


def _read_json(path: Path, what: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except OSError as exc:
        raise CatalogError(f"Cannot read {what} {path}: {exc.strerror or exc}") from exc
    except json.JSONDecodeError as exc:
        raise CatalogError(f"Invalid JSON in {what} {path}: line {exc.lineno}: {exc.msg}") from exc


class SelectorCatalog:
    """Scoped catalog lookups. App entries win over framework, then universal."""

    def __init__(self, scopes: Optional[Mapping[str, List[CatalogEntry]]] = None) -> None:
        frozen: Dict[str, Tuple[CatalogEntry, ...]] = {}
        index: Dict[str, List[Tuple[str, CatalogEntry]]] = {}
        for scope in SCOPES:
            entries = tuple((scopes or {}).get(scope, ()))
            frozen[scope] = entries
            for entry in entries:
                for key in {normalize_description(entry.description), normalize_description(entry.id)}:
                    index.setdefault(key, []).append((scope, entry))
        self._scopes = MappingProxyType(frozen)
        self._index = MappingProxyType({k: tuple(v) for k, v in index.items()})

    @classmethod
    def empty(cls) -> "SelectorCatalog":
        return cls()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SelectorCatalog":
        raw_scopes = data.get("scopes", data)
        if not isinstance(raw_scopes, Mapping):
            raise CatalogError("Catalog 'scopes' must be a mapping of scope -> entries")
        unknown = sorted(set(raw_scopes) - set(SCOPES) - {"version"})
        if unknown:
            raise CatalogError(f"Unknown catalog scope(s): {', '.join(unknown)}")
        scopes: Dict[str, List[CatalogEntry]] = {}
        for scope in SCOPES:
            try:
                scopes[scope] = [CatalogEntry.model_validate(item) for item in raw_scopes.get(scope, [])]
            except ValidationError as exc:
                raise CatalogError(f"Invalid catalog entry in scope '{scope}': {exc.errors()[0]['msg']}") from exc
        return cls(scopes)

    @classmethod
    def load(cls, path: Optional[Path]) -> "SelectorCatalog":
        if path is None:
            return cls.empty()
        catalog = cls.from_dict(_read_json(path, "selector catalog"))
        logger.info("[Catalog] Loaded %d entries from %s", len(catalog), path)
        return catalog

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._scopes.values())

    def entries(self, scope: str) -> Tuple[CatalogEntry, ...]:
        return self._scopes.get(scope, ())

    def find(self, *descriptions: str) -> List[Tuple[str, CatalogEntry]]:
        """Entries whose description or id equals any of ``descriptions``.

        Ordered by scope precedence, then confidence (highest first), then id.
        """
        seen = set()
        found: List[Tuple[str, CatalogEntry]] = []
        for description in descriptions:
            if not description:
                continue
            for scope, entry in self._index.get(normalize_description(description), ()):
                if (scope, entry.id) not in seen:
                    seen.add((scope, entry.id))
                    found.append((scope, entry))
        found.sort(key=lambda item: (SCOPES.index(item[0]), -item[1].confidence, item[1].id))
        return found


class KnowledgeBase:
    """Previously learned locator suggestions. Candidates only, never ground truth."""

    def __init__(self, suggestions: Optional[List[KnowledgeSuggestion]] = None) -> None:
        index: Dict[str, List[KnowledgeSuggestion]] = {}
        for suggestion in suggestions or []:
            index.setdefault(normalize_description(suggestion.description), []).append(suggestion)
        self._index = MappingProxyType(
            {
                key: tuple(sorted(items, key=lambda s: (-s.confidence, s.strategy, s.value)))
                for key, items in index.items()
            }
        )

    @classmethod
    def load(cls, path: Optional[Path]) -> "KnowledgeBase":
        if path is None:
            return cls()
        data = _read_json(path, "knowledge base")
        items = data.get("suggestions", []) if isinstance(data, Mapping) else data
        try:
            suggestions = [KnowledgeSuggestion.model_validate(item) for item in items]
        except ValidationError as exc:
            raise CatalogError(f"Invalid knowledge-base suggestion: {exc.errors()[0]['msg']}") from exc
        logger.info("[Catalog] Loaded %d knowledge-base suggestions from %s", len(suggestions), path)
        return cls(suggestions)

    def suggest(self, *descriptions: str) -> List[KnowledgeSuggestion]:
        found: List[KnowledgeSuggestion] = []
        for description in descriptions:
            if description:
                for suggestion in self._index.get(normalize_description(description), ()):
                    if suggestion not in found:
                        found.append(suggestion)
        return found
