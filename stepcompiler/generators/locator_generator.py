"""Resolve locator requests into concrete Playwright locator specs.

Priority, highest first:
  1. explicit machine hint on the step
  2. role + accessible name from the step text (toasts use alert/status roles)
  3. label
  4. test id (only when the step text, a hint or the catalog names one)
  5. catalog / knowledge-base entries that are not structural
  6. visible text
  7. structural css/xpath from the catalog, recorded as selector debt

Every lower-priority candidate is kept as an alternate so healing can fall
back to it without re-reading the journey.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Tuple, Union

from ..ir.ops import (
    CustomStep,
    Fill,
    IROp,
    LocatorRequest,
    LocatorSpec,
    LocatorStrategy,
    Provenance,
    Select,
)
from ..journey.glossary import Glossary
from ..journey.hints import MachineHint
from ..mapping.patterns import missing_anchor
from ..mapping.step_mapper import MappedStep
from ..selectors.catalog import CatalogEntry, KnowledgeBase, KnowledgeSuggestion, SelectorCatalog
from ..selectors.debt import SelectorDebt, record_debt

logger = logging.getLogger(__name__)

DEFAULT_HINT_WAIT_MS = 10000
TIER_CONFIDENCE = {
    LocatorStrategy.ROLE: 0.95,
    LocatorStrategy.TOAST: 0.9,
    LocatorStrategy.LABEL: 0.9,
    LocatorStrategy.TESTID: 0.9,
    LocatorStrategy.TEXT: 0.6,
}


@dataclass(frozen=True)
class Resolution:
    spec: Optional[LocatorSpec]
    alternates: Tuple[LocatorSpec, ...] = ()
    debt: Optional[SelectorDebt] = None
    reason: str = ""


@dataclass(frozen=True)
class ResolvedStep:
    """A mapped step whose element reference is now a ``LocatorSpec``."""

    number: int
    op: IROp
    pattern: Optional[str] = None
    line: Optional[int] = None
    fingerprint: Optional[str] = None
    completion: bool = False
    alternates: Tuple[LocatorSpec, ...] = ()
    debt: Optional[SelectorDebt] = None
    reason: str = ""

    @property
    def blocked(self) -> bool:
        return isinstance(self.op, CustomStep)

    @property
    def locator(self) -> Optional[LocatorSpec]:
        target = self.op.target
        return target if isinstance(target, LocatorSpec) else None


def _structural_value(strategy: str, value: str) -> str:
    if value.startswith(("css=", "xpath=")):
        return value
    return f"{strategy}={value}"


def spec_from_entry(
    entry: Union[CatalogEntry, KnowledgeSuggestion],
    description: str,
    provenance: Provenance,
) -> LocatorSpec:
    """Convert a catalog entry or knowledge suggestion into a ``LocatorSpec``."""
    options = entry.options
    if entry.strategy in ("css", "xpath"):
        return LocatorSpec(
            strategy=LocatorStrategy.STRUCTURAL,
            value=_structural_value(entry.strategy, entry.value),
            confidence=entry.confidence,
            provenance=provenance,
            description=description,
        )
    return LocatorSpec(
        strategy=LocatorStrategy(entry.strategy),
        value=entry.value,
        name=options.name,
        exact=options.exact,
        level=options.level,
        confidence=entry.confidence,
        provenance=provenance,
        description=description,
    )


def _hint_specs(hint: MachineHint, request: LocatorRequest) -> List[LocatorSpec]:
    common = dict(exact=bool(hint.exact), confidence=1.0, provenance=Provenance.HINT,
                  description=request.description)
    specs: List[LocatorSpec] = []
    if hint.role:
        specs.append(LocatorSpec(LocatorStrategy.ROLE, hint.role, name=hint.name or request.name,
                                 level=hint.level, **common))
    if hint.label:
        specs.append(LocatorSpec(LocatorStrategy.LABEL, hint.label, **common))
    if hint.testid:
        specs.append(LocatorSpec(LocatorStrategy.TESTID, hint.testid, **common))
    if hint.text:
        specs.append(LocatorSpec(LocatorStrategy.TEXT, hint.text, **common))
    return specs


def _anchor_specs(request: LocatorRequest) -> Tuple[List[LocatorSpec], List[LocatorSpec]]:
    """Candidates implied by the step text, split into (primary tiers, text tier)."""
    def spec(strategy: LocatorStrategy, value: str, name: Optional[str] = None) -> LocatorSpec:
        return LocatorSpec(strategy, value, name=name, exact=request.exact,
                           confidence=TIER_CONFIDENCE[strategy], description=request.description)

    primary: List[LocatorSpec] = []
    text: List[LocatorSpec] = []
    anchor = request.anchor
    if anchor == "toast":
        flavour = "status" if request.toast_type == "status" else "alert"
        primary.append(spec(LocatorStrategy.TOAST, flavour))
    elif anchor == "role":
        primary.append(spec(LocatorStrategy.ROLE, request.role, request.name))
        if request.name:
            text.append(spec(LocatorStrategy.TEXT, request.name))
    elif anchor == "label":
        primary.append(spec(LocatorStrategy.LABEL, request.name))
        if request.role:
            primary.append(spec(LocatorStrategy.ROLE, request.role, request.name))
    elif anchor == "testid":
        primary.append(spec(LocatorStrategy.TESTID, request.name))
    elif anchor == "text":
        text.append(spec(LocatorStrategy.TEXT, request.name))
    return primary, text


def _dedupe(specs: Iterable[LocatorSpec]) -> List[LocatorSpec]:
    seen = set()
    unique: List[LocatorSpec] = []
    for spec in specs:
        if spec.key() not in seen:
            seen.add(spec.key())
            unique.append(spec)
    return unique


def _action_of(op: IROp) -> str:
    if op.is_assertion:
        return "assert"
    if isinstance(op, (Fill, Select)):
        return "fill"
    return "click"


class SelectorResolver:
    """Resolve mapped steps against the step text, hints, catalog and knowledge base.

    Instances hold only read-only lookups and are safe to share across threads.
    """

    def __init__(
        self,
        catalog: Optional[SelectorCatalog] = None,
        knowledge: Optional[KnowledgeBase] = None,
        application: str = "app",
        glossary: Optional[Glossary] = None,
    ) -> None:
        self.catalog = catalog or SelectorCatalog.empty()
        self.knowledge = knowledge or KnowledgeBase()
        self.application = application
        self.glossary = glossary or Glossary.default()

    def _lookup_keys(self, request: LocatorRequest) -> List[str]:
        keys = [request.description]
        if request.name:
            keys.append(request.name)
            keys.append(self.glossary.resolve_label(request.name))
        return keys

    def _catalog_specs(self, request: LocatorRequest) -> Tuple[List[LocatorSpec], List[LocatorSpec]]:
        keys = self._lookup_keys(request)
        semantic: List[LocatorSpec] = []
        structural: List[LocatorSpec] = []
        for _scope, entry in self.catalog.find(*keys):
            spec = spec_from_entry(entry, request.description, Provenance.CATALOG)
            (structural if spec.is_structural else semantic).append(spec)
        for suggestion in self.knowledge.suggest(*keys):
            spec = spec_from_entry(suggestion, request.description, Provenance.KNOWLEDGE)
            (structural if spec.is_structural else semantic).append(spec)
        return semantic, structural

    def candidates(self, request: LocatorRequest) -> List[LocatorSpec]:
        """All candidate specs for ``request`` in priority order."""
        hinted = _hint_specs(request.hint, request) if request.hint else []
        primary, text = _anchor_specs(request)
        semantic, structural = self._catalog_specs(request)
        primary_first = [s for s in primary if s.strategy is not LocatorStrategy.TESTID]
        testids = [s for s in primary if s.strategy is LocatorStrategy.TESTID]
        return _dedupe(hinted + primary_first + testids + semantic + text + structural)

    def resolve(self, request: LocatorRequest, step: Optional[int] = None) -> Resolution:
        """Choose the top-ranked candidate for ``request``; the rest become heal alternates."""
        ordered = self.candidates(request)
        if not ordered:
            return Resolution(spec=None, reason="no candidate locator")

        chosen = ordered[0]
        hint = request.hint
        if hint is not None and (hint.timeout or hint.wait):
            chosen = replace(chosen, wait_timeout=hint.timeout or DEFAULT_HINT_WAIT_MS)

        debt = None
        if chosen.is_structural:
            debt = record_debt(chosen, self.application, request.description, step)
            logger.warning("[Resolver] step %s: structural selector %s for '%s'", step, chosen.value,
                           request.description)

        reason = f"{chosen.provenance.value}:{chosen.strategy.value}"
        return Resolution(spec=chosen, alternates=tuple(ordered[1:]), debt=debt, reason=reason)

    def resolve_step(self, mapped: MappedStep) -> ResolvedStep:
        base = dict(number=mapped.number, pattern=mapped.pattern, line=mapped.line,
                    fingerprint=mapped.fingerprint, completion=mapped.completion)
        target = mapped.op.target
        if not isinstance(target, LocatorRequest):
            return ResolvedStep(op=mapped.op, **base)

        resolution = self.resolve(target, mapped.number)
        if resolution.spec is None:
            op = missing_anchor(target, _action_of(mapped.op))
            return ResolvedStep(op=op, reason=resolution.reason, **base)

        return ResolvedStep(
            op=mapped.op.with_target(resolution.spec),
            alternates=resolution.alternates,
            debt=resolution.debt,
            reason=resolution.reason,
            **base,
        )

    def resolve_ops(self, mapped: Iterable[MappedStep]) -> List[ResolvedStep]:
        """Resolve the locator of every mapped step.

        Args:
            mapped: Steps from ``map_steps``, in journey order.

        Returns:
            One ResolvedStep per input step. Blocked steps keep no locator;
            steps resolved with a structural selector carry a debt record.
        """
        resolved = [self.resolve_step(m) for m in mapped]
        debts = sum(1 for r in resolved if r.debt)
        if debts:
            logger.info("[Resolver] %d step(s) resolved with structural selectors", debts)
        return resolved
