"""Cross-journey promotion of element functions into ``modules/shared.py``."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import Dict, Mapping, Optional, Tuple

from .module_generator import SHARED_MODULE, ElementFunction, ModulePlan, render_locator

logger = logging.getLogger(__name__)


def locator_similarity(a: ElementFunction, b: ElementFunction) -> float:
    """1.0 for structurally equal locators, else a text ratio within the same strategy."""
    if a.key() == b.key():
        return 1.0
    if a.spec.strategy is not b.spec.strategy or (("expectHidden" in a.usages) != ("expectHidden" in b.usages)):
        return 0.0
    return SequenceMatcher(None, render_locator(a.spec), render_locator(b.spec)).ratio()


@dataclass
class PromotionPlan:
    """Outcome of promotion for a batch.

    ``shared`` holds the shared module (existing functions plus new ones),
    ``new_shared`` the names added in this batch, and ``refs`` maps each
    journey's element key to the (alias, function) the test should call.
    """

    shared: ModulePlan
    new_shared: Tuple[str, ...] = ()
    refs: Dict[str, Dict[tuple, Tuple[str, str]]] = field(default_factory=dict)
    local: Dict[str, ModulePlan] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {
            "sharedModule": f"modules/{self.shared.filename}",
            "promoted": list(self.new_shared),
            "reused": sorted({name for refs in self.refs.values() for alias, name in refs.values()
                              if alias == SHARED_MODULE} - set(self.new_shared)),
        }


def _match_existing(function: ElementFunction, shared: ModulePlan, threshold: float) -> Optional[ElementFunction]:
    best: Optional[ElementFunction] = None
    best_score = 0.0
    for candidate in shared.functions.values():
        score = locator_similarity(function, candidate)
        if score >= threshold and score > best_score:
            best, best_score = candidate, score
    return best


def plan_promotions(
    batch: Mapping[str, ModulePlan],
    threshold: float = 1.0,
    existing_shared: Optional[ModulePlan] = None,
    local_alias: str = "journey",
) -> PromotionPlan:
    """Decide which element functions move to the shared module.

    ``batch`` maps journey id to that journey's module plan. A function is
    shared when two or more journeys use the same key, or when an existing
    shared function is at least ``threshold`` similar to it.
    """
    shared = existing_shared or ModulePlan(name=SHARED_MODULE)
    users: Dict[tuple, list] = {}
    for journey_id in sorted(batch):
        for function in batch[journey_id].functions.values():
            users.setdefault(function.key(), []).append(journey_id)

    plan = PromotionPlan(shared=shared)
    new_names = []
    for journey_id in sorted(batch):
        source = batch[journey_id]
        local = ModulePlan(name=source.name, title=source.title)
        refs: Dict[tuple, Tuple[str, str]] = {}
        for key, function in source.by_key().items():
            existing = _match_existing(function, shared, threshold)
            if existing is not None:
                refs[key] = (SHARED_MODULE, existing.name)
                continue
            if len(set(users[key])) >= 2:
                taken = set(shared.functions)
                stored = shared.add(function)
                if stored.name not in taken:
                    new_names.append(stored.name)
                refs[key] = (SHARED_MODULE, stored.name)
                continue
            stored = local.add(function)
            refs[key] = (local_alias, stored.name)
        plan.refs[journey_id] = refs
        plan.local[journey_id] = local

    plan.new_shared = tuple(new_names)
    if new_names:
        logger.info("[CodeGen] Promoted %d element function(s) to %s.py: %s", len(new_names), SHARED_MODULE,
                    ", ".join(new_names))
    return plan
