"""Batch compilation of journeys into pytest-playwright tests and element modules.

Stages per batch:
  1. parse, map and resolve every journey (thread pool, one task per journey)
  2. promote element functions shared by several journeys
  3. render test, module and conftest files and check they parse
  4. commit the files (or keep them as previews in dry-run mode)
  5. optionally verify each journey with bounded self-healing (second pool)
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..core.config import CompilerConfig
from ..core.errors import GenerationConflictError, JourneyStructureError, StepCompilerError
from ..core.fileio import StagedWriteSet, atomic_write_json, read_text
from ..core.hashstore import payload_hash
from ..executor import PytestRunner
from ..generators.locator_generator import ResolvedStep, SelectorResolver
from ..generators.managed_blocks import merge_regions
from ..generators.module_generator import (
    SHARED_MODULE,
    ModulePlan,
    build_element_functions,
    load_module_plan,
    module_name_for,
    read_module_functions,
    render_module,
)
from ..generators.promotion import PromotionPlan, plan_promotions
from ..generators.scaffold import PYTEST_INI, GeneratedArtifacts, conftest_regions, find_syntax_error
from ..generators.test_generator import JOURNEY_ALIAS, filename_for, render_test
from ..ir.ops import describe_op
from ..journey.glossary import Glossary
from ..journey.models import Journey
from ..journey.parser import ensure_compilable, parse_journey, parse_journey_file
from ..mapping.step_mapper import map_steps
from ..selectors.catalog import KnowledgeBase, SelectorCatalog
from ..self_healing_executor import Runner, VerificationResult, VerificationSession, run_with_bounded_healing
from ..verify.policy import HealPolicy
from .outcome import BatchOutcome, BlockedStep, GenerationOutcome, OutcomeStatus

logger = logging.getLogger(__name__)

Document = Tuple[str, Optional[str]]

SHARED_FILE = Path("modules") / f"{SHARED_MODULE}.py"
CONFTEST_FILE = Path("conftest.py")
CREATE_ONLY = {
    Path("pytest.ini"): PYTEST_INI,
    Path("modules") / "__init__.py": "",
}


@dataclass
class _Prepared:
    index: int
    source: str
    outcome: GenerationOutcome
    journey: Optional[Journey] = None
    resolved: List[ResolvedStep] = field(default_factory=list)
    plan: Optional[ModulePlan] = None
    artifacts: Optional[GeneratedArtifacts] = None

    @property
    def active(self) -> bool:
        return self.journey is not None and self.outcome.status not in (OutcomeStatus.ERROR, OutcomeStatus.SKIPPED)


def _error_payload(exc: Exception) -> Dict[str, object]:
    to_dict = getattr(exc, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return {"type": type(exc).__name__, "message": str(exc)}


def _fail(prepared: _Prepared, exc: Exception) -> None:
    logger.error("[CompileService] %s: %s", prepared.outcome.journey_id, exc)
    prepared.outcome.status = OutcomeStatus.ERROR
    prepared.outcome.error = _error_payload(exc)
    prepared.artifacts = None


def acceptance_coverage(journey: Journey, blocked: Iterable[BlockedStep]) -> Dict[str, Dict[str, object]]:
    """Mapped and blocked step counts per acceptance criterion referenced by the steps."""
    unmapped = {b.step: b.text for b in blocked}
    coverage: Dict[str, Dict[str, object]] = {}
    for step in journey.steps:
        for ref in step.ac_refs:
            entry = coverage.setdefault(ref, {"mappedSteps": 0, "blockedSteps": 0, "unmappedSteps": []})
            if step.number in unmapped:
                entry["blockedSteps"] += 1
                entry["unmappedSteps"].append(unmapped[step.number])
            else:
                entry["mappedSteps"] += 1
    return dict(sorted(coverage.items(), key=lambda item: int(item[0].split("-")[1])))


def expand_journey_paths(paths: Iterable[Path]) -> List[Path]:
    """Files as given; directories expanded to their ``*.md`` journeys, sorted."""
    found: List[Path] = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            found.extend(sorted(p for p in path.rglob("*.md") if p.is_file()))
        else:
            found.append(path)
    return found


class CompileService:
    """Compiles batches of journeys against one output tree."""

    def __init__(
        self,
        config: CompilerConfig,
        catalog: Optional[SelectorCatalog] = None,
        knowledge: Optional[KnowledgeBase] = None,
        glossary: Optional[Glossary] = None,
        runner: Optional[Runner] = None,
        policy: Optional[HealPolicy] = None,
    ) -> None:
        self.config = config
        self.catalog = catalog if catalog is not None else SelectorCatalog.load(config.catalog_path)
        self.knowledge = knowledge if knowledge is not None else KnowledgeBase.load(config.knowledge_path)
        self.glossary = glossary or Glossary.default()
        self.resolver = SelectorResolver(self.catalog, self.knowledge, config.application, self.glossary)
        self.runner = runner
        self.policy = policy or HealPolicy()

    @property
    def out_dir(self) -> Path:
        return Path(self.config.output_dir)

    @property
    def modules_dir(self) -> Path:
        return self.out_dir / "modules"

    # -- entry points -------------------------------------------------------

    def compile_text(self, text: str, source: str = "<journey>", verify: Optional[bool] = None,
                     cancel_event: Optional[threading.Event] = None) -> BatchOutcome:
        return self.compile_documents([(source, text)], verify=verify, cancel_event=cancel_event)

    def compile_paths(self, paths: Iterable[Path], verify: Optional[bool] = None,
                      cancel_event: Optional[threading.Event] = None) -> BatchOutcome:
        documents: List[Document] = [(str(p), None) for p in expand_journey_paths(paths)]
        return self.compile_documents(documents, verify=verify, cancel_event=cancel_event)

    def compile_documents(
        self,
        documents: Sequence[Document],
        verify: Optional[bool] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> BatchOutcome:
        """Compile a batch of journeys against the output tree.

        Args:
            documents: ``(source, text)`` pairs; ``text=None`` reads ``source`` from disk.
            verify: Run and heal the generated tests; defaults to the config.
            cancel_event: Set to stop verification of the remaining runs.

        Returns:
            BatchOutcome with one outcome per document, in input order. A
            journey that fails never stops the others.
        """
        verify = self.config.verify if verify is None else verify
        dry_run = self.config.dry_run
        batch = BatchOutcome(dry_run=dry_run)

        prepared = self._prepare_all(documents)
        self._reject_duplicates(prepared)
        active = [p for p in prepared if p.active]

        promotion: Optional[PromotionPlan] = None
        if active:
            try:
                promotion = self._promote(active)
            except GenerationConflictError as exc:
                for item in active:
                    _fail(item, exc)
            else:
                batch.promotion = promotion.to_dict()
                shared_files = self._render(active, promotion)
                changed = self._changed_files(prepared, shared_files)
                if dry_run:
                    batch.previews = {rel.as_posix(): content for rel, content in shared_files.items()
                                      if read_text(self.out_dir / rel) != content}
                else:
                    batch.files = [self._relative(p) for p in self._commit(prepared, shared_files)]
                logger.info("[CompileService] %d file(s) %s", changed,
                            "would change (dry run)" if dry_run else "changed")

        if verify:
            self._verify(prepared, promotion, cancel_event)

        batch.outcomes = [p.outcome for p in sorted(prepared, key=lambda item: item.index)]
        if not dry_run:
            self._write_reports(batch)
        logger.info("[CompileService] Batch finished: %s (exit %d)",
                    ", ".join(f"{k}={v}" for k, v in batch.summary().items() if v), batch.exit_code)
        return batch

    # -- stage 1: parse, map, resolve ---------------------------------------

    def _prepare_all(self, documents: Sequence[Document]) -> List[_Prepared]:
        if not documents:
            return []
        results: List[_Prepared] = []
        workers = max(1, min(self.config.max_workers, len(documents)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(self._prepare, index, source, text): index
                for index, (source, text) in enumerate(documents)
            }
            for fut in as_completed(futures):
                results.append(fut.result())
        results.sort(key=lambda item: item.index)
        return results

    def _prepare(self, index: int, source: str, text: Optional[str]) -> _Prepared:
        fallback_id = Path(source).stem if not source.startswith("<") else f"journey-{index + 1}"
        try:
            if text is None:
                journey = parse_journey_file(Path(source), self.glossary)
            else:
                journey = parse_journey(text, source, self.glossary)
        except StepCompilerError as exc:
            item = _Prepared(index, source, GenerationOutcome(fallback_id, OutcomeStatus.ERROR, source=source,
                                                              dry_run=self.config.dry_run))
            _fail(item, exc)
            return item

        outcome = GenerationOutcome(journey.id, OutcomeStatus.COMPILED, source=source,
                                    total_steps=len(journey.steps), warnings=list(journey.warnings),
                                    dry_run=self.config.dry_run)
        item = _Prepared(index, source, outcome, journey=journey)
        if not journey.autogen.enabled:
            logger.info("[CompileService] %s: autogen disabled, skipping", journey.id)
            outcome.status = OutcomeStatus.SKIPPED
            outcome.warnings.append("autogen is disabled for this journey")
            return item
        try:
            ensure_compilable(journey)
        except StepCompilerError as exc:
            _fail(item, exc)
            return item

        resolved = self.resolver.resolve_ops(map_steps(journey))
        texts = {step.number: step.raw_text for step in journey.steps}
        blocked = [
            BlockedStep(r.number, texts.get(r.number, describe_op(r.op)), r.op.reason, r.op.suggestion)
            for r in resolved if r.blocked
        ]
        outcome.status = OutcomeStatus.BLOCKED_STEPS if blocked else OutcomeStatus.COMPILED
        outcome.total_steps = len(resolved)
        outcome.mapped_count = len(resolved) - len(blocked)
        outcome.blocked_steps = blocked
        outcome.selector_debt = [r.debt.to_dict() for r in resolved if r.debt is not None]
        outcome.step_fingerprints = {str(r.number): r.fingerprint for r in resolved if r.fingerprint}
        outcome.ac_coverage = acceptance_coverage(journey, blocked)
        outcome.warnings.extend(f"{ref} has no mapped steps" for ref, counts in outcome.ac_coverage.items()
                                if not counts["mappedSteps"])
        outcome.ir_digest = payload_hash([{"step": r.number, "op": r.op.to_dict()} for r in resolved])

        item.resolved = resolved
        item.plan = build_element_functions(resolved, module_name_for(journey.id), journey.title)
        return item

    @staticmethod
    def _reject_duplicates(prepared: List[_Prepared]) -> None:
        seen: Dict[str, str] = {}
        for item in prepared:
            if not item.active:
                continue
            first = seen.setdefault(item.journey.id, item.source)
            if first != item.source:
                _fail(item, JourneyStructureError(f"duplicate journey id '{item.journey.id}' (also in {first})",
                                                  item.source, 2))

    # -- stage 2: promotion ---------------------------------------------------

    def _promote(self, active: List[_Prepared]) -> PromotionPlan:
        shared_path = self.out_dir / SHARED_FILE
        existing = load_module_plan(SHARED_MODULE, read_text(shared_path))
        return plan_promotions(
            {item.journey.id: item.plan for item in active},
            threshold=self.config.promotion_similarity,
            existing_shared=existing,
            local_alias=JOURNEY_ALIAS,
        )

    # -- stage 3: rendering ---------------------------------------------------

    def _render(self, active: List[_Prepared], promotion: PromotionPlan) -> Dict[Path, str]:
        """Render per-journey artifacts; returns the batch-level files (shared module, conftest)."""
        shared_files: Dict[Path, str] = {}
        shared_users = [item for item in active
                        if any(alias == SHARED_MODULE for alias, _ in promotion.refs[item.journey.id].values())]

        if self.config.generate_modules and promotion.new_shared:
            path = self.out_dir / SHARED_FILE
            try:
                shared_files[SHARED_FILE] = render_module(promotion.shared, read_text(path), str(path),
                                                          names=promotion.new_shared)
            except GenerationConflictError as exc:
                for item in shared_users:
                    _fail(item, exc)

        conftest_path = self.out_dir / CONFTEST_FILE
        try:
            shared_files[CONFTEST_FILE] = merge_regions(read_text(conftest_path), conftest_regions(),
                                                        str(conftest_path))
        except GenerationConflictError as exc:
            for item in active:
                _fail(item, exc)

        for item in active:
            if item.active:
                self._render_journey(item, promotion, shared_files)
        return shared_files

    def _render_journey(self, item: _Prepared, promotion: PromotionPlan, shared_files: Dict[Path, str]) -> None:
        journey = item.journey
        refs = promotion.refs[journey.id]
        test_rel = Path("tests") / filename_for(journey.id)
        artifacts = GeneratedArtifacts(journey_id=journey.id, test_path=self.out_dir / test_rel)
        try:
            rendered = render_test(journey, item.resolved, refs)
            artifacts.add(test_rel, rendered.merge(read_text(artifacts.test_path), str(artifacts.test_path)))
            local = promotion.local[journey.id]
            if self.config.generate_modules and local.functions:
                module_rel = Path("modules") / local.filename
                module_path = self.out_dir / module_rel
                artifacts.add(module_rel, render_module(local, read_text(module_path), str(module_path)))
        except GenerationConflictError as exc:
            _fail(item, exc)
            return

        if not self.config.generate_modules:
            artifacts.warnings.extend(self._missing_functions(journey.id, refs))

        invalid = artifacts.invalid_python() or find_syntax_error(shared_files)
        if invalid is not None:
            rel, exc = invalid
            item.outcome.status = OutcomeStatus.ERROR
            item.outcome.error = {"type": "codegen", "message": f"{rel.as_posix()}:{exc.lineno}: {exc.msg}"}
            logger.error("[CodeGen] %s: generated %s does not parse: %s", journey.id, rel, exc)
            return

        for rel, content in sorted(CREATE_ONLY.items()):
            if not (self.out_dir / rel).exists():
                artifacts.create_only[rel] = content

        files = set(artifacts.files)
        if any(alias == SHARED_MODULE for alias, _ in refs.values()):
            files.add(SHARED_FILE)
        files.add(CONFTEST_FILE)
        item.outcome.files = sorted(rel.as_posix() for rel in files)
        item.outcome.warnings.extend(artifacts.warnings)
        item.artifacts = artifacts

    def _missing_functions(self, journey_id: str, refs: Dict[tuple, Tuple[str, str]]) -> List[str]:
        warnings: List[str] = []
        known: Dict[Path, Dict[str, object]] = {}
        for alias, name in sorted(set(refs.values())):
            module = module_name_for(journey_id) if alias == JOURNEY_ALIAS else alias
            rel = Path("modules") / f"{module}.py"
            if rel not in known:
                known[rel] = read_module_functions(read_text(self.out_dir / rel) or "")
            if name not in known[rel]:
                warnings.append(f"{rel.as_posix()}: element function '{name}' is missing "
                                "and module generation is disabled")
        return warnings

    # -- stage 4: commit --------------------------------------------------------

    def _pending(self, prepared: List[_Prepared], shared_files: Dict[Path, str]) -> Tuple[Dict[Path, str],
                                                                                           List[_Prepared]]:
        ready = [item for item in prepared if item.active and item.artifacts is not None]
        batch_files: Dict[Path, str] = {}
        if ready:
            batch_files.update(shared_files)
            for item in ready:
                batch_files.update(item.artifacts.create_only)
        return batch_files, ready

    def _changed_files(self, prepared: List[_Prepared], shared_files: Dict[Path, str]) -> int:
        batch_files, ready = self._pending(prepared, shared_files)
        changed = 0
        for rel, content in batch_files.items():
            changed += read_text(self.out_dir / rel) != content
        for item in ready:
            for rel, content in item.artifacts.files.items():
                if read_text(self.out_dir / rel) != content:
                    changed += 1
                    item.outcome.previews[rel.as_posix()] = content
        return changed

    def _stage_changes(self, files: Dict[Path, str]) -> StagedWriteSet:
        staged = StagedWriteSet()
        for rel, content in sorted(files.items()):
            path = self.out_dir / rel
            if read_text(path) != content:
                staged.add(path, content)
        return staged

    def _commit(self, prepared: List[_Prepared], shared_files: Dict[Path, str]) -> List[Path]:
        batch_files, ready = self._pending(prepared, shared_files)
        written = self._stage_changes(batch_files).commit()
        for item in ready:
            item.outcome.previews = {}
            written.extend(self._stage_changes(item.artifacts.files).commit())
        for path in written:
            logger.info("[CompileService] Wrote %s", self._relative(path))
        return written

    def _relative(self, path: Path) -> str:
        try:
            return Path(path).relative_to(self.out_dir).as_posix()
        except ValueError:
            return str(path)

    def _write_reports(self, batch: BatchOutcome) -> None:
        reports = self.out_dir / "reports"
        for outcome in batch.outcomes:
            atomic_write_json(reports / f"{outcome.journey_id}.outcome.json", outcome.to_dict())
        atomic_write_json(reports / "summary.json", batch.to_dict())

    # -- stage 5: verification --------------------------------------------------

    def _verify(self, prepared: List[_Prepared], promotion: Optional[PromotionPlan],
                cancel_event: Optional[threading.Event]) -> None:
        candidates: List[_Prepared] = []
        for item in prepared:
            if not item.active or item.artifacts is None:
                continue
            if self.config.dry_run:
                item.outcome.warnings.append("verification skipped: dry run writes no files")
            elif item.outcome.status is OutcomeStatus.BLOCKED_STEPS:
                item.outcome.warnings.append("verification skipped: journey has blocked steps")
            else:
                candidates.append(item)
        if not candidates or promotion is None:
            return

        runner = self.runner or PytestRunner(self.out_dir, base_url=self.config.base_url,
                                             browser=self.config.browser, headless=self.config.headless)
        with ThreadPoolExecutor(max_workers=max(1, self.config.verify_concurrency)) as pool:
            futures = {
                pool.submit(self._verify_one, item, promotion, runner, cancel_event): item
                for item in candidates
            }
            for fut in as_completed(futures):
                item = futures[fut]
                try:
                    result = fut.result()
                except StepCompilerError as exc:
                    _fail(item, exc)
                    continue
                self._apply_verification(item.outcome, result)

    def _session_plans(self, journey_id: str, promotion: PromotionPlan) -> Dict[Path, ModulePlan]:
        aliases = {alias for alias, _ in promotion.refs[journey_id].values()}
        plans: Dict[Path, ModulePlan] = {}
        if JOURNEY_ALIAS in aliases:
            local = promotion.local[journey_id]
            path = self.modules_dir / local.filename
            plans[path] = local if self.config.generate_modules else load_module_plan(local.name, read_text(path))
        if SHARED_MODULE in aliases:
            path = self.out_dir / SHARED_FILE
            plans[path] = (promotion.shared if self.config.generate_modules
                           else load_module_plan(SHARED_MODULE, read_text(path)))
        return plans

    def _verify_one(self, item: _Prepared, promotion: PromotionPlan, runner: Runner,
                    cancel_event: Optional[threading.Event]) -> VerificationResult:
        journey = item.journey
        session = VerificationSession(
            journey_id=journey.id,
            test_path=item.artifacts.test_path,
            plans=self._session_plans(journey.id, promotion),
            evidence_root=self.out_dir / "evidence" / journey.id,
        )
        return run_with_bounded_healing(
            session,
            runner,
            policy=self.policy,
            max_attempts=self.config.max_heal_attempts,
            timeout=self.config.verify_timeout,
            cancel_event=cancel_event,
        )

    @staticmethod
    def _apply_verification(outcome: GenerationOutcome, result: VerificationResult) -> None:
        outcome.verification = result.to_dict()
        outcome.heal_attempts = [attempt.to_dict() for attempt in result.attempts]
        if result.passed:
            outcome.status = OutcomeStatus.PASSED
        elif result.exhausted:
            outcome.status = OutcomeStatus.VERIFICATION_FAILED
        else:
            outcome.status = OutcomeStatus.BLOCKED
        if result.reason:
            outcome.warnings.append(f"verification: {result.reason}")
        logger.info("[CompileService] %s verification %s after %d run(s)", outcome.journey_id,
                    outcome.status.value, result.runs)
