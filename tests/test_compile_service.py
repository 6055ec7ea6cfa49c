"""End-to-end tests for batch compilation."""

import json
from pathlib import Path

import pytest

from stepcompiler.core.config import CompilerConfig
from stepcompiler.generators.module_generator import read_module_functions, render_locator
from stepcompiler.selectors.catalog import KnowledgeBase, SelectorCatalog
from stepcompiler.services.compile_service import CompileService
from stepcompiler.services.outcome import OutcomeStatus

SAVE_STEPS = ["Navigate to /profile", 'Click the "Save" button']


@pytest.fixture
def out_dir(tmp_path):
    return tmp_path / "out"


@pytest.fixture
def make_service(out_dir):
    def build(runner=None, **overrides):
        values = {"output_dir": out_dir, "dry_run": False}
        values.update(overrides)
        return CompileService(CompilerConfig(**values), catalog=SelectorCatalog.empty(),
                              knowledge=KnowledgeBase(), runner=runner)

    return build


def test_dry_run_writes_nothing(make_service, make_journey, profile_steps, out_dir):
    """Test that a dry run returns previews without touching the output tree."""
    batch = make_service(dry_run=True).compile_text(make_journey(profile_steps), source="journeys/profile.md")

    outcome = batch.get("JRN-0001")
    assert outcome.status is OutcomeStatus.COMPILED
    assert outcome.dry_run
    assert set(outcome.previews) == {"tests/test_jrn_0001.py", "modules/jrn_0001.py"}
    assert "conftest.py" in batch.previews
    assert batch.files == []
    assert not out_dir.exists()


def test_commit_writes_files_and_reports(make_service, make_journey, profile_steps, out_dir):
    batch = make_service().compile_text(make_journey(profile_steps), source="journeys/profile.md")

    outcome = batch.get("JRN-0001")
    assert outcome.status is OutcomeStatus.COMPILED
    assert batch.exit_code == 0
    assert set(batch.files) == {
        "conftest.py",
        "pytest.ini",
        "modules/__init__.py",
        "modules/jrn_0001.py",
        "tests/test_jrn_0001.py",
    }
    assert outcome.mapped_count == outcome.total_steps == 4
    assert outcome.previews == {}
    assert "journey.save_button(page).click()" in (out_dir / "tests" / "test_jrn_0001.py").read_text()

    report = json.loads((out_dir / "reports" / "JRN-0001.outcome.json").read_text())
    assert report["status"] == "compiled"
    assert report["stepFingerprints"].keys() == {"1", "2", "3", "4"}
    summary = json.loads((out_dir / "reports" / "summary.json").read_text())
    assert summary["summary"]["compiled"] == 1


def test_recompiling_unchanged_journey_is_a_no_op(make_service, make_journey, profile_steps):
    service = make_service()
    first = service.compile_text(make_journey(profile_steps))
    second = service.compile_text(make_journey(profile_steps))

    assert first.files
    assert second.files == []
    assert first.get("JRN-0001").ir_digest == second.get("JRN-0001").ir_digest


def test_user_code_outside_regions_survives(make_service, make_journey, profile_steps, out_dir):
    """Test that regeneration keeps helpers written below the managed regions."""
    service = make_service()
    service.compile_text(make_journey(profile_steps))
    test_file = out_dir / "tests" / "test_jrn_0001.py"
    test_file.write_text(test_file.read_text() + "\n\ndef helper():\n    return 1\n")

    batch = service.compile_text(make_journey(profile_steps + ["The URL should contain /profile"]))

    text = test_file.read_text()
    assert batch.get("JRN-0001").status is OutcomeStatus.COMPILED
    assert text.endswith("\n\ndef helper():\n    return 1\n")
    assert "# Step 5: The URL should contain /profile" in text


def test_hand_edited_region_is_a_conflict(make_service, make_journey, profile_steps, out_dir):
    service = make_service()
    service.compile_text(make_journey(profile_steps))
    test_file = out_dir / "tests" / "test_jrn_0001.py"
    edited = test_file.read_text().replace('page.goto("/profile")', 'page.goto("/other")')
    test_file.write_text(edited)

    batch = service.compile_text(make_journey(profile_steps))

    outcome = batch.get("JRN-0001")
    assert outcome.status is OutcomeStatus.ERROR
    assert outcome.error["type"] == "generation-conflict"
    assert batch.exit_code == 1
    assert test_file.read_text() == edited


def test_shared_elements_are_promoted(make_service, make_journey, out_dir):
    """Test that an element used by two journeys lands in the shared module."""
    batch = make_service().compile_documents([
        ("journeys/one.md", make_journey(SAVE_STEPS, journey_id="JRN-0001")),
        ("journeys/two.md", make_journey(SAVE_STEPS, journey_id="JRN-0002")),
    ])

    assert batch.promotion["promoted"] == ["save_button"]
    assert "def save_button(page: Page) -> Locator:" in (out_dir / "modules" / "shared.py").read_text()
    assert not (out_dir / "modules" / "jrn_0001.py").exists()
    test_text = (out_dir / "tests" / "test_jrn_0002.py").read_text()
    assert "from modules import shared" in test_text
    assert "shared.save_button(page).click()" in test_text
    assert "modules/shared.py" in batch.get("JRN-0001").files


def test_disabled_autogen_is_skipped(make_service, make_journey, profile_steps, out_dir):
    batch = make_service().compile_text(make_journey(profile_steps, extra="autogen:\n  enabled: false\n"))

    outcome = batch.get("JRN-0001")
    assert outcome.status is OutcomeStatus.SKIPPED
    assert batch.exit_code == 0
    assert not (out_dir / "tests").exists()


def test_structural_errors_are_reported(make_service, make_journey, profile_steps):
    service = make_service(dry_run=True)
    missing = service.compile_text("1. Navigate to /profile\n")
    proposed = service.compile_text(make_journey(profile_steps, status="proposed"))

    assert missing.outcomes[0].journey_id == "journey-1"
    assert missing.outcomes[0].status is OutcomeStatus.ERROR
    assert missing.exit_code == 1
    assert proposed.get("JRN-0001").status is OutcomeStatus.ERROR
    assert proposed.get("JRN-0001").error["line"] == 4


def test_blocked_steps_exit_code(make_service, make_journey):
    batch = make_service(dry_run=True).compile_text(make_journey(["Navigate to /profile", "Wait 5 seconds"]))

    outcome = batch.get("JRN-0001")
    assert outcome.status is OutcomeStatus.BLOCKED_STEPS
    assert batch.exit_code == 2
    assert outcome.blocked_steps[0].step == 2
    assert outcome.blocked_steps[0].text == "Wait 5 seconds"
    assert outcome.mapped_count == 1


def test_duplicate_journey_ids(make_service, make_journey, profile_steps):
    text = make_journey(profile_steps)
    batch = make_service(dry_run=True).compile_documents([("a.md", text), ("b.md", text)])

    assert [o.status for o in batch.outcomes] == [OutcomeStatus.COMPILED, OutcomeStatus.ERROR]
    assert "duplicate journey id 'JRN-0001'" in batch.outcomes[1].error["message"]
    assert batch.exit_code == 1


def test_batch_exit_code_is_the_worst(make_service, make_journey, profile_steps):
    batch = make_service(dry_run=True).compile_documents([
        ("a.md", make_journey(profile_steps, journey_id="JRN-0001")),
        ("b.md", make_journey(["Navigate to /x", "Wait 5 seconds"], journey_id="JRN-0002")),
    ])

    assert [o.exit_code for o in batch.outcomes] == [0, 2]
    assert batch.exit_code == 2
    assert batch.summary()["total"] == 2


def test_verification_passes(make_service, make_journey, profile_steps, scripted_runner):
    runner = scripted_runner(lambda run, path: (0, ""))
    batch = make_service(runner=runner, verify=True).compile_text(make_journey(profile_steps))

    outcome = batch.get("JRN-0001")
    assert outcome.status is OutcomeStatus.PASSED
    assert outcome.verification["state"] == "passed"
    assert runner.runs == 1


def test_verification_budget_exhaustion(make_service, make_journey, profile_steps, scripted_runner,
                                        locator_not_found, out_dir):
    """Test that a journey whose heals run out is reported as verification_failed."""
    module_path = out_dir / "modules" / "jrn_0001.py"

    def script(run, path):
        spec = read_module_functions(module_path.read_text())["save_button"]
        return 1, locator_not_found(render_locator(spec))

    runner = scripted_runner(script)
    batch = make_service(runner=runner, verify=True, max_heal_attempts=1).compile_text(make_journey(profile_steps))

    outcome = batch.get("JRN-0001")
    assert outcome.status is OutcomeStatus.VERIFICATION_FAILED
    assert batch.exit_code == 3
    assert runner.runs == 2
    assert len(outcome.heal_attempts) == 1
    assert outcome.heal_attempts[0]["fixType"] == "locator-substitution"
    assert outcome.verification["budgetExhausted"] is True
    assert 'page.get_by_text("Save")' in module_path.read_text()


def test_dry_run_skips_verification(make_service, make_journey, profile_steps, scripted_runner):
    runner = scripted_runner(lambda run, path: (0, ""))
    batch = make_service(runner=runner, verify=True, dry_run=True).compile_text(make_journey(profile_steps))

    assert "verification skipped: dry run writes no files" in batch.get("JRN-0001").warnings
    assert runner.runs == 0


def test_missing_functions_warn_when_modules_are_disabled(make_service, make_journey, profile_steps, out_dir):
    batch = make_service(generate_modules=False).compile_text(make_journey(profile_steps))

    warnings = batch.get("JRN-0001").warnings
    assert ("modules/jrn_0001.py: element function 'save_button' is missing "
            "and module generation is disabled") in warnings
    assert not (out_dir / "modules" / "jrn_0001.py").exists()


def test_compile_paths_expands_directories(make_service, make_journey, tmp_path):
    journeys = tmp_path / "journeys"
    journeys.mkdir()
    (journeys / "b.md").write_text(make_journey(SAVE_STEPS, journey_id="JRN-0002"), encoding="utf-8")
    (journeys / "a.md").write_text(make_journey(SAVE_STEPS, journey_id="JRN-0001"), encoding="utf-8")
    (journeys / "notes.txt").write_text("ignored", encoding="utf-8")

    batch = make_service(dry_run=True).compile_paths([journeys])

    assert [o.journey_id for o in batch.outcomes] == ["JRN-0001", "JRN-0002"]
    assert batch.outcomes[0].source == str(Path(journeys / "a.md"))


def test_undecodable_journey_fails_alone(make_service, make_journey, profile_steps, tmp_path, out_dir):
    """Test that a journey file that is not UTF-8 does not stop the rest of the batch."""
    good = tmp_path / "good.md"
    good.write_text(make_journey(profile_steps), encoding="utf-8")
    bad = tmp_path / "bad.md"
    bad.write_bytes(make_journey(SAVE_STEPS, journey_id="JRN-0002").encode("utf-8") + b"\xff\xfe")

    batch = make_service().compile_paths([good, bad])

    assert batch.get("JRN-0001").status is OutcomeStatus.COMPILED
    failed = batch.get("bad")
    assert failed.status is OutcomeStatus.ERROR
    assert failed.error["type"] == "structural"
    assert "not valid UTF-8" in failed.error["message"]
    assert batch.exit_code == 1
    assert (out_dir / "reports" / "summary.json").exists()


def test_heal_into_hand_edited_module_blocks_the_journey(make_service, make_journey, profile_steps,
                                                        scripted_runner, locator_not_found, out_dir):
    """Test that a heal which would overwrite a hand edit ends as blocked, not as a crash."""
    make_service().compile_text(make_journey(profile_steps))
    module_path = out_dir / "modules" / "jrn_0001.py"
    edited = module_path.read_text().replace("# stepc:end id=element:save_button",
                                             "    # tweaked\n# stepc:end id=element:save_button")
    module_path.write_text(edited)

    def script(run, path):
        spec = read_module_functions(module_path.read_text())["save_button"]
        return 1, locator_not_found(render_locator(spec))

    batch = make_service(runner=scripted_runner(script), verify=True, generate_modules=False).compile_text(
        make_journey(profile_steps))

    outcome = batch.get("JRN-0001")
    assert outcome.status is OutcomeStatus.BLOCKED
    assert batch.exit_code == 3
    assert outcome.heal_attempts[0]["result"] == "failed"
    assert "element:save_button" in outcome.verification["reason"]
    assert module_path.read_text() == edited
    assert (out_dir / "reports" / "JRN-0001.outcome.json").exists()


def test_acceptance_criteria_coverage(make_service, make_journey):
    steps = [
        "Navigate to /profile (AC-1, AC-2)",
        'Click the "Save" button (AC-1)',
        "Wait 5 seconds (AC-2, AC-3)",
    ]
    batch = make_service(dry_run=True).compile_text(make_journey(steps))

    outcome = batch.get("JRN-0001")
    assert outcome.ac_coverage == {
        "AC-1": {"mappedSteps": 2, "blockedSteps": 0, "unmappedSteps": []},
        "AC-2": {"mappedSteps": 1, "blockedSteps": 1, "unmappedSteps": ["Wait 5 seconds"]},
        "AC-3": {"mappedSteps": 0, "blockedSteps": 1, "unmappedSteps": ["Wait 5 seconds"]},
    }
    assert "AC-3 has no mapped steps" in outcome.warnings
    assert "AC-1 has no mapped steps" not in outcome.warnings
    assert outcome.to_dict()["acCoverage"]["AC-2"]["blockedSteps"] == 1
