"""Tests for failure classification and evidence collection."""

import json
import zipfile
from pathlib import Path

from stepcompiler.executor import JUnitCase, JUnitSummary, RunResult
from stepcompiler.ir.ops import LocatorStrategy
from stepcompiler.verify.classifier import FailureType, classify_failure, extract_failed_locators_from_logs
from stepcompiler.verify.evidence import AriaNode, Evidence, TraceAnalyzer, collect_evidence, parse_aria_snapshot


def _classify(text):
    return classify_failure(Evidence(error_text=text))


def test_strict_mode_violation():
    result = _classify(
        'Error: strict mode violation: get_by_role("button", name="Save") resolved to 2 elements:\n'
        '    1) <button>Save</button>\n'
        '    2) <button>Save draft</button>\n'
    )

    assert result.failure_type is FailureType.STRICT_MODE
    spec = result.primary_locator.spec
    assert (spec.strategy, spec.value, spec.name) == (LocatorStrategy.ROLE, "button", "Save")


def test_selector_not_found(locator_not_found):
    result = _classify(locator_not_found('get_by_label("Email")'))

    assert result.failure_type is FailureType.SELECTOR_NOT_FOUND
    assert result.primary_locator.spec.strategy is LocatorStrategy.LABEL
    assert result.message == "E   AssertionError: Locator expected to be visible"


def test_navigation_timeout_is_timing():
    result = _classify(
        "TimeoutError: Timeout 30000ms exceeded.\n"
        "=========================== logs ===========================\n"
        'waiting for navigation to "**/done" until "load"\n'
    )
    assert result.failure_type is FailureType.TIMING


def test_element_not_ready_is_timing():
    """Test that a located but not actionable element is a timing failure."""
    result = _classify(
        "TimeoutError: Locator.click: Timeout 30000ms exceeded.\n"
        "Call log:\n"
        '  - waiting for get_by_role("button", name="Save")\n'
        "  - element is not enabled\n"
    )
    assert result.failure_type is FailureType.TIMING
    assert result.primary_locator.expression == 'get_by_role("button", name="Save")'


def test_plain_timeout_on_locator_is_not_found():
    result = _classify(
        "TimeoutError: Locator.click: Timeout 30000ms exceeded.\n"
        'Call log:\n  - waiting for get_by_test_id("save-btn")\n'
    )
    assert result.failure_type is FailureType.SELECTOR_NOT_FOUND


def test_assertion_error_is_unclassifiable():
    result = _classify("E   AssertionError: assert 1 == 2")

    assert result.failure_type is FailureType.UNCLASSIFIABLE
    assert result.failed_locators == []
    assert result.to_dict()["failureType"] == "unclassifiable"


def test_trace_errors_are_considered():
    evidence = Evidence(error_text="", failed_actions=[
        {"method": "click", "selector": "internal:role=button", "error": "Timeout 5000ms exceeded."},
    ])
    assert classify_failure(evidence).failure_type is FailureType.TIMING


def test_extract_failed_locators():
    """Test that toast, nth and structural locators are read from failure logs."""
    logs = (
        "Error: Timeout 5000ms exceeded.\n"
        '  - waiting for get_by_role("alert").or_(page.get_by_role("status"))\n'
        '  - waiting for page.locator("css=#save").nth(1)\n'
        '  - waiting for page.locator("css=#save").nth(1)\n'
    )
    failed = extract_failed_locators_from_logs(logs)

    assert [f.spec.strategy for f in failed] == [LocatorStrategy.TOAST, LocatorStrategy.STRUCTURAL]
    assert failed[1].spec.nth == 1


def test_no_failed_locators_in_success_logs():
    logs = 'tests/test_jrn_0001.py .  [100%]\n1 passed in 2.01s\nget_by_role("button", name="Save")\n'
    assert extract_failed_locators_from_logs(logs) == []


def test_parse_aria_snapshot():
    snapshot = (
        "- main:\n"
        '  - heading "Profile" [level=1]\n'
        '  - textbox "First name": Ada\n'
        '  - button "Save \\"draft\\""\n'
        "  - separator\n"
    )
    nodes = parse_aria_snapshot(snapshot)

    assert AriaNode("heading", "Profile") in nodes
    assert AriaNode("textbox", "First name") in nodes
    assert AriaNode("button", 'Save "draft"') in nodes
    assert AriaNode("separator", None) in nodes


def _write_trace(path: Path) -> None:
    events = [
        {"type": "before", "callId": "call@1", "method": "goto", "params": {"url": "/profile"}, "startTime": 1},
        {"type": "after", "callId": "call@1"},
        {"type": "before", "callId": "call@2", "method": "click",
         "params": {"selector": "internal:role=button[name=\"Save\"i]"}, "startTime": 2},
        {"type": "after", "callId": "call@2", "error": {"error": {"message": "Timeout 5000ms exceeded."}}},
    ]
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("trace.trace", "\n".join(json.dumps(e) for e in events) + "\n")


def test_trace_analyzer_reports_failed_actions(tmp_path):
    trace = tmp_path / "trace.zip"
    _write_trace(trace)

    analyzer = TraceAnalyzer(trace)
    analyzer.load_trace()

    assert [a["method"] for a in analyzer.extract_actions()] == ["goto", "click"]
    failed = analyzer.failed_actions()
    assert len(failed) == 1
    assert failed[0]["error"] == "Timeout 5000ms exceeded."


def test_collect_evidence_from_run(tmp_path):
    """Test that junit text, trace, screenshot and snapshot are gathered."""
    evidence_dir = tmp_path / "attempt-1"
    nested = evidence_dir / "tests-test-jrn-0001-py-test-jrn-0001-chromium"
    nested.mkdir(parents=True)
    _write_trace(nested / "trace.zip")
    (nested / "test-failed-1.png").write_bytes(b"\x89PNG")
    (evidence_dir / "aria-snapshot.yml").write_text('- button "Save changes"\n', encoding="utf-8")
    (evidence_dir / "page-url.txt").write_text("https://app.example.com/profile\n", encoding="utf-8")

    junit = JUnitSummary(tests=1, failures=1, cases=(
        JUnitCase("test_jrn_0001", "failure", "TimeoutError: Timeout 5000ms exceeded.", "call log"),
    ))
    run = RunResult(test_path=tmp_path / "test_jrn_0001.py", command=["pytest"], returncode=1,
                    stderr="ignored", evidence_dir=evidence_dir, junit=junit)

    evidence = collect_evidence(run)

    assert evidence.error_text == "TimeoutError: Timeout 5000ms exceeded.\ncall log"
    assert evidence.trace_path == nested / "trace.zip"
    assert evidence.screenshots == [nested / "test-failed-1.png"]
    assert evidence.aria_nodes == [AriaNode("button", "Save changes")]
    assert evidence.page_url == "https://app.example.com/profile"
    assert evidence.failed_actions[0]["method"] == "click"
    assert evidence.to_dict()["ariaSnapshot"] is True


def test_collect_evidence_without_directory(tmp_path):
    run = RunResult(test_path=tmp_path / "t.py", command=["pytest"], returncode=1, stderr="boom",
                    evidence_dir=tmp_path / "missing")
    evidence = collect_evidence(run)

    assert evidence.error_text == "boom"
    assert evidence.trace_path is None
    assert evidence.aria_nodes == []
