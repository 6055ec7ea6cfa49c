"""Tests for managed regions in generated files."""

import pytest

from stepcompiler.core.errors import GenerationConflictError
from stepcompiler.core.hashstore import short_hash
from stepcompiler.generators.managed_blocks import (
    find_regions,
    hand_edited_regions,
    merge_managed_region,
    merge_regions,
    render_region,
)


def test_render_region_records_body_hash():
    rendered = render_region("test:JRN-1", "x = 1")

    assert rendered == (
        f"# stepc:begin id=test:JRN-1 hash={short_hash('x = 1' + chr(10))}\n"
        "x = 1\n"
        "# stepc:end id=test:JRN-1\n"
    )
    region = find_regions(rendered)["test:JRN-1"]
    assert region.body == "x = 1\n"
    assert not region.edited
    assert region.line == 1


def test_merge_into_new_file():
    text = merge_regions(None, [("imports:JRN-1", "import pytest\n"), ("test:JRN-1", "def test_a():\n    pass\n")])

    regions = find_regions(text)
    assert list(regions) == ["imports:JRN-1", "test:JRN-1"]
    assert regions["test:JRN-1"].body == "def test_a():\n    pass\n"


def test_merge_is_idempotent():
    first = merge_managed_region(None, "test:JRN-1", "x = 1\n")
    assert merge_managed_region(first, "test:JRN-1", "x = 1\n") == first


def test_user_code_outside_regions_is_preserved():
    """Test that regeneration only rewrites the region body."""
    original = "# user header\n" + render_region("test:JRN-1", "x = 1\n") + "\n\ndef helper():\n    return 42\n"
    merged = merge_managed_region(original, "test:JRN-1", "x = 2\n")

    assert merged.startswith("# user header\n")
    assert merged.endswith("\n\ndef helper():\n    return 42\n")
    assert "x = 2\n" in merged
    assert "x = 1\n" not in merged


def test_hand_edited_region_is_not_overwritten():
    """Test that a region whose body no longer matches its hash raises a conflict."""
    original = "# top\n" + render_region("test:JRN-1", "x = 1\n")
    edited = original.replace("x = 1\n", "x = 99\n")

    with pytest.raises(GenerationConflictError) as excinfo:
        merge_managed_region(edited, "test:JRN-1", "x = 2\n", path="tests/test_jrn_1.py")

    assert excinfo.value.region_id == "test:JRN-1"
    assert excinfo.value.line == 2
    assert excinfo.value.to_dict()["type"] == "generation-conflict"
    assert hand_edited_regions(edited) == ["test:JRN-1"]


def test_hand_edit_matching_new_output_is_accepted():
    original = render_region("test:JRN-1", "x = 1\n")
    edited = original.replace("x = 1\n", "x = 2\n")

    merged = merge_managed_region(edited, "test:JRN-1", "x = 2\n")
    assert merged == render_region("test:JRN-1", "x = 2\n")
    assert hand_edited_regions(merged) == []


def test_untouched_regions_survive_other_conflicts():
    """Test that an edited region that would not change does not block the merge."""
    text = render_region("a", "keep = 1\n").replace("keep = 1", "keep = 5") + render_region("b", "y = 1\n")

    merged = merge_regions(text, [("b", "y = 2\n")])
    assert "keep = 5" in merged
    assert "y = 2" in merged


def test_new_regions_are_appended():
    text = merge_managed_region("# hand written\n", "element:save_button", "def save_button(page):\n    pass\n")

    assert text.startswith("# hand written\n\n\n# stepc:begin id=element:save_button")


def test_unterminated_region_is_a_conflict():
    text = render_region("test:JRN-1", "x = 1\n").replace("# stepc:end id=test:JRN-1\n", "")
    with pytest.raises(GenerationConflictError):
        find_regions(text)


def test_duplicate_region_is_a_conflict():
    text = render_region("test:JRN-1", "x = 1\n") * 2
    with pytest.raises(GenerationConflictError):
        find_regions(text)
