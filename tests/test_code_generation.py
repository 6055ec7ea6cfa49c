"""Tests for element modules, test rendering and cross-journey promotion."""

import ast

from stepcompiler.generators.locator_generator import SelectorResolver
from stepcompiler.generators.module_generator import (
    ElementFunction,
    ModulePlan,
    build_element_functions,
    element_name,
    load_module_plan,
    module_name_for,
    parse_locator_expression,
    read_module_functions,
    render_locator,
    render_module,
    to_snake_case,
)
from stepcompiler.generators.promotion import plan_promotions
from stepcompiler.generators.test_generator import filename_for, render_test
from stepcompiler.ir.ops import LocatorSpec, LocatorStrategy
from stepcompiler.journey.parser import parse_journey
from stepcompiler.mapping.step_mapper import map_steps


def _generate(text):
    journey = parse_journey(text, source="journeys/profile.md")
    resolved = SelectorResolver().resolve_ops(map_steps(journey))
    plan = build_element_functions(resolved, module_name_for(journey.id), journey.title)
    promotion = plan_promotions({journey.id: plan})
    rendered = render_test(journey, resolved, promotion.refs[journey.id])
    test_text = rendered.merge(None)
    module_text = render_module(promotion.local[journey.id])
    return rendered, test_text, module_text


def _role(value, name=None, **kwargs):
    return LocatorSpec(LocatorStrategy.ROLE, value, name=name, **kwargs)


def test_profile_journey_renders_module_calls(make_journey, profile_steps):
    """Test that every step reaches its element through the journey module."""
    rendered, test_text, module_text = _generate(make_journey(profile_steps))

    assert rendered.filename == "test_jrn_0001.py"
    assert "from modules import jrn_0001 as journey" in test_text
    assert "@pytest.mark.smoke" in test_text
    assert "def test_jrn_0001(page: Page) -> None:" in test_text
    assert '    # Step 1: Navigate to /profile\n    page.goto("/profile")\n' in test_text
    assert 'journey.first_name_field(page).fill("Ada")' in test_text
    assert "journey.save_button(page).click()" in test_text
    assert 'expect(journey.toast_region(page).filter(has_text="Profile saved")).to_be_visible()' in test_text
    assert "get_by_" not in test_text

    assert "def first_name_field(page: Page) -> Locator:" in module_text
    assert 'return page.get_by_label("First name")' in module_text
    assert 'return page.get_by_role("button", name="Save")' in module_text
    assert 'return page.get_by_role("alert").or_(page.get_by_role("status"))' in module_text
    ast.parse(test_text)
    ast.parse(module_text)


def test_generation_is_deterministic(make_journey, profile_steps):
    first = _generate(make_journey(profile_steps))
    second = _generate(make_journey(profile_steps))
    assert first[1:] == second[1:]


def test_action_then_response_wait_is_wrapped(make_journey):
    """Test that a response wait after an action listens before the action runs."""
    steps = [
        "Navigate to /profile",
        'Click the "Save" button',
        "Wait for the POST response from /api/profile with status 200",
    ]
    _, test_text, _ = _generate(make_journey(steps))

    assert (
        "    with page.expect_response(lambda response: \"/api/profile\" in response.url"
        " and response.request.method == \"POST\" and response.status == 200):\n"
        "        journey.save_button(page).click()\n"
    ) in test_text
    assert "    # Step 3: Wait for the POST response from /api/profile with status 200\n" in test_text
    ast.parse(test_text)


def test_blocked_step_fails_loudly(make_journey):
    """Test that a blocked step renders as an explicit failure, not a guess."""
    _, test_text, _ = _generate(make_journey(["Navigate to /profile", "Wait 5 seconds"]))

    assert "    # Blocked: unconditional timing delay: fixed waits are never generated\n" in test_text
    assert (
        'pytest.fail("Step 2 is blocked: unconditional timing delay: fixed waits are never generated", '
        "pytrace=False)"
    ) in test_text
    assert "wait_for_timeout" not in test_text
    ast.parse(test_text)


def test_actor_values_and_url_completion(make_journey):
    extra = "completion:\n  - type: url\n    value: /profile/done\n"
    _, test_text, _ = _generate(make_journey(['Enter "{{email}}" in the "Email" field'], extra=extra))

    assert "import os\nimport re\n" in test_text
    assert 'journey.email_field(page).fill(os.environ["ACTOR_EMAIL"])' in test_text
    assert "    # Completion: expect url to contain /profile/done\n" in test_text
    assert 'expect(page).to_have_url(re.compile("/profile/done"))' in test_text


def test_render_locator_expressions():
    assert render_locator(_role("button", "Save", exact=True)) == 'page.get_by_role("button", name="Save", exact=True)'
    assert render_locator(_role("heading", "Profile", level=2)) == 'page.get_by_role("heading", name="Profile", level=2)'
    assert render_locator(_role("button", "Save", nth=0)) == 'page.get_by_role("button", name="Save").first'
    assert render_locator(LocatorSpec(LocatorStrategy.TESTID, "save-btn", nth=2)) == 'page.get_by_test_id("save-btn").nth(2)'
    assert render_locator(LocatorSpec(LocatorStrategy.TOAST, "status")) == 'page.get_by_role("status")'
    assert render_locator(LocatorSpec(LocatorStrategy.STRUCTURAL, "css=#confirm")) == 'page.locator("css=#confirm")'


def test_parse_locator_expression_reads_rendered_locators():
    """Test that generated locator expressions can be read back into specs."""
    specs = [
        _role("button", "Save", exact=True, nth=0),
        LocatorSpec(LocatorStrategy.LABEL, "First name"),
        LocatorSpec(LocatorStrategy.TOAST, "alert"),
        LocatorSpec(LocatorStrategy.STRUCTURAL, "xpath=//form"),
    ]
    for spec in specs:
        assert parse_locator_expression(render_locator(spec)).key() == spec.key()

    assert parse_locator_expression("page.get_by_role(") is None
    assert parse_locator_expression("page.click()") is None


def test_element_names():
    assert element_name(LocatorSpec(LocatorStrategy.LABEL, "First name")) == "first_name_field"
    assert element_name(_role("button", "Save")) == "save_button"
    assert element_name(_role("button", "Save button")) == "save_button"
    assert element_name(_role("dialog")) == "dialog"
    assert element_name(LocatorSpec(LocatorStrategy.TEXT, "Welcome back")) == "welcome_back_text"
    assert element_name(LocatorSpec(LocatorStrategy.TOAST, "alert")) == "toast_region"


def test_snake_case_identifiers():
    assert to_snake_case("class") == "class_"
    assert to_snake_case("123 go") == "el_123_go"
    assert to_snake_case("!!!") == "element"
    assert module_name_for("JRN-0001") == "jrn_0001"
    assert module_name_for("shared") == "shared_journey"
    assert filename_for("JRN-0001") == "test_jrn_0001.py"


def test_module_plan_deduplicates_locators():
    plan = ModulePlan(name="jrn_0001")
    first = plan.add(ElementFunction("save_button", _role("button", "Save"), usages=frozenset({"click"})))
    again = plan.add(ElementFunction("save_button", _role("button", "Save"), usages=frozenset({"expectVisible"})))
    other = plan.add(ElementFunction("save_button", _role("button", "Save", exact=True)))

    assert first.name == again.name == "save_button"
    assert plan.functions["save_button"].usages == {"click", "expectVisible"}
    assert other.name == "save_button_2"


def test_merged_function_keeps_the_longest_wait():
    """Test that steps differing only in their wait share one function with the longer wait."""
    plan = ModulePlan(name="jrn_0001")
    plan.add(ElementFunction("save_button", _role("button", "Save"), usages=frozenset({"click"})))
    plan.add(ElementFunction("save_button", _role("button", "Save", wait_timeout=15000), usages=frozenset({"click"})))
    merged = plan.add(ElementFunction("save_button", _role("button", "Save", wait_timeout=5000),
                                      usages=frozenset({"expectVisible"})))

    assert list(plan.functions) == ["save_button"]
    assert merged.spec.wait_timeout == 15000
    assert merged.usages == {"click", "expectVisible"}
    assert 'locator.wait_for(state="visible", timeout=15000)' in merged.render()


def test_hidden_assertions_get_their_own_function():
    """Test that a locator asserted hidden never shares a waiting function."""
    plan = ModulePlan(name="jrn_0001")
    spec = _role("dialog", wait_timeout=10000)
    visible = plan.add(ElementFunction("dialog", spec, usages=frozenset({"click"})))
    hidden = plan.add(ElementFunction("dialog", spec, usages=frozenset({"expectHidden"})))

    assert visible.name != hidden.name
    assert "wait_for" in visible.render()
    assert "wait_for" not in hidden.render()


def test_module_waits_are_read_back(tmp_path):
    plan = ModulePlan(name="jrn_0001", title="Profile")
    plan.add(ElementFunction("save_button", _role("button", "Save", wait_timeout=20000), description="Save button"))
    text = render_module(plan)

    assert 'locator.wait_for(state="visible", timeout=20000)' in text
    functions = read_module_functions(text)
    assert functions["save_button"].wait_timeout == 20000
    assert functions["save_button"].description == "Save button"

    loaded = load_module_plan("jrn_0001", text + "\n\ndef helper(page):\n    return page.get_by_text('x')\n")
    assert list(loaded.functions) == ["save_button"]


def test_promotion_moves_shared_elements():
    """Test that an element used by two journeys moves to the shared module."""
    save = ElementFunction("save_button", _role("button", "Save"), usages=frozenset({"click"}))
    email = ElementFunction("email_field", LocatorSpec(LocatorStrategy.LABEL, "Email"), usages=frozenset({"fill"}))
    one = ModulePlan(name="jrn_0001")
    one.add(save)
    two = ModulePlan(name="jrn_0002")
    two.add(save)
    two.add(email)

    promotion = plan_promotions({"JRN-0001": one, "JRN-0002": two})

    assert promotion.new_shared == ("save_button",)
    assert promotion.refs["JRN-0001"][save.key()] == ("shared", "save_button")
    assert promotion.refs["JRN-0002"][email.key()] == ("journey", "email_field")
    assert list(promotion.local["JRN-0001"].functions) == []
    assert list(promotion.local["JRN-0002"].functions) == ["email_field"]
    assert promotion.to_dict()["promoted"] == ["save_button"]


def test_promotion_reuses_existing_shared_functions():
    save = ElementFunction("save_button", _role("button", "Save"), usages=frozenset({"click"}))
    existing = ModulePlan(name="shared")
    existing.add(ElementFunction("save_button", _role("button", "Save")))
    one = ModulePlan(name="jrn_0001")
    one.add(save)

    promotion = plan_promotions({"JRN-0001": one}, existing_shared=existing)

    assert promotion.new_shared == ()
    assert promotion.refs["JRN-0001"][save.key()] == ("shared", "save_button")
    assert promotion.to_dict()["reused"] == ["save_button"]


def test_promotion_similarity_threshold():
    """Test that near-identical locators only match below a similarity of 1.0."""
    existing = ModulePlan(name="shared")
    existing.add(ElementFunction("save_button", _role("button", "Save")))
    changes = ElementFunction("save_changes_button", _role("button", "Save changes"), usages=frozenset({"click"}))
    one = ModulePlan(name="jrn_0001")
    one.add(changes)

    strict = plan_promotions({"JRN-0001": one}, existing_shared=existing)
    loose = plan_promotions({"JRN-0001": one}, threshold=0.85, existing_shared=existing)

    assert strict.refs["JRN-0001"][changes.key()] == ("journey", "save_changes_button")
    assert loose.refs["JRN-0001"][changes.key()] == ("shared", "save_button")
