"""Render the pytest-playwright test file for one journey.

The file has two managed regions, ``imports:<id>`` and ``test:<id>``. Each
step becomes a comment followed by one statement that reaches elements only
through module functions.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..ir.ops import (
    ACTION_OPS,
    Check,
    Click,
    CustomStep,
    ExpectHidden,
    ExpectText,
    ExpectTitle,
    ExpectToast,
    ExpectUrl,
    ExpectVisible,
    Fill,
    Goto,
    IROp,
    Press,
    Select,
    ValueSpec,
    WaitForResponse,
    WaitForUrl,
    describe_op,
)
from ..journey.models import Journey
from .locator_generator import ResolvedStep
from .managed_blocks import merge_regions
from .module_generator import module_name_for, step_key, to_snake_case

logger = logging.getLogger(__name__)

JOURNEY_ALIAS = "journey"
INDENT = "    "

ModuleRefs = Dict[tuple, Tuple[str, str]]


@dataclass(frozen=True)
class RenderedTest:
    filename: str
    regions: Tuple[Tuple[str, str], ...]

    def merge(self, existing_text: Optional[str], path: str = "<test>") -> str:
        return merge_regions(existing_text, self.regions, path)


def filename_for(journey_id: str) -> str:
    return f"test_{to_snake_case(journey_id)}.py"


def render_value(value: ValueSpec) -> str:
    if value.kind == "actor":
        return f"os.environ[{json.dumps('ACTOR_' + value.value.upper())}]"
    return json.dumps(value.value)


def _url_regex(pattern: str) -> str:
    return f"re.compile({json.dumps(re.escape(pattern))})"


def _response_predicate(op: WaitForResponse) -> str:
    checks = [f"{json.dumps(op.url_contains)} in response.url"]
    if op.method:
        checks.append(f"response.request.method == {json.dumps(op.method)}")
    if op.status is not None:
        checks.append(f"response.status == {op.status}")
    return f"lambda response: {' and '.join(checks)}"


def _comment(text: str) -> str:
    return " ".join(text.split())


def render_statement(op: IROp, ref: Optional[str]) -> List[str]:
    """Python statements for one operation. ``ref`` is the element call, e.g. ``journey.save_button(page)``."""
    if isinstance(op, Goto):
        return [f"page.goto({json.dumps(op.target_url)})"]
    if isinstance(op, Click):
        return [f"{ref}.click()"]
    if isinstance(op, Fill):
        return [f"{ref}.fill({render_value(op.value)})"]
    if isinstance(op, Select):
        return [f"{ref}.select_option({render_value(op.option)})"]
    if isinstance(op, Check):
        return [f"{ref}.{'check' if op.checked else 'uncheck'}()"]
    if isinstance(op, Press):
        return [f"page.keyboard.press({json.dumps(op.key)})"]
    if isinstance(op, ExpectVisible):
        return [f"expect({ref}).to_be_visible()"]
    if isinstance(op, ExpectHidden):
        return [f"expect({ref}).to_be_hidden()"]
    if isinstance(op, ExpectText):
        return [f"expect({ref}).to_contain_text({json.dumps(op.text)})"]
    if isinstance(op, ExpectToast):
        if op.message:
            return [f"expect({ref}.filter(has_text={json.dumps(op.message)})).to_be_visible()"]
        return [f"expect({ref}).to_be_visible()"]
    if isinstance(op, ExpectUrl):
        return [f"expect(page).to_have_url({_url_regex(op.pattern)})"]
    if isinstance(op, ExpectTitle):
        return [f"expect(page).to_have_title({json.dumps(op.title)})"]
    if isinstance(op, WaitForUrl):
        return [f"page.wait_for_url({_url_regex(op.pattern)})"]
    if isinstance(op, WaitForResponse):
        return [f"page.wait_for_response({_response_predicate(op)})"]
    if isinstance(op, CustomStep):
        raise ValueError("blocked steps are rendered by render_blocked")
    raise ValueError(f"unsupported operation: {op.kind}")


def render_blocked(step_number: int, op: CustomStep) -> List[str]:
    lines = [f"# Blocked: {_comment(op.reason)}"]
    if op.suggestion:
        lines.append(f"# Suggestion: {_comment(op.suggestion)}")
    message = f"Step {step_number} is blocked: {op.reason}"
    lines.append(f"pytest.fail({json.dumps(message)}, pytrace=False)")
    return lines


def _step_title(step: ResolvedStep, texts: Dict[int, str]) -> str:
    if step.completion:
        return f"# Completion: {_comment(describe_op(step.op))}"
    return f"# Step {step.number}: {_comment(texts.get(step.number, describe_op(step.op)))}"


def render_test_body(journey: Journey, steps: Sequence[ResolvedStep], refs: ModuleRefs) -> str:
    texts = {s.number: s.raw_text for s in journey.steps}
    tier = journey.frontmatter.tier.value
    summary = _comment(journey.title).replace("\\", "").replace('"', "'")
    lines = [
        f"@pytest.mark.{tier}",
        f"def test_{to_snake_case(journey.id)}(page: Page) -> None:",
        f'{INDENT}"""{summary}"""',
    ]

    def ref_for(step: ResolvedStep) -> Optional[str]:
        key = step_key(step)
        if key is None:
            return None
        alias, name = refs[key]
        return f"{alias}.{name}(page)"

    index = 0
    while index < len(steps):
        step = steps[index]
        lines.append(f"{INDENT}{_step_title(step, texts)}")
        if isinstance(step.op, CustomStep):
            lines.extend(INDENT + line for line in render_blocked(step.number, step.op))
            index += 1
            continue

        following = steps[index + 1] if index + 1 < len(steps) else None
        if (isinstance(step.op, ACTION_OPS) and following is not None and not following.completion
                and isinstance(following.op, WaitForResponse)):
            lines.append(f"{INDENT}{_step_title(following, texts)}")
            lines.append(f"{INDENT}with page.expect_response({_response_predicate(following.op)}):")
            lines.extend(INDENT * 2 + s for s in render_statement(step.op, ref_for(step)))
            index += 2
            continue

        lines.extend(INDENT + s for s in render_statement(step.op, ref_for(step)))
        index += 1
    return "\n".join(lines) + "\n"


def render_imports(journey: Journey, steps: Sequence[ResolvedStep], refs: ModuleRefs) -> str:
    ops = [s.op for s in steps]
    needs_os = any(
        isinstance(v, ValueSpec) and v.kind == "actor"
        for op in ops
        for v in (getattr(op, "value", None), getattr(op, "option", None))
    )
    needs_re = any(isinstance(op, (ExpectUrl, WaitForUrl)) for op in ops)
    used_keys = {step_key(s) for s in steps} - {None}
    aliases = sorted({refs[k][0] for k in used_keys if k in refs})

    title = _comment(journey.title).replace("\\", "").replace('"', "'")
    source = journey.source.replace("\\", "/").replace('"', "'")
    lines = [
        f'"""{journey.id}: {title}',
        "",
        f"Generated by stepcompiler from {source}. Edit outside managed regions only.",
        '"""',
    ]
    stdlib = [name for name, used in (("os", needs_os), ("re", needs_re)) if used]
    lines.extend(f"import {name}" for name in stdlib)
    if stdlib:
        lines.append("")
    lines.append("import pytest")
    lines.append("from playwright.sync_api import Page, expect")
    if aliases:
        lines.append("")
    module = module_name_for(journey.id)
    for alias in aliases:
        if alias == JOURNEY_ALIAS:
            lines.append(f"from modules import {module} as {JOURNEY_ALIAS}")
        else:
            lines.append(f"from modules import {alias}")
    return "\n".join(lines) + "\n"


def render_test(journey: Journey, steps: Sequence[ResolvedStep], refs: ModuleRefs) -> RenderedTest:
    body = render_test_body(journey, steps, refs)
    imports = render_imports(journey, steps, refs)
    regions = ((f"imports:{journey.id}", imports), (f"test:{journey.id}", body))
    logger.debug("[CodeGen] %s: rendered %d step(s)", journey.id, len(steps))
    return RenderedTest(filename=filename_for(journey.id), regions=regions)
