"""Element-function modules.

Every element a journey touches becomes a small function in a module file::

    def submit_button(page: Page) -> Locator:
        return page.get_by_role("button", name="Submit")

Tests only ever call these functions, so locators live in exactly one place
and healing never has to touch a test body.
"""
from __future__ import annotations

import ast
import json
import keyword
import logging
import re
from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from ..ir.ops import LocatorSpec, LocatorStrategy, Provenance
from .locator_generator import ResolvedStep
from .managed_blocks import find_regions, merge_regions

logger = logging.getLogger(__name__)

SHARED_MODULE = "shared"
MODULE_HEADER_REGION = "imports:{module}"
ELEMENT_REGION = "element:{name}"

ROLE_SUFFIXES = {
    "button": "button",
    "link": "link",
    "textbox": "field",
    "searchbox": "search",
    "combobox": "dropdown",
    "listbox": "list",
    "checkbox": "checkbox",
    "radio": "radio",
    "switch": "switch",
    "heading": "heading",
    "dialog": "dialog",
    "alertdialog": "dialog",
    "tab": "tab",
    "menuitem": "menu_item",
    "option": "option",
    "img": "image",
    "row": "row",
    "cell": "cell",
}


def to_snake_case(text: str) -> str:
    """Convert free text into a Python identifier."""
    text = re.sub(r"[^\w\s-]", "", text).strip().lower()
    text = re.sub(r"[-\s]+", "_", text)
    text = re.sub(r"_+", "_", re.sub(r"[^a-z0-9_]", "", text)).strip("_")
    text = text[:40].rstrip("_")
    if not text:
        return "element"
    if text[0].isdigit():
        text = f"el_{text}"
    if keyword.iskeyword(text):
        text += "_"
    return text


def module_name_for(journey_id: str) -> str:
    name = to_snake_case(journey_id)
    return f"{name}_journey" if name == SHARED_MODULE else name


def element_name(spec: LocatorSpec) -> str:
    """Readable function name for a locator, e.g. ``submit_button`` or ``email_field``."""
    strategy = spec.strategy
    if strategy is LocatorStrategy.ROLE:
        suffix = ROLE_SUFFIXES.get(spec.value, to_snake_case(spec.value))
        if not spec.name:
            return suffix
        base = to_snake_case(spec.name)
        return base if base.endswith(f"_{suffix}") or base == suffix else f"{base}_{suffix}"
    if strategy is LocatorStrategy.LABEL:
        base = to_snake_case(spec.value)
        return base if base.endswith("_field") else f"{base}_field"
    if strategy is LocatorStrategy.TESTID:
        return to_snake_case(spec.value)
    if strategy is LocatorStrategy.TEXT:
        return f"{to_snake_case(spec.value)}_text"
    if strategy is LocatorStrategy.TOAST:
        return "status_region" if spec.value == "status" else "toast_region"
    return f"{to_snake_case(spec.description or 'structural')}_element"


def _options(spec: LocatorSpec) -> str:
    parts = []
    if spec.exact:
        parts.append("exact=True")
    if spec.level is not None:
        parts.append(f"level={spec.level}")
    return "".join(f", {p}" for p in parts)


def render_locator(spec: LocatorSpec) -> str:
    """Python Playwright expression for ``spec``, rooted at ``page``."""
    value = json.dumps(spec.value)
    strategy = spec.strategy
    if strategy is LocatorStrategy.ROLE:
        name = f", name={json.dumps(spec.name)}" if spec.name else ""
        expression = f"page.get_by_role({value}{name}{_options(spec)})"
    elif strategy is LocatorStrategy.LABEL:
        expression = f"page.get_by_label({value}{_options(spec)})"
    elif strategy is LocatorStrategy.TESTID:
        expression = f"page.get_by_test_id({value})"
    elif strategy is LocatorStrategy.TEXT:
        expression = f"page.get_by_text({value}{_options(spec)})"
    elif strategy is LocatorStrategy.TOAST:
        if spec.value == "status":
            expression = 'page.get_by_role("status")'
        else:
            expression = 'page.get_by_role("alert").or_(page.get_by_role("status"))'
    else:
        expression = f"page.locator({value})"

    if spec.nth == 0:
        expression += ".first"
    elif spec.nth is not None:
        expression += f".nth({spec.nth})"
    return expression


@dataclass(frozen=True)
class ElementFunction:
    name: str
    spec: LocatorSpec
    usages: FrozenSet[str] = frozenset()
    alternates: Tuple[LocatorSpec, ...] = ()
    description: str = ""

    @property
    def waits(self) -> bool:
        return self.spec.wait_timeout is not None and "expectHidden" not in self.usages

    def key(self) -> tuple:
        """Promotion identity: the locator structure plus whether it is ever asserted hidden."""
        return self.spec.key() + ("expectHidden" in self.usages,)

    def render(self) -> str:
        summary = (self.description or self.name.replace("_", " ")).replace("\\", "").replace('"', "'")
        summary = " ".join(summary.split())
        lines = [f"def {self.name}(page: Page) -> Locator:", f'    """{summary[:1].upper()}{summary[1:]}."""']
        if self.waits:
            lines.append(f"    locator = {render_locator(self.spec)}")
            lines.append(f'    locator.wait_for(state="visible", timeout={self.spec.wait_timeout})')
            lines.append("    return locator")
        else:
            lines.append(f"    return {render_locator(self.spec)}")
        return "\n".join(lines) + "\n"


@dataclass
class ModulePlan:
    """Element functions destined for one module file, in first-use order."""

    name: str
    title: str = ""
    functions: Dict[str, ElementFunction] = field(default_factory=dict)

    @property
    def filename(self) -> str:
        return f"{self.name}.py"

    def header(self) -> str:
        if self.name == SHARED_MODULE:
            doc = "Element functions shared by more than one journey."
        else:
            doc = f"Element functions for {self.title or self.name}."
        doc = doc.replace('"', "'")
        return f'"""{doc}"""\nfrom playwright.sync_api import Locator, Page\n'

    def by_key(self) -> Dict[tuple, ElementFunction]:
        return {fn.key(): fn for fn in self.functions.values()}

    def add(self, function: ElementFunction) -> ElementFunction:
        """Add ``function`` under a unique name; returns the stored function."""
        existing = self.by_key().get(function.key())
        if existing is not None:
            spec = existing.spec
            wait = function.spec.wait_timeout
            if wait is not None and (spec.wait_timeout is None or wait > spec.wait_timeout):
                spec = replace(spec, wait_timeout=wait)
            merged = replace(existing, spec=spec, usages=existing.usages | function.usages)
            self.functions[existing.name] = merged
            return merged
        name = unique_name(function.name, self.functions)
        stored = replace(function, name=name)
        self.functions[name] = stored
        return stored

    def replace_spec(self, name: str, spec: LocatorSpec) -> ElementFunction:
        updated = replace(self.functions[name], spec=spec)
        self.functions[name] = updated
        return updated

    def regions(self, names: Optional[Iterable[str]] = None, header: bool = True) -> List[Tuple[str, str]]:
        """Header plus element regions, optionally limited to ``names``."""
        wanted = None if names is None else set(names)
        regions = [(MODULE_HEADER_REGION.format(module=self.name), self.header())] if header else []
        for function in self.functions.values():
            if wanted is not None and function.name not in wanted:
                continue
            regions.append((ELEMENT_REGION.format(name=function.name), function.render()))
        return regions


def unique_name(base: str, taken: Iterable[str]) -> str:
    taken = set(taken)
    if base not in taken:
        return base
    counter = 2
    while f"{base}_{counter}" in taken:
        counter += 1
    return f"{base}_{counter}"


def build_element_functions(resolved_steps: Iterable[ResolvedStep], module_name: str,
                            title: str = "") -> ModulePlan:
    """Collect one element function per distinct locator used by the steps."""
    plan = ModulePlan(name=module_name, title=title)
    for step in resolved_steps:
        spec = step.locator
        if spec is None:
            continue
        plan.add(
            ElementFunction(
                name=element_name(spec),
                spec=spec,
                usages=frozenset({step.op.kind}),
                alternates=step.alternates,
                description=spec.description,
            )
        )
    logger.debug("[CodeGen] %s: %d element function(s)", module_name, len(plan.functions))
    return plan


def render_module(plan: ModulePlan, existing_text: Optional[str] = None, path: str = "<module>",
                  names: Optional[Iterable[str]] = None, header: bool = True) -> str:
    """Merge the plan's regions into ``existing_text`` (or a fresh file)."""
    return merge_regions(existing_text, plan.regions(names, header), path)


# -- reading generated modules back ----------------------------------------

_CALLS = {
    "get_by_role": LocatorStrategy.ROLE,
    "get_by_label": LocatorStrategy.LABEL,
    "get_by_test_id": LocatorStrategy.TESTID,
    "get_by_text": LocatorStrategy.TEXT,
    "locator": LocatorStrategy.STRUCTURAL,
}


def _literal(node: ast.AST):
    try:
        return ast.literal_eval(node)
    except ValueError:
        return None


def _spec_from_call(node: ast.AST) -> Optional[LocatorSpec]:
    nth = None
    if isinstance(node, ast.Attribute) and node.attr == "first":
        nth, node = 0, node.value
    elif (isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute)
          and node.func.attr == "nth" and node.args):
        nth, node = _literal(node.args[0]), node.func.value

    if not (isinstance(node, ast.Call) and isinstance(node.func, ast.Attribute)):
        return None
    method = node.func.attr
    if method == "or_":
        inner = _spec_from_call(node.func.value)
        if inner is not None and inner.strategy is LocatorStrategy.ROLE and inner.value == "alert":
            return LocatorSpec(LocatorStrategy.TOAST, "alert", nth=nth, provenance=Provenance.PATTERN)
        return None
    strategy = _CALLS.get(method)
    if strategy is None or not node.args:
        return None
    value = _literal(node.args[0])
    if not isinstance(value, str):
        return None
    kwargs = {kw.arg: _literal(kw.value) for kw in node.keywords if kw.arg}
    if strategy is LocatorStrategy.ROLE and value == "status" and not kwargs:
        return LocatorSpec(LocatorStrategy.TOAST, "status", nth=nth)
    return LocatorSpec(
        strategy=strategy,
        value=value,
        name=kwargs.get("name"),
        exact=bool(kwargs.get("exact", False)),
        level=kwargs.get("level"),
        nth=nth,
    )


def parse_locator_expression(source: str) -> Optional[LocatorSpec]:
    """Parse ``page.get_by_role("button", name="Save")``-style source into a spec."""
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError:
        return None
    return _spec_from_call(tree.body)


def read_module_functions(text: str) -> Dict[str, LocatorSpec]:
    """Element functions defined in a module file, with their current locators."""
    try:
        tree = ast.parse(text)
    except SyntaxError:
        logger.warning("[CodeGen] Module file is not valid Python; ignoring existing functions")
        return {}
    found: Dict[str, LocatorSpec] = {}
    for node in tree.body:
        if not isinstance(node, ast.FunctionDef):
            continue
        spec: Optional[LocatorSpec] = None
        timeout = None
        for statement in node.body:
            if isinstance(statement, ast.Return) and statement.value is not None and spec is None:
                spec = _spec_from_call(statement.value)
            elif isinstance(statement, ast.Assign) and spec is None:
                spec = _spec_from_call(statement.value)
            elif (isinstance(statement, ast.Expr) and isinstance(statement.value, ast.Call)
                  and isinstance(statement.value.func, ast.Attribute)
                  and statement.value.func.attr == "wait_for"):
                for kw in statement.value.keywords:
                    if kw.arg == "timeout":
                        timeout = _literal(kw.value)
        if spec is not None:
            doc = (ast.get_docstring(node) or node.name.replace("_", " ")).rstrip(".")
            found[node.name] = replace(spec, wait_timeout=timeout, description=doc)
    return found


def load_module_plan(name: str, text: Optional[str], title: str = "") -> ModulePlan:
    """Rebuild a plan from the managed element regions of an existing module file."""
    plan = ModulePlan(name=name, title=title)
    if not text:
        return plan
    managed = {rid.split(":", 1)[1] for rid in find_regions(text) if rid.startswith("element:")}
    for fn_name, spec in read_module_functions(text).items():
        if fn_name in managed:
            plan.functions[fn_name] = ElementFunction(name=fn_name, spec=spec, description=spec.description)
    return plan


def step_key(step: ResolvedStep) -> Optional[tuple]:
    """The element-function key a resolved step refers to."""
    spec = step.locator
    if spec is None:
        return None
    return spec.key() + (step.op.kind == "expectHidden",)
