"""Ordered step templates.

Each template is a regular expression with named captures plus a builder that
turns a match into one IR operation. Templates are tried in declaration order
and the first one whose builder returns an operation wins. A builder returns
``None`` to decline a structural match that lacks an anchor, which lets later
templates (or the final ``CustomStep``) take the step.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..ir.ops import (
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
    LocatorRequest,
    Press,
    Select,
    ValueSpec,
    WaitForResponse,
    WaitForUrl,
)

ROLE_NOUNS: Dict[str, str] = {
    "button": "button",
    "link": "link",
    "tab": "tab",
    "menu item": "menuitem",
    "menuitem": "menuitem",
    "checkbox": "checkbox",
    "check box": "checkbox",
    "radio button": "radio",
    "radio": "radio",
    "option": "option",
    "heading": "heading",
    "header": "heading",
    "modal": "dialog",
    "dialog": "dialog",
    "alert": "alert",
    "table": "table",
    "row": "row",
    "cell": "cell",
    "image": "img",
    "icon": "img",
    "menu": "menu",
    "dropdown": "combobox",
    "drop-down": "combobox",
    "combobox": "combobox",
    "combo box": "combobox",
    "listbox": "listbox",
    "switch": "switch",
    "toggle": "switch",
    "slider": "slider",
    "searchbox": "searchbox",
    "search box": "searchbox",
    "navigation": "navigation",
    "tooltip": "tooltip",
    "progress bar": "progressbar",
}
FIELD_NOUNS: Tuple[str, ...] = ("field", "input", "textbox", "text box", "textarea", "text area", "box")
NAMELESS_ROLES = frozenset({"dialog", "alert", "alertdialog", "navigation", "table", "progressbar", "menu"})
GENERIC_WORDS = frozenset(
    {"element", "elements", "thing", "item", "control", "area", "widget", "part", "component",
     "section", "it", "this", "that", "one", "something", "page", "screen", "form", "details",
     "information", "info", "data", "fields", "value", "values", "stuff", "content"}
)
TOAST_TYPES = r"success|error|warning|info"
TOAST_VERBS = r"appears?|is\s+visible|be\s+visible|pops?\s+up|shows?\s+up"
SELECT_NOUNS = r"dropdown|drop-down|select|combobox|combo\s+box|listbox|list|picker|menu|field"
FIELD_NOUN_ALT = r"field|input|textbox|text\s+box|textarea|text\s+area|box"
KEY_ALIASES = {
    "enter": "Enter", "return": "Enter", "tab": "Tab", "escape": "Escape", "esc": "Escape",
    "backspace": "Backspace", "delete": "Delete", "home": "Home", "end": "End",
    "pageup": "PageUp", "pagedown": "PageDown", "arrowup": "ArrowUp", "arrowdown": "ArrowDown",
    "arrowleft": "ArrowLeft", "arrowright": "ArrowRight",
}


def V(name: str, bare: str = r".+?") -> str:
    """Capture ``name`` double-quoted, single-quoted or bare."""
    return rf"(?:\"(?P<{name}_dq>[^\"]+)\"|'(?P<{name}_sq>[^']+)'|(?P<{name}_bare>{bare}))"


def Q(name: str) -> str:
    """Capture ``name`` only when quoted."""
    return rf"(?:\"(?P<{name}_dq>[^\"]+)\"|'(?P<{name}_sq>[^']+)')"


def captured(match: "re.Match[str]", name: str) -> Tuple[Optional[str], bool]:
    """Return (value, was_quoted) for a capture built with ``V`` or ``Q``."""
    groups = match.groupdict()
    for suffix, quoted in (("_dq", True), ("_sq", True), ("_bare", False)):
        value = groups.get(name + suffix)
        if value is not None:
            return value.strip(), quoted
    return None, False


def _noun_alternation(nouns) -> str:
    ordered = sorted(nouns, key=len, reverse=True)
    return "|".join(r"\s+".join(re.escape(w) for w in noun.split()) for noun in ordered)


_ROLE_NOUN_ALT = _noun_alternation(ROLE_NOUNS)
_ANY_NOUN_ALT = _noun_alternation(list(ROLE_NOUNS) + list(FIELD_NOUNS))
_QUOTED_ANYWHERE = re.compile(r"\"([^\"]+)\"|(?<!\w)'([^']+)'(?!\w)")


def _norm_noun(noun: str) -> str:
    return re.sub(r"\s+", " ", noun.strip().lower())


def _strip_article(text: str) -> str:
    return re.sub(r"^(?:the|a|an)\s+", "", text.strip(), flags=re.IGNORECASE)


def is_generic(text: str) -> bool:
    words = [w for w in re.findall(r"[a-z0-9]+", text.lower()) if w not in {"the", "a", "an", "my", "your"}]
    return not words or all(w in GENERIC_WORDS for w in words)


def _noun_request(description: str, noun: str, name: Optional[str]) -> Optional[LocatorRequest]:
    noun = _norm_noun(noun)
    if noun in FIELD_NOUNS:
        if not name:
            return None
        return LocatorRequest(description=description, anchor="label", role="textbox", name=name)
    role = ROLE_NOUNS[noun]
    if not name and role not in NAMELESS_ROLES:
        return None
    return LocatorRequest(description=description, anchor="role", role=role, name=name or None)


def analyze_target(target: str) -> LocatorRequest:
    """Find the locator anchor in an element phrase.

    Recognised anchors, in order: a test id phrase, a quoted name with or
    without a role noun, a bare name followed by a role or field noun, a
    landmark role noun on its own, and finally any quoted text. Anything else
    yields a request without an anchor.
    """
    text = _strip_article(target.strip().rstrip("."))
    description = text

    m = re.fullmatch(
        rf"(?:element\s+)?(?:with\s+)?(?:the\s+)?(?:test\s*id|data-testid)\s+{V('tid', _TID)}",
        text,
        re.IGNORECASE,
    )
    if m:
        testid, _ = captured(m, "tid")
        return LocatorRequest(description=description, anchor="testid", name=testid)

    m = re.fullmatch(rf"(?:text\s+)?{Q('name')}(?:\s+(?P<noun>{_ANY_NOUN_ALT}))?", text, re.IGNORECASE)
    if m:
        name, _ = captured(m, "name")
        if m.group("noun"):
            request = _noun_request(f"{name} {_norm_noun(m.group('noun'))}", m.group("noun"), name)
            if request:
                return request
        return LocatorRequest(description=name, anchor="text", name=name)

    m = re.fullmatch(rf"(?P<noun>{_ROLE_NOUN_ALT})\s+(?:(?:named|called|labell?ed)\s+)?{Q('name')}", text, re.IGNORECASE)
    if m:
        name, _ = captured(m, "name")
        request = _noun_request(f"{name} {_norm_noun(m.group('noun'))}", m.group("noun"), name)
        if request:
            return request

    m = re.fullmatch(rf"(?P<name>.+?)\s+(?P<noun>{_ANY_NOUN_ALT})", text, re.IGNORECASE)
    if m and not is_generic(m.group("name")) and not _QUOTED_ANYWHERE.search(m.group("name")):
        request = _noun_request(description, m.group("noun"), m.group("name").strip())
        if request:
            return request

    m = re.fullmatch(rf"(?P<noun>{_ROLE_NOUN_ALT})", text, re.IGNORECASE)
    if m:
        request = _noun_request(description, m.group("noun"), None)
        if request:
            return request

    quoted = _QUOTED_ANYWHERE.findall(text)
    if len(quoted) == 1:
        name = next(part for part in quoted[0] if part)
        return LocatorRequest(description=name, anchor="text", name=name)

    return LocatorRequest(description=description, anchor=None)


def suggest_name(description: str) -> str:
    words = [w for w in re.findall(r"[A-Za-z0-9]+", description) if w.lower() not in GENERIC_WORDS | {"the", "a", "an"}]
    if not words:
        return "Name"
    return " ".join(words).capitalize() if words[0].islower() else " ".join(words)


def missing_anchor(request: LocatorRequest, action: str) -> CustomStep:
    """Actionable gap for a step whose element phrase has no anchor."""
    name = suggest_name(request.description)
    if action == "assert":
        suggestion = f'"{name}" is visible  (or: The "{name}" heading is visible)'
    elif action == "fill":
        suggestion = f'Enter "value" in the "{name}" field'
    else:
        suggestion = f'Click the "{name}" button  (or add a hint: (role=button, name="{name}"))'
    return CustomStep(
        reason=(
            f'no locator anchor: "{request.description}" names no role, label, test id or quoted text'
        ),
        suggestion=suggestion,
    )


def _slug_path(page: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", page.strip().lower()).strip("-")
    if slug in {"home", "index", "landing", "start"}:
        return "/"
    return f"/{slug}"


def _toast_type(match: "re.Match[str]") -> str:
    value = match.groupdict().get("type")
    return value.lower() if value else "any"


def _toast_request(toast_type: str) -> LocatorRequest:
    return LocatorRequest(description=f"{'' if toast_type == 'any' else toast_type + ' '}toast", anchor="toast",
                          toast_type=toast_type)


# -- builders ---------------------------------------------------------------

Builder = Callable[["re.Match[str]"], Optional[IROp]]


def _goto_url(m):
    url, _ = captured(m, "url")
    return Goto(target_url=url)


def _goto_page(m):
    page, quoted = captured(m, "page")
    if not quoted and is_generic(page):
        return None
    return Goto(target_url=_slug_path(page))


def _wait_url(m):
    pattern, _ = captured(m, "pattern")
    return WaitForUrl(pattern=pattern)


def _wait_response(m):
    url, _ = captured(m, "url")
    method = m.group("method").upper() if m.group("method") else None
    status = int(m.group("status")) if m.group("status") else None
    return WaitForResponse(url_contains=url, method=method, status=status)


def _fixed_delay(m):
    return CustomStep(
        reason="unconditional timing delay: fixed waits are never generated",
        suggestion='Wait for the URL to contain "/next-page"  (or: The "Done" heading is visible)',
    )


def _expect_url(m):
    pattern, _ = captured(m, "pattern")
    return ExpectUrl(pattern=pattern)


def _expect_url_page(m):
    page, quoted = captured(m, "page")
    if not quoted and is_generic(page):
        return None
    return ExpectUrl(pattern=_slug_path(page))


def _expect_title(m):
    title, _ = captured(m, "title")
    return ExpectTitle(title=title)


def _toast_message(m):
    message, _ = captured(m, "message")
    toast_type = _toast_type(m)
    return ExpectToast(toast_type=toast_type, message=message, locator=_toast_request(toast_type))


def _toast_bare(m):
    toast_type = _toast_type(m)
    return ExpectToast(toast_type=toast_type, message=None, locator=_toast_request(toast_type))


def _status_message(m):
    message, _ = captured(m, "message")
    return ExpectToast(toast_type="status", message=message, locator=_toast_request("status"))


def _select(m):
    option, _ = captured(m, "option")
    field, field_quoted = captured(m, "field")
    noun = _norm_noun(m.group("noun")) if m.groupdict().get("noun") else None
    if not field or (not field_quoted and is_generic(field)):
        return None
    role = "listbox" if noun in {"listbox", "list"} else "combobox"
    description = f"{field} {noun or 'dropdown'}"
    return Select(
        locator=LocatorRequest(description=description, anchor="label", role=role, name=field),
        option=ValueSpec.parse(option),
    )


def _select_standalone_option(m):
    option, _ = captured(m, "option")
    noun = _norm_noun(m.group("noun"))
    role = "radio" if noun.startswith("radio") else "option"
    return Click(locator=LocatorRequest(description=f"{option} {noun}", anchor="role", role=role, name=option))


def _check(m):
    label, quoted = captured(m, "label")
    noun = m.groupdict().get("noun")
    if not quoted and not noun:
        return None
    if not quoted and is_generic(label):
        return None
    role = ROLE_NOUNS.get(_norm_noun(noun), "checkbox") if noun else "checkbox"
    if role not in {"checkbox", "switch", "radio"}:
        role = "checkbox"
    checked = m.group("verb").lower() == "check"
    return Check(
        locator=LocatorRequest(description=f"{label} {_norm_noun(noun) if noun else 'checkbox'}",
                               anchor="role", role=role, name=label),
        checked=checked,
    )


def _fill(m):
    value, value_quoted = captured(m, "value")
    field, field_quoted = captured(m, "field")
    noun = m.groupdict().get("noun")
    if not (value_quoted or field_quoted or noun):
        return None
    if not field_quoted and is_generic(field):
        return None
    if not value_quoted and is_generic(value):
        return None
    description = f"{field} {_norm_noun(noun) if noun else 'field'}"
    return Fill(
        locator=LocatorRequest(description=description, anchor="label", role="textbox", name=field),
        value=ValueSpec.parse(value),
    )


def _press(m):
    key = re.sub(r"\s+", "", m.group("key").lower())
    return Press(key=KEY_ALIASES.get(key, key.capitalize()))


def _click(m):
    return Click(locator=analyze_target(m.group("target")))


def _expect_text(m):
    text, _ = captured(m, "text")
    return ExpectText(locator=analyze_target(m.group("target")), text=text)


def _expect_hidden(m):
    return ExpectHidden(locator=analyze_target(m.group("target")))


def _expect_visible(m):
    return ExpectVisible(locator=analyze_target(m.group("target")))


@dataclass(frozen=True)
class StepPattern:
    name: str
    category: str
    regex: "re.Pattern[str]"
    build: Builder

    def apply(self, text: str) -> Optional[IROp]:
        match = self.regex.match(text)
        if not match:
            return None
        return self.build(match)


def _p(name: str, category: str, pattern: str, build: Builder) -> StepPattern:
    return StepPattern(name, category, re.compile(pattern, re.IGNORECASE), build)


_URL = r"(?:https?://|/)\S*"
_PAGE = r"[\w\s-]+?"
_TOKEN = r"\S+"
_REST = r".+"
_LAZY = r".+?"
_TID = r"[\w.:-]+"

PATTERNS: Tuple[StepPattern, ...] = (
    # navigation and waits
    _p("navigate-url", "navigation", rf"^navigate\s+to\s+{V('url', _URL)}$", _goto_url),
    _p("navigate-page", "navigation",
       rf"^navigate\s+to\s+(?:the\s+)?{V('page', _PAGE)}\s+(?:page|screen)$", _goto_page),
    _p("wait-url", "wait",
       rf"^wait\s+(?:for\s+)?(?:the\s+)?(?:url|page)\s+to\s+(?:contain|include|be|change\s+to|match)\s+{V('pattern', _TOKEN)}$",
       _wait_url),
    _p("wait-navigation", "wait",
       rf"^wait\s+for\s+(?:the\s+)?navigation\s+to\s+(?:the\s+)?{V('pattern', _URL)}$", _wait_url),
    _p("wait-response", "wait",
       rf"^wait\s+for\s+(?:the\s+)?(?:(?P<method>get|post|put|patch|delete)\s+)?(?:api\s+)?(?:response|request|call)\s+"
       rf"(?:from|to|for)\s+{V('url', _TOKEN)}(?:\s+(?:with|to\s+return|returning)\s+(?:status\s+)?(?P<status>\d{{3}}))?$",
       _wait_response),
    _p("wait-fixed-delay", "wait",
       r"^wait\s+(?:for\s+)?\d+(?:\.\d+)?\s*(?:ms|milliseconds?|s|secs?|seconds?|minutes?)$", _fixed_delay),
    _p("expect-redirect", "url",
       rf"^(?:be\s+|is\s+|gets?\s+)?(?:redirected|taken|navigated|sent)\s+to\s+(?:the\s+)?{V('pattern', _URL)}$",
       _expect_url),
    _p("expect-redirect-page", "url",
       rf"^(?:be\s+|is\s+|gets?\s+)?(?:redirected|taken|navigated|sent)\s+to\s+(?:the\s+)?{V('page', _PAGE)}\s+(?:page|screen)$",
       _expect_url_page),
    _p("expect-url", "url",
       rf"^(?:the\s+)?(?:page\s+)?url\s+(?:should\s+)?(?:contains?|includes?|be|is|equals?|matches)\s+{V('pattern', _TOKEN)}$",
       _expect_url),
    _p("expect-title", "title",
       rf"^(?:the\s+)?(?:page\s+)?title\s+(?:should\s+)?(?:be|is|equals?|reads?)\s+{V('title', _REST)}$",
       _expect_title),
    # toasts: the message may come before or after the verb
    _p("toast-with-message", "toast",
       rf"^(?:see\s+)?(?:an?\s+|the\s+)?(?:(?P<type>{TOAST_TYPES})\s+)?toast(?:\s+message)?\s+(?:should\s+)?"
       rf"(?:{TOAST_VERBS})?\s*(?:with|saying|containing|reading)\s+(?:(?:the\s+)?(?:message|text)\s+)?{V('message', _LAZY)}"
       rf"(?:\s+(?:should\s+)?(?:{TOAST_VERBS}|is\s+shown|displays?))?$",
       _toast_message),
    _p("toast-says", "toast",
       rf"^(?:an?\s+|the\s+)?(?:(?P<type>{TOAST_TYPES})\s+)?toast(?:\s+message)?\s+(?:should\s+)?"
       rf"(?:says?|shows?|reads?|contains?|displays?)\s+{V('message', _REST)}$",
       _toast_message),
    _p("toast-quoted-first", "toast",
       rf"^(?:an?\s+|the\s+)?{Q('message')}\s+(?:(?P<type>{TOAST_TYPES})\s+)?toast(?:\s+message)?\s+(?:should\s+)?(?:{TOAST_VERBS})$",
       _toast_message),
    _p("toast-quoted-middle", "toast",
       rf"^(?:an?\s+|the\s+)?(?:(?P<type>{TOAST_TYPES})\s+)?toast(?:\s+message)?\s+{Q('message')}\s+(?:should\s+)?(?:{TOAST_VERBS})$",
       _toast_message),
    _p("message-in-toast", "toast",
       rf"^{V('message', _LAZY)}\s+(?:should\s+)?appears?\s+(?:in|as)\s+(?:an?\s+|the\s+)?(?:(?P<type>{TOAST_TYPES})\s+)?toast(?:\s+message)?$",
       _toast_message),
    _p("toast-bare", "toast",
       rf"^(?:see\s+)?(?:an?\s+|the\s+)?(?:(?P<type>{TOAST_TYPES})\s+)?toast(?:\s+message)?(?:\s+(?:should\s+)?(?:{TOAST_VERBS}))?$",
       _toast_bare),
    _p("status-message", "toast",
       rf"^(?:an?\s+|the\s+)?status\s+message\s+(?:should\s+)?(?:says?|shows?|reads?|contains?|appears?\s+with|is)\s+{V('message', _REST)}$",
       _status_message),
    # selection (kept apart from click by the glossary's context gate)
    _p("select-option-from", "select",
       rf"^select\s+(?:the\s+)?option\s+{V('option')}\s+(?:from|in)\s+(?:the\s+)?{V('field')}(?:\s+(?P<noun>{SELECT_NOUNS}))?$",
       _select),
    _p("select-from", "select",
       rf"^select\s+{V('option')}\s+(?:from|in|on)\s+(?:the\s+)?{V('field')}(?:\s+(?P<noun>{SELECT_NOUNS}))?$",
       _select),
    _p("select-standalone-option", "select",
       rf"^select\s+(?:the\s+)?{Q('option')}\s+(?P<noun>option|radio\s+button|radio)$",
       _select_standalone_option),
    # checkboxes
    _p("check", "check",
       rf"^(?P<verb>check|uncheck)\s+(?:the\s+)?{V('label')}(?:\s+(?P<noun>checkbox|check\s+box|switch|toggle|radio\s+button|radio|option))?$",
       _check),
    # text entry
    _p("fill-into", "fill",
       rf"^enter\s+{V('value')}\s+(?:in|into|in\s+to)\s+(?:the\s+)?{V('field')}(?:\s+(?P<noun>{FIELD_NOUN_ALT}))?$",
       _fill),
    _p("fill-with", "fill",
       rf"^fill\s+(?:in\s+|out\s+)?(?:the\s+)?{V('field')}(?:\s+(?P<noun>{FIELD_NOUN_ALT}))?\s+with\s+{V('value', _REST)}$",
       _fill),
    _p("fill-as", "fill",
       rf"^enter\s+{V('value')}\s+as\s+(?:the\s+)?{V('field')}(?:\s+(?P<noun>{FIELD_NOUN_ALT}))?$",
       _fill),
    # keyboard
    _p("press-key", "press",
       r"^press\s+(?:the\s+)?(?P<key>enter|return|tab|escape|esc|backspace|delete|home|end|page\s*up|page\s*down|"
       r"arrow\s*(?:up|down|left|right))(?:\s+key)?$",
       _press),
    # clicks
    _p("click", "click", r"^click\s+(?:on\s+)?(?P<target>.+)$", _click),
    # page-state assertions
    _p("expect-text", "assert",
       rf"^(?:the\s+)?(?P<target>.+?)\s+(?:should\s+)?(?:contains?|includes?|has\s+(?:the\s+)?text|have\s+(?:the\s+)?text|"
       rf"shows?|reads?|says?|displays?)\s+{V('text', _REST)}$",
       _expect_text),
    _p("expect-hidden", "assert",
       r"^(?:the\s+)?(?P<target>.+?)\s+(?:should\s+)?(?:(?:is|be|are)\s+)?(?:not\s+(?:be\s+)?visible|hidden|no\s+longer\s+visible|"
       r"disappears?|gone)$",
       _expect_hidden),
    _p("not-see", "assert", r"^(?:do\s+)?not\s+see\s+(?P<target>.+)$", _expect_hidden),
    _p("see", "assert", r"^see\s+(?P<target>.+?)(?:\s+on\s+(?:the\s+)?(?:page|screen))?$", _expect_visible),
    _p("expect-visible", "assert", r"^expect\s+(?P<target>.+?)\s+to\s+be\s+visible$", _expect_visible),
    _p("visible", "assert",
       r"^(?:the\s+)?(?P<target>.+?)\s+(?:should\s+)?(?:(?:is|are|be|becomes?)\s+)?(?:visible|appears?)$",
       _expect_visible),
)


def pattern_names() -> List[str]:
    return [p.name for p in PATTERNS]
