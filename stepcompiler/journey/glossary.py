"""Context-gated synonym normalisation for step text.

The glossary is an explicit object passed through parsing and mapping, so
journeys compiled in parallel never share mutable lookup state.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

# Quoted text is intent-bearing and never rewritten. Single quotes only count
# as quotes at word boundaries so apostrophes ("user's") are left alone.
_QUOTED_SEGMENT = re.compile(r"(\"[^\"]*\"|(?<!\w)'[^']*'(?!\w)|`[^`]*`)")
_CONTEXT_TOKEN = re.compile(r"[a-z0-9]+|/")

# Subject and modal words that may precede the leading verb of a step.
LEADING_PREFIX = r"(?:(?:given|when|then|and|but)\s+)?(?:(?:the\s+)?user\s+|i\s+)?(?:(?:should|can|must|will)\s+)?"

LIST_PICKING_CONTEXT = frozenset({"from", "dropdown", "option", "combobox", "listbox", "picker"})
KEY_NAMES = frozenset(
    {"enter", "tab", "escape", "esc", "backspace", "delete", "space", "home", "end",
     "arrowup", "arrowdown", "arrowleft", "arrowright", "pageup", "pagedown", "arrow"}
)
NAVIGATION_CONTEXT = frozenset({"page", "url", "site", "website", "screen", "/", "http", "https"})


@dataclass(frozen=True)
class GlossaryEntry:
    """One canonical term and the synonyms rewritten to it.

    ``unless_context`` vetoes the substitution when any of its words occurs in
    the unquoted step text; ``requires_context`` only allows it when at least
    one of its words occurs. ``unless_followed_by`` vetoes a single occurrence
    when the next word is in the set. ``leading_only`` entries are verbs and
    are only rewritten in the verb position at the start of the step.
    """

    canonical: str
    synonyms: Tuple[str, ...]
    unless_context: FrozenSet[str] = frozenset()
    requires_context: FrozenSet[str] = frozenset()
    unless_followed_by: FrozenSet[str] = frozenset()
    leading_only: bool = False


DEFAULT_ENTRIES: Tuple[GlossaryEntry, ...] = (
    GlossaryEntry("select", ("choose", "pick"), requires_context=LIST_PICKING_CONTEXT, leading_only=True),
    GlossaryEntry("click", ("choose", "pick"), unless_context=LIST_PICKING_CONTEXT, leading_only=True),
    GlossaryEntry("click", ("select",), unless_context=LIST_PICKING_CONTEXT, leading_only=True),
    GlossaryEntry("click", ("press",), unless_followed_by=KEY_NAMES, leading_only=True),
    GlossaryEntry("click", ("tap", "hit"), leading_only=True),
    GlossaryEntry("enter", ("type", "input", "write"), leading_only=True),
    GlossaryEntry(
        "navigate to",
        ("go to", "open", "visit", "browse to"),
        requires_context=NAVIGATION_CONTEXT,
        leading_only=True,
    ),
    GlossaryEntry("see", ("view", "observe", "notice"), leading_only=True),
    GlossaryEntry("check", ("tick",), leading_only=True),
    GlossaryEntry("uncheck", ("untick",), leading_only=True),
    GlossaryEntry("visible", ("displayed", "shown", "present")),
    GlossaryEntry("toast", ("notification", "snackbar")),
    GlossaryEntry("modal", ("dialog", "popup", "pop-up")),
)

DEFAULT_LABEL_ALIASES: Dict[str, str] = {
    "e-mail": "email",
    "email address": "email",
    "username": "user name",
    "pwd": "password",
    "passcode": "password",
    "phone number": "phone",
    "telephone": "phone",
}


def _split_quoted(text: str) -> List[Tuple[str, bool]]:
    parts: List[Tuple[str, bool]] = []
    last = 0
    for match in _QUOTED_SEGMENT.finditer(text):
        if match.start() > last:
            parts.append((text[last:match.start()], False))
        parts.append((match.group(0), True))
        last = match.end()
    if last < len(text):
        parts.append((text[last:], False))
    return parts


def _match_case(original: str, replacement: str) -> str:
    if original[:1].isupper():
        return replacement[:1].upper() + replacement[1:]
    return replacement


@dataclass(frozen=True)
class Glossary:
    entries: Tuple[GlossaryEntry, ...] = DEFAULT_ENTRIES
    label_aliases: Mapping[str, str] = field(default_factory=lambda: dict(DEFAULT_LABEL_ALIASES))

    @classmethod
    def default(cls) -> "Glossary":
        return cls()

    @classmethod
    def from_mapping(
        cls,
        synonyms: Mapping[str, Iterable[str]],
        label_aliases: Optional[Mapping[str, str]] = None,
        include_defaults: bool = True,
    ) -> "Glossary":
        """Build a glossary from a plain ``canonical -> [synonyms]`` mapping.

        Entries from the mapping carry no context gates and are appended after
        the defaults, so the gated defaults keep precedence.
        """
        extra = tuple(
            GlossaryEntry(canonical.lower(), tuple(s.lower() for s in words))
            for canonical, words in synonyms.items()
        )
        entries = (DEFAULT_ENTRIES if include_defaults else ()) + extra
        aliases = dict(DEFAULT_LABEL_ALIASES) if include_defaults else {}
        aliases.update({k.lower(): v.lower() for k, v in (label_aliases or {}).items()})
        return cls(entries=entries, label_aliases=aliases)

    def normalize(self, text: str) -> str:
        """Rewrite synonyms to canonical terms outside quoted text."""
        parts = _split_quoted(text)
        context = set(_CONTEXT_TOKEN.findall(" ".join(p.lower() for p, quoted in parts if not quoted)))

        for entry in self.entries:
            if entry.unless_context and context & entry.unless_context:
                continue
            if entry.requires_context and not context & entry.requires_context:
                continue
            for synonym in entry.synonyms:
                pattern = self._pattern(synonym, entry)
                if entry.leading_only:
                    if parts and not parts[0][1]:
                        parts[0] = (self._substitute(pattern, parts[0][0], entry), False)
                    continue
                parts = [
                    (segment if quoted else self._substitute(pattern, segment, entry), quoted)
                    for segment, quoted in parts
                ]
        return "".join(segment for segment, _ in parts)

    @staticmethod
    def _pattern(synonym: str, entry: GlossaryEntry) -> "re.Pattern[str]":
        words = r"\s+".join(re.escape(w) for w in synonym.split())
        # single-word synonyms keep their inflection: "selects" -> "clicks"
        if " " in synonym or " " in entry.canonical:
            suffix = r"(?P<suffix>)"
        else:
            suffix = r"(?P<suffix>es|s)?"
        lookahead = ""
        if entry.unless_followed_by:
            blocked = "|".join(sorted(entry.unless_followed_by))
            lookahead = rf"(?!\s+(?:the\s+)?(?:{blocked})\b)"
        lead = rf"^(?P<lead>\s*{LEADING_PREFIX})" if entry.leading_only else r"(?P<lead>)\b"
        return re.compile(rf"{lead}(?P<word>{words}{suffix})\b{lookahead}", re.IGNORECASE)

    @staticmethod
    def _substitute(pattern: "re.Pattern[str]", segment: str, entry: GlossaryEntry) -> str:
        def replace(match: "re.Match[str]") -> str:
            tail = "s" if match.group("suffix") else ""
            return match.group("lead") + _match_case(match.group("word"), entry.canonical + tail)

        return pattern.sub(replace, segment)

    def resolve_label(self, label: str) -> str:
        """Canonical form of a field label, used for catalog lookups only."""
        key = re.sub(r"\s+", " ", label.strip().lower())
        return self.label_aliases.get(key, key)
