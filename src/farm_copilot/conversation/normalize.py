from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Pattern, Tuple


def normalize(text: Any) -> str:
    """Canonical matching form: lowercase, whitespace collapsed, trimmed."""
    if text is None:
        return ""
    return " ".join(str(text).lower().split())


def has_any(text: str, terms: Iterable[str]) -> bool:
    for t in terms:
        if t in text:
            return True
    return False


def has_word(text: str, word: str) -> bool:
    return re.search(rf"\b{re.escape(word)}\b", text) is not None


_CHOICES = {
    "1": 1,
    "one": 1,
    "2": 2,
    "two": 2,
    "3": 3,
    "three": 3,
}


def pick_choice(text: Any) -> Optional[int]:
    """Parse a numbered-menu reply ('1', 'two', ...). Anything else is None."""
    return _CHOICES.get(normalize(text).rstrip("."))


# ---------------------------------------------------------------------------
# Input cleanup (typos, paging commands)
# ---------------------------------------------------------------------------

@dataclass
class CleanedQuestion:
    text: str
    original: str
    rules: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.text != self.original


_Rule = Tuple[str, Pattern[str], str]

_PAGING_RULES: List[_Rule] = [
    ("paging_show_more", re.compile(r"^\s*show\s+(me\s+)?more\s*$", re.I), "more"),
    ("paging_more_pls", re.compile(r"^\s*more\s+please\s*$", re.I), "more"),
    ("paging_show_all", re.compile(r"^\s*show\s+(me\s+)?all(\s+please)?\s*$", re.I), "show all"),
    ("paging_list_all", re.compile(r"^\s*list\s+all\s*$", re.I), "show all"),
    ("paging_next", re.compile(r"^\s*next\s*$", re.I), "more"),
    ("paging_rest", re.compile(r"^\s*(the\s+)?rest\s*$", re.I), "show all"),
]

_TYPO_RULES: List[_Rule] = [
    ("how_mans", re.compile(r"\bhow\s+mans?\b", re.I), "how many"),
    ("rtk_typo_rkt", re.compile(r"\brkt\b", re.I), "rtk"),
    ("rtk_plural", re.compile(r"\brtks\b", re.I), "rtk"),
    ("tower_typo", re.compile(r"\btowre\b", re.I), "tower"),
    ("county_typo", re.compile(r"\bconty\b", re.I), "county"),
    ("field_typo", re.compile(r"\bfeild(s?)\b", re.I), r"field\1"),
    ("acres_typo", re.compile(r"\bacers\b", re.I), "acres"),
    ("tillable_typo", re.compile(r"\btilable\b", re.I), "tillable"),
]

# "0801-Lloyd N340", "0411-Stone Seed", "0110"
_FIELD_LIKE = re.compile(r"^\s*\d{3,4}\s*(-\s*.+)?$")


def _apply(text: str, rules: List[_Rule], fired: List[str]) -> str:
    for rule_id, pattern, repl in rules:
        nxt = pattern.sub(repl, text)
        if nxt != text:
            text = nxt
            fired.append(rule_id)
    return text


def clean_question(raw: Any) -> CleanedQuestion:
    """
    Conservative cleanup of chat input before routing.

    Case is preserved (field labels are case-sensitive in answers). Typo rules
    are skipped for text that looks like a field label.
    """
    original = "" if raw is None else str(raw).strip()
    fired: List[str] = []

    text = re.sub(r"\s+", " ", original).strip()
    if text != original:
        fired.append("ws_collapse")

    text = _apply(text, _PAGING_RULES, fired)
    if not _FIELD_LIKE.match(text):
        text = _apply(text, _TYPO_RULES, fired)

    tidy = re.sub(r"\s+([?.!,])", r"\1", text).strip()
    if tidy != text:
        text = tidy
        fired.append("punct_space")

    return CleanedQuestion(text=text, original=original, rules=fired)


def looks_like_field_label(text: Any) -> bool:
    return bool(_FIELD_LIKE.match(str(text or "")))
