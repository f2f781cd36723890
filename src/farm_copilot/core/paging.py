from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from farm_copilot.config import PAGE_SIZE_DEFAULT
from farm_copilot.conversation.normalize import normalize


@dataclass(frozen=True)
class Continuation:
    """
    Remaining lines of a long answer, served later on "more" / "show all".
    `offset` is the index of the first line not yet shown.
    """
    title: str
    lines: tuple
    offset: int
    page_size: int
    kind: str = "page"

    @property
    def remaining(self) -> int:
        return max(0, len(self.lines) - self.offset)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "title": self.title,
            "lines": list(self.lines),
            "offset": self.offset,
            "pageSize": self.page_size,
        }

    @classmethod
    def from_dict(cls, obj: Optional[Mapping[str, Any]]) -> Optional["Continuation"]:
        if not isinstance(obj, Mapping) or obj.get("kind", "page") != "page":
            return None
        lines = obj.get("lines")
        if not isinstance(lines, (list, tuple)):
            return None
        try:
            offset = int(obj.get("offset") or 0)
            page_size = int(obj.get("pageSize", obj.get("page_size")) or PAGE_SIZE_DEFAULT)
        except (TypeError, ValueError):
            return None
        return cls(
            title=str(obj.get("title") or ""),
            lines=tuple(str(x) for x in lines),
            offset=max(0, offset),
            page_size=page_size,
        )


@dataclass
class PagedAnswer:
    answer: str
    lines_shown: List[str]
    continuation: Optional[Continuation] = None


def clamp_page_size(value: Any, lo: int, hi: int, default: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        n = default
    return max(lo, min(hi, n))


def build_paged_answer(title: str, lines: Sequence[str], page_size_default: Any = PAGE_SIZE_DEFAULT) -> PagedAnswer:
    """
    Render the first page of a list answer.

    The page size is clamped to [10, 80]. When lines remain, a footer notes
    how many and a continuation carries the full list plus the offset.
    """
    page_size = clamp_page_size(page_size_default, 10, 80, 25)
    first = list(lines[:page_size])
    remaining = len(lines) - len(first)

    out: List[str] = [title, ""]
    out.extend(first)
    if remaining > 0:
        out.append(f"\n…plus {remaining} more.")

    continuation = None
    if remaining > 0:
        continuation = Continuation(title=title, lines=tuple(lines), offset=page_size, page_size=page_size)

    return PagedAnswer(answer="\n".join(out), lines_shown=first, continuation=continuation)


# ---------------------------------------------------------------------------
# "Show more" follow-ups
# ---------------------------------------------------------------------------

def wants_more(text: Any) -> bool:
    s = normalize(text)
    if not s:
        return False
    if s in ("more", "next", "rest", "remaining"):
        return True
    return any(p in s for p in ("the rest", "show more", "more farms", "more counties", "more fields", "keep going"))


def wants_all(text: Any) -> bool:
    s = normalize(text)
    if not s:
        return False
    if s == "all":
        return True
    return any(p in s for p in ("show all", "list all", "all of them", "everything"))


@dataclass
class PageResult:
    ok: bool
    answer: str
    next: Optional[Continuation] = None
    done: bool = True
    meta: Dict[str, Any] = field(default_factory=dict)


def next_page(cont: Continuation, mode: str = "page") -> PageResult:
    """Serve the next slice of a continuation ('page') or everything left ('all')."""
    if not cont.lines:
        return PageResult(ok=False, answer="There is nothing more to show.")

    page_size = clamp_page_size(cont.page_size, 5, 50, 10)
    offset = min(cont.offset, len(cont.lines))

    if mode == "all":
        chunk = list(cont.lines[offset:])
    else:
        chunk = list(cont.lines[offset:offset + page_size])
    offset += len(chunk)

    remaining = max(0, len(cont.lines) - offset)
    out: List[str] = []
    if cont.title:
        out.append(cont.title)
    out.extend(chunk)
    if remaining:
        out.append(f"…plus {remaining} more.")

    done = offset >= len(cont.lines)
    nxt = None if done else Continuation(
        title=cont.title, lines=cont.lines, offset=offset, page_size=cont.page_size, kind=cont.kind
    )
    return PageResult(ok=True, answer="\n".join(out), next=nxt, done=done, meta={"remaining": remaining})
