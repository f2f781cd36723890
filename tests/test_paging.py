"""
Tests for paginated answers and "show more" continuations.
"""

from farm_copilot.core.paging import (
    Continuation,
    build_paged_answer,
    clamp_page_size,
    next_page,
    wants_all,
    wants_more,
)

LINES = [f"• row {i}" for i in range(1, 46)]


class TestBuildPagedAnswer:
    def test_first_page_and_footer(self):
        paged = build_paged_answer("Rows:", LINES, 25)
        out = paged.answer.split("\n")
        assert out[0] == "Rows:"
        assert out[1] == ""
        assert out[2] == "• row 1"
        assert out[26] == "• row 25"
        assert paged.answer.endswith("\n\n…plus 20 more.")
        assert len(paged.lines_shown) == 25
        assert paged.continuation.offset == 25
        assert paged.continuation.remaining == 20

    def test_short_list_has_no_continuation(self):
        paged = build_paged_answer("Rows:", LINES[:5], 25)
        assert paged.continuation is None
        assert "more" not in paged.answer

    def test_page_size_is_clamped(self):
        assert build_paged_answer("Rows:", LINES, 3).continuation.page_size == 10
        assert build_paged_answer("Rows:", LINES, 500).continuation is None
        assert clamp_page_size("junk", 10, 80, 25) == 25


class TestNextPage:
    def test_serves_remaining_lines(self):
        cont = build_paged_answer("Rows:", LINES, 25).continuation
        page = next_page(cont)
        assert page.ok and page.done
        assert page.next is None
        assert page.answer.split("\n")[0] == "Rows:"
        assert page.answer.split("\n")[-1] == "• row 45"

    def test_partial_page(self):
        cont = Continuation(title="Rows:", lines=tuple(LINES), offset=10, page_size=10)
        page = next_page(cont)
        assert page.answer.split("\n")[1] == "• row 11"
        assert page.answer.endswith("…plus 25 more.")
        assert page.next.offset == 20
        assert page.meta == {"remaining": 25}

    def test_show_all(self):
        cont = Continuation(title="Rows:", lines=tuple(LINES), offset=10, page_size=10)
        page = next_page(cont, "all")
        assert page.done
        assert len(page.answer.split("\n")) == 36

    def test_page_size_floor(self):
        cont = Continuation(title="", lines=tuple(LINES), offset=0, page_size=1)
        assert len(next_page(cont).answer.split("\n")) == 6

    def test_empty_continuation(self):
        page = next_page(Continuation(title="Rows:", lines=(), offset=0, page_size=10))
        assert page.ok is False


class TestContinuationDict:
    def test_round_trip(self):
        cont = build_paged_answer("Rows:", LINES, 25).continuation
        assert Continuation.from_dict(cont.to_dict()) == cont

    def test_rejects_other_kinds_and_bad_shapes(self):
        assert Continuation.from_dict({"kind": "cursor", "lines": []}) is None
        assert Continuation.from_dict({"title": "x"}) is None
        assert Continuation.from_dict(None) is None

    def test_wire_keys(self):
        cont = build_paged_answer("Rows:", LINES, 25).continuation
        wire = cont.to_dict()
        assert set(wire) == {"kind", "title", "lines", "offset", "pageSize"}
        assert wire["kind"] == "page"
        assert wire["pageSize"] == 25
        assert wire["offset"] == 25

    def test_camel_case_page_size(self):
        cont = Continuation.from_dict({"lines": ["a"], "offset": 0, "pageSize": 15})
        assert cont.page_size == 15


class TestPagingPhrases:
    def test_more(self):
        assert wants_more("more")
        assert wants_more("Show more")
        assert wants_more("any more fields?")
        assert not wants_more("how many fields")

    def test_all(self):
        assert wants_all("show all")
        assert wants_all("all")
        assert wants_all("give me all of them")
        assert not wants_all("list fields")
