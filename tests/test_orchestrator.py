"""
End-to-end conversation tests for handle_turn().
"""

import pytest

from farm_copilot.conversation.context import ConversationContext
from farm_copilot.conversation.intent import TOPICS
from farm_copilot.conversation.orchestrator import UNKNOWN_ANSWER, handle_turn
from farm_copilot.conversation.router import NOT_CONFIDENT, RouteEntry, Router


def _lines(answer):
    return [ln for ln in answer.split("\n") if ln.startswith("•")]


class Chat:
    """Feeds questions through handle_turn, carrying the context like the UI does."""

    def __init__(self, snapshot, **kwargs):
        self.snapshot = snapshot
        self.context = ConversationContext()
        self.kwargs = kwargs

    def ask(self, question):
        turn = handle_turn(question, self.snapshot, self.context, **self.kwargs)
        self.context = turn.context
        return turn


@pytest.fixture
def chat(snapshot):
    return Chat(snapshot)


class TestSingleTurns:
    def test_grouped_question(self, chat):
        turn = chat.ask("How many fields by county")
        assert turn.answer.startswith("Fields by county (active only):")
        assert turn.context.last_intent == "fields_by_county"
        assert turn.context.last_result.kind == "by_county"

    def test_unknown_question(self, chat):
        turn = chat.ask("hello there")
        assert turn.answer == UNKNOWN_ANSWER
        assert turn.meta["intent"] == "unknown"

    def test_empty_question(self, chat):
        assert chat.ask("   ").meta["reason"] == "empty"

    def test_typos_are_cleaned(self, chat):
        turn = chat.ask("how mans feilds by conty")
        assert turn.answer.startswith("Fields by county")
        assert "how_mans" in turn.meta["rules"]

    def test_truth_gate_on_empty_collection(self, chat):
        turn = chat.ask("list equipment")
        assert turn.answer == NOT_CONFIDENT
        assert turn.meta["reason"] == "feature-no-data"

    def test_collection_question(self, chat):
        turn = chat.ask("open boundary requests")
        assert _lines(turn.answer) == ["• Lov Shack: 1"]

    def test_context_may_be_a_dict(self, snapshot):
        turn = handle_turn("same thing but crp", snapshot, {"last_intent": "hel_by_county", "last_by": "county"})
        assert turn.answer.startswith("CRP acres by county")


class TestClarification:
    def test_grain_menu_then_choice(self, chat):
        turn = chat.ask("grain")
        assert turn.answer.startswith("Quick question so I pull the right data:")
        assert turn.context.last_intent == "clarify:grain"

        turn = chat.ask("3")
        assert turn.answer.split("\n")[0] == "Grain summary:"
        assert "• binMovements: 3 records" in turn.answer
        assert turn.meta["clarified"] == "grain"
        assert turn.context.pending_clarification is None

    def test_bins_menu_then_movements(self, chat):
        chat.ask("bins")
        turn = chat.ask("2")
        assert turn.answer.split("\n")[0] == "Bin movements (3 records, 1,650 bu):"
        assert turn.context.last_intent == "binMovements"

    def test_non_choice_abandons_clarification(self, chat):
        chat.ask("boundaries")
        turn = chat.ask("How many fields by county")
        assert turn.answer.startswith("Fields by county")
        assert turn.context.pending_clarification is None

    def test_unknown_reply_clears_pending(self, chat):
        chat.ask("grain")
        turn = chat.ask("hello there")
        assert turn.answer == UNKNOWN_ANSWER
        assert turn.context.last_intent is None


class TestFollowups:
    def test_same_thing_but_crp(self, chat):
        chat.ask("Tillable acres by county")
        turn = chat.ask("same thing but crp")
        assert turn.answer.startswith("CRP acres by county (active only):")
        assert turn.meta["rewritten"] == "CRP acres by county"
        assert turn.context.last_metric == "crp"

    def test_sort_then_total(self, chat):
        chat.ask("Tillable acres by county")
        turn = chat.ask("sort smallest first")
        assert _lines(turn.answer)[0] == "• Logan, IL: 80 tillable ac"
        assert turn.meta["followup"]["rewriteQuestion"] == "__RESULT_OP__"

        turn = chat.ask("total")
        assert turn.answer == "Total across 3 rows: 455 tillable ac."
        assert turn.context.last_intent == "tillable_by_county"

    def test_include_crp_column(self, chat):
        chat.ask("HEL acres by county")
        turn = chat.ask("include CRP")
        assert "• Logan, IL: 0 HEL ac · 12 CRP ac" in _lines(turn.answer)

    def test_include_archived_reruns_and_persists(self, chat):
        chat.ask("Tillable acres by county")
        turn = chat.ask("include archived")
        assert "(incl archived)" in turn.answer
        assert _lines(turn.answer)[0] == "• Macon, IL: 240 tillable ac"
        assert turn.context.include_archived is True

        turn = chat.ask("Tillable acres by farm")
        assert "(incl archived)" in turn.answer

    def test_failed_result_op_keeps_last_result(self, chat):
        chat.ask("Tillable acres by county")
        turn = chat.ask("without crp")
        assert turn.answer == NOT_CONFIDENT
        assert turn.context.last_result is not None

    def test_county_drilldown(self, chat):
        turn = chat.ask("County totals for Sangamon County")
        assert turn.context.focus.entity.label == "Sangamon, IL"

        turn = chat.ask("which fields are those")
        assert turn.meta["rewritten"] == "List fields in Sangamon County with tillable acres"
        assert _lines(turn.answer) == [
            "• 0504-Bierman (Bierman Home): 25 tillable ac",
            "• 0801-Lloyd N340 (Lov Shack): 100 tillable ac",
            "• 0832-North (Lov Shack): 50 tillable ac",
        ]

    def test_that_field(self, chat):
        chat.ask("Tell me about 0801-Lloyd N340")
        chat.ask("How many RTK towers")
        turn = chat.ask("that field")
        assert turn.meta["rewritten"] == "Tell me about fld-0801"
        assert turn.answer.startswith("Field: 0801-Lloyd N340")

    def test_tower_fields_then_total(self, chat):
        turn = chat.ask("Fields on Elm Grove tower")
        assert _lines(turn.answer) == ["• 0801-Lloyd N340 (Lov Shack)", "• 0832-North (Lov Shack)"]
        turn = chat.ask("total those acres")
        assert turn.answer == "Total across 2 rows: 150 tillable ac."

    def test_farm_fields_then_include_tillable(self, chat):
        chat.ask("Farm totals for Lov Shack")
        turn = chat.ask("which fields are on that farm")
        assert _lines(turn.answer) == ["• 0801-Lloyd N340", "• 0832-North"]
        turn = chat.ask("include tillable")
        assert _lines(turn.answer) == ["• 0801-Lloyd N340: 100 tillable ac", "• 0832-North: 50 tillable ac"]


class TestPaging:
    def test_more_serves_next_page(self, big_snapshot):
        chat = Chat(big_snapshot)
        turn = chat.ask("List fields in Adams County")
        assert len(_lines(turn.answer)) == 25
        assert turn.answer.endswith("…plus 20 more.")

        turn = chat.ask("more")
        assert turn.meta["intent"] == "fields"
        assert turn.meta["paging"] is True
        assert len(_lines(turn.answer)) == 20
        assert turn.context.continuation is None
        assert turn.context.last_result is not None

    def test_show_all(self, big_snapshot):
        chat = Chat(big_snapshot)
        chat.ask("List fields in Adams County")
        turn = chat.ask("show me all")
        assert len(_lines(turn.answer)) == 20

    def test_more_without_continuation_is_not_paging(self, chat):
        chat.ask("How many fields by county")
        turn = chat.ask("more")
        assert "paging" not in turn.meta


class TestFallback:
    def test_fallback_answer_is_gated(self, snapshot):
        chat = Chat(snapshot, fallback=lambda q, s, c: {"ok": False, "answer": "a guess"})
        turn = chat.ask("what is the meaning of life")
        assert turn.answer == NOT_CONFIDENT

    def test_fallback_ok_answer_passes(self, snapshot):
        chat = Chat(snapshot, fallback=lambda q, s, c: {"ok": True, "answer": "From the notes.", "meta": {}})
        turn = chat.ask("what is the meaning of life")
        assert turn.answer == "From the notes."
        assert turn.meta["intent"] == "unknown"
        assert turn.meta["handler_intent"] == "fallback"
        assert turn.context.last_intent == "fallback"

    def test_fallback_exception(self, snapshot):
        def broken(q, s, c):
            raise RuntimeError("offline")

        turn = Chat(snapshot, fallback=broken).ask("what is the meaning of life")
        assert turn.answer == NOT_CONFIDENT

    def test_custom_router(self, snapshot):
        router = Router([RouteEntry("fields", lambda question, snapshot, intent=None: {"ok": True, "answer": "custom"})])
        turn = Chat(snapshot, router=router).ask("How many fields by county")
        assert turn.answer == "custom"
        assert turn.context.last_intent == "fields"


class TestMetaIntent:
    def _allowed(self, intent):
        return intent in TOPICS or intent in ("blocked", "unknown") or intent.startswith("clarify:")

    def test_every_turn_reports_a_topic(self, chat):
        for question in [
            "How many farms do we have",
            "Tillable acres by county",
            "sort smallest first",
            "total",
            "how many rtk towers",
            "grain",
            "3",
            "hello there",
        ]:
            turn = chat.ask(question)
            assert self._allowed(turn.meta["intent"]), (question, turn.meta)

    def test_engine_answer_keeps_its_own_label_aside(self, chat):
        turn = chat.ask("How many farms do we have")
        assert turn.meta["intent"] == "fields"
        assert turn.meta["handler_intent"] == "count_farms_from_fields"
        assert turn.context.last_intent == "count_farms"
        assert turn.context.last_topic == "fields"

    def test_result_op_reports_the_table_topic(self, chat):
        chat.ask("Tillable acres by county")
        turn = chat.ask("sort smallest first")
        assert turn.meta["intent"] == "fields"
        assert turn.meta["handler_intent"] == "result_op:sort"

    def test_clarified_choice_reports_its_topic(self, chat):
        chat.ask("bins")
        turn = chat.ask("2")
        assert turn.meta["intent"] == "binMovements"
        assert turn.context.last_topic == "binMovements"
