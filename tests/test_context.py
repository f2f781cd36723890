"""
Tests for ConversationContext merge rules and serialization.
"""

from farm_copilot.conversation.context import (
    MERGE_RULES,
    ConversationContext,
    Entity,
    LastResult,
    ResultItem,
)
from farm_copilot.core.paging import Continuation


def _result():
    return LastResult(
        kind="by_county",
        metric="tillable",
        items=(ResultItem("Macon, IL", 200.0, "Macon, IL"),),
        by="county",
    )


class TestMergeRules:
    def test_every_rule_is_known(self):
        assert set(MERGE_RULES.values()) <= {"replace", "merge", "turn", "transient"}

    def test_replace_keeps_absent_keys(self):
        ctx = ConversationContext(last_intent="hel_by_county", last_metric="hel", last_by="county")
        nxt = ctx.apply({"last_intent": "crp_by_county"})
        assert nxt.last_intent == "crp_by_county"
        assert nxt.last_metric == "hel"
        assert nxt.last_by == "county"

    def test_replace_with_none_clears(self):
        ctx = ConversationContext(last_intent="clarify:grain")
        assert ctx.apply({"last_intent": None}).last_intent is None

    def test_last_topic_persists_and_round_trips(self):
        ctx = ConversationContext().apply({"last_topic": "rtkTowers", "last_intent": "tower_count"})
        nxt = ctx.apply({"last_intent": "tower_list"})
        assert nxt.last_topic == "rtkTowers"
        assert ConversationContext.from_dict(nxt.to_dict()).last_topic == "rtkTowers"

    def test_scope_merges_sub_keys(self):
        ctx = ConversationContext().apply({"last_scope": {"include_archived": True, "county": "Macon"}})
        nxt = ctx.apply({"last_scope": {"county": "Logan"}})
        assert nxt.last_scope.include_archived is True
        assert nxt.last_scope.county == "Logan"

    def test_turn_scoped_keys_reset_when_absent(self):
        ctx = ConversationContext().apply(
            {
                "last_result": _result().to_dict(),
                "continuation": {"title": "T", "lines": ["a", "b"], "offset": 1, "page_size": 10},
            }
        )
        assert ctx.last_result is not None
        assert isinstance(ctx.continuation, Continuation)

        nxt = ctx.apply({"last_intent": "tower_count"})
        assert nxt.last_result is None
        assert nxt.continuation is None

    def test_transient_keys_are_not_stored(self):
        ctx = ConversationContext().apply({"result_op": {"op": "total"}, "result_op_for": "by_county"})
        assert "result_op" not in ctx.to_dict()
        assert ctx == ConversationContext()

    def test_apply_does_not_mutate(self):
        ctx = ConversationContext(last_intent="a")
        ctx.apply({"last_intent": "b"})
        assert ctx.last_intent == "a"


class TestSerialization:
    def test_round_trip(self):
        ctx = ConversationContext().apply(
            {
                "last_intent": "county_totals",
                "last_metric": "tillable",
                "last_entity": {"type": "county", "name": "Sangamon, IL"},
                "last_result": _result().to_dict(),
                "focus": {"module": "fields", "entity": {"type": "county", "label": "Sangamon, IL"}, "metric": "tillable"},
            }
        )
        again = ConversationContext.from_dict(ctx.to_dict())
        assert again == ctx

    def test_coerce_accepts_dicts_and_none(self):
        assert ConversationContext.coerce(None) == ConversationContext()
        assert ConversationContext.coerce({"last_intent": "x"}).last_intent == "x"

    def test_unknown_entity_type_is_dropped(self):
        assert Entity.from_dict({"type": "planet", "name": "Mars"}) is None

    def test_pending_clarification(self):
        assert ConversationContext(last_intent="clarify:grain").pending_clarification == "grain"
        assert ConversationContext(last_intent="clarify:nonsense").pending_clarification is None
        assert ConversationContext(last_intent="tillable_by_county").pending_clarification is None

    def test_last_result_ignores_bad_values(self):
        res = LastResult.from_dict({"kind": "by_farm", "items": [{"label": "A", "value": "n/a"}, "junk"]})
        assert res.items == (ResultItem("A", 0.0, ""),)
