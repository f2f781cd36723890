"""
One conversational turn, end to end.

handle_turn() is pure with respect to the conversation: the caller passes in
the current ConversationContext and gets back the answer, the context delta
for this turn and the merged next context. Nothing is remembered here.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from farm_copilot.conversation.clarification import (
    CLARIFICATIONS,
    clarify_intent,
    detect_ambiguity,
    resolve_choice,
)
from farm_copilot.conversation.context import ConversationContext
from farm_copilot.conversation.followup import interpret
from farm_copilot.conversation.intent import TOPICS, detect_include_archived, normalize_intent
from farm_copilot.conversation.normalize import clean_question
from farm_copilot.conversation.router import Response, Router
from farm_copilot.core.paging import next_page, wants_all, wants_more
from farm_copilot.core.snapshot import SnapshotHandle

logger = logging.getLogger(__name__)

# fallback(question, snapshot, context) -> handler-shaped dict; called only
# for questions no intent rule recognizes. Its output passes the Truth Gate.
Fallback = Callable[[str, SnapshotHandle, ConversationContext], Any]

UNKNOWN_ANSWER = (
    "I'm not sure what you're asking about yet. Try naming the area, for example "
    "fields, farms, counties, RTK towers, grain, bins, boundaries, maintenance or equipment."
)

@dataclass
class TurnResult:
    answer: str
    meta: Dict[str, Any] = field(default_factory=dict)
    context_delta: Dict[str, Any] = field(default_factory=dict)
    context: ConversationContext = field(default_factory=ConversationContext)


def _finish(ctx: ConversationContext, answer: str, meta: Dict[str, Any], delta: Dict[str, Any]) -> TurnResult:
    return TurnResult(answer=answer, meta=meta, context_delta=delta, context=ctx.apply(delta))


def _routed(ctx: ConversationContext, resp: Response, extra: Optional[Dict[str, Any]] = None) -> TurnResult:
    delta: Dict[str, Any] = dict(extra or {})
    delta.update(resp.context_delta)
    sub_intent = resp.meta.get("handler_intent") or resp.meta.get("intent")
    if resp.ok and not delta.get("last_intent") and sub_intent:
        delta["last_intent"] = sub_intent
    if resp.ok and resp.meta.get("intent") in TOPICS:
        delta["last_topic"] = resp.meta["intent"]
    return _finish(ctx, resp.answer, dict(resp.meta), delta)


def _serve_page(ctx: ConversationContext, question: str, carry: Dict[str, Any]) -> Optional[TurnResult]:
    cont = ctx.continuation
    if cont is None:
        return None
    show_all = wants_all(question)
    if not show_all and not wants_more(question):
        return None

    page = next_page(cont, "all" if show_all else "page")
    logger.info("Serving continuation (%s), %s lines left", "all" if show_all else "page", page.meta.get("remaining", 0))
    delta: Dict[str, Any] = {
        **carry,
        "continuation": page.next.to_dict() if page.next else None,
        "last_result": ctx.last_result.to_dict() if ctx.last_result else None,
    }
    meta = {"intent": ctx.last_topic or "unknown", "paging": True, "followup": True, "done": page.done}
    meta.update(page.meta)
    return _finish(ctx, page.answer, meta, delta)


def handle_turn(
    question: str,
    snapshot: SnapshotHandle,
    context: Any = None,
    *,
    router: Optional[Router] = None,
    fallback: Optional[Fallback] = None,
) -> TurnResult:
    """
    Answer one question against the snapshot.

    Order: pending clarification choice, continuation paging, ambiguity
    check on the raw text, follow-up interpretation, intent normalization,
    routing through the Truth Gate.
    """
    ctx = ConversationContext.coerce(context)
    router = router or Router()
    cleaned = clean_question(question)
    text = cleaned.text
    debug = {"cleaned": text, "rules": list(cleaned.rules)} if cleaned.changed else {}

    if not text:
        return _finish(ctx, UNKNOWN_ANSWER, {"intent": "unknown", "reason": "empty"}, {})

    # Carried into every later delta so an abandoned clarification is cleared.
    carry: Dict[str, Any] = {}

    # 1) reply to a pending clarification
    pending = ctx.pending_clarification
    if pending:
        resolution = resolve_choice(pending, text)
        if resolution is not None:
            intent = resolution.intent.with_scope(ctx.include_archived)
            logger.info("Clarification %s resolved to %s (%r)", pending, resolution.topic, resolution.question)
            resp = router.route(resolution.topic, resolution.question, snapshot, intent)
            resp.meta.setdefault("clarified", pending)
            resp.meta["question"] = resolution.question
            return _routed(ctx, resp, {"last_intent": resolution.topic})
        logger.info("Reply %r is not a choice for %s; treating as a new question", text, pending)
        carry["last_intent"] = None

    # 2) "more" / "show all" on a paginated answer
    paged = _serve_page(ctx, text, carry)
    if paged is not None:
        return paged

    # 3) broad question -> scripted clarification
    key = detect_ambiguity(text)
    if key:
        delta = {"last_intent": clarify_intent(key)}
        meta = {"intent": clarify_intent(key), "clarify": key}
        return _finish(ctx, CLARIFICATIONS[key].prompt, meta, delta)

    # 4) follow-up rewrite or result op
    rewrite = interpret(text, ctx)
    extra: Dict[str, Any] = dict(carry)
    if rewrite is not None and rewrite.is_result_op:
        logger.info("Follow-up %r -> result op %s", text, rewrite.op.to_dict() if rewrite.op else None)
        resp = router.apply_result_op(rewrite.op, ctx.last_result, snapshot, topic=ctx.last_topic or "fields")
        resp.meta["followup"] = rewrite.to_dict()
        if not resp.ok:
            keep = {"last_result": ctx.last_result.to_dict() if ctx.last_result else None}
            return _finish(ctx, resp.answer, dict(resp.meta), {**carry, **keep})
        return _finish(ctx, resp.answer, dict(resp.meta), {**carry, **resp.context_delta})

    routed_question = text
    if rewrite is not None:
        logger.info("Follow-up %r rewritten to %r", text, rewrite.text)
        routed_question = rewrite.text
        extra.update(rewrite.context_delta)

    # 5) intent
    scope = ctx.last_scope.merged(extra.get("last_scope") or {})
    include_archived = detect_include_archived(routed_question, scope.include_archived)
    intent = normalize_intent(routed_question, include_archived=include_archived)

    if intent is None:
        if fallback is not None:
            try:
                result = fallback(routed_question, snapshot, ctx)
            except Exception:
                logger.exception("Fallback failed on %r", routed_question)
                result = None
            resp = Router.gate(result, "unknown")
            resp.meta.setdefault("handler_intent", "fallback")
            return _routed(ctx, resp, extra)
        return _finish(ctx, UNKNOWN_ANSWER, {"intent": "unknown", **debug}, extra)

    # 6) route
    resp = router.route(intent.topic, routed_question, snapshot, intent)
    if rewrite is not None:
        resp.meta["rewritten"] = routed_question
    resp.meta.update(debug)
    return _routed(ctx, resp, extra)
