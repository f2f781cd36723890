from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple

from farm_copilot.conversation.intent import Intent, normalize_intent
from farm_copilot.conversation.result_ops import apply_result_op
from farm_copilot.core.query_engine import try_generic_query
from farm_copilot.core.snapshot import SnapshotHandle
from farm_copilot.handlers.collections import COLLECTION_TOPICS, make_collection_handler
from farm_copilot.handlers.fields import handle_fields
from farm_copilot.handlers.towers import handle_towers

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]

NOT_CONFIDENT = "I can't confidently answer that yet."


@dataclass
class Response:
    answer: str
    meta: Dict[str, Any] = field(default_factory=dict)
    context_delta: Dict[str, Any] = field(default_factory=dict)
    ok: bool = False


@dataclass(frozen=True)
class RouteEntry:
    topic: str
    handler: Handler


BLOCKED_NO_ROUTE = Response(
    answer="I can't answer that kind of question yet.",
    meta={"intent": "blocked", "reason": "no-route"},
)


def route_fields(question: str, snapshot: SnapshotHandle, intent: Optional[Intent] = None) -> Dict[str, Any]:
    """Generic count/list/group-by shapes first, then the specific field handler."""
    include_archived = bool(intent.include_archived) if intent else False
    generic = try_generic_query(question, snapshot, include_archived=include_archived)
    if generic is not None:
        return generic.as_handler_result()
    return handle_fields(question=question, snapshot=snapshot, intent=intent)


DEFAULT_ROUTES: Tuple[RouteEntry, ...] = (
    RouteEntry("fields", route_fields),
    RouteEntry("rtkTowers", handle_towers),
) + tuple(RouteEntry(topic, make_collection_handler(topic)) for topic in COLLECTION_TOPICS)


class Router:
    """
    Topic -> handler dispatch with a Truth Gate on every result.

    A handler answer reaches the user only when it reports ok=True. Anything
    else (ok False or missing, a non-dict result, a raised exception) is
    replaced by NOT_CONFIDENT and never shows the handler's own text.
    """

    def __init__(self, routes: Optional[Sequence[RouteEntry]] = None) -> None:
        self.routes: Tuple[RouteEntry, ...] = tuple(routes) if routes is not None else DEFAULT_ROUTES
        self._by_topic: Dict[str, RouteEntry] = {}
        for entry in self.routes:
            if entry.topic in self._by_topic:
                raise ValueError(f"Duplicate route for topic {entry.topic!r}")
            self._by_topic[entry.topic] = entry

    @property
    def topics(self) -> Tuple[str, ...]:
        return tuple(e.topic for e in self.routes)

    def handler_for(self, topic: str) -> Optional[Handler]:
        entry = self._by_topic.get(topic or "")
        return entry.handler if entry else None

    # -----------------------------------------------------------------------
    # Truth Gate
    # -----------------------------------------------------------------------

    @staticmethod
    def gate(result: Any, topic: str) -> Response:
        """
        `meta["intent"]` on the way out is always `topic`; a handler's own
        intent label moves to `meta["handler_intent"]`.
        """
        if isinstance(result, Mapping) and result.get("ok") is True:
            meta = result.get("meta")
            meta = dict(meta) if isinstance(meta, Mapping) else {}
            handler_intent = meta.pop("intent", None)
            if handler_intent and handler_intent != topic:
                meta["handler_intent"] = str(handler_intent)
            meta["intent"] = topic
            delta = result.get("context_delta")
            return Response(
                answer=str(result.get("answer") or ""),
                meta=meta,
                context_delta=dict(delta) if isinstance(delta, Mapping) else {},
                ok=True,
            )

        logger.warning("Truth Gate rejected %s result (ok=%r)", topic, result.get("ok") if isinstance(result, Mapping) else None)
        return Response(answer=NOT_CONFIDENT, meta={"intent": topic, "reason": "feature-no-data"})

    def _call(self, handler: Handler, question: str, snapshot: SnapshotHandle, intent: Optional[Intent]) -> Any:
        try:
            return handler(question=question, snapshot=snapshot, intent=intent)
        except Exception:
            logger.exception("Handler for %s failed on %r", intent.topic if intent else "?", question)
            return None

    # -----------------------------------------------------------------------
    # Dispatch
    # -----------------------------------------------------------------------

    def route(
        self,
        topic: str,
        question: str,
        snapshot: SnapshotHandle,
        intent: Optional[Intent] = None,
    ) -> Response:
        handler = self.handler_for(topic)
        if handler is None:
            logger.info("No route for topic %r", topic)
            return Response(
                answer=BLOCKED_NO_ROUTE.answer,
                meta=dict(BLOCKED_NO_ROUTE.meta),
                context_delta={},
            )

        intent = intent or Intent(topic=topic)
        logger.info("Routing %r to %s (mode=%s, archived=%s)", question, topic, intent.mode, intent.include_archived)
        result = self._call(handler, question, snapshot, intent)
        return self.gate(result, topic)

    def rerun(self, snapshot: SnapshotHandle) -> Callable[[str, bool], Optional[Dict[str, Any]]]:
        """Re-ask a stored question with a different archived scope (ungated)."""

        def _rerun(question: str, include_archived: bool) -> Optional[Dict[str, Any]]:
            intent = normalize_intent(question, include_archived=include_archived)
            handler = self.handler_for(intent.topic) if intent else None
            if handler is None:
                return None
            result = self._call(handler, question, snapshot, intent)
            return dict(result) if isinstance(result, Mapping) else None

        return _rerun

    def apply_result_op(self, op: Any, last_result: Any, snapshot: SnapshotHandle, topic: str = "fields") -> Response:
        try:
            result = apply_result_op(op, last_result, snapshot, rerun=self.rerun(snapshot))
        except Exception:
            logger.exception("Result op %r failed", op)
            result = None
        return self.gate(result, topic)
