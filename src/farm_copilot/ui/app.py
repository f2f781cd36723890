from __future__ import annotations

import logging
import time
import traceback
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from farm_copilot.config import APP_NAME, APP_VERSION, LOG_LEVEL
from farm_copilot.conversation.context import ConversationContext
from farm_copilot.conversation.orchestrator import TurnResult, handle_turn
from farm_copilot.core.snapshot import SnapshotHandle, SnapshotLoaderError

logger = logging.getLogger(__name__)

SAMPLE_QUESTIONS = [
    "How many fields by county",
    "HEL acres by county",
    "List fields in Sangamon County",
    "Tell me about 0801-Lloyd N340",
    "List RTK towers",
    "grain",
]


def _configure_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _init_state() -> None:
    if "messages" not in st.session_state:
        st.session_state["messages"] = []
    if "context" not in st.session_state:
        st.session_state["context"] = ConversationContext()
    if "snapshot" not in st.session_state:
        st.session_state["snapshot"] = None
    if "last_turn" not in st.session_state:
        st.session_state["last_turn"] = None


def _open_snapshot(refresh: bool = False) -> Optional[SnapshotHandle]:
    handle: Optional[SnapshotHandle] = st.session_state.get("snapshot")
    try:
        if handle is None:
            handle = SnapshotHandle.from_config()
        handle = handle.refresh() if refresh else handle.open()
    except SnapshotLoaderError as err:
        st.error(f"Snapshot unavailable: {err}")
        return None
    st.session_state["snapshot"] = handle
    return handle


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------

def _render_history() -> None:
    for msg in st.session_state["messages"]:
        with st.chat_message(msg["role"]):
            st.markdown(msg["content"])


def _ask(question: str, snapshot: SnapshotHandle) -> TurnResult:
    t0 = time.perf_counter()
    turn = handle_turn(question, snapshot, st.session_state["context"])
    logger.info("Turn answered in %0.3fs (intent=%s)", time.perf_counter() - t0, turn.meta.get("intent"))
    st.session_state["context"] = turn.context
    st.session_state["last_turn"] = turn
    return turn


def _render_chat_area(snapshot: Optional[SnapshotHandle]) -> None:
    st.subheader("Ask about fields, farms, towers, grain and more")
    _render_history()

    question = st.chat_input("Ask a question (e.g. 'HEL acres by county')")
    if not question:
        return

    st.session_state["messages"].append({"role": "user", "content": question})
    with st.chat_message("user"):
        st.markdown(question)

    if snapshot is None:
        answer = "The snapshot is not loaded yet, so I can't answer."
    else:
        try:
            answer = _ask(question, snapshot).answer
        except Exception:
            logger.exception("Turn failed for %r", question)
            answer = "Something went wrong while answering that."

    st.session_state["messages"].append({"role": "assistant", "content": answer})
    with st.chat_message("assistant"):
        st.markdown(answer)


# ---------------------------------------------------------------------------
# Developer panels
# ---------------------------------------------------------------------------

def _render_snapshot_status(snapshot: Optional[SnapshotHandle]) -> None:
    with st.expander("Snapshot status (developer view)", expanded=False):
        if st.button("Refresh snapshot"):
            with st.spinner("Reloading snapshot..."):
                snapshot = _open_snapshot(refresh=True)
            if snapshot is not None:
                st.success("Snapshot reloaded.")

        if snapshot is None:
            st.warning("No snapshot loaded. Set SNAPSHOT_FILE or SNAPSHOT_URL.")
            return

        st.json(snapshot.status())
        frame = snapshot.fields_frame()
        st.write(f"Fields: {len(frame)} (active: {int(frame['active'].sum()) if not frame.empty else 0})")
        st.write(f"Farms: {len(snapshot.farms)}  ·  RTK towers: {len(snapshot.rtk_towers)}")
        counts: List[Dict[str, Any]] = [
            {"collection": name, "records": len(snapshot.collection(name))}
            for name in sorted(snapshot.collections().keys())
        ]
        st.dataframe(pd.DataFrame(counts), use_container_width=True)


def _render_context_panel() -> None:
    with st.expander("Conversation context (developer view)", expanded=False):
        ctx: ConversationContext = st.session_state["context"]
        st.json(ctx.to_dict())

        turn: Optional[TurnResult] = st.session_state.get("last_turn")
        if turn is not None:
            st.write("Last turn meta:")
            st.json(turn.meta)
            st.write("Last turn context delta:")
            st.json(turn.context_delta)

        if st.button("Reset conversation"):
            st.session_state["messages"] = []
            st.session_state["context"] = ConversationContext()
            st.session_state["last_turn"] = None
            st.success("Conversation cleared.")


def _render_sample_questions(snapshot: Optional[SnapshotHandle]) -> None:
    with st.expander("Sample questions (developer view)", expanded=False):
        choice = st.selectbox("Question", options=SAMPLE_QUESTIONS, index=0)
        if st.button("Run sample question"):
            if snapshot is None:
                st.warning("Load a snapshot first.")
                return
            try:
                turn = _ask(choice, snapshot)
                st.text(turn.answer)
                st.json(turn.meta)
            except Exception as e:
                st.error("Unexpected error while answering the sample question.")
                st.code(repr(e))
                st.text_area("Traceback", value=traceback.format_exc(), height=240)


def run_app() -> None:
    _configure_logging()
    st.set_page_config(page_title=APP_NAME, page_icon="🌾", layout="wide")
    st.title(APP_NAME)
    st.caption(f"Prototype version {APP_VERSION}")

    _init_state()
    snapshot = _open_snapshot()

    _render_chat_area(snapshot)
    _render_snapshot_status(snapshot)
    _render_context_panel()
    _render_sample_questions(snapshot)
