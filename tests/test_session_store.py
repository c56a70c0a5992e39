"""Tests for the SessionStore state container."""

from __future__ import annotations

import pytest

from quillchat.chat.message_model import Message, MessageKind, TodoItem, TokenUsage
from quillchat.chat.restore import ConversationListItem, build_chat_messages
from quillchat.session.store import SessionState, SessionStore
from tests.helpers import FakeClock


def _user(message_id: str, text: str = "hi") -> Message:
    return Message(id=message_id, kind=MessageKind.USER_INPUT, content=text)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------


class TestMessages:
    """Tests for message list mutations."""

    def test_add_message_rejects_duplicate_ids(self, store: SessionStore) -> None:
        store.add_message(_user("u1"))

        with pytest.raises(ValueError):
            store.add_message(_user("u1"))

        assert len(store.messages) == 1

    def test_update_message_replaces_copy(self, store: SessionStore) -> None:
        store.add_message(_user("u1", "before"))
        previous = store.messages

        assert store.update_message("u1", content="after") is True

        assert store.get_message("u1") is not None
        assert store.get_message("u1").content == "after"  # type: ignore[union-attr]
        assert previous[0].content == "before"

    def test_update_unknown_message_is_noop(self, store: SessionStore) -> None:
        state = store.state

        assert store.update_message("ghost", content="x") is False
        assert store.state is state

    def test_append_content(self, store: SessionStore) -> None:
        store.add_message(Message(id="a", kind=MessageKind.ASSISTANT_OUTPUT, content="Hel"))

        store.append_content("a", "lo")

        assert store.get_message("a").content == "Hello"  # type: ignore[union-attr]


class TestStreaming:
    """Tests for the streaming pointer."""

    def test_finalize_clears_pointer_and_flag(self, store: SessionStore) -> None:
        store.add_message(Message(id="a", kind=MessageKind.ASSISTANT_OUTPUT, streaming=True))
        store.set_streaming_message_id("a")

        assert store.finalize_streaming() is True

        assert store.streaming_message_id is None
        assert store.get_message("a").streaming is False  # type: ignore[union-attr]

    def test_finalize_is_idempotent(self, store: SessionStore) -> None:
        assert store.finalize_streaming() is False
        assert store.finalize_streaming() is False


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------


class TestCounters:
    """Tests for tokens, costs and timing."""

    def test_update_tokens_accumulates(self, store: SessionStore) -> None:
        store.update_tokens(TokenUsage(10, 5, cache_read_input_tokens=2))
        store.update_tokens(TokenUsage(1, 1))

        cumulative = store.state.cumulative
        assert (cumulative.total_input_tokens, cumulative.total_output_tokens) == (11, 6)
        assert cumulative.total_cache_read_tokens == 2
        assert store.state.current_usage == TokenUsage(1, 1)

    def test_session_cost_feeds_all_time_cost(self, store: SessionStore) -> None:
        store.update_session_cost(0.5)
        store.update_session_cost(0.75)

        assert store.state.session_cost_usd == 0.75
        assert store.state.all_time_cost_usd == pytest.approx(0.75)

    def test_request_timing_uses_clock(self, clock: FakeClock) -> None:
        store = SessionStore(clock=clock)
        store.start_request_timing()
        clock.advance(1.5)

        assert store.stop_request_timing() == pytest.approx(1500.0)
        assert store.stop_request_timing() is None

    def test_reset_chat_keeps_lifetime_cost_and_metadata(self, store: SessionStore) -> None:
        store.add_message(_user("u1"))
        store.set_processing(True)
        store.update_session_cost(1.0)
        store.set_subscription_type("pro")
        store.set_todos([TodoItem("x")])

        store.reset_chat()

        state = store.state
        assert state.messages == ()
        assert state.is_processing is False
        assert state.todos == ()
        assert state.session_cost_usd == 0.0
        assert state.all_time_cost_usd == 1.0
        assert state.subscription_type == "pro"


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    """Tests for snapshot/restore and persisted snapshots."""

    def test_restore_puts_back_exact_state(self, store: SessionStore) -> None:
        store.add_message(_user("u1"))
        snapshot = store.snapshot()

        store.add_message(_user("u2"))
        store.set_processing(True)
        store.restore(snapshot)

        assert store.state is snapshot
        assert [m.id for m in store.messages] == ["u1"]
        assert store.is_processing is False

    def test_revert_undoes_only_its_own_change(self, store: SessionStore) -> None:
        store.add_message(_user("u1"))
        before = store.snapshot()
        store.add_message(_user("u2"))
        store.set_processing(True)
        store.increment_turns()
        after = store.snapshot()
        store.add_message(_user("u3"))
        store.set_session_id("s-1")
        store.increment_turns()

        store.revert(before, after)

        assert [m.id for m in store.messages] == ["u1", "u3"]
        assert store.is_processing is False
        assert store.state.num_turns == 1
        assert store.state.session_id == "s-1"

    def test_revert_leaves_fields_written_since(self, store: SessionStore) -> None:
        before = store.snapshot()
        store.set_processing(True)
        after = store.snapshot()
        store.set_processing(False)
        store.set_processing(True)

        store.revert(before, after)

        assert store.is_processing is True

    def test_revert_puts_removed_items_back_in_place(self, store: SessionStore, clock: FakeClock) -> None:
        store.add_message(_user("u1"))
        store.add_message(_user("u2"))
        store.set_conversations(
            [ConversationListItem(id=name, title=name, preview=name, updated_at=clock()) for name in "abc"]
        )
        before = store.snapshot()
        store.remove_conversation("b")
        store.replace_messages([])
        after = store.snapshot()
        store.add_message(_user("u9"))

        store.revert(before, after)

        assert [item.id for item in store.state.conversations] == ["a", "b", "c"]
        assert [m.id for m in store.messages] == ["u1", "u2", "u9"]

    def test_revert_keeps_a_single_streaming_message(self, store: SessionStore) -> None:
        store.add_message(Message(id="a1", kind=MessageKind.ASSISTANT_OUTPUT, streaming=True))
        store.set_streaming_message_id("a1")
        before = store.snapshot()
        store.finalize_streaming()
        after = store.snapshot()
        store.add_message(Message(id="a2", kind=MessageKind.ASSISTANT_OUTPUT, streaming=True))
        store.set_streaming_message_id("a2")

        store.revert(before, after)

        assert store.streaming_message_id == "a2"
        assert [(m.id, m.streaming) for m in store.messages] == [("a1", False), ("a2", True)]

    def test_listeners_see_each_new_state(self, store: SessionStore) -> None:
        seen: list[SessionState] = []
        remove = store.add_listener(seen.append)

        store.set_processing(True)
        remove()
        store.set_processing(False)

        assert len(seen) == 1
        assert seen[0].is_processing is True

    def test_to_snapshot_rebuilds_the_same_messages(self, store: SessionStore) -> None:
        store.add_message(_user("u1", "question"))
        store.add_message(Message(id="a1", kind=MessageKind.ASSISTANT_OUTPUT, content="answer"))
        store.update_tokens(TokenUsage(3, 4))
        store.set_active_conversation_id("conv-1")

        snapshot = store.to_snapshot()

        assert snapshot.total_tokens == (3, 4)
        assert snapshot.conversation_id == "conv-1"
        rebuilt = build_chat_messages(snapshot.messages)
        assert [(m.kind, m.content) for m in rebuilt] == [
            (MessageKind.USER_INPUT, "question"),
            (MessageKind.ASSISTANT_OUTPUT, "answer"),
        ]

    def test_hydrate_conversation_replaces_everything(self, store: SessionStore) -> None:
        store.add_message(_user("old"))
        store.set_processing(True)
        store.start_request_timing()

        store.hydrate_conversation(
            [_user("u1"), _user("u2")], session_id="s-9", total_cost=0.3, total_tokens=(10, 20)
        )

        state = store.state
        assert [m.id for m in state.messages] == ["u1", "u2"]
        assert state.is_processing is False
        assert state.request_start_time is None
        assert state.num_turns == 2
        assert state.session_id == "s-9"
        assert state.session_cost_usd == 0.3
        assert state.cumulative.total_output_tokens == 20

    def test_remove_conversation_clears_active_id(self, store: SessionStore) -> None:
        item = ConversationListItem(id="c1", title="t", preview="t", updated_at=FakeClock()())
        store.set_conversations([item])
        store.set_active_conversation_id("c1")

        store.remove_conversation("c1")

        assert store.state.conversations == ()
        assert store.state.active_conversation_id is None
