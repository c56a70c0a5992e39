"""Tests for converting stored conversation records into messages and back."""

from __future__ import annotations

from datetime import datetime, timezone

from quillchat.chat.message_model import Message, MessageKind, TokenUsage, ToolStatus
from quillchat.chat.restore import (
    RestoreSnapshot,
    build_chat_messages,
    event_field,
    find_latest_todos,
    find_todos_in_last_turn,
    map_conversation_list,
    messages_to_records,
    to_timestamp,
)

# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def test_event_field_falls_back_to_data_mapping() -> None:
    event = {"type": "toolUse", "data": {"toolName": "Read"}, "toolUseId": "t1"}

    assert event_field(event, "toolUseId") == "t1"
    assert event_field(event, "toolName") == "Read"
    assert event_field(event, "missing", "default") == "default"


def test_to_timestamp_accepts_epoch_millis_and_iso() -> None:
    assert to_timestamp(0) == datetime(1970, 1, 1, tzinfo=timezone.utc)
    assert to_timestamp("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    naive = to_timestamp("2024-01-02T03:04:05")
    assert naive.tzinfo is not None


# ---------------------------------------------------------------------------
# Snapshot payloads
# ---------------------------------------------------------------------------


class TestRestoreSnapshot:
    """Tests for RestoreSnapshot parsing."""

    def test_from_value_reads_all_fields(self) -> None:
        snapshot = RestoreSnapshot.from_value(
            {
                "messages": [{"type": "userInput", "data": "hi"}, "junk"],
                "sessionId": "s-1",
                "totalCost": 0.25,
                "totalTokens": {"input": 100, "output": 40},
                "conversationId": "conv-1",
                "isProcessing": True,
            }
        )

        assert snapshot is not None
        assert snapshot.messages == [{"type": "userInput", "data": "hi"}]
        assert snapshot.session_id == "s-1"
        assert snapshot.total_cost == 0.25
        assert snapshot.total_tokens == (100, 40)
        assert snapshot.conversation_id == "conv-1"
        assert snapshot.is_processing is True

    def test_from_value_requires_message_list(self) -> None:
        assert RestoreSnapshot.from_value({"sessionId": "s"}) is None
        assert RestoreSnapshot.from_value({"messages": "nope"}) is None
        assert RestoreSnapshot.from_value(None) is None

    def test_to_dict_round_trips(self) -> None:
        snapshot = RestoreSnapshot(messages=[{"type": "userInput", "data": "x"}], session_id="s", total_tokens=(1, 2))

        assert RestoreSnapshot.from_value(snapshot.to_dict()) == snapshot


# ---------------------------------------------------------------------------
# Records -> messages
# ---------------------------------------------------------------------------


class TestBuildChatMessages:
    """Tests for rebuilding the message list from stored records."""

    def test_output_chunks_merge_into_one_assistant_message(self) -> None:
        messages = build_chat_messages(
            [
                {"type": "userInput", "data": "hello", "timestamp": 1000},
                {"type": "output", "text": "Hel", "timestamp": 1001},
                {"type": "output", "text": "lo", "isFinal": True, "timestamp": 1002},
            ]
        )

        assert [m.kind for m in messages] == [MessageKind.USER_INPUT, MessageKind.ASSISTANT_OUTPUT]
        assert messages[1].content == "Hello"
        assert messages[1].streaming is False

    def test_trailing_unfinished_output_stays_streaming(self) -> None:
        messages = build_chat_messages([{"type": "output", "text": "partial"}])

        assert messages[-1].streaming is True

    def test_usage_before_output_attaches_to_next_assistant(self) -> None:
        messages = build_chat_messages(
            [
                {"type": "updateTokens", "current": {"input_tokens": 5, "output_tokens": 7}},
                {"type": "output", "text": "answer", "isFinal": True},
            ]
        )

        assert messages[0].usage == TokenUsage(5, 7)

    def test_usage_after_final_output_attaches_to_it(self) -> None:
        messages = build_chat_messages(
            [
                {"type": "output", "text": "answer", "isFinal": True},
                {"type": "updateTokens", "current": {"input_tokens": 1, "output_tokens": 2}},
            ]
        )

        assert messages[0].usage == TokenUsage(1, 2)

    def test_tool_result_updates_invocation_status(self) -> None:
        messages = build_chat_messages(
            [
                {"type": "toolUse", "toolUseId": "t1", "toolName": "Read", "rawInput": {"file_path": "a.py"}},
                {"type": "toolResult", "toolUseId": "t1", "content": "body", "duration": 12},
            ]
        )

        invocation, result = messages
        assert invocation.status is ToolStatus.COMPLETED
        assert invocation.payload["duration"] == 12
        assert result.kind is MessageKind.TOOL_RESULT
        assert result.tool_use_id == "t1"
        assert result.content == "body"

    def test_hidden_result_only_updates_invocation(self) -> None:
        messages = build_chat_messages(
            [
                {"type": "toolUse", "toolUseId": "t1", "toolName": "Edit"},
                {"type": "toolResult", "toolUseId": "t1", "isError": True, "hidden": True},
            ]
        )

        assert len(messages) == 1
        assert messages[0].status is ToolStatus.FAILED

    def test_unknown_records_are_skipped(self) -> None:
        messages = build_chat_messages([{"type": "mystery"}, {"type": "error", "message": "boom"}])

        assert [m.kind for m in messages] == [MessageKind.ERROR]
        assert messages[0].content == "boom"

    def test_messages_to_records_rebuilds_same_conversation(self) -> None:
        stamp = datetime(2024, 2, 1, tzinfo=timezone.utc)
        original = [
            Message(id="u", kind=MessageKind.USER_INPUT, content="hi", timestamp=stamp),
            Message(id="a", kind=MessageKind.ASSISTANT_OUTPUT, content="yo", timestamp=stamp, usage=TokenUsage(3, 4)),
            Message(
                id="t",
                kind=MessageKind.TOOL_INVOCATION,
                timestamp=stamp,
                tool_use_id="t",
                tool_name="Read",
                raw_input={"file_path": "x"},
                status=ToolStatus.EXECUTING,
            ),
        ]

        rebuilt = build_chat_messages(messages_to_records(original))

        assert [(m.kind, m.content) for m in rebuilt] == [(m.kind, m.content) for m in original]
        assert rebuilt[1].usage == TokenUsage(3, 4)
        assert rebuilt[2].tool_use_id == "t"
        assert rebuilt[2].raw_input == {"file_path": "x"}


# ---------------------------------------------------------------------------
# Todos and conversation lists
# ---------------------------------------------------------------------------


def test_find_todos_in_last_turn_ignores_earlier_turns() -> None:
    todo_record = {
        "type": "toolUse",
        "toolUseId": "t1",
        "toolName": "TodoWrite",
        "rawInput": {"todos": [{"content": "old", "status": "pending"}]},
    }
    earlier = build_chat_messages([{"type": "userInput", "data": "one"}, todo_record, {"type": "userInput", "data": "two"}])

    assert find_todos_in_last_turn(earlier) == []
    assert [todo.content for todo in find_latest_todos(earlier)] == ["old"]

    current = build_chat_messages([{"type": "userInput", "data": "one"}, todo_record])
    assert [todo.content for todo in find_todos_in_last_turn(current)] == ["old"]


def test_map_conversation_list_prefers_filename_and_defaults_preview() -> None:
    items = map_conversation_list(
        [
            {"filename": "a.json", "preview": "First", "timestamp": "2024-01-01T00:00:00Z", "messageCount": 3},
            {"sessionId": "s-2"},
            "garbage",
        ]
    )

    assert [item.id for item in items] == ["a.json", "s-2", "conversation-2"]
    assert items[0].message_count == 3
    assert items[1].preview == "Conversation"
