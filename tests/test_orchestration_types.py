"""Tests for orchestration/types.py."""

from __future__ import annotations

import pytest

from partner.ai.orchestration.types import (
    ConversationSnapshot,
    Message,
    ModelClient,
    ModelReply,
    RunOutcome,
    RunState,
    RunStatus,
    StopReason,
    ToolCall,
    ToolSelection,
)
from tests.helpers import ScriptedModelClient


class TestToolCall:
    """Tests for ToolCall argument handling."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [('{"a": 1}', {"a": 1}), ("", {}), ("not json", {}), ("[1, 2]", {}), ("  ", {})],
    )
    def test_parse_arguments_falls_back_to_empty(self, raw: str, expected: dict) -> None:
        assert ToolCall(id="c1", name="x", arguments=raw).parse_arguments() == expected

    def test_from_chat_param_serializes_object_arguments(self) -> None:
        call = ToolCall.from_chat_param({"id": "c1", "function": {"name": "read_file", "arguments": {"path": "ä"}}})

        assert call.arguments == '{"path": "ä"}'
        assert call.to_chat_param()["function"] == {"name": "read_file", "arguments": '{"path": "ä"}'}


class TestMessage:
    """Tests for Message conversions."""

    def test_tool_calls_are_coerced_to_tuple(self) -> None:
        message = Message(role="assistant", tool_calls=[ToolCall(id="c1", name="x")])  # type: ignore[arg-type]
        assert isinstance(message.tool_calls, tuple)

    def test_persisted_form_round_trips_metadata(self) -> None:
        message = Message.user("hi", hot=True)

        restored = Message.from_dict(message.to_dict())

        assert restored == message
        assert restored.metadata == {"hot": True}

    def test_chat_param_omits_metadata(self) -> None:
        assert Message.user("hi", hot=True).to_chat_param() == {"role": "user", "content": "hi"}


class TestRunState:
    """Tests for run identity and staleness."""

    def test_begin_and_invalidate(self) -> None:
        state = RunState()
        run_id = state.begin()

        assert state.status is RunStatus.WORKING
        assert not state.is_stale(run_id)

        state.invalidate()

        assert state.is_stale(run_id)
        assert state.status is RunStatus.IDLE
        assert not state.is_stale(state.begin())

    def test_outcome_ok(self) -> None:
        assert RunOutcome(1, StopReason.STOPPED).ok
        assert not RunOutcome(1, StopReason.ERROR, error="boom").ok


class TestSnapshot:
    """Tests for persisted conversation snapshots."""

    def test_from_dict_tolerates_partial_payloads(self) -> None:
        snapshot = ConversationSnapshot.from_dict(
            {"id": "abc", "messages": [{"role": "user", "content": "hi"}], "todos": ["junk", {"text": "t"}], "updated_at": "soon"}
        )

        assert snapshot.id == "abc"
        assert snapshot.title is None
        assert snapshot.selection is None
        assert [item.text for item in snapshot.todos] == ["t"]
        assert snapshot.messages[0].content == "hi"

    def test_selection_payload(self) -> None:
        selection = ToolSelection(frozenset({"b", "a"}), reason="heuristic")

        assert selection.to_dict() == {"selected_names": ["a", "b"], "reason": "heuristic"}
        assert ToolSelection.from_dict(selection.to_dict()) == selection
        assert ToolSelection.from_dict(None) is None


def test_scripted_client_satisfies_protocol() -> None:
    assert isinstance(ScriptedModelClient(), ModelClient)
    assert not ModelReply().has_tool_calls
