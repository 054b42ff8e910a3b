"""Tests for orchestration/ledger.py."""

from __future__ import annotations

import pytest

from partner.ai.orchestration.errors import LedgerIntegrityError
from partner.ai.orchestration.ledger import (
    CLEARED_MARKER,
    HOT_MESSAGE_PREFIX,
    SUMMARY_HEADER,
    CompactionStrategy,
    ContextLedger,
    condense_messages,
    estimate_message_tokens,
    estimate_tokens,
)
from partner.ai.orchestration.types import Message, ToolCall


def call(call_id: str, name: str = "read_file") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments="{}")


def ledger_with_tool_turns(turns: int, *, result_size: int = 20) -> ContextLedger:
    ledger = ContextLedger(100_000, system_prompt="You are a test assistant.")
    for index in range(turns):
        ledger.append_user(f"request {index}")
        ledger.append_assistant("", [call(f"c{index}")])
        ledger.append_tool_result(f"c{index}", "read_file", "r" * result_size)
        ledger.append_assistant(f"answer {index}")
    return ledger


# -----------------------------------------------------------------------------
# Tests: token estimation
# -----------------------------------------------------------------------------


class TestEstimateTokens:
    """Tests for the character-class token heuristic."""

    def test_empty_text(self) -> None:
        assert estimate_tokens("") == 0
        assert estimate_tokens(None) == 0

    def test_wide_characters_weigh_more(self) -> None:
        """CJK text costs more per character than ASCII."""
        assert estimate_tokens("你好世界") > estimate_tokens("abcd")

    def test_ascii_is_fractional_per_character(self) -> None:
        assert estimate_tokens("a" * 10) == 4

    def test_message_estimate_includes_tool_calls(self) -> None:
        plain = Message.assistant("hi")
        with_calls = Message.assistant("hi", [call("c1")])
        assert estimate_message_tokens(with_calls) > estimate_message_tokens(plain)


# -----------------------------------------------------------------------------
# Tests: appends and pairing
# -----------------------------------------------------------------------------


class TestAppends:
    """Tests for appends and the pairing invariant."""

    def test_system_message_is_always_first_and_unique(self) -> None:
        ledger = ContextLedger(system_prompt="base")
        ledger.append_user("hello")
        ledger.set_system_prompt("updated")

        messages = ledger.messages
        assert messages[0].role == "system"
        assert messages[0].content == "updated"
        assert [message.role for message in messages].count("system") == 1
        assert len(ledger) == 2

    def test_hot_user_message_is_prefixed_and_marked(self) -> None:
        ledger = ContextLedger()
        message = ledger.append_user("actually use metric units", hot=True)

        assert message.content == f"{HOT_MESSAGE_PREFIX} actually use metric units"
        assert message.metadata["hot"] is True

    def test_result_without_call_is_rejected(self) -> None:
        ledger = ContextLedger()
        ledger.append_user("hello")

        with pytest.raises(LedgerIntegrityError) as info:
            ledger.append_tool_result("missing", "read_file", "{}")
        assert info.value.tool_call_id == "missing"

    def test_second_result_for_same_call_is_rejected(self) -> None:
        ledger = ContextLedger()
        ledger.append_assistant("", [call("c1")])
        ledger.append_tool_result("c1", "read_file", "{}")

        with pytest.raises(LedgerIntegrityError):
            ledger.append_tool_result("c1", "read_file", "{}")

    def test_duplicate_call_ids_are_rejected(self) -> None:
        ledger = ContextLedger()
        ledger.append_assistant("", [call("c1")])

        with pytest.raises(LedgerIntegrityError):
            ledger.append_assistant("", [call("c1")])

    def test_reused_and_empty_call_ids_are_reassigned(self) -> None:
        ledger = ContextLedger()
        ledger.append_assistant("", [call("call_0")])
        ledger.append_tool_result("call_0", "read_file", "{}")

        calls = ledger.assign_unique_call_ids([call("call_0"), call("call_0"), call(""), call("call_1")])
        ledger.append_assistant("", calls)

        ids = [item.id for item in calls]
        assert ids[0].startswith("call_0_") and ids[1].startswith("call_0_")
        assert ids[2].startswith("call_")
        assert ids[3] == "call_1"
        assert len(set(ids)) == 4
        assert [item.name for item in calls] == ["read_file"] * 4
        for item in calls:
            ledger.append_tool_result(item.id, item.name, "{}")
        ledger.validate()

    def test_results_are_truncated_at_limit(self) -> None:
        ledger = ContextLedger(tool_result_limit=3000)
        ledger.append_assistant("", [call("c1")])

        message = ledger.append_tool_result("c1", "read_file", "x" * 3500)

        assert message.content.startswith("x" * 3000)
        assert "truncated 500 characters" in message.content
        assert message.metadata == {"truncated": True, "original_length": 3500}

    def test_pending_and_dangling_calls(self) -> None:
        ledger = ContextLedger()
        ledger.append_assistant("", [call("c1"), call("c2")])
        ledger.append_tool_result("c1", "read_file", "{}")

        assert [item.id for item in ledger.pending_tool_calls()] == ["c2"]
        assert ledger.close_dangling_tool_calls('{"ok": false}') == 1
        assert ledger.pending_tool_calls() == []
        ledger.validate()

    def test_latest_user_text(self) -> None:
        ledger = ContextLedger()
        assert ledger.latest_user_text() == ""
        ledger.append_user("first")
        ledger.append_assistant("reply")
        ledger.append_user("second")

        assert ledger.latest_user_text() == "second"

    def test_chat_params_use_openai_shape(self) -> None:
        ledger = ContextLedger(system_prompt="sys")
        ledger.append_assistant("", [call("c1")])
        ledger.append_tool_result("c1", "read_file", "body")

        params = ledger.to_chat_params()

        assert params[1]["content"] is None
        assert params[1]["tool_calls"][0]["function"]["name"] == "read_file"
        assert params[2] == {"role": "tool", "content": "body", "tool_call_id": "c1"}


# -----------------------------------------------------------------------------
# Tests: compaction
# -----------------------------------------------------------------------------


class TestCompaction:
    """Tests for the compaction strategies."""

    def test_clear_tool_results_blanks_older_bodies(self) -> None:
        ledger = ledger_with_tool_turns(3)

        result = ledger.compact(CompactionStrategy.CLEAR_TOOL_RESULTS, keep_last=4)

        assert result.cleared == 2
        tools = [message for message in ledger.entries if message.role == "tool"]
        assert [message.content for message in tools] == [CLEARED_MARKER, CLEARED_MARKER, "r" * 20]
        assert len(ledger.entries) == 12
        ledger.validate()

    def test_clear_old_drops_without_summary(self) -> None:
        ledger = ledger_with_tool_turns(3)

        result = ledger.compact("clear_old", keep_last=4)

        assert result.removed == 8
        assert ledger.summaries == ()
        assert ledger.entries[0].content == "request 2"
        ledger.validate()

    def test_summarize_folds_summary_into_system_message(self) -> None:
        ledger = ledger_with_tool_turns(3)

        result = ledger.compact(CompactionStrategy.SUMMARIZE, keep_last=4, summary="They read three files.")

        assert result.summary == "They read three files."
        assert ledger.summaries == ("They read three files.",)
        system = ledger.messages[0]
        assert system.content.startswith("You are a test assistant.")
        assert f"{SUMMARY_HEADER}\nThey read three files." in system.content
        assert [message.role for message in ledger.messages].count("system") == 1

    def test_summarize_without_text_uses_extract(self) -> None:
        ledger = ledger_with_tool_turns(2)

        ledger.compact(CompactionStrategy.SUMMARIZE, keep_last=4)

        assert ledger.summaries == ("User: request 0\nAssistant: answer 0",)

    @pytest.mark.parametrize("keep_last", range(0, 13))
    def test_cut_never_orphans_a_tool_result(self, keep_last: int) -> None:
        """Whatever the boundary, kept tool results still follow their call."""
        ledger = ledger_with_tool_turns(3)

        ledger.compact(CompactionStrategy.CLEAR_OLD, keep_last=keep_last)

        ledger.validate()
        assert len(ledger.entries) >= keep_last

    def test_summarizable_prefix_matches_what_summarize_drops(self) -> None:
        ledger = ledger_with_tool_turns(1)

        prefix = ledger.summarizable_prefix(2)
        result = ledger.compact(CompactionStrategy.SUMMARIZE, keep_last=2, summary="They asked once.")

        assert [message.content for message in prefix] == ["request 0"]
        assert result.removed == len(prefix)
        assert ledger.entries[0].tool_calls[0].id == "c0"
        ledger.validate()

    def test_keep_essential_keeps_user_and_assistant_text(self) -> None:
        ledger = ledger_with_tool_turns(3)

        result = ledger.compact(CompactionStrategy.KEEP_ESSENTIAL, keep_last=3)

        assert result.removed == 4
        assert [message.content for message in ledger.entries[:5]] == [
            "request 0",
            "answer 0",
            "request 1",
            "answer 1",
            "request 2",
        ]
        assert [message.role for message in ledger.entries[5:]] == ["assistant", "tool", "assistant"]
        ledger.validate()

    def test_keep_essential_strips_calls_whose_results_are_dropped(self) -> None:
        ledger = ContextLedger()
        ledger.append_user("read it")
        ledger.append_assistant("Let me look.", [call("c1")])
        ledger.append_tool_result("c1", "read_file", "body")
        ledger.append_assistant("Found it.")
        ledger.append_user("thanks")
        ledger.append_assistant("welcome")

        result = ledger.compact("keep_essential", keep_last=1)

        assert result.removed == 1
        assert [message.content for message in ledger.entries] == [
            "read it",
            "Let me look.",
            "Found it.",
            "thanks",
            "welcome",
        ]
        assert ledger.entries[1].tool_calls == ()
        ledger.validate()

    def test_keep_last_larger_than_ledger_is_a_no_op(self) -> None:
        ledger = ledger_with_tool_turns(1)

        result = ledger.compact(CompactionStrategy.SUMMARIZE, keep_last=50)

        assert not result.changed
        assert ledger.summaries == ()

    def test_stats_reflect_usage(self) -> None:
        ledger = ContextLedger(100)
        empty = ledger.stats()
        ledger.append_user("x" * 500)

        stats = ledger.stats()

        assert stats.max_tokens == 100
        assert stats.estimated_tokens > empty.estimated_tokens
        assert stats.usage_percent > 100
        assert stats.message_count == 2

    def test_condense_skips_tool_messages(self) -> None:
        text = condense_messages(
            [Message.user("hello"), Message.tool("secret", "c1"), Message.assistant("hi")]
        )
        assert text == "User: hello\nAssistant: hi"


# -----------------------------------------------------------------------------
# Tests: load / clear
# -----------------------------------------------------------------------------


class TestLoad:
    """Tests for restoring saved messages."""

    def test_load_replaces_entries_and_keeps_prompt(self) -> None:
        ledger = ContextLedger(system_prompt="prompt")
        ledger.append_user("stale")

        ledger.load([Message.system("old prompt"), Message.user("saved")], ["earlier summary"])

        assert [message.content for message in ledger.entries] == ["saved"]
        assert ledger.messages[0].content.startswith("prompt")
        assert "earlier summary" in ledger.messages[0].content

    def test_load_rejects_orphan_results(self) -> None:
        ledger = ContextLedger()

        with pytest.raises(LedgerIntegrityError):
            ledger.load([Message.user("hi"), Message.tool("{}", "ghost")])

    def test_clear_drops_everything_but_prompt(self) -> None:
        ledger = ledger_with_tool_turns(1)
        ledger.compact(CompactionStrategy.SUMMARIZE, keep_last=0, summary="gone")

        ledger.clear()

        assert ledger.entries == ()
        assert ledger.summaries == ()
        assert ledger.messages[0].content == "You are a test assistant."
