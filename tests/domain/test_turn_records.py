"""Unit tests for turn records, canonical deltas and credentials.

Tests cover:
- Tool call argument assembly and parse errors
- Draft ordering and emptiness
- Usable output detection on turns
- Canonical delta factories and terminal detection
- Rate-limit state bookkeeping and cooldowns
- Credential secret resolution
"""

import pytest

from domain.exceptions import ProviderError, ProviderErrorKind
from domain.models import (
    AssistantDraft,
    CanonicalDelta,
    DeltaType,
    Message,
    RateLimitState,
    ToolCallRecord,
    ToolResultBlock,
    Turn,
)
from tests.fixtures.factories import CredentialFactory


class TestToolCallRecord:
    """Test incremental tool call assembly."""

    def test_fragments_parsed_on_complete(self):
        record = ToolCallRecord(call_id="c1", name="get_weather")
        record.fragments.extend(['{"ci', 'ty": "Os', 'lo"}'])

        record.complete()

        assert record.completed is True
        assert record.arguments == {"city": "Oslo"}
        assert record.parse_error is None

    def test_empty_arguments_become_empty_object(self):
        record = ToolCallRecord(call_id="c1", name="generate_uuid")

        record.complete()

        assert record.arguments == {}

    def test_invalid_json_sets_parse_error(self):
        record = ToolCallRecord(call_id="c1", name="t", fragments=['{"city": '])

        record.complete()

        assert record.arguments is None
        assert record.parse_error is not None
        assert record.parse_error.startswith("Invalid JSON arguments")

    def test_non_object_arguments_rejected(self):
        record = ToolCallRecord(call_id="c1", name="t", fragments=["[1, 2]"])

        record.complete()

        assert "JSON object" in (record.parse_error or "")

    def test_truncated_flag_kept(self):
        record = ToolCallRecord(call_id="c1", name="t", fragments=["{}"])

        record.complete(truncated=True)

        assert record.truncated is True


class TestAssistantDraft:
    """Test draft helpers."""

    def test_tool_calls_ordered_by_index(self):
        draft = AssistantDraft()
        draft.tool_calls["b"] = ToolCallRecord(call_id="b", name="second", index=1, completed=True)
        draft.tool_calls["a"] = ToolCallRecord(call_id="a", name="first", index=0, completed=True)

        assert [record.name for record in draft.ordered_tool_calls] == ["first", "second"]

    def test_completed_tool_calls_exclude_truncated(self):
        draft = AssistantDraft()
        draft.tool_calls["a"] = ToolCallRecord(call_id="a", name="ok", index=0, completed=True)
        draft.tool_calls["b"] = ToolCallRecord(call_id="b", name="cut", index=1, completed=True, truncated=True)
        draft.tool_calls["c"] = ToolCallRecord(call_id="c", name="open", index=2)

        assert [record.call_id for record in draft.completed_tool_calls] == ["a"]

    def test_is_empty(self):
        draft = AssistantDraft()
        assert draft.is_empty

        draft.text_parts.append("x")
        assert not draft.is_empty


class TestTurn:
    """Test turn record properties."""

    def test_leaf_id_follows_active_path(self):
        message = Message.create_user_message("conv-1", "hi")
        turn = Turn(conversation_id="conv-1", active_path=[message], remaining_tool_calls=3)

        assert turn.leaf_id == message.id
        assert Turn(conversation_id="conv-1", active_path=[], remaining_tool_calls=3).leaf_id is None

    def test_successful_tool_result_is_usable_output(self):
        turn = Turn(conversation_id="conv-1", active_path=[], remaining_tool_calls=0)
        failed = Message.create_tool_result_message("conv-1", ToolResultBlock(call_id="c1", tool_name="t", is_error=True, error={"message": "x"}))
        turn.messages_created.append(failed)
        assert not turn.has_usable_output

        succeeded = Message.create_tool_result_message("conv-1", ToolResultBlock(call_id="c2", tool_name="t", content="ok"))
        turn.messages_created.append(succeeded)
        assert turn.has_usable_output


class TestCanonicalDelta:
    """Test delta factories."""

    def test_terminal_types(self):
        assert CanonicalDelta.done("stop").is_terminal
        assert CanonicalDelta.error({"message": "x"}).is_terminal
        assert not CanonicalDelta.text("x").is_terminal
        assert not CanonicalDelta.usage(1, 2).is_terminal

    def test_payload_shapes(self):
        assert CanonicalDelta.tool_call_start("c1", "calc", 2).payload == {"call_id": "c1", "name": "calc", "index": 2}
        assert CanonicalDelta.error({"message": "x"}, partial=True).payload == {"error": {"message": "x"}, "partial": True}
        assert CanonicalDelta.done(truncated=True).to_dict() == {"type": "done", "payload": {"finish_reason": None, "truncated": True}}
        assert CanonicalDelta.tool_call_args("c1", "{").type == DeltaType.TOOL_CALL_ARGS


class TestRateLimitState:
    """Test rate-limit bookkeeping."""

    def test_rate_limit_uses_retry_after(self):
        state = RateLimitState()

        state.record_failure(ProviderError("slow down", kind=ProviderErrorKind.RATE_LIMIT, status_code=429, retry_after=5.0), now=100.0)

        assert state.cooldown_until == 105.0
        assert state.is_cooling_down(104.0)
        assert not state.is_cooling_down(105.0)
        assert state.consecutive_rate_limits == 1
        assert state.last_status_code == 429

    def test_cooldown_grows_without_retry_after(self):
        state = RateLimitState()
        error = ProviderError("slow down", kind=ProviderErrorKind.RATE_LIMIT)

        state.record_failure(error, now=0.0, default_cooldown=2.0)
        state.record_failure(error, now=0.0, default_cooldown=2.0)

        assert state.cooldown_until == 4.0

    def test_success_resets_consecutive_rate_limits(self):
        state = RateLimitState()
        state.record_failure(ProviderError("x", kind=ProviderErrorKind.RATE_LIMIT, retry_after=1.0), now=0.0)

        state.record_success(now=2.0)

        assert state.consecutive_rate_limits == 0
        assert state.total_requests == 2
        assert state.failed_requests == 1
        assert state.last_error_kind is None

    def test_other_errors_do_not_cool_down(self):
        state = RateLimitState()

        state.record_failure(ProviderError("down", kind=ProviderErrorKind.TRANSIENT, status_code=503), now=10.0)

        assert not state.is_cooling_down(10.0)
        assert state.last_error_kind == ProviderErrorKind.TRANSIENT


class TestProviderCredential:
    """Test credential secret resolution."""

    def test_literal_secret(self):
        assert CredentialFactory.create(secret_ref="sk-literal").resolve_secret() == "sk-literal"

    def test_env_secret(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("GATEWAY_TEST_KEY", "sk-from-env")

        assert CredentialFactory.create(secret_ref="env:GATEWAY_TEST_KEY").resolve_secret() == "sk-from-env"

    def test_missing_env_secret_is_empty(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.delenv("GATEWAY_TEST_MISSING", raising=False)

        assert CredentialFactory.create(secret_ref="env:GATEWAY_TEST_MISSING").resolve_secret() == ""
