"""Conversation state manager.

Owns the mutable side of a turn: the single assistant draft, tool-call
assembly from streamed fragments, usage accounting, and the one-time
conversion of the draft into an immutable persisted Message.
"""

import logging
from typing import Any

from domain.exceptions import TurnStateError
from domain.models import (
    AssistantDraft,
    CanonicalDelta,
    DeltaType,
    Message,
    MessageRole,
    MessageStatus,
    TextBlock,
    ToolCallRecord,
    ToolResultBlock,
    Turn,
)
from domain.repositories import MessageStore

logger = logging.getLogger(__name__)


class ConversationStateManager:
    """Turn lifecycle bookkeeping backed by a MessageStore."""

    def __init__(self, store: MessageStore) -> None:
        self._store = store

    @property
    def store(self) -> MessageStore:
        return self._store

    # =========================================================================
    # Turn lifecycle
    # =========================================================================

    def begin_turn(self, conversation_id: str, active_path: list[Message], tool_call_budget: int) -> Turn:
        """Create the working record for a new turn."""
        turn = Turn(conversation_id=conversation_id, active_path=list(active_path), remaining_tool_calls=tool_call_budget)
        logger.debug(f"Began turn {turn.id} for conversation {conversation_id} ({len(active_path)} messages in context)")
        return turn

    def open_draft(self, turn: Turn) -> AssistantDraft:
        """Start the assistant draft for one model call.

        Raises:
            TurnStateError: If a draft is already open or the turn is finalized
        """
        self._ensure_open(turn)
        if turn.draft is not None:
            raise TurnStateError(f"Turn {turn.id} already has an open assistant draft", turn_id=turn.id)
        turn.draft = AssistantDraft()
        turn.model_calls += 1
        return turn.draft

    def append_delta(self, turn: Turn, delta: CanonicalDelta) -> None:
        """Accumulate one delta into the open draft.

        After cancellation this is a no-op.

        Raises:
            TurnStateError: If the turn is finalized or has no open draft
        """
        if turn.cancelled:
            return
        self._ensure_open(turn)
        draft = turn.draft
        if draft is None:
            raise TurnStateError(f"Turn {turn.id} has no open assistant draft", turn_id=turn.id)

        payload = delta.payload
        if delta.type == DeltaType.TEXT:
            draft.text_parts.append(payload.get("text", ""))

        elif delta.type == DeltaType.TOOL_CALL_START:
            call_id = payload["call_id"]
            if call_id not in draft.tool_calls:
                draft.tool_calls[call_id] = ToolCallRecord(call_id=call_id, name=payload.get("name", ""), index=payload.get("index", len(draft.tool_calls)))

        elif delta.type == DeltaType.TOOL_CALL_ARGS:
            record = draft.tool_calls.get(payload["call_id"])
            if record is None:
                logger.warning(f"Argument fragment for unknown tool call {payload['call_id']} ignored")
                return
            if record.completed:
                logger.warning(f"Argument fragment after tool-call-end for {record.call_id} ignored")
                return
            record.fragments.append(payload.get("fragment", ""))

        elif delta.type == DeltaType.TOOL_CALL_END:
            record = draft.tool_calls.get(payload["call_id"])
            if record is None:
                logger.warning(f"tool-call-end for unknown tool call {payload['call_id']} ignored")
                return
            if not record.completed:
                record.complete(truncated=bool(payload.get("truncated")))

        elif delta.type == DeltaType.USAGE:
            self._update_usage(turn, draft, payload)

        elif delta.type == DeltaType.DONE:
            draft.finish_reason = payload.get("finish_reason")
            draft.truncated = draft.truncated or bool(payload.get("truncated"))

        elif delta.type == DeltaType.ERROR:
            draft.truncated = draft.truncated or bool(payload.get("partial"))

    @staticmethod
    def _update_usage(turn: Turn, draft: AssistantDraft, payload: dict[str, Any]) -> None:
        """Providers report cumulative usage per call; the turn sums calls.

        Each counter only ever grows: a smaller report for the same call is
        ignored.
        """
        for key in ("input_tokens", "output_tokens"):
            reported = int(payload.get(key) or 0)
            previous = draft.usage.get(key, 0)
            if reported > previous:
                draft.usage[key] = reported
                turn.usage[key] = turn.usage.get(key, 0) + (reported - previous)

    async def checkpoint_draft(self, turn: Turn) -> Message:
        """Persist the draft of a model call that requested tools, and close it.

        The assistant message carrying the tool calls must precede their
        results on the active path.
        """
        self._ensure_open(turn)
        draft = turn.draft
        if draft is None:
            raise TurnStateError(f"Turn {turn.id} has no open assistant draft", turn_id=turn.id)
        message = self._draft_to_message(turn, draft, MessageStatus.COMPLETED)
        turn.draft = None
        await self.append_message(turn, message)
        return message

    async def append_message(self, turn: Turn, message: Message) -> Message:
        """Persist a message and extend the turn's active path with it."""
        self._ensure_open(turn)
        await self._store.append_async(message)
        turn.active_path.append(message)
        turn.messages_created.append(message)
        return message

    async def append_tool_result(self, turn: Turn, result: ToolResultBlock) -> Message:
        """Persist one tool result as a ``tool`` role message."""
        message = Message.create_tool_result_message(turn.conversation_id, result, parent_id=turn.leaf_id)
        return await self.append_message(turn, message)

    async def finalize_turn(
        self,
        turn: Turn,
        status: MessageStatus = MessageStatus.COMPLETED,
        error: dict[str, Any] | None = None,
        notice: str | None = None,
    ) -> Message | None:
        """Persist the draft as the turn's final assistant message.

        Runs exactly once per turn. Partial or errored turns persist whatever
        content exists; a turn without any draft content persists an empty
        marker message only when it carries an error or a notice.

        Raises:
            TurnStateError: When the turn was already finalized
        """
        if turn.finalized:
            raise TurnStateError(f"Turn {turn.id} already finalized", turn_id=turn.id)
        turn.finalized = True

        draft = turn.draft
        turn.draft = None
        if (draft is None or draft.is_empty) and error is None and notice is None:
            logger.debug(f"Turn {turn.id} finalized without a final assistant message")
            return None

        message = self._draft_to_message(turn, draft or AssistantDraft(), status, error=error, notice=notice)
        await self._store.append_async(message)
        turn.active_path.append(message)
        turn.messages_created.append(message)
        logger.debug(f"Turn {turn.id} finalized as {status.value} message {message.id}")
        return message

    def cancel(self, turn: Turn) -> bool:
        """Mark the turn cancelled.

        Returns:
            True if this call cancelled the turn
        """
        if turn.cancelled:
            return False
        turn.cancelled = True
        logger.info(f"Turn {turn.id} cancelled")
        return True

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _ensure_open(turn: Turn) -> None:
        if turn.finalized:
            raise TurnStateError(f"Turn {turn.id} is finalized", turn_id=turn.id)

    @staticmethod
    def _draft_to_message(
        turn: Turn,
        draft: AssistantDraft,
        status: MessageStatus,
        error: dict[str, Any] | None = None,
        notice: str | None = None,
    ) -> Message:
        content: list[Any] = []
        if draft.text:
            content.append(TextBlock(text=draft.text))
        if notice:
            content.append(TextBlock(text=notice if not draft.text else f"\n\n{notice}"))

        metadata: dict[str, Any] = {"turn_id": turn.id}
        incomplete: list[dict[str, Any]] = []
        invalid: dict[str, str] = {}
        for record in draft.ordered_tool_calls:
            if record.completed and not record.truncated:
                # Calls with unparseable arguments stay so their error result has a matching call
                content.append(record.to_block())
                if record.parse_error is not None:
                    invalid[record.call_id] = record.raw_arguments
            else:
                incomplete.append({"call_id": record.call_id, "name": record.name, "raw_arguments": record.raw_arguments})
        if incomplete:
            metadata["incomplete_tool_calls"] = incomplete
        if invalid:
            metadata["invalid_tool_arguments"] = invalid
        if draft.finish_reason:
            metadata["finish_reason"] = draft.finish_reason
        if error is not None:
            metadata["error"] = error
        if notice:
            metadata["notice"] = notice

        return Message.create(
            turn.conversation_id,
            MessageRole.ASSISTANT,
            content,
            parent_id=turn.leaf_id,
            status=status,
            usage=draft.usage,
            metadata=metadata,
        )
