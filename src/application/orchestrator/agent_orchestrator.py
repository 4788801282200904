"""Agent orchestrator: the bounded model/tool loop for one turn.

Flow:
    IDLE → MODEL_CALL → (TOOL_DISPATCH → MODEL_CALL)* → FINALIZING → DONE

Any unrecoverable error moves the turn to FAILED, a cancellation to
CANCELLED. Whatever the path, the turn ends with exactly one terminal
delta on the sink (``done``, or ``error`` which doubles as the cancellation
acknowledgment) and exactly one finalization of the turn record.

Terminal deltas of individual provider calls are consumed here; only the
turn-level terminal reaches the client.
"""

import asyncio
import logging
import time
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Protocol

from opentelemetry import trace

from application.services.cancellation import CancellationToken, run_cancellable
from application.services.conversation_state import ConversationStateManager
from application.services.retry_controller import FailoverTarget, RetryFailoverController
from application.tools import ToolRegistry
from domain.exceptions import GatewayError, OrchestratorError, OrchestratorErrorKind, ProviderError, ProviderErrorKind, ToolError, ToolErrorKind, TurnStateError
from domain.models import AttachmentRef, CanonicalDelta, CanonicalRequest, DeltaType, Message, MessageRole, MessageStatus, TextBlock, ToolCallRecord, ToolDescriptor, ToolResultBlock, Turn
from observability import turn_duration, turns_completed, turns_started

from .config import OrchestratorConfig, ToolDispatchMode, ToolTimeoutPolicy
from .state import TurnState, TurnStateMachine

log = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

BUDGET_NOTICE = "[Stopped: the tool-call budget for this turn is exhausted.]"
MODEL_CALL_NOTICE = "[Stopped: the model-call limit for this turn was reached.]"


class TurnEventSink(Protocol):
    """Where the orchestrator pushes client-visible events (a StreamMultiplexer)."""

    async def send_delta(self, delta: CanonicalDelta) -> None: ...

    async def send_message(self, message: Message) -> None: ...


@dataclass
class TurnOutcome:
    """Result of one turn.

    Attributes:
        state: Terminal state reached (DONE, FAILED or CANCELLED)
        turn: The turn record
        message: The final persisted assistant message, if any
        error: Serialized error for FAILED and CANCELLED turns
    """

    state: TurnState
    turn: Turn
    message: Message | None = None
    error: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == TurnState.DONE


class AgentOrchestrator:
    """Runs turns: model calls, tool dispatch, finalization."""

    def __init__(
        self,
        state_manager: ConversationStateManager,
        retry_controller: RetryFailoverController,
        tool_registry: ToolRegistry,
        config: OrchestratorConfig | None = None,
    ) -> None:
        self._state = state_manager
        self._retry = retry_controller
        self._tools = tool_registry
        self._config = config or OrchestratorConfig()

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run_turn(
        self,
        conversation_id: str,
        user_text: str,
        targets: list[FailoverTarget],
        sink: TurnEventSink,
        cancel_token: CancellationToken | None = None,
        parent_id: str | None = None,
        attachments: list[AttachmentRef] | None = None,
    ) -> TurnOutcome:
        """Run one user turn to a terminal state.

        Args:
            conversation_id: Conversation to extend
            user_text: The user's message
            targets: Provider credentials, primary first
            sink: Receives deltas and tool-result messages
            cancel_token: Cancels the turn cooperatively
            parent_id: Branch from this message instead of the active leaf
            attachments: Attachment references to include in the user message
        """
        token = cancel_token or CancellationToken()
        active_path = await self._load_active_path(conversation_id, parent_id)

        turn = self._state.begin_turn(conversation_id, active_path, self._config.max_tool_calls)
        machine = TurnStateMachine(turn.id)
        token.add_callback(lambda reason: self._state.cancel(turn))
        turns_started.add(1)
        started = time.monotonic()

        with tracer.start_as_current_span("agent_turn") as span:
            span.set_attribute("turn.id", turn.id)
            span.set_attribute("conversation.id", conversation_id)

            user_message = Message.create(
                conversation_id,
                MessageRole.USER,
                [TextBlock(text=user_text), *(attachments or [])],
                parent_id=turn.leaf_id,
            )
            error: GatewayError | None = None
            notice: str | None = None
            try:
                await self._state.append_message(turn, user_message)
                notice = await run_cancellable(self._run_loop_with_timeout(turn, machine, targets, sink, token), token)
            except GatewayError as e:
                error = e
            except asyncio.CancelledError:
                token.cancel("task_cancelled")
                await self._finish(turn, machine, sink, token, None, None)
                raise
            except Exception as e:
                log.exception(f"Unexpected error in turn {turn.id}")
                error = GatewayError(f"Internal error: {e}", error_code="internal_error")

            outcome = await self._finish(turn, machine, sink, token, error, notice)
            span.set_attribute("turn.state", outcome.state.value)
            span.set_attribute("turn.model_calls", turn.model_calls)

        turns_completed.add(1, {"state": outcome.state.value})
        turn_duration.record((time.monotonic() - started) * 1000, {"state": outcome.state.value})
        log.info(f"Turn {turn.id} ended in {outcome.state.value} after {turn.model_calls} model calls")
        return outcome

    async def _load_active_path(self, conversation_id: str, parent_id: str | None) -> list[Message]:
        """Switch to the requested branch and read the context of the new turn.

        Raises:
            GatewayError: error_code=message_not_found for an unknown parent,
                persistence_error when the store fails
        """
        store = self._state.store
        try:
            if parent_id is not None:
                await store.set_active_leaf_async(conversation_id, parent_id)
            return await store.read_active_path_async(conversation_id)
        except KeyError as e:
            raise GatewayError(f"Message {parent_id} not found in conversation {conversation_id}", error_code="message_not_found", details={"message_id": parent_id}) from e
        except Exception as e:
            log.exception(f"Failed to load conversation {conversation_id}")
            raise GatewayError(f"Failed to load conversation {conversation_id}: {e}", error_code="persistence_error") from e

    async def _run_loop_with_timeout(self, turn: Turn, machine: TurnStateMachine, targets: list[FailoverTarget], sink: TurnEventSink, token: CancellationToken) -> str | None:
        try:
            return await asyncio.wait_for(self._run_loop(turn, machine, targets, sink, token), timeout=self._config.turn_timeout)
        except asyncio.TimeoutError as e:
            raise OrchestratorError(f"Turn exceeded its {self._config.turn_timeout}s budget", kind=OrchestratorErrorKind.TURN_TIMEOUT) from e

    # =========================================================================
    # The loop
    # =========================================================================

    async def _run_loop(self, turn: Turn, machine: TurnStateMachine, targets: list[FailoverTarget], sink: TurnEventSink, token: CancellationToken) -> str | None:
        """Alternate model calls and tool dispatch until the model answers.

        Returns:
            A notice to append to the final message when a budget stopped the loop
        """
        machine.transition_to(TurnState.MODEL_CALL, "user_message")
        validation_failures = 0

        while True:
            token.raise_if_cancelled()
            tools = await self._tools.list_tools()
            request = self._build_request(turn, tools)
            draft = self._state.open_draft(turn)
            await self._stream_model_call(turn, request, targets, sink, token)

            if draft.truncated or any(not record.completed or record.truncated for record in draft.tool_calls.values()):
                raise OrchestratorError(
                    "Provider stream ended before the response was complete",
                    kind=OrchestratorErrorKind.TRUNCATED_STREAM,
                    details={"finish_reason": draft.finish_reason},
                )

            calls = draft.completed_tool_calls
            if not calls:
                machine.transition_to(TurnState.FINALIZING, "final_answer")
                return None

            await self._state.checkpoint_draft(turn)
            machine.transition_to(TurnState.TOOL_DISPATCH, f"{len(calls)} tool calls")
            validation_failures += await self._dispatch_tools(turn, calls, sink, token)

            if validation_failures > self._config.max_validation_failures:
                raise OrchestratorError(
                    f"Tool arguments failed validation {validation_failures} times",
                    kind=OrchestratorErrorKind.TOOL_VALIDATION,
                    details={"validation_failures": validation_failures},
                )
            if turn.remaining_tool_calls <= 0:
                machine.transition_to(TurnState.FINALIZING, "tool_budget_exhausted")
                return BUDGET_NOTICE
            if turn.model_calls >= self._config.max_model_calls:
                machine.transition_to(TurnState.FINALIZING, "model_call_limit")
                return MODEL_CALL_NOTICE
            machine.transition_to(TurnState.MODEL_CALL, "tool_results")

    async def _stream_model_call(self, turn: Turn, request: CanonicalRequest, targets: list[FailoverTarget], sink: TurnEventSink, token: CancellationToken) -> None:
        async with aclosing(self._retry.stream(request, targets, token, self._config.provider_timeout)) as deltas:
            async for delta in deltas:
                self._state.append_delta(turn, delta)
                if delta.type == DeltaType.ERROR:
                    raise self._error_from_delta(delta)
                if not delta.is_terminal:
                    await sink.send_delta(delta)

    @staticmethod
    def _error_from_delta(delta: CanonicalDelta) -> ProviderError:
        data = delta.payload.get("error") or {}
        try:
            kind = ProviderErrorKind(data.get("kind", ProviderErrorKind.FATAL.value))
        except ValueError:
            kind = ProviderErrorKind.FATAL
        return ProviderError(
            data.get("message", "Provider stream failed"),
            kind=kind,
            provider_id=data.get("provider_id"),
            status_code=data.get("status_code"),
            error_code=data.get("error_code"),
            details={**(data.get("details") or {}), "partial": bool(delta.payload.get("partial"))},
        )

    def _build_request(self, turn: Turn, tools: list[ToolDescriptor]) -> CanonicalRequest:
        return CanonicalRequest(
            messages=self._context_window(turn.active_path),
            tools=[descriptor.to_spec() for descriptor in tools],
            system_prompt=self._config.system_prompt,
            temperature=self._config.temperature,
            max_tokens=self._config.max_tokens,
        )

    def _context_window(self, path: list[Message]) -> list[Message]:
        """Keep system messages plus the most recent messages.

        The window never opens on a tool result whose calling assistant
        message was cut off.
        """
        limit = self._config.context_max_messages
        if len(path) <= limit:
            return list(path)
        start = len(path) - limit
        while start < len(path) - 1 and path[start].role == MessageRole.TOOL:
            start += 1
        pinned = [message for message in path[:start] if message.role == MessageRole.SYSTEM]
        return pinned + path[start:]

    # =========================================================================
    # Tool dispatch
    # =========================================================================

    async def _dispatch_tools(self, turn: Turn, calls: list[ToolCallRecord], sink: TurnEventSink, token: CancellationToken) -> int:
        """Invoke one phase of tool calls and append their results in call order.

        Returns:
            Number of validation failures in this phase

        Raises:
            ToolError: kind=timeout when a call exceeded its timeout (after all
                results of the phase are appended)
        """
        allowed = calls[: max(turn.remaining_tool_calls, 0)]
        turn.remaining_tool_calls -= len(allowed)
        results: dict[int, ToolResultBlock] = {}

        loop = asyncio.get_running_loop()
        deadline = None
        if self._config.tool_timeout_policy == ToolTimeoutPolicy.SHARED and self._config.tool_phase_timeout:
            deadline = loop.time() + self._config.tool_phase_timeout

        tasks: dict[int, asyncio.Task] = {}
        try:
            for index, record in enumerate(allowed):
                token.raise_if_cancelled()
                if record.parse_error is not None:
                    results[index] = self._error_block(record, ToolError(record.parse_error, kind=ToolErrorKind.VALIDATION, tool_name=record.name))
                    continue
                try:
                    descriptor = self._tools.resolve(record.name)
                except ToolError as e:
                    results[index] = self._error_block(record, e)
                    continue

                if tasks and (self._config.tool_dispatch_mode == ToolDispatchMode.SEQUENTIAL or descriptor.depends_on_prior):
                    await asyncio.gather(*tasks.values())
                tasks[index] = asyncio.create_task(self._invoke_tool(descriptor, record, deadline))

            if tasks:
                await asyncio.gather(*tasks.values())
            for index, task in tasks.items():
                results[index] = task.result()
        finally:
            unfinished = [task for task in tasks.values() if not task.done()]
            for task in unfinished:
                task.cancel()
            if unfinished:
                await asyncio.gather(*unfinished, return_exceptions=True)

        for index in range(len(allowed), len(calls)):
            record = calls[index]
            results[index] = ToolResultBlock(
                call_id=record.call_id,
                tool_name=record.name,
                is_error=True,
                error=OrchestratorError("Tool-call budget exhausted, call not executed", kind=OrchestratorErrorKind.BUDGET_EXHAUSTED).to_dict(),
            )

        validation_failures = 0
        timeout_error: dict[str, Any] | None = None
        for index in range(len(calls)):
            block = results[index]
            message = await self._state.append_tool_result(turn, block)
            await sink.send_message(message)
            if block.is_error and block.error:
                if block.error.get("kind") == ToolErrorKind.VALIDATION.value:
                    validation_failures += 1
                elif block.error.get("kind") == ToolErrorKind.TIMEOUT.value and timeout_error is None:
                    timeout_error = block.error

        if timeout_error is not None:
            raise ToolError(timeout_error.get("message", "Tool call timed out"), kind=ToolErrorKind.TIMEOUT, tool_name=timeout_error.get("tool_name"))
        return validation_failures

    async def _invoke_tool(self, descriptor: ToolDescriptor, record: ToolCallRecord, deadline: float | None) -> ToolResultBlock:
        if deadline is not None:
            timeout = deadline - asyncio.get_running_loop().time()
            if self._config.tool_call_timeout:
                timeout = min(timeout, self._config.tool_call_timeout)
            if timeout <= 0:
                return self._error_block(record, ToolError(f"Tool phase deadline passed before '{record.name}' started", kind=ToolErrorKind.TIMEOUT, tool_name=record.name))
        else:
            timeout = self._config.tool_call_timeout

        log.debug(f"Invoking tool '{record.name}' (call {record.call_id}, timeout {timeout})")
        try:
            result = await self._tools.invoke(descriptor, record.arguments or {}, timeout)
        except ToolError as e:
            log.warning(f"Tool '{record.name}' failed: {e}")
            return self._error_block(record, e)
        return ToolResultBlock(call_id=record.call_id, tool_name=record.name, content=result.content)

    @staticmethod
    def _error_block(record: ToolCallRecord, error: ToolError) -> ToolResultBlock:
        return ToolResultBlock(call_id=record.call_id, tool_name=record.name, is_error=True, error=error.to_dict())

    # =========================================================================
    # Terminal handling
    # =========================================================================

    async def _finish(
        self,
        turn: Turn,
        machine: TurnStateMachine,
        sink: TurnEventSink,
        token: CancellationToken,
        error: GatewayError | None,
        notice: str | None,
    ) -> TurnOutcome:
        """Finalize the turn record and emit the single terminal delta."""
        partial = turn.draft is not None and not turn.draft.is_empty

        if token.is_cancelled or (isinstance(error, OrchestratorError) and error.kind == OrchestratorErrorKind.CANCELLED):
            error = OrchestratorError(f"Turn cancelled: {token.reason or 'cancelled'}", kind=OrchestratorErrorKind.CANCELLED, details={"reason": token.reason})
            target_state, status = TurnState.CANCELLED, MessageStatus.PARTIAL
        elif error is not None:
            target_state, status = TurnState.FAILED, MessageStatus.ERROR
        elif notice is not None and not turn.has_usable_output:
            error = OrchestratorError("Budget exhausted without usable output", kind=OrchestratorErrorKind.BUDGET_EXHAUSTED)
            target_state, status = TurnState.FAILED, MessageStatus.ERROR
        else:
            target_state, status = TurnState.DONE, MessageStatus.COMPLETED

        if target_state != TurnState.DONE:
            machine.transition_to(target_state, error.error_code if error else None)

        error_dict = error.to_dict() if error is not None else None
        message: Message | None = None
        try:
            message = await self._state.finalize_turn(turn, status=status, error=error_dict, notice=notice)
        except TurnStateError:
            raise
        except Exception as e:
            log.exception(f"Failed to persist final message of turn {turn.id}")
            error_dict = error_dict or GatewayError(f"Failed to persist final message: {e}", error_code="persistence_error").to_dict()

        if target_state == TurnState.DONE:
            if error_dict is not None:
                machine.transition_to(TurnState.FAILED, "persistence_error")
                target_state = TurnState.FAILED
                await sink.send_delta(CanonicalDelta.error(error_dict, partial=partial))
            else:
                await sink.send_delta(CanonicalDelta.done(finish_reason="budget_exhausted" if notice else "stop"))
                machine.transition_to(TurnState.DONE, "finalized")
        else:
            await sink.send_delta(CanonicalDelta.error(error_dict or {}, partial=partial))

        return TurnOutcome(state=target_state, turn=turn, message=message, error=error_dict)
