"""Chat service: entry point for client turns.

Wires the pieces of a turn together:
- serializes turns per conversation (TurnCoordinator)
- resolves provider failover targets (ProviderRegistry)
- runs the agent loop (AgentOrchestrator) in a background task
- streams its events to the client through a StreamMultiplexer

The HTTP and websocket controllers only start turns, forward frames and
translate client disconnects into cancellation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from application.orchestrator import AgentOrchestrator, OrchestratorConfig, TurnOutcome
from application.streaming import StreamMultiplexer
from application.tools import ToolRegistry
from domain.exceptions import GatewayError
from domain.models import AttachmentRef, CanonicalDelta, Message, ToolDescriptor
from domain.repositories import MessageStore

from .cancellation import CancellationToken
from .conversation_state import ConversationStateManager
from .retry_controller import RetryFailoverController, RetryPolicy
from .turn_coordinator import TurnConflictPolicy, TurnCoordinator

if TYPE_CHECKING:
    from neuroglia.hosting.abstractions import ApplicationBuilderBase

    from infrastructure.provider_registry import ProviderRegistry

logger = logging.getLogger(__name__)


class MessageNotFoundError(GatewayError):
    """Raised when a turn branches from a message that is not in the conversation."""

    def __init__(self, conversation_id: str, message_id: str) -> None:
        super().__init__(
            f"Message {message_id} not found in conversation {conversation_id}",
            error_code="message_not_found",
            details={"conversation_id": conversation_id, "message_id": message_id},
        )


@dataclass
class TurnHandle:
    """A started turn: its stream, its cancellation token and its task."""

    conversation_id: str
    token: CancellationToken
    stream: StreamMultiplexer
    task: "asyncio.Task[TurnOutcome | None]"


class ChatService:
    """Starts, streams and cancels turns."""

    def __init__(
        self,
        store: MessageStore,
        tool_registry: ToolRegistry,
        provider_registry: "ProviderRegistry",
        orchestrator_config: OrchestratorConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        coordinator: TurnCoordinator | None = None,
        stream_queue_size: int = 256,
        heartbeat_interval: float = 15.0,
    ) -> None:
        self._store = store
        self._tools = tool_registry
        self._providers = provider_registry
        self._coordinator = coordinator or TurnCoordinator()
        self._state = ConversationStateManager(store)
        self._orchestrator = AgentOrchestrator(
            state_manager=self._state,
            retry_controller=RetryFailoverController(retry_policy),
            tool_registry=tool_registry,
            config=orchestrator_config,
        )
        self._stream_queue_size = stream_queue_size
        self._heartbeat_interval = heartbeat_interval
        self._tasks: set[asyncio.Task] = set()

    @property
    def orchestrator(self) -> AgentOrchestrator:
        return self._orchestrator

    @property
    def coordinator(self) -> TurnCoordinator:
        return self._coordinator

    def create_stream(self, token: CancellationToken) -> StreamMultiplexer:
        """A multiplexer whose disconnect cancels the turn behind ``token``."""
        return StreamMultiplexer(
            max_queue_size=self._stream_queue_size,
            heartbeat_interval=self._heartbeat_interval,
            on_disconnect=token.cancel,
        )

    async def start_turn(
        self,
        conversation_id: str,
        user_text: str,
        model: str | None = None,
        parent_id: str | None = None,
        attachments: list[AttachmentRef] | None = None,
    ) -> TurnHandle:
        """Validate the request and run the turn in a background task.

        Raises:
            MessageNotFoundError: If ``parent_id`` is not a message of the conversation
        """
        if parent_id is not None:
            parent = await self._store.get_async(parent_id)
            if parent is None or parent.conversation_id != conversation_id:
                raise MessageNotFoundError(conversation_id, parent_id)

        token = CancellationToken()
        stream = self.create_stream(token)
        task = asyncio.create_task(self.run_turn(conversation_id, user_text, stream, token, model=model, parent_id=parent_id, attachments=attachments))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(f"💬 Started turn for conversation {conversation_id}")
        return TurnHandle(conversation_id=conversation_id, token=token, stream=stream, task=task)

    async def run_turn(
        self,
        conversation_id: str,
        user_text: str,
        stream: StreamMultiplexer,
        token: CancellationToken,
        model: str | None = None,
        parent_id: str | None = None,
        attachments: list[AttachmentRef] | None = None,
    ) -> TurnOutcome | None:
        """Run one turn once the conversation is free.

        Errors raised before the agent loop starts (no provider configured,
        conversation busy, cancelled while waiting) still end the stream
        with a single terminal error.

        Returns:
            The turn outcome, or None when the turn never started
        """
        try:
            targets = self._providers.resolve_targets(model)
            async with self._coordinator.acquire(conversation_id, token):
                token.raise_if_cancelled()
                return await self._orchestrator.run_turn(
                    conversation_id,
                    user_text,
                    targets,
                    stream,
                    cancel_token=token,
                    parent_id=parent_id,
                    attachments=attachments,
                )
        except GatewayError as e:
            logger.warning(f"Turn for conversation {conversation_id} did not start: {e}")
            if not stream.terminal_sent:
                await stream.send_delta(CanonicalDelta.error(e.to_dict()))
            return None
        except Exception as e:
            logger.exception(f"Turn for conversation {conversation_id} crashed")
            if not stream.terminal_sent:
                await stream.send_delta(CanonicalDelta.error(GatewayError(f"Internal error: {e}", error_code="internal_error").to_dict()))
            return None

    def cancel(self, conversation_id: str, reason: str = "cancelled_by_client") -> bool:
        """Cancel the running turn of a conversation, if any."""
        return self._coordinator.cancel(conversation_id, reason)

    async def get_active_path(self, conversation_id: str) -> list[Message]:
        return await self._store.read_active_path_async(conversation_id)

    async def set_active_leaf(self, conversation_id: str, message_id: str) -> list[Message]:
        """Switch the conversation to another branch and return its path.

        Raises:
            MessageNotFoundError: If the message is not part of the conversation
        """
        try:
            await self._store.set_active_leaf_async(conversation_id, message_id)
        except KeyError as e:
            raise MessageNotFoundError(conversation_id, message_id) from e
        return await self._store.read_active_path_async(conversation_id)

    async def list_tools(self) -> list[ToolDescriptor]:
        return await self._tools.list_tools()

    async def close(self) -> None:
        """Cancel running turns and release provider and tool connections."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._providers.close()
        await self._tools.close()

    # =========================================================================
    # Service Configuration (Neuroglia Pattern)
    # =========================================================================

    @staticmethod
    def configure(builder: "ApplicationBuilderBase") -> None:
        """Register ChatService as a singleton.

        Depends on the MessageStore, ToolRegistry and ProviderRegistry
        singletons; configure those first.
        """
        from application.settings import app_settings
        from infrastructure.provider_registry import ProviderRegistry

        logger.info("🔧 Configuring ChatService...")
        builder.services.add_singleton(
            ChatService,
            implementation_factory=lambda sp: ChatService(
                store=sp.get_required_service(MessageStore),
                tool_registry=sp.get_required_service(ToolRegistry),
                provider_registry=sp.get_required_service(ProviderRegistry),
                orchestrator_config=OrchestratorConfig.from_settings(app_settings),
                retry_policy=RetryPolicy(
                    max_attempts=app_settings.retry_max_attempts,
                    initial_delay=app_settings.retry_initial_delay,
                    multiplier=app_settings.retry_multiplier,
                    max_delay=app_settings.retry_max_delay,
                    jitter_ratio=app_settings.retry_jitter_ratio,
                    default_cooldown=app_settings.rate_limit_default_cooldown,
                ),
                coordinator=TurnCoordinator(
                    policy=TurnConflictPolicy(app_settings.turn_conflict_policy),
                    wait_timeout=app_settings.turn_wait_timeout_seconds or None,
                ),
                stream_queue_size=app_settings.stream_queue_size,
                heartbeat_interval=app_settings.stream_heartbeat_seconds,
            ),
        )
        logger.info("✅ ChatService configured")
