"""Agent Gateway main application entry point with Neuroglia framework."""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from neuroglia.hosting.web import SubAppConfig, WebApplicationBuilder
from neuroglia.mapping import Mapper
from neuroglia.mediation import Mediator
from neuroglia.observability import Observability

from api.controllers.websocket_controller import WebSocketController
from application.services.chat_service import ChatService
from application.settings import app_settings, configure_logging
from application.tools import ToolRegistry
from domain.repositories import MessageStore
from infrastructure.provider_registry import ProviderRegistry
from integration.repositories import InMemoryMessageStore, MotorMessageStore

configure_logging(log_level=app_settings.log_level)
log = logging.getLogger(__name__)


def create_app() -> FastAPI:
    """Create and configure the Agent Gateway application.

    Creates the API sub-app (/api prefix) with:
    - chat streaming (SSE and websocket) and cancellation
    - conversation history
    - the tool catalogue

    Returns:
        Configured FastAPI application with Neuroglia framework
    """
    log.debug("🚀 Creating Agent Gateway application...")

    builder = WebApplicationBuilder(app_settings=app_settings)

    # Configure core Neuroglia services
    Mediator.configure(builder, ["application.queries"])
    Mapper.configure(builder, ["application.queries"])
    Observability.configure(builder)

    # Configure gateway services (order matters - dependencies resolved from DI)
    _configure_persistence(builder)
    ProviderRegistry.configure(builder)
    ToolRegistry.configure(builder)
    ChatService.configure(builder)  # depends on MessageStore, ProviderRegistry, ToolRegistry

    def api_sub_app_setup(app: FastAPI, settings) -> None:
        """Mount the websocket router (raw APIRouter, not a controller)."""
        app.include_router(WebSocketController.router)

    builder.add_sub_app(
        SubAppConfig(
            path="/api",
            name="api",
            title=f"{app_settings.app_name} API",
            description="Multi-provider agent gateway: streaming chat with tool use",
            version=app_settings.app_version,
            controllers=["api.controllers"],
            custom_setup=api_sub_app_setup,
            docs_url="/docs",
        )
    )

    # Build the application
    app = builder.build_app_with_lifespan(
        title="Agent Gateway",
        description="Streams model turns from several providers with retry, failover and tool use",
        version=app_settings.app_version,
        debug=app_settings.debug,
    )

    if app_settings.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=app_settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.on_event("startup")
    async def ensure_message_indexes() -> None:
        store = app.state.services.get_required_service(MessageStore)
        if isinstance(store, MotorMessageStore):
            await store.ensure_indexes_async()

    @app.on_event("shutdown")
    async def shutdown_chat_service() -> None:
        """Cancel running turns and close provider and tool server connections."""
        log.info("🛑 Shutting down chat service...")
        await app.state.services.get_required_service(ChatService).close()
        log.info("✅ Chat service closed")

    log.info("✅ Agent Gateway application created successfully!")
    log.info("📊 Access points:")
    log.info(f"   - API Docs: http://localhost:{app_settings.app_port}/api/docs")
    log.info(f"   - Chat stream: POST http://localhost:{app_settings.app_port}/api/chat/stream")
    return app


def _configure_persistence(builder: WebApplicationBuilder) -> None:
    """Register the MessageStore selected by ``persistence_backend``.

    Args:
        builder: The WebApplicationBuilder
    """
    log.info(f"🔧 Configuring message store ({app_settings.persistence_backend})...")
    store: MessageStore
    if app_settings.persistence_backend == "mongo":
        store = MotorMessageStore.from_connection_string(app_settings.connection_strings["mongo"], app_settings.database_name)
    else:
        store = InMemoryMessageStore()
    builder.services.add_singleton(MessageStore, singleton=store)
    log.info("✅ Message store configured")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:create_app",
        factory=True,
        host=app_settings.app_host,
        port=app_settings.app_port,
        reload=app_settings.debug,
        timeout_graceful_shutdown=5,  # Force-close SSE streams after 5s on reload/shutdown
    )
