"""FastAPI dependencies bridging FastAPI and the Neuroglia DI container.

REST controllers resolve services through ``self.service_provider``; the
websocket endpoint is a plain router function, so it reads the service
provider from the application state instead.
"""

from fastapi import HTTPException, Request, WebSocket, status

from application.services.chat_service import ChatService


def get_chat_service(request: Request) -> ChatService:
    """Get ChatService from the DI container attached to the app state.

    Raises:
        HTTPException: 503 if the service provider is not configured
    """
    service_provider = getattr(request.app.state, "services", None)
    if service_provider is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service provider not configured")
    return service_provider.get_required_service(ChatService)


def get_ws_chat_service(websocket: WebSocket) -> ChatService | None:
    """Get ChatService for a websocket connection (None if unavailable)."""
    service_provider = getattr(websocket.app.state, "services", None)
    if service_provider is None:
        return None
    return service_provider.get_service(ChatService)
