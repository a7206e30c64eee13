from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from tessera.logging import get_logger
from tessera.service.connection import CloseHandler
from tessera.storage.models import Auth

logger = get_logger(__name__)


class WebSocketConnection:
    """Console client backed by an accepted FastAPI WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.auth: Optional[Auth] = None
        self.closed = False
        self._close_handlers: List[CloseHandler] = []

    @property
    def headers(self) -> Mapping[str, str]:
        return dict(self.websocket.headers)

    @property
    def remote_address(self) -> Optional[str]:
        client = self.websocket.client
        return client.host if client else None

    async def send(self, event: Dict[str, Any]) -> None:
        if self.closed or self.websocket.application_state != WebSocketState.CONNECTED:
            logger.debug("console_send_skipped", event_type=event.get("type"))
            return
        await self.websocket.send_json(event)

    def on_close(self, callback: CloseHandler) -> None:
        self._close_handlers.append(callback)

    def remove_close_handler(self, callback: CloseHandler) -> None:
        if callback in self._close_handlers:
            self._close_handlers.remove(callback)

    def close(self) -> None:
        """Mark the connection closed and run its close handlers once."""
        if self.closed:
            return
        self.closed = True
        handlers, self._close_handlers = self._close_handlers, []
        for handler in handlers:
            handler()
