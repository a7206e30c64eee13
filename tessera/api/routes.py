from __future__ import annotations

import inspect
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError as PydanticValidationError

from tessera.api.connection import WebSocketConnection
from tessera.api.schemas import ConsoleFrame, Envelope, MessageRequest, MessageResponse
from tessera.logging import get_logger, set_correlation_id
from tessera.service.errors import ServiceError, ValidationError
from tessera.service.runtime import Runtime, get_runtime
from tessera.storage.errors import ConstraintViolation

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

Handler = Callable[..., Awaitable[Any]]


@dataclass
class ConsoleListener:
    name: str
    handler: Handler
    authority: Optional[int] = None


def _reply(call_id: Any, *, value: Any = None, error: Optional[str] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"id": call_id}
    if error is not None:
        body["error"] = error
    else:
        body["value"] = value
    return {"type": "response", "body": body}


def _int_arg(value: Any) -> int:
    if isinstance(value, bool):
        raise ValidationError("invalid arguments")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError("invalid arguments") from None


class ConsoleRouter:
    """Named console operations reachable over the console WebSocket.

    Handlers are called as ``handler(runtime, connection, *args)``. A listener
    registered with an ``authority`` is only dispatched once the access
    interceptor has admitted the connection.
    """

    def __init__(self) -> None:
        self.listeners: Dict[str, ConsoleListener] = {}

    def add_listener(self, name: str, handler: Handler, authority: Optional[int] = None) -> None:
        if name in self.listeners:
            logger.warning("console_listener_replaced", name=name)
        self.listeners[name] = ConsoleListener(name=name, handler=handler, authority=authority)

    def remove_listener(self, name: str) -> None:
        self.listeners.pop(name, None)

    def listener(self, name: str, authority: Optional[int] = None):
        def decorator(handler: Handler) -> Handler:
            self.add_listener(name, handler, authority)
            return handler

        return decorator

    async def dispatch(
        self, runtime: Runtime, connection: WebSocketConnection, raw: Any
    ) -> Dict[str, Any]:
        try:
            frame = ConsoleFrame.model_validate(raw)
        except PydanticValidationError:
            call_id = raw.get("id") if isinstance(raw, dict) else None
            return _reply(call_id, error="invalid request")

        listener = self.listeners.get(frame.type)
        if listener is None:
            return _reply(frame.id, error=f"unknown operation: {frame.type}")
        try:
            inspect.signature(listener.handler).bind(runtime, connection, *frame.args)
        except TypeError:
            return _reply(frame.id, error="invalid arguments")

        try:
            await runtime.interceptor.check(connection, listener.authority)
            value = await listener.handler(runtime, connection, *frame.args)
        except ServiceError as exc:
            logger.info("console_call_failed", type=frame.type, error_code=exc.error_code)
            return _reply(frame.id, error=exc.message)
        except ConstraintViolation as exc:
            logger.warning("constraint_violation", type=frame.type, message=exc.message)
            return _reply(frame.id, error=exc.message)
        except Exception as exc:
            logger.error(
                "console_call_crashed",
                type=frame.type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return _reply(frame.id, error="internal error")
        return _reply(frame.id, value=value)


console = ConsoleRouter()


@console.listener("login/password")
async def login_password(runtime: Runtime, connection: WebSocketConnection, name: str, password: str):
    await runtime.auth.login_with_password(connection, name, password)


@console.listener("login/token")
async def login_token(runtime: Runtime, connection: WebSocketConnection, account_id: int, secret: str):
    await runtime.auth.login_with_token(connection, _int_arg(account_id), secret)


@console.listener("login/platform")
async def login_platform(runtime: Runtime, connection: WebSocketConnection, platform: str, pid: str):
    return await runtime.auth.request_platform_link(connection, platform, str(pid))


@console.listener("user/delete-token")
async def delete_token(runtime: Runtime, connection: WebSocketConnection, serial: int):
    await runtime.auth.delete_token(connection, _int_arg(serial))


@console.listener("user/unbind")
async def unbind(runtime: Runtime, connection: WebSocketConnection, platform: str, pid: str):
    await runtime.auth.unbind(connection, platform, str(pid))


@console.listener("user/update")
async def update(runtime: Runtime, connection: WebSocketConnection, patch: Dict[str, Any]):
    await runtime.auth.update_profile(connection, dict(patch or {}))


@console.listener("user/logout")
async def logout(runtime: Runtime, connection: WebSocketConnection):
    await runtime.auth.logout(connection)


@router.websocket("/console")
async def console_socket(ws: WebSocket):
    """Serve console calls for one client, one call at a time."""
    runtime = get_runtime()
    await ws.accept()
    correlation_id = set_correlation_id(ws.headers.get("x-request-id"))
    connection = WebSocketConnection(ws)
    logger.info("console_connected", correlation_id=correlation_id, client=connection.remote_address)
    try:
        while True:
            raw = await ws.receive_json()
            reply = await console.dispatch(runtime, connection, raw)
            await connection.send(reply)
    except WebSocketDisconnect:
        logger.info("console_disconnected", client=connection.remote_address)
    except json.JSONDecodeError:
        logger.warning("websocket_invalid_json", client=connection.remote_address)
        await ws.close(code=1003)
    finally:
        connection.close()


@router.post("/messages", response_model=Envelope)
async def deliver_message(body: MessageRequest):
    runtime = get_runtime()
    matched = await runtime.auth.handle_message(body.platform, body.pid, body.content, body.name)
    return Envelope(status="ok", data=MessageResponse(matched=matched))
