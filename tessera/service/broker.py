from __future__ import annotations

from typing import Any, Dict, Optional

from tessera.logging import get_logger
from tessera.service.connection import Connection
from tessera.service.tokens import TokenLedger
from tessera.storage.common import Store
from tessera.storage.models import Auth, Binding

logger = get_logger(__name__)


def user_event(value: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "data", "body": {"key": "user", "value": value}}


class SessionBroker:
    """Owns the authenticated state of console connections."""

    def __init__(self, store: Store, tokens: TokenLedger) -> None:
        self.store = store
        self.tokens = tokens

    async def snapshot(self, auth: Auth) -> Dict[str, Any]:
        rows = await self.store.get("binding", {"aid": auth.id})
        bindings = [Binding.from_row(row).redacted() for row in rows]
        tokens = await self.tokens.list_for_account(auth.id)
        return {**auth.to_dict(), "bindings": bindings, "tokens": tokens}

    async def set_auth(self, connection: Connection, auth: Optional[Auth]) -> None:
        """Push the session snapshot for ``auth`` (or ``None``) and store it on the connection."""
        if auth is None:
            await connection.send(user_event(None))
        else:
            await connection.send(user_event(await self.snapshot(auth)))
        connection.auth = auth
        logger.debug("session_pushed", account_id=auth.id if auth else None)

    async def refresh(self, connection: Connection) -> None:
        await self.set_auth(connection, connection.auth)
