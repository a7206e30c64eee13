from __future__ import annotations

from typing import Callable, Optional

from tessera.logging import get_logger
from tessera.service.connection import Connection
from tessera.service.errors import Forbidden
from tessera.service.tokens import TokenLedger
from tessera.storage.models import epoch_ms

logger = get_logger(__name__)


class AccessInterceptor:
    """Gate in front of console operations tagged with a minimum authority."""

    def __init__(self, tokens: TokenLedger, *, clock: Callable[[], int] = epoch_ms) -> None:
        self.tokens = tokens
        self.clock = clock

    async def allows(self, connection: Connection, authority: Optional[int]) -> bool:
        if not authority:
            return True
        auth = connection.auth
        if auth is None:
            logger.info("access_denied", reason="unauthenticated", required=authority)
            return False
        # expired sessions are refused but left in place
        if auth.expire <= self.clock():
            logger.info("access_denied", reason="expired", account_id=auth.id, required=authority)
            return False
        if auth.authority < authority:
            logger.info(
                "access_denied",
                reason="authority",
                account_id=auth.id,
                authority=auth.authority,
                required=authority,
            )
            return False
        await self.tokens.touch(auth.token)
        return True

    async def check(self, connection: Connection, authority: Optional[int]) -> None:
        if not await self.allows(connection, authority):
            raise Forbidden()
