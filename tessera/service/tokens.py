from __future__ import annotations

import hashlib
import secrets
import string
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from tessera.logging import get_logger
from tessera.service.errors import AccountNotFound, TokenExpired, TokenNotFound
from tessera.storage.common import Store
from tessera.storage.models import (
    Account,
    LoginStrategy,
    LoginToken,
    epoch_ms,
    utcnow,
)

SECRET_ALPHABET = string.digits + string.ascii_lowercase + string.ascii_uppercase
SECRET_LENGTH = 40


def random_id(length: int = SECRET_LENGTH) -> str:
    return "".join(secrets.choice(SECRET_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    """SHA-256 hex digest used for stored account passwords."""
    return hashlib.sha256(password.encode("utf-8")).hexdigest()


@dataclass
class RequestMeta:
    """Client details recorded alongside an issued token."""

    client_agent: Optional[str] = None
    client_address: Optional[str] = None

    @classmethod
    def from_headers(
        cls, headers: Mapping[str, str], remote_address: Optional[str] = None
    ) -> "RequestMeta":
        lowered = {key.lower(): value for key, value in headers.items()}
        forwarded = lowered.get("x-forwarded-for")
        return cls(
            client_agent=lowered.get("user-agent"),
            client_address=forwarded or remote_address,
        )


class TokenLedger:
    """Issues, validates and revokes persisted session tokens."""

    def __init__(
        self,
        store: Store,
        *,
        auth_token_expire: int,
        clock: Callable[[], int] = epoch_ms,
    ) -> None:
        self.store = store
        self.auth_token_expire = auth_token_expire
        self.clock = clock
        self.logger = get_logger(__name__)

    async def issue(
        self,
        account: Account,
        strategy: LoginStrategy,
        meta: Optional[RequestMeta] = None,
    ) -> LoginToken:
        """Persist a fresh token for ``account``.

        Secret uniqueness is enforced by the store's unique key; a collision
        surfaces as ``ConstraintViolation``.
        """
        meta = meta or RequestMeta()
        now = utcnow()
        row = await self.store.create(
            "token",
            {
                "account_id": account.id,
                "strategy": strategy.value,
                "secret": random_id(),
                "expires_at": self.clock() + self.auth_token_expire,
                "created_at": now,
                "last_used_at": now,
                "client_agent": meta.client_agent,
                "client_address": meta.client_address,
            },
        )
        token = LoginToken.from_row(row)
        self.logger.info(
            "token_issued",
            account_id=account.id,
            serial=token.serial,
            strategy=strategy.value,
            expires_at=token.expires_at,
        )
        return token

    async def validate(self, account_id: int, secret: str) -> Tuple[Account, LoginToken]:
        rows = await self.store.get("token", {"account_id": account_id, "secret": secret})
        if not rows:
            self.logger.info("token_validation_failed", account_id=account_id, reason="not_found")
            raise TokenNotFound()
        token = LoginToken.from_row(rows[0])
        if token.is_expired(self.clock()):
            self.logger.info(
                "token_validation_failed", account_id=account_id, serial=token.serial, reason="expired"
            )
            raise TokenExpired()
        accounts = await self.store.get("account", {"id": account_id}, ["id", "name", "authority"])
        if not accounts:
            raise AccountNotFound()
        token.last_used_at = utcnow()
        await self.store.set("token", {"secret": secret}, {"last_used_at": token.last_used_at})
        return Account.from_row(accounts[0]), token

    async def get(self, account_id: int, serial: int) -> Optional[LoginToken]:
        rows = await self.store.get("token", {"account_id": account_id, "serial": serial})
        return LoginToken.from_row(rows[0]) if rows else None

    async def revoke(self, serial: int) -> int:
        removed = await self.store.remove("token", {"serial": serial})
        if removed:
            self.logger.info("token_revoked", serial=serial)
        return removed

    async def revoke_by_secret(self, secret: str) -> int:
        removed = await self.store.remove("token", {"secret": secret})
        if removed:
            self.logger.info("token_revoked_by_secret", count=removed)
        return removed

    async def touch(self, secret: str) -> None:
        await self.store.set("token", {"secret": secret}, {"last_used_at": utcnow()})

    async def list_for_account(self, account_id: int) -> List[Dict[str, Any]]:
        rows = await self.store.get("token", {"account_id": account_id})
        tokens = sorted(
            (LoginToken.from_row(row) for row in rows),
            key=lambda token: token.serial,
            reverse=True,
        )
        return [token.redacted() for token in tokens]
