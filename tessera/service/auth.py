from __future__ import annotations

from typing import Any, Dict, Optional

from tessera.logging import get_logger
from tessera.service.bindings import BindingReconciler
from tessera.service.broker import SessionBroker
from tessera.service.connection import Connection
from tessera.service.errors import (
    AccountNotFound,
    AlreadyLinked,
    InvalidCredentials,
    TokenNotFound,
    Unauthenticated,
    ValidationError,
)
from tessera.service.pairing import PairingChallenge, PairingRegistry
from tessera.service.tokens import RequestMeta, TokenLedger, hash_password
from tessera.storage.common import Store
from tessera.storage.models import DEFAULT_AUTHORITY, Account, Auth, Binding, LoginStrategy

logger = get_logger(__name__)

ADMIN_ID = 0
ADMIN_AUTHORITY = 5

UPDATABLE_FIELDS = frozenset({"name", "password"})


def _request_meta(connection: Connection) -> RequestMeta:
    return RequestMeta.from_headers(connection.headers, connection.remote_address)


class AuthService:
    """Console login strategies, platform linking and profile management."""

    def __init__(
        self,
        store: Store,
        *,
        tokens: TokenLedger,
        pairing: PairingRegistry,
        broker: SessionBroker,
        bindings: BindingReconciler,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.pairing = pairing
        self.broker = broker
        self.bindings = bindings
        self.logger = logger

    async def bootstrap_admin(self, username: str, password: str) -> Account:
        account = Account(
            id=ADMIN_ID,
            name=username,
            authority=ADMIN_AUTHORITY,
            password=hash_password(password),
        )
        await self.store.upsert(
            "account",
            [
                {
                    "id": account.id,
                    "name": account.name,
                    "authority": account.authority,
                    "password": account.password,
                }
            ],
        )
        self.logger.info("admin_bootstrapped", account_id=account.id, name=username)
        return account

    async def get_account(self, account_id: int) -> Optional[Account]:
        rows = await self.store.get("account", {"id": account_id})
        return Account.from_row(rows[0]) if rows else None

    async def _start_session(
        self, connection: Connection, account: Account, strategy: LoginStrategy
    ) -> Auth:
        token = await self.tokens.issue(account, strategy, _request_meta(connection))
        auth = Auth.for_token(account, token)
        await self.broker.set_auth(connection, auth)
        return auth

    async def login_with_password(self, connection: Connection, name: str, password: str) -> Auth:
        digest = hash_password(password)
        rows = await self.store.get("account", {"name": name})
        account = next(
            (Account.from_row(row) for row in rows if row.get("password") == digest), None
        )
        if account is None:
            self.logger.info("password_login_failed", name=name)
            raise InvalidCredentials()
        return await self._start_session(connection, account, LoginStrategy.PASSWORD)

    async def login_with_token(self, connection: Connection, account_id: int, secret: str) -> Auth:
        """Resume a session from a previously issued token."""
        account, token = await self.tokens.validate(account_id, secret)
        auth = Auth.for_token(account, token)
        await self.broker.set_auth(connection, auth)
        self.logger.info("token_login", account_id=account.id, serial=token.serial)
        return auth

    async def request_platform_link(
        self, connection: Connection, platform: str, pid: str
    ) -> Dict[str, Any]:
        rows = await self.store.get("binding", {"platform": platform, "pid": pid})
        account: Optional[Account] = None
        if rows:
            binding = Binding.from_row(rows[0])
            if connection.auth is not None and connection.auth.id == binding.aid:
                raise AlreadyLinked()
            account = await self.get_account(binding.aid)
        challenge = self.pairing.request(platform, pid, connection)
        return {
            "id": account.id if account else None,
            "name": account.name if account else None,
            "code": challenge.code,
            "expires_at": challenge.expires_at,
        }

    async def handle_message(
        self, platform: str, pid: str, content: str, name: Optional[str] = None
    ) -> bool:
        """Match an inbound chat message against pending pairing codes.

        Returns False when the message is not a pairing reply, leaving it for
        the rest of the message pipeline.
        """
        challenge = self.pairing.match(platform, pid, content)
        if challenge is None:
            return False
        await self._complete_pairing(challenge, name)
        return True

    async def _complete_pairing(self, challenge: PairingChallenge, name: Optional[str]) -> None:
        connection = challenge.connection
        if connection.auth is not None:
            await self.bindings.bind(connection.auth.id, challenge.platform, challenge.pid)
            await self.broker.set_auth(connection, connection.auth)
            return
        account = await self._observe_account(challenge.platform, challenge.pid, name)
        await self._start_session(connection, account, LoginStrategy.PLATFORM)

    async def _observe_account(self, platform: str, pid: str, name: Optional[str]) -> Account:
        rows = await self.store.get("binding", {"platform": platform, "pid": pid})
        if rows:
            account = await self.get_account(Binding.from_row(rows[0]).aid)
            if account is None:
                raise AccountNotFound()
            return account
        row = await self.store.create(
            "account", {"name": name or pid, "authority": DEFAULT_AUTHORITY}
        )
        account = Account.from_row(row)
        await self.store.create(
            "binding", {"platform": platform, "pid": pid, "aid": account.id, "bid": account.id}
        )
        self.logger.info("account_created", account_id=account.id, platform=platform)
        return account

    async def delete_token(self, connection: Connection, serial: int) -> None:
        auth = self._require_auth(connection)
        if await self.tokens.get(auth.id, serial) is None:
            raise TokenNotFound()
        await self.tokens.revoke(serial)
        await self.broker.refresh(connection)

    async def unbind(self, connection: Connection, platform: str, pid: str) -> None:
        auth = self._require_auth(connection)
        await self.bindings.unbind(auth.id, platform, pid)
        await self.broker.refresh(connection)

    async def update_profile(self, connection: Connection, patch: Dict[str, Any]) -> None:
        auth = self._require_auth(connection)
        unknown = sorted(set(patch) - UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"cannot update fields: {', '.join(unknown)}")
        data = {key: value for key, value in patch.items() if value is not None}
        # An empty password is stored as-is; no digest matches it, so password login is disabled.
        if data.get("password"):
            data["password"] = hash_password(str(data["password"]))
        if data:
            await self.store.set("account", {"id": auth.id}, data)
        if "name" in data:
            auth.name = data["name"]
        self.logger.info("profile_updated", account_id=auth.id, fields=sorted(data))
        await self.broker.refresh(connection)

    async def logout(self, connection: Connection) -> None:
        if connection.auth is not None:
            await self.tokens.revoke_by_secret(connection.auth.token)
            self.logger.info("logout", account_id=connection.auth.id)
        await self.broker.set_auth(connection, None)

    @staticmethod
    def _require_auth(connection: Connection) -> Auth:
        if connection.auth is None:
            raise Unauthenticated()
        return connection.auth


__all__ = ["AuthService", "ADMIN_ID", "ADMIN_AUTHORITY"]
