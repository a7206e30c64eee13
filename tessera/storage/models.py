from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def epoch_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoginStrategy(str, Enum):
    """How a session token was obtained."""

    PLATFORM = "platform"
    PASSWORD = "password"
    TOKEN = "token"


@dataclass
class TableSchema:
    """Declared shape of a store table.

    ``fields`` maps column names to one of ``unsigned``, ``integer``,
    ``bigint``, ``string`` or ``timestamp``.
    """

    name: str
    fields: Dict[str, str]
    primary: tuple[str, ...] = ("id",)
    auto_inc: bool = False
    unique: tuple[tuple[str, ...], ...] = ()

    def merge(
        self,
        fields: Dict[str, str],
        *,
        unique: tuple[tuple[str, ...], ...] = (),
    ) -> "TableSchema":
        merged_unique = self.unique + tuple(u for u in unique if u not in self.unique)
        return TableSchema(
            name=self.name,
            fields={**self.fields, **fields},
            primary=self.primary,
            auto_inc=self.auto_inc,
            unique=merged_unique,
        )


DEFAULT_AUTHORITY = 1

ACCOUNT_TABLE = TableSchema(
    name="account",
    fields={
        "id": "unsigned",
        "name": "string",
        "authority": "unsigned",
        "password": "string",
    },
    primary=("id",),
    auto_inc=True,
)

BINDING_TABLE = TableSchema(
    name="binding",
    fields={
        "platform": "string",
        "pid": "string",
        "aid": "unsigned",
        "bid": "unsigned",
    },
    primary=("platform", "pid"),
)

TOKEN_TABLE = TableSchema(
    name="token",
    fields={
        "serial": "unsigned",
        "account_id": "unsigned",
        "strategy": "string",
        "secret": "string",
        "expires_at": "bigint",
        "created_at": "timestamp",
        "last_used_at": "timestamp",
        "client_agent": "string",
        "client_address": "string",
    },
    primary=("serial",),
    auto_inc=True,
    unique=(("secret",),),
)


@dataclass
class Account:
    id: int
    name: Optional[str] = None
    authority: int = DEFAULT_AUTHORITY
    password: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Account":
        authority = row.get("authority")
        return cls(
            id=int(row["id"]),
            name=row.get("name"),
            authority=DEFAULT_AUTHORITY if authority is None else int(authority),
            password=row.get("password"),
        )


@dataclass
class Binding:
    platform: str
    pid: str
    aid: int
    bid: int

    @property
    def self_owned(self) -> bool:
        return self.aid == self.bid

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Binding":
        return cls(
            platform=row["platform"],
            pid=str(row["pid"]),
            aid=int(row["aid"]),
            bid=int(row["bid"]),
        )

    def redacted(self) -> Dict[str, Any]:
        """Client view of the binding; the current owner is implied."""
        return {"platform": self.platform, "pid": self.pid, "bid": self.bid}


@dataclass
class LoginToken:
    serial: int
    account_id: int
    strategy: LoginStrategy
    secret: str
    expires_at: int
    created_at: datetime = field(default_factory=utcnow)
    last_used_at: datetime = field(default_factory=utcnow)
    client_agent: Optional[str] = None
    client_address: Optional[str] = None

    def is_expired(self, now: int) -> bool:
        return self.expires_at <= now

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LoginToken":
        return cls(
            serial=int(row["serial"]),
            account_id=int(row["account_id"]),
            strategy=LoginStrategy(row["strategy"]),
            secret=row["secret"],
            expires_at=int(row["expires_at"]),
            created_at=row.get("created_at") or utcnow(),
            last_used_at=row.get("last_used_at") or utcnow(),
            client_agent=row.get("client_agent"),
            client_address=row.get("client_address"),
        )

    def redacted(self) -> Dict[str, Any]:
        """Client view of the token without its secret or owner."""
        return {
            "serial": self.serial,
            "strategy": self.strategy.value,
            "expires_at": self.expires_at,
            "created_at": self.created_at.isoformat(),
            "last_used_at": self.last_used_at.isoformat(),
            "client_agent": self.client_agent,
            "client_address": self.client_address,
        }


@dataclass
class Auth:
    """Authenticated state held on a console connection."""

    id: int
    name: Optional[str]
    authority: int
    token: str
    expire: int

    @classmethod
    def for_token(cls, account: Account, token: LoginToken) -> "Auth":
        return cls(
            id=account.id,
            name=account.name,
            authority=account.authority,
            token=token.secret,
            expire=token.expires_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
