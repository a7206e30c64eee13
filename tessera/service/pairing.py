from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from tessera.logging import get_logger
from tessera.service.connection import CloseHandler, Connection
from tessera.storage.models import epoch_ms

logger = get_logger(__name__)


def pairing_key(platform: str, pid: str) -> str:
    return f"{platform}:{pid}"


def random_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


@dataclass(eq=False)
class PairingChallenge:
    """Outstanding request to link ``platform:pid`` to a console connection."""

    platform: str
    pid: str
    code: str
    expires_at: int
    connection: Connection
    timer: Optional[asyncio.TimerHandle] = None
    close_handler: Optional[CloseHandler] = None

    @property
    def key(self) -> str:
        return pairing_key(self.platform, self.pid)


class PairingRegistry:
    """In-process table of pending pairing challenges, one per identity.

    Every exit from the pending state (consumption, expiry, abandonment)
    goes through ``take_if_present`` so exactly one of them wins for a given
    entry.
    """

    def __init__(
        self,
        *,
        login_token_expire: int,
        clock: Callable[[], int] = epoch_ms,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self.login_token_expire = login_token_expire
        self.clock = clock
        self._loop = loop
        self._pending: Dict[str, PairingChallenge] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def get(self, platform: str, pid: str) -> Optional[PairingChallenge]:
        return self._pending.get(pairing_key(platform, pid))

    def request(self, platform: str, pid: str, connection: Connection) -> PairingChallenge:
        key = pairing_key(platform, pid)
        previous = self._pending.pop(key, None)
        if previous is not None:
            self._disarm(previous)
            logger.info("pairing_replaced", key=key)

        entry = PairingChallenge(
            platform=platform,
            pid=pid,
            code=random_code(),
            expires_at=self.clock() + self.login_token_expire,
            connection=connection,
        )
        loop = self._loop or asyncio.get_running_loop()
        entry.timer = loop.call_later(self.login_token_expire / 1000, self.expire, key, entry)
        entry.close_handler = lambda: self.abandon(key, entry)
        connection.on_close(entry.close_handler)
        self._pending[key] = entry
        logger.info("pairing_requested", key=key, expires_at=entry.expires_at)
        return entry

    def take_if_present(self, key: str, entry: PairingChallenge) -> Optional[PairingChallenge]:
        if self._pending.get(key) is not entry:
            return None
        del self._pending[key]
        self._disarm(entry)
        return entry

    def expire(self, key: str, entry: PairingChallenge) -> None:
        if self.take_if_present(key, entry) is not None:
            logger.info("pairing_expired", key=key)

    def abandon(self, key: str, entry: PairingChallenge) -> None:
        if self.take_if_present(key, entry) is not None:
            logger.info("pairing_abandoned", key=key)

    def match(self, platform: str, pid: str, content: str) -> Optional[PairingChallenge]:
        """Consume the pending challenge for the identity if ``content`` is its code.

        A code arriving after ``expires_at`` counts as unmatched input and
        retires the stale entry.
        """
        key = pairing_key(platform, pid)
        entry = self._pending.get(key)
        if entry is None or entry.code != content.strip():
            return None
        if entry.expires_at <= self.clock():
            self.expire(key, entry)
            return None
        taken = self.take_if_present(key, entry)
        if taken is not None:
            logger.info("pairing_consumed", key=key)
        return taken

    def clear(self) -> None:
        for key, entry in list(self._pending.items()):
            self.take_if_present(key, entry)

    @staticmethod
    def _disarm(entry: PairingChallenge) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.close_handler is not None:
            entry.connection.remove_close_handler(entry.close_handler)
