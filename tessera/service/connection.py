from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from tessera.storage.models import Auth

CloseHandler = Callable[[], Any]


class Connection(Protocol):
    """A live console client the services can push events to."""

    auth: Optional[Auth]

    @property
    def headers(self) -> Mapping[str, str]: ...

    @property
    def remote_address(self) -> Optional[str]: ...

    async def send(self, event: Dict[str, Any]) -> None: ...

    def on_close(self, callback: CloseHandler) -> None: ...

    def remove_close_handler(self, callback: CloseHandler) -> None: ...
