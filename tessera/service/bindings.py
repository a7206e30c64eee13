from __future__ import annotations

from tessera.logging import get_logger
from tessera.service.errors import BindingNotFound, LastBindingError
from tessera.storage.common import Store
from tessera.storage.models import Binding

logger = get_logger(__name__)


class BindingReconciler:
    """Moves external identities between accounts.

    An account that owns bindings always keeps at least one self-owned
    binding (``aid == bid``).
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    async def unbind(self, account_id: int, platform: str, pid: str) -> None:
        rows = await self.store.get("binding", {"aid": account_id})
        bindings = [Binding.from_row(row) for row in rows]
        binding = next(
            (item for item in bindings if item.platform == platform and item.pid == pid),
            None,
        )
        if binding is None:
            raise BindingNotFound()
        key = {"platform": platform, "pid": pid}
        if not binding.self_owned:
            await self.store.set("binding", key, {"aid": binding.bid})
            logger.info("binding_restored", platform=platform, account_id=account_id, owner=binding.bid)
            return
        if sum(1 for item in bindings if item.self_owned) <= 1:
            logger.info("binding_unbind_refused", platform=platform, account_id=account_id)
            raise LastBindingError()
        await self.store.remove("binding", key)
        logger.info("binding_removed", platform=platform, account_id=account_id)

    async def bind(self, account_id: int, platform: str, pid: str) -> Binding:
        key = {"platform": platform, "pid": pid}
        rows = await self.store.get("binding", key)
        if rows:
            await self.store.set("binding", key, {"aid": account_id})
            binding = Binding.from_row({**rows[0], "aid": account_id})
            logger.info("binding_retargeted", platform=platform, account_id=account_id, owner=binding.bid)
            return binding
        row = await self.store.create(
            "binding", {"platform": platform, "pid": pid, "aid": account_id, "bid": account_id}
        )
        logger.info("binding_created", platform=platform, account_id=account_id)
        return Binding.from_row(row)
