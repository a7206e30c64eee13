import pytest

from tessera.service.errors import BindingNotFound, LastBindingError


async def _bind(store, platform, pid, aid, bid):
    await store.create("binding", {"platform": platform, "pid": pid, "aid": aid, "bid": bid})


class TestUnbind:
    async def test_two_self_owned_bindings(self, services):
        await _bind(services.store, "discord", "1", 1, 1)
        await _bind(services.store, "telegram", "2", 1, 1)

        await services.bindings.unbind(1, "discord", "1")
        remaining = await services.store.get("binding", {"aid": 1})
        assert [(row["platform"], row["pid"]) for row in remaining] == [("telegram", "2")]

        with pytest.raises(LastBindingError):
            await services.bindings.unbind(1, "telegram", "2")

    async def test_last_binding_failure_leaves_storage_unchanged(self, services):
        await _bind(services.store, "discord", "1", 1, 1)
        before = await services.store.get("binding", {})
        with pytest.raises(LastBindingError):
            await services.bindings.unbind(1, "discord", "1")
        assert await services.store.get("binding", {}) == before

    async def test_borrowed_binding_returns_to_its_owner(self, services):
        await _bind(services.store, "discord", "1", 1, 1)
        await _bind(services.store, "qq", "9", 1, 2)
        await services.bindings.unbind(1, "qq", "9")
        rows = await services.store.get("binding", {"platform": "qq", "pid": "9"})
        assert rows[0]["aid"] == 2
        assert rows[0]["bid"] == 2

    async def test_borrowed_binding_does_not_count_as_self_owned(self, services):
        await _bind(services.store, "discord", "1", 1, 1)
        await _bind(services.store, "qq", "9", 1, 2)
        with pytest.raises(LastBindingError):
            await services.bindings.unbind(1, "discord", "1")

    async def test_unknown_binding(self, services):
        await _bind(services.store, "discord", "1", 2, 2)
        with pytest.raises(BindingNotFound):
            await services.bindings.unbind(1, "discord", "1")


class TestBind:
    async def test_bind_retargets_existing_identity(self, services):
        await _bind(services.store, "discord", "1", 2, 2)
        binding = await services.bindings.bind(1, "discord", "1")
        assert binding.aid == 1 and binding.bid == 2
        rows = await services.store.get("binding", {"platform": "discord", "pid": "1"})
        assert rows[0]["aid"] == 1

    async def test_bind_creates_self_owned_binding(self, services):
        binding = await services.bindings.bind(3, "matrix", "@a:b")
        assert binding.self_owned
        assert await services.store.get("binding", {"aid": 3, "bid": 3})
