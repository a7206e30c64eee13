"""Scenario tests for console login strategies and account management.

Tests for:
- Admin bootstrap
- Password and token login
- Platform linking through pairing codes
- Token deletion, unbinding, profile updates and logout
"""

import hashlib

import pytest

from tessera.service.errors import (
    AlreadyLinked,
    InvalidCredentials,
    LastBindingError,
    TokenExpired,
    TokenNotFound,
    Unauthenticated,
    ValidationError,
)
from tessera.storage.models import DEFAULT_AUTHORITY, Account


async def _admin_session(services, connection):
    await services.auth.bootstrap_admin("admin", "secret")
    return await services.auth.login_with_password(connection, "admin", "secret")


class TestBootstrap:
    async def test_admin_account_created(self, services):
        await services.auth.bootstrap_admin("admin", "secret")
        rows = await services.store.get("account", {"id": 0})
        assert rows == [
            {
                "id": 0,
                "name": "admin",
                "authority": 5,
                "password": hashlib.sha256(b"secret").hexdigest(),
            }
        ]

    async def test_bootstrap_is_repeatable(self, services):
        await services.auth.bootstrap_admin("admin", "secret")
        await services.auth.bootstrap_admin("root", "changed")
        rows = await services.store.get("account", {"id": 0})
        assert len(rows) == 1
        assert rows[0]["name"] == "root"
        assert rows[0]["password"] == hashlib.sha256(b"changed").hexdigest()


class TestAccountDefaults:
    def test_missing_authority_uses_default(self):
        assert Account(id=3).authority == DEFAULT_AUTHORITY
        assert Account.from_row({"id": 3, "name": "ann"}).authority == DEFAULT_AUTHORITY
        assert Account.from_row({"id": 3, "authority": None}).authority == DEFAULT_AUTHORITY
        assert Account.from_row({"id": 3, "authority": 0}).authority == 0

    async def test_platform_account_gets_default_authority(self, services, make_connection):
        connection = make_connection()
        result = await services.auth.request_platform_link(connection, "discord", "9")
        await services.auth.handle_message("discord", "9", result["code"])
        assert connection.user["authority"] == DEFAULT_AUTHORITY


class TestPasswordLogin:
    async def test_login_pushes_snapshot_without_secrets(self, services, make_connection):
        connection = make_connection()
        auth = await _admin_session(services, connection)
        snapshot = connection.user
        assert snapshot["name"] == "admin"
        assert snapshot["authority"] == 5
        assert snapshot["token"] == auth.token
        assert [token["strategy"] for token in snapshot["tokens"]] == ["password"]
        assert all("secret" not in token for token in snapshot["tokens"])
        assert snapshot["tokens"][0]["client_agent"] == "pytest"

    async def test_wrong_password(self, services, make_connection):
        await services.auth.bootstrap_admin("admin", "secret")
        connection = make_connection()
        with pytest.raises(InvalidCredentials):
            await services.auth.login_with_password(connection, "admin", "nope")
        assert connection.events == []

    async def test_unknown_user(self, services, make_connection):
        with pytest.raises(InvalidCredentials):
            await services.auth.login_with_password(make_connection(), "ghost", "secret")


class TestTokenLogin:
    async def test_token_login_resumes_session(self, services, make_connection):
        first = make_connection()
        auth = await _admin_session(services, first)
        second = make_connection()
        resumed = await services.auth.login_with_token(second, auth.id, auth.token)
        assert resumed.token == auth.token
        assert second.user["name"] == "admin"
        assert len(second.user["tokens"]) == 1

    async def test_token_login_expired(self, services, make_connection):
        auth = await _admin_session(services, make_connection())
        services.clock.advance(60 * 60 * 1000)
        with pytest.raises(TokenExpired):
            await services.auth.login_with_token(make_connection(), auth.id, auth.token)

    async def test_token_login_unknown(self, services, make_connection):
        with pytest.raises(TokenNotFound):
            await services.auth.login_with_token(make_connection(), 0, "x" * 40)


class TestPlatformLink:
    async def test_pairing_creates_account_and_platform_token(self, services, make_connection):
        connection = make_connection()
        result = await services.auth.request_platform_link(connection, "discord", "123")
        assert result["id"] is None and result["name"] is None
        assert len(result["code"]) == 6 and result["code"].isdigit()

        matched = await services.auth.handle_message("discord", "123", result["code"], name="Ann")
        assert matched is True
        snapshot = connection.user
        assert snapshot["name"] == "Ann"
        assert snapshot["tokens"][0]["strategy"] == "platform"
        assert snapshot["bindings"] == [{"platform": "discord", "pid": "123", "bid": snapshot["id"]}]

    async def test_code_after_ttl_is_ordinary_input(self, services, make_connection):
        connection = make_connection()
        result = await services.auth.request_platform_link(connection, "discord", "123")
        services.clock.advance(60 * 1000)
        assert await services.auth.handle_message("discord", "123", result["code"]) is False
        assert connection.events == []
        assert await services.store.get("account", {}) == []

    async def test_code_consumed_at_most_once(self, services, make_connection):
        connection = make_connection()
        result = await services.auth.request_platform_link(connection, "discord", "123")
        assert await services.auth.handle_message("discord", "123", result["code"]) is True
        assert await services.auth.handle_message("discord", "123", result["code"]) is False
        tokens = await services.store.get("token", {})
        assert len(tokens) == 1

    async def test_known_identity_logs_into_existing_account(self, services, make_connection):
        first = make_connection()
        result = await services.auth.request_platform_link(first, "discord", "123")
        await services.auth.handle_message("discord", "123", result["code"], name="Ann")
        account_id = first.user["id"]

        second = make_connection()
        again = await services.auth.request_platform_link(second, "discord", "123")
        assert again["id"] == account_id and again["name"] == "Ann"
        await services.auth.handle_message("discord", "123", again["code"])
        assert second.user["id"] == account_id
        assert len(await services.store.get("account", {})) == 1

    async def test_authenticated_pairing_links_identity(self, services, make_connection):
        other = make_connection()
        result = await services.auth.request_platform_link(other, "discord", "123")
        await services.auth.handle_message("discord", "123", result["code"])
        owner_id = other.user["id"]

        connection = make_connection()
        admin = await _admin_session(services, connection)
        link = await services.auth.request_platform_link(connection, "discord", "123")
        token_count = len(await services.store.get("token", {}))
        assert await services.auth.handle_message("discord", "123", link["code"]) is True

        rows = await services.store.get("binding", {"platform": "discord", "pid": "123"})
        assert rows[0]["aid"] == admin.id
        assert rows[0]["bid"] == owner_id
        assert connection.user["bindings"] == [{"platform": "discord", "pid": "123", "bid": owner_id}]
        assert len(await services.store.get("token", {})) == token_count

    async def test_already_linked_identity_rejected(self, services, make_connection):
        connection = make_connection()
        await _admin_session(services, connection)
        link = await services.auth.request_platform_link(connection, "discord", "5")
        await services.auth.handle_message("discord", "5", link["code"])
        with pytest.raises(AlreadyLinked):
            await services.auth.request_platform_link(connection, "discord", "5")

    async def test_closed_connection_abandons_link(self, services, make_connection):
        connection = make_connection()
        result = await services.auth.request_platform_link(connection, "discord", "123")
        connection.close()
        assert await services.auth.handle_message("discord", "123", result["code"]) is False


class TestAccountOperations:
    async def test_operations_require_login(self, services, make_connection):
        connection = make_connection()
        with pytest.raises(Unauthenticated):
            await services.auth.delete_token(connection, 1)
        with pytest.raises(Unauthenticated):
            await services.auth.unbind(connection, "discord", "1")
        with pytest.raises(Unauthenticated):
            await services.auth.update_profile(connection, {"name": "x"})

    async def test_delete_own_token(self, services, make_connection):
        connection = make_connection()
        auth = await _admin_session(services, connection)
        other = await services.auth.login_with_password(make_connection(), "admin", "secret")
        serial = (await services.store.get("token", {"secret": other.token}))[0]["serial"]
        await services.auth.delete_token(connection, serial)
        remaining = [token["serial"] for token in connection.user["tokens"]]
        assert serial not in remaining
        assert len(remaining) == 1
        assert connection.auth is auth

    async def test_cannot_delete_foreign_token(self, services, make_connection):
        connection = make_connection()
        await _admin_session(services, connection)
        stranger = make_connection()
        result = await services.auth.request_platform_link(stranger, "discord", "9")
        await services.auth.handle_message("discord", "9", result["code"])
        foreign = stranger.user["tokens"][0]["serial"]
        with pytest.raises(TokenNotFound):
            await services.auth.delete_token(connection, foreign)
        assert await services.store.get("token", {"serial": foreign})

    async def test_unbind_last_binding_refused(self, services, make_connection):
        connection = make_connection()
        result = await services.auth.request_platform_link(connection, "discord", "1")
        await services.auth.handle_message("discord", "1", result["code"])
        with pytest.raises(LastBindingError):
            await services.auth.unbind(connection, "discord", "1")

    async def test_update_profile_hashes_password(self, services, make_connection):
        connection = make_connection()
        await _admin_session(services, connection)
        await services.auth.update_profile(connection, {"name": "root", "password": "new"})
        assert connection.user["name"] == "root"
        rows = await services.store.get("account", {"id": 0})
        assert rows[0]["password"] == hashlib.sha256(b"new").hexdigest()
        await services.auth.login_with_password(make_connection(), "root", "new")

    async def test_empty_password_disables_password_login(self, services, make_connection):
        connection = make_connection()
        await _admin_session(services, connection)
        await services.auth.update_profile(connection, {"password": ""})
        rows = await services.store.get("account", {"id": 0})
        assert rows[0]["password"] == ""
        with pytest.raises(InvalidCredentials):
            await services.auth.login_with_password(make_connection(), "admin", "")
        with pytest.raises(InvalidCredentials):
            await services.auth.login_with_password(make_connection(), "admin", "secret")

    async def test_update_profile_rejects_other_fields(self, services, make_connection):
        connection = make_connection()
        await _admin_session(services, connection)
        with pytest.raises(ValidationError):
            await services.auth.update_profile(connection, {"authority": 9})

    async def test_logout_revokes_token(self, services, make_connection):
        connection = make_connection()
        auth = await _admin_session(services, connection)
        await services.auth.logout(connection)
        assert connection.user is None
        assert connection.auth is None
        assert await services.store.get("token", {"secret": auth.token}) == []

    async def test_logout_without_session(self, services, make_connection):
        connection = make_connection()
        await services.auth.logout(connection)
        assert connection.user is None
