"""
Tests for the credential store and the token refresh stage.
"""

from datetime import timedelta

import pytest

from intake_workflow.constants import Channel
from intake_workflow.exceptions import CredentialExpired, CredentialUnavailable, TokenRefreshError
from intake_workflow.utils import utc_now


class TestTokenStore:

    @pytest.mark.asyncio
    async def test_no_credential(self, container):
        with pytest.raises(CredentialUnavailable):
            await container.token_store.get_valid_credential()

    @pytest.mark.asyncio
    async def test_expiry_includes_safety_buffer(self, container):
        before = utc_now()
        credential = await container.token_store.store("abc", expires_in=3600, safety_buffer_seconds=600)

        assert credential.refresh_count == 1
        assert credential.authorization_header == "Bearer abc"
        lifetime = credential.expires_at - before
        assert timedelta(minutes=49) < lifetime <= timedelta(minutes=50, seconds=1)

    @pytest.mark.asyncio
    async def test_short_lived_token_keeps_half_its_lifetime(self, container):
        credential = await container.token_store.store("abc", expires_in=300, safety_buffer_seconds=600)
        assert not credential.is_expired()

    @pytest.mark.asyncio
    async def test_expired_credential_rejected(self, container):
        await container.token_store.store("abc", expires_in=3600)
        await container.token_store.tokens.update_one(
            {"_id": "athena-current"}, {"$set": {"expires_at": utc_now() - timedelta(seconds=1)}}
        )
        with pytest.raises(CredentialExpired):
            await container.token_store.get_valid_credential()

    @pytest.mark.asyncio
    async def test_store_replaces_single_document(self, container):
        await container.token_store.store("first", expires_in=3600)
        second = await container.token_store.store("second", expires_in=3600)

        assert second.token == "second"
        assert second.refresh_count == 2
        assert await container.token_store.tokens.count_documents({}) == 1


    @pytest.mark.asyncio
    async def test_invalidate_forces_refresh(self, container, fake_token_provider):
        await container.token_store.store("rejected", expires_in=3600)

        assert await container.token_store.invalidate("HTTP 401 from athena") is True

        with pytest.raises(CredentialExpired):
            await container.token_store.get_valid_credential()
        credential = await container.token_refresh.ensure_fresh()
        assert credential.token == "token-1"
        assert fake_token_provider.calls == 1

    @pytest.mark.asyncio
    async def test_invalidate_without_credential(self, container):
        assert await container.token_store.invalidate() is False


class TestTokenRefreshStage:

    @pytest.mark.asyncio
    async def test_refresh_stores_new_token(self, container, fake_token_provider):
        credential = await container.token_refresh.refresh()

        assert credential.token == "token-1"
        stored = await container.token_store.get_valid_credential()
        assert stored.token == "token-1"

        log = await container.token_store.refresh_log.find_one({})
        assert log["status"] == "success"

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_credential(self, container, fake_token_provider):
        await container.token_store.store("old-token", expires_in=3600)
        fake_token_provider.error = TokenRefreshError("Token request failed with HTTP 500")

        with pytest.raises(TokenRefreshError):
            await container.token_refresh.refresh()

        stored = await container.token_store.get_valid_credential()
        assert stored.token == "old-token"
        assert stored.refresh_count == 1

        errors = await container.error_log.recent()
        assert errors[0]["type"] == "token_refresh"
        notifications = await container.dispatcher.messages.count_documents(
            {"channel": Channel.ERROR_NOTIFICATIONS.value}
        )
        assert notifications == 1
        assert await container.token_store.refresh_log.count_documents({"status": "error"}) == 1

    @pytest.mark.asyncio
    async def test_unexpected_provider_error_is_wrapped(self, container, fake_token_provider):
        fake_token_provider.error = KeyError("access_token")

        with pytest.raises(TokenRefreshError):
            await container.token_refresh.refresh()

    @pytest.mark.asyncio
    async def test_ensure_fresh_skips_valid_credential(self, container, fake_token_provider):
        await container.token_store.store("current", expires_in=3600)

        credential = await container.token_refresh.ensure_fresh()

        assert credential.token == "current"
        assert fake_token_provider.calls == 0

    @pytest.mark.asyncio
    async def test_ensure_fresh_refreshes_when_missing(self, container, fake_token_provider):
        credential = await container.token_refresh.ensure_fresh()

        assert credential.token == "token-1"
        assert fake_token_provider.calls == 1
