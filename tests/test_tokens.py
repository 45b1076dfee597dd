"""Tests for JWT issuance, verification, revocation and secret rotation."""

import asyncio

import jwt
import pytest

from warden.config import FailurePolicy
from warden.service.errors import (
    ConfigError,
    ServiceUnavailableError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
)
from warden.service.tokens import TokenIssuer
from warden.storage.errors import StoreUnavailable


@pytest.fixture
def issuer(settings, store, clock):
    return TokenIssuer(settings, store, clock=clock)


def _mutations(token: str):
    """Every single-byte change of the token to another base64url character."""
    alphabet = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_."
    for index in range(len(token)):
        for replacement in (alphabet[(alphabet.index(token[index]) + 1) % len(alphabet)], "~"):
            yield token[:index] + replacement + token[index + 1 :]


class TestIssueAndVerify:
    @pytest.mark.parametrize("role", ["user", "premium", "admin"])
    async def test_verify_issued_access_token(self, issuer, role):
        pair = await issuer.issue("principal-1", role, "device-1")
        claims = await issuer.verify(pair.access_token)
        assert claims.principal_id == "principal-1"
        assert claims.role == role
        assert claims.device_id == "device-1"
        assert claims.token_type == "access"
        assert claims.issuer == "warden"
        assert claims.audience == "warden-api"
        assert claims.expires_at - claims.issued_at == 900

    async def test_pair_shape(self, issuer):
        pair = await issuer.issue("principal-1", "user")
        assert pair.token_type == "Bearer"
        assert pair.expires_in == 900
        assert pair.refresh_expires_in == 7 * 24 * 3600
        assert set(pair.to_dict()) == {
            "access_token",
            "refresh_token",
            "token_type",
            "expires_in",
            "refresh_expires_in",
        }

    async def test_every_token_has_a_unique_jti(self, issuer):
        jtis = set()
        for _ in range(20):
            pair = await issuer.issue("principal-1", "user")
            jtis.add((await issuer.verify(pair.access_token)).jti)
            jtis.add((await issuer.verify(pair.refresh_token, token_type="refresh")).jti)
        assert len(jtis) == 40

    async def test_single_byte_mutation_is_rejected(self, issuer):
        pair = await issuer.issue("principal-1", "user", "device-1")
        for mutated in _mutations(pair.access_token):
            if mutated == pair.access_token:
                continue
            with pytest.raises(TokenInvalidError):
                await issuer.verify(mutated)

    async def test_refresh_token_is_not_an_access_token(self, issuer):
        pair = await issuer.issue("principal-1", "user")
        with pytest.raises(TokenInvalidError):
            await issuer.verify(pair.refresh_token)

    async def test_expired_token(self, issuer, clock):
        pair = await issuer.issue("principal-1", "user")
        clock.advance(901)
        with pytest.raises(TokenExpiredError):
            await issuer.verify(pair.access_token)

    async def test_foreign_secret_is_rejected(self, issuer, clock):
        forged = jwt.encode(
            {
                "sub": "principal-1",
                "role": "admin",
                "jti": "x",
                "iat": int(clock()),
                "exp": int(clock()) + 60,
                "iss": "warden",
                "aud": "warden-api",
                "type": "access",
            },
            "not-the-secret",
            algorithm="HS512",
        )
        with pytest.raises(TokenInvalidError):
            await issuer.verify(forged)

    async def test_unsigned_token_is_rejected(self, issuer, clock):
        unsigned = jwt.encode(
            {"sub": "principal-1", "jti": "x", "iat": 1, "exp": int(clock()) + 60, "type": "access"},
            None,
            algorithm="none",
        )
        with pytest.raises(TokenInvalidError):
            await issuer.verify(unsigned)

    async def test_missing_claims_are_rejected(self, issuer, clock):
        token = issuer.sign({"sub": "principal-1", "iss": "warden", "aud": "warden-api"})
        with pytest.raises(TokenInvalidError):
            await issuer.verify(token)

    async def test_no_active_secret(self, settings, store):
        issuer = TokenIssuer(
            settings.model_copy(update={"jwt_secret": None}), store, generate_secret=False
        )
        with pytest.raises(ConfigError):
            await issuer.issue("principal-1", "user")


class TestRevocation:
    async def test_revoked_token_fails_every_later_attempt(self, issuer, clock):
        pair = await issuer.issue("principal-1", "user")
        await issuer.verify(pair.access_token)
        assert await issuer.revoke(pair.access_token)
        for _ in range(3):
            with pytest.raises(TokenRevokedError):
                await issuer.verify(pair.access_token)
            clock.advance(60)

    async def test_blacklist_ttl_is_remaining_lifetime(self, issuer, store, clock):
        pair = await issuer.issue("principal-1", "user")
        claims = await issuer.verify(pair.access_token)
        clock.advance(300)
        await issuer.revoke(pair.access_token)
        assert await store.ttl(f"blacklist:{claims.jti}") == 600
        clock.advance(600)
        assert not await store.exists(f"blacklist:{claims.jti}")

    async def test_revoking_expired_token_is_a_noop(self, issuer, clock):
        pair = await issuer.issue("principal-1", "user")
        clock.advance(1000)
        assert await issuer.revoke(pair.access_token) is False

    async def test_blacklist_outage_fails_closed(self, issuer, store, monkeypatch):
        pair = await issuer.issue("principal-1", "user")

        async def _down(key):
            raise StoreUnavailable("down")

        monkeypatch.setattr(store, "exists", _down)
        with pytest.raises(ServiceUnavailableError):
            await issuer.verify(pair.access_token)

    async def test_blacklist_outage_fail_open_when_configured(
        self, settings, store, clock, monkeypatch
    ):
        issuer = TokenIssuer(
            settings.model_copy(update={"auth_failure_policy": FailurePolicy.OPEN}),
            store,
            clock=clock,
        )
        pair = await issuer.issue("principal-1", "user")

        async def _down(key):
            raise StoreUnavailable("down")

        monkeypatch.setattr(store, "exists", _down)
        claims = await issuer.verify(pair.access_token)
        assert claims.principal_id == "principal-1"


class TestRefresh:
    async def test_refresh_issues_new_pair(self, issuer):
        pair = await issuer.issue("principal-1", "premium", "device-1", session_id="s1")
        new_pair = await issuer.refresh(pair.refresh_token)
        claims = await issuer.verify(new_pair.access_token)
        assert claims.role == "premium"
        assert claims.device_id == "device-1"
        assert claims.session_id == "s1"
        assert new_pair.refresh_token != pair.refresh_token

    async def test_refresh_token_is_single_use(self, issuer):
        pair = await issuer.issue("principal-1", "user")
        await issuer.refresh(pair.refresh_token)
        with pytest.raises(TokenRevokedError):
            await issuer.refresh(pair.refresh_token)

    async def test_revoke_all_drops_refresh_tokens(self, issuer):
        first = await issuer.issue("principal-1", "user")
        second = await issuer.issue("principal-1", "user")
        other = await issuer.issue("principal-2", "user")
        assert await issuer.revoke_all("principal-1") == 2
        for pair in (first, second):
            with pytest.raises(TokenRevokedError):
                await issuer.refresh(pair.refresh_token)
        await issuer.refresh(other.refresh_token)

    async def test_concurrent_refresh_admits_one(self, issuer):
        pair = await issuer.issue("principal-1", "user")
        results = await asyncio.gather(
            issuer.refresh(pair.refresh_token),
            issuer.refresh(pair.refresh_token),
            return_exceptions=True,
        )
        assert sum(1 for r in results if isinstance(r, TokenRevokedError)) == 1


class TestRotation:
    async def test_previous_secret_verifies_during_grace(self, issuer, clock):
        pair = await issuer.issue("principal-1", "user")
        issuer.rotate_secret()
        clock.advance(60)
        claims = await issuer.verify(pair.access_token)
        assert claims.principal_id == "principal-1"

    async def test_access_token_lives_out_its_ttl_across_rotation(self, issuer, clock):
        pair = await issuer.issue("principal-1", "user")
        clock.advance(100)
        issuer.rotate_secret()
        clock.advance(799)
        claims = await issuer.verify(pair.access_token)
        assert claims.principal_id == "principal-1"

    async def test_previous_secret_rejected_after_grace(self, issuer, clock, settings):
        pair = await issuer.issue("principal-1", "user")
        issuer.rotate_secret()
        clock.advance(settings.secret_grace_seconds + 1)
        with pytest.raises(TokenInvalidError):
            await issuer.verify(pair.refresh_token, token_type="refresh")

    async def test_second_rotation_retires_original_secret(self, issuer):
        pair = await issuer.issue("principal-1", "user")
        issuer.rotate_secret()
        issuer.rotate_secret()
        with pytest.raises(TokenInvalidError):
            await issuer.verify(pair.access_token)

    async def test_new_tokens_use_new_secret(self, issuer):
        issuer.rotate_secret()
        assert issuer.generation == 1
        pair = await issuer.issue("principal-1", "user")
        assert (await issuer.verify(pair.access_token)).principal_id == "principal-1"

    async def test_background_rotation_task(self, settings, store):
        issuer = TokenIssuer(
            settings.model_copy(
                update={
                    "secret_rotation_enabled": True,
                    "access_token_ttl_seconds": 1,
                    "secret_rotation_interval_seconds": 2,
                    "secret_grace_seconds": 1,
                }
            ),
            store,
        )
        issuer.rotation_interval = 0.01
        issuer.start()
        await asyncio.sleep(0.1)
        await issuer.stop()
        assert issuer.generation >= 1
