"""Tests for password hashing and the password policy."""

import pytest
from conftest import OTHER_STRONG_PASSWORD, STRONG_PASSWORD

from warden.service.credentials import (
    CredentialVault,
    StrengthTier,
    estimate_entropy,
    strength_tier,
)


@pytest.fixture
def vault(settings, store):
    return CredentialVault(settings, store)


class TestHashing:
    def test_hash_is_argon2id_and_verifies(self, vault):
        password_hash = vault.hash(STRONG_PASSWORD)
        assert password_hash.startswith("$argon2id$")
        assert STRONG_PASSWORD not in password_hash
        assert vault.verify(STRONG_PASSWORD, password_hash)

    def test_wrong_password_fails(self, vault):
        password_hash = vault.hash(STRONG_PASSWORD)
        assert not vault.verify(OTHER_STRONG_PASSWORD, password_hash)

    def test_hashes_are_salted(self, vault):
        assert vault.hash(STRONG_PASSWORD) != vault.hash(STRONG_PASSWORD)

    def test_pepper_is_part_of_the_hash(self, settings, vault):
        other = CredentialVault(settings.model_copy(update={"password_pepper": "another"}))
        password_hash = vault.hash(STRONG_PASSWORD)
        assert not other.verify(STRONG_PASSWORD, password_hash)

    def test_garbage_hash_does_not_raise(self, vault):
        assert vault.verify(STRONG_PASSWORD, "not-a-hash") is False

    def test_dummy_verify_always_fails(self, vault):
        assert vault.verify_dummy(STRONG_PASSWORD) is False

    def test_needs_rehash_when_parameters_change(self, settings, vault):
        password_hash = vault.hash(STRONG_PASSWORD)
        assert not vault.needs_rehash(password_hash)
        stronger = CredentialVault(settings.model_copy(update={"argon2_time_cost": 2}))
        assert stronger.needs_rehash(password_hash)


class TestStrength:
    def test_strong_password_is_valid(self, vault):
        result = vault.assess_strength(STRONG_PASSWORD)
        assert result.valid
        assert result.errors == []
        assert result.strength in (StrengthTier.STRONG, StrengthTier.VERY_STRONG)

    def test_too_short(self, vault):
        result = vault.assess_strength("Sh0rt!x")
        assert not result.valid
        assert any("at least 12" in err for err in result.errors)

    def test_too_long(self, vault):
        result = vault.assess_strength("Aa1!" + "x7Kp" * 40)
        assert any("must not exceed" in err for err in result.errors)

    def test_missing_character_classes(self, vault):
        result = vault.assess_strength("alllowercaseletters")
        messages = " ".join(result.errors)
        assert "uppercase" in messages
        assert "number" in messages
        assert "special" in messages

    def test_rejects_three_identical_characters(self, vault):
        result = vault.assess_strength("Vault!Hooorse7Lamp")
        assert any("consecutive identical" in err for err in result.errors)

    def test_two_identical_characters_are_fine(self, vault):
        assert vault.assess_strength("Vault!Hoorse7Lamp").valid

    @pytest.mark.parametrize("pattern", ["123", "abc", "qwe", "asd"])
    def test_rejects_common_patterns(self, vault, pattern):
        result = vault.assess_strength(f"Vault!Horse7{pattern}X")
        assert any("common patterns" in err for err in result.errors)

    def test_rejects_common_password(self, vault):
        result = vault.assess_strength("qwertyuiop")
        assert any("too common" in err for err in result.errors)

    def test_entropy_from_pool_size_and_length(self):
        assert estimate_entropy("") == 0.0
        assert estimate_entropy("aaaa") == pytest.approx(4 * 4.7004, rel=1e-3)
        assert estimate_entropy("aA1!") > estimate_entropy("aaaa")

    def test_five_strength_tiers(self):
        assert strength_tier(10) is StrengthTier.VERY_WEAK
        assert strength_tier(40) is StrengthTier.WEAK
        assert strength_tier(60) is StrengthTier.MODERATE
        assert strength_tier(80) is StrengthTier.STRONG
        assert strength_tier(100) is StrengthTier.VERY_STRONG

    def test_generated_password_passes_policy(self, vault):
        for _ in range(5):
            generated = vault.generate_secure_password()
            assert len(generated) == 16
            assert vault.assess_strength(generated).valid

    @pytest.mark.parametrize("length", [0, 8, 11, 129])
    def test_generated_length_outside_policy_rejected(self, vault, length):
        with pytest.raises(ValueError):
            vault.generate_secure_password(length)

    def test_unreachable_entropy_rejected(self, settings, store):
        vault = CredentialVault(
            settings.model_copy(update={"password_min_entropy_bits": 500.0}), store
        )
        with pytest.raises(ValueError):
            vault.generate_secure_password(16)


class TestHistory:
    async def test_remembered_password_is_reused(self, vault):
        await vault.remember_password("p1", vault.hash(STRONG_PASSWORD))
        assert await vault.is_password_reused("p1", STRONG_PASSWORD)
        assert not await vault.is_password_reused("p1", OTHER_STRONG_PASSWORD)

    async def test_history_is_bounded(self, settings, store):
        vault = CredentialVault(
            settings.model_copy(update={"password_history_limit": 2}), store
        )
        await vault.remember_password("p1", vault.hash(STRONG_PASSWORD))
        await vault.remember_password("p1", vault.hash("Copper$Wolf8Tide"))
        await vault.remember_password("p1", vault.hash(OTHER_STRONG_PASSWORD))
        assert not await vault.is_password_reused("p1", STRONG_PASSWORD)
        assert await vault.is_password_reused("p1", OTHER_STRONG_PASSWORD)
