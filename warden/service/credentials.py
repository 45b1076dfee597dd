"""Password hashing, verification and strength assessment.

Hashes are argon2id over ``password + pepper``; the pepper is a
deployment-wide secret that never lives next to the hashes. Plaintext
passwords are never logged.
"""
from __future__ import annotations

import json
import math
import re
import secrets
import string
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from warden.config import Settings
from warden.logging import get_logger
from warden.storage.base import KeyValueStore, atomic_update

logger = get_logger(__name__)

# Seed list; deployments typically extend it from a breached-password corpus
COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "passw0rd",
        "admin123",
        "admin1234",
        "qwerty123",
        "qwertyuiop",
        "letmein123",
        "welcome123",
        "iloveyou",
        "monkey123",
        "dragon123",
        "football1",
        "baseball1",
        "sunshine1",
        "12345678",
        "123456789",
        "1234567890",
        "11111111",
        "changeme",
        "trustno1",
    }
)

COMMON_PATTERNS = ("123", "abc", "qwe", "asd")

_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")
_REPEATED = re.compile(r"(.)\1{2,}")


class StrengthTier(str, Enum):
    VERY_WEAK = "very_weak"
    WEAK = "weak"
    MODERATE = "moderate"
    STRONG = "strong"
    VERY_STRONG = "very_strong"


@dataclass
class PasswordAssessment:
    valid: bool
    strength: StrengthTier
    entropy_bits: float
    errors: List[str] = field(default_factory=list)


def estimate_entropy(password: str) -> float:
    """Entropy estimate: length × log2(size of the character classes used)."""
    pool = 0
    if _LOWER.search(password):
        pool += 26
    if _UPPER.search(password):
        pool += 26
    if _DIGIT.search(password):
        pool += 10
    if _SPECIAL.search(password):
        pool += 32
    if pool == 0:
        return 0.0
    return len(password) * math.log2(pool)


def strength_tier(entropy_bits: float) -> StrengthTier:
    if entropy_bits < 30:
        return StrengthTier.VERY_WEAK
    if entropy_bits < 50:
        return StrengthTier.WEAK
    if entropy_bits < 70:
        return StrengthTier.MODERATE
    if entropy_bits < 90:
        return StrengthTier.STRONG
    return StrengthTier.VERY_STRONG


class CredentialVault:
    """Slow adaptive hashing plus a password policy."""

    HISTORY_KEY = "password:history:{principal_id}"
    _GENERATED_ALPHABET = string.ascii_letters + string.digits + "!@#$%^&*"
    GENERATION_ATTEMPTS = 1000

    def __init__(self, settings: Settings, store: Optional[KeyValueStore] = None) -> None:
        self.settings = settings
        self.store = store
        self._pepper = settings.password_pepper or ""
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    def _peppered(self, password: str) -> str:
        return password + self._pepper

    def hash(self, password: str) -> str:
        return self._hasher.hash(self._peppered(password))

    def verify(self, password: str, password_hash: str) -> bool:
        try:
            return self._hasher.verify(password_hash, self._peppered(password))
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def verify_dummy(self, password: str) -> bool:
        """Burn the same work as a real verify when the account does not exist."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash(secrets.token_urlsafe(16))
        self.verify(password, self._dummy_hash)
        return False

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHashError:
            return True

    def assess_strength(self, password: str) -> PasswordAssessment:
        errors: List[str] = []
        min_len = self.settings.password_min_length
        max_len = self.settings.password_max_length

        if len(password) < min_len:
            errors.append(f"Password must be at least {min_len} characters")
        if len(password) > max_len:
            errors.append(f"Password must not exceed {max_len} characters")
        if not _LOWER.search(password):
            errors.append("Password must contain at least one lowercase letter")
        if not _UPPER.search(password):
            errors.append("Password must contain at least one uppercase letter")
        if not _DIGIT.search(password):
            errors.append("Password must contain at least one number")
        if not _SPECIAL.search(password):
            errors.append("Password must contain at least one special character")
        if _REPEATED.search(password):
            errors.append(
                "Password cannot contain more than 2 consecutive identical characters"
            )

        lowered = password.lower()
        if any(pattern in lowered for pattern in COMMON_PATTERNS):
            errors.append("Password contains common patterns")
        if lowered in COMMON_PASSWORDS:
            errors.append("This password is too common")

        entropy = estimate_entropy(password)
        if entropy < self.settings.password_min_entropy_bits:
            errors.append("Password is not strong enough")

        return PasswordAssessment(
            valid=not errors,
            strength=strength_tier(entropy),
            entropy_bits=round(entropy, 2),
            errors=errors,
        )

    def generate_secure_password(self, length: int = 16) -> str:
        """Random password that satisfies the policy.

        Raises ``ValueError`` when no password of ``length`` characters can
        pass the length and entropy rules.
        """
        min_len = self.settings.password_min_length
        max_len = self.settings.password_max_length
        if not min_len <= length <= max_len:
            raise ValueError(f"length must be between {min_len} and {max_len}")
        # 94 is the widest pool estimate_entropy credits (all four classes)
        if length * math.log2(94) < self.settings.password_min_entropy_bits:
            raise ValueError(f"length {length} cannot reach the minimum entropy")
        for _ in range(self.GENERATION_ATTEMPTS):
            candidate = "".join(
                secrets.choice(self._GENERATED_ALPHABET) for _ in range(length)
            )
            if self.assess_strength(candidate).valid:
                return candidate
        raise ValueError(f"could not generate a valid password of length {length}")

    async def remember_password(self, principal_id: str, password_hash: str) -> None:
        """Push a hash onto the principal's bounded password history."""
        if self.store is None or self.settings.password_history_limit <= 0:
            return
        limit = self.settings.password_history_limit

        def _push(current):
            history = list(current or [])
            history.insert(0, password_hash)
            return history[:limit], None

        await atomic_update(
            self.store,
            self.HISTORY_KEY.format(principal_id=principal_id),
            _push,
            retries=self.settings.store_cas_retries,
        )

    async def is_password_reused(self, principal_id: str, password: str) -> bool:
        if self.store is None:
            return False
        raw = await self.store.get(self.HISTORY_KEY.format(principal_id=principal_id))
        if not raw:
            return False
        return any(self.verify(password, old_hash) for old_hash in json.loads(raw))
