"""Time-based one-time passwords and single-use backup codes."""
from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Callable, List, Optional
from urllib.parse import quote, urlencode

from cryptography.fernet import Fernet, InvalidToken

from warden.config import FailurePolicy, Settings
from warden.logging import get_logger
from warden.service.policy import handle_store_outage
from warden.storage.base import KeyValueStore, atomic_update
from warden.storage.errors import StoreUnavailable

logger = get_logger(__name__)


@dataclass(frozen=True)
class MFASecret:
    secret: str
    otpauth_uri: str


def _normalize_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch.isalnum())


class MFACoordinator:
    """TOTP enrollment and verification plus backup-code bookkeeping.

    TOTP follows RFC 6238 (HMAC-SHA1, 30 second steps, 6 digits) and accepts
    codes up to ``mfa_drift_steps`` steps either side of now. Backup codes are
    stored only as salted hashes and are removed the moment one is used.
    """

    BACKUP_KEY = "mfa:backup:{principal_id}"
    SECRET_BYTES = 20

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock
        self.issuer = settings.mfa_issuer
        self.interval = settings.mfa_interval_seconds
        self.digits = settings.mfa_digits
        self.drift = settings.mfa_drift_steps
        self.failure_policy: FailurePolicy = settings.auth_failure_policy
        self._cipher = self._build_cipher(settings.mfa_encryption_key or settings.jwt_secret)

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_cipher(self, key_material: Optional[str]) -> Fernet:
        if not key_material:
            # Secrets sealed with this key do not survive a restart.
            logger.warning("mfa_cipher_ephemeral_key")
            key_material = secrets.token_urlsafe(64)
        return Fernet(self._derive_cipher_key(key_material))

    def seal_secret(self, secret: str) -> str:
        return self._cipher.encrypt(secret.encode()).decode()

    def open_secret(self, sealed: str) -> Optional[str]:
        try:
            return self._cipher.decrypt(sealed.encode()).decode()
        except InvalidToken:
            logger.warning("mfa_secret_unreadable")
            return None

    # -- TOTP --------------------------------------------------------------

    def generate_secret(self, principal_id: str) -> MFASecret:
        secret = base64.b32encode(secrets.token_bytes(self.SECRET_BYTES)).decode().rstrip("=")
        label = quote(f"{self.issuer}:{principal_id}")
        query = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "digits": self.digits,
                "period": self.interval,
            },
            quote_via=quote,
        )
        return MFASecret(secret=secret, otpauth_uri=f"otpauth://totp/{label}?{query}")

    def generate_totp(self, secret: str, timestamp: Optional[float] = None) -> str:
        padded = secret + "=" * ((8 - len(secret) % 8) % 8)
        try:
            key = base64.b32decode(padded, True)
        except (ValueError, TypeError):
            logger.warning("totp_secret_invalid")
            return ""
        moment = self._clock() if timestamp is None else timestamp
        counter = int(moment // self.interval).to_bytes(8, "big")
        digest = hmac.new(key, counter, hashlib.sha1).digest()
        offset = digest[-1] & 0x0F
        code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
            10**self.digits
        )
        return str(code_int).zfill(self.digits)

    def verify_totp(self, code: str, secret: str) -> bool:
        if not code or not secret:
            return False
        code = code.strip()
        if len(code) != self.digits or not code.isdigit():
            return False
        now = self._clock()
        matched = False
        # Walk the whole window so timing does not reveal which step matched
        for step in range(-self.drift, self.drift + 1):
            generated = self.generate_totp(secret, now + step * self.interval)
            if generated and hmac.compare_digest(generated, code):
                matched = True
        return matched

    # -- backup codes ------------------------------------------------------

    def generate_backup_codes(self, count: Optional[int] = None) -> List[str]:
        codes = []
        for _ in range(count or self.settings.backup_code_count):
            raw = secrets.token_hex(4).upper()
            codes.append(f"{raw[:4]}-{raw[4:]}")
        return codes

    @staticmethod
    def hash_backup_code(code: str, salt: str) -> str:
        return hashlib.sha256(f"{salt}:{_normalize_code(code)}".encode()).hexdigest()

    async def enroll_backup_codes(self, principal_id: str) -> List[str]:
        """Replace any existing backup codes; only the hashes are kept."""
        codes = self.generate_backup_codes()
        salt = secrets.token_hex(16)
        document = {
            "salt": salt,
            "hashes": [self.hash_backup_code(code, salt) for code in codes],
        }
        await atomic_update(
            self.store,
            self.BACKUP_KEY.format(principal_id=principal_id),
            lambda _current: (document, None),
            retries=self.settings.store_cas_retries,
        )
        logger.info("mfa_backup_codes_enrolled", principal_id=principal_id, count=len(codes))
        return codes

    async def verify_backup_code(self, principal_id: str, code: str) -> bool:
        """Consume ``code`` if it is one of the principal's unused backup codes."""
        if not _normalize_code(code):
            return False

        def _consume(current):
            if not current:
                return current, False
            candidate = self.hash_backup_code(code, current["salt"])
            remaining = [h for h in current["hashes"] if not hmac.compare_digest(h, candidate)]
            if len(remaining) == len(current["hashes"]):
                return current, False
            return {"salt": current["salt"], "hashes": remaining}, True

        try:
            used = await atomic_update(
                self.store,
                self.BACKUP_KEY.format(principal_id=principal_id),
                _consume,
                retries=self.settings.store_cas_retries,
            )
        except StoreUnavailable as exc:
            handle_store_outage(
                self.failure_policy,
                exc,
                component="mfa",
                operation="verify_backup_code",
                principal_id=principal_id,
            )
            # Unverifiable codes are rejected when failing open
            return False
        if used:
            logger.info("mfa_backup_code_used", principal_id=principal_id)
        return used

    async def remaining_backup_codes(self, principal_id: str) -> int:
        raw = await self.store.get(self.BACKUP_KEY.format(principal_id=principal_id))
        if not raw:
            return 0
        return len(json.loads(raw).get("hashes", []))

    async def clear_backup_codes(self, principal_id: str) -> None:
        await self.store.delete(self.BACKUP_KEY.format(principal_id=principal_id))
