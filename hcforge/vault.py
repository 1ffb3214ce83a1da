"""Credential vault: per-resource secrets encrypted at rest.

The encryption key is derived from the user's own API credentials
(PBKDF2-HMAC-SHA256 over ``access_key:secret_key`` with a random per-record
salt) and used with AES-256-GCM. Rotating the API credentials therefore makes
every previously stored secret unrecoverable; that is the intended way old
resource passwords expire, and it surfaces as ``decrypt() -> None``, never as
an exception.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger

from hcforge.constants import (
    KEY_BYTES,
    NONCE_BYTES,
    PBKDF2_ITERATIONS,
    SALT_BYTES,
    StoreKey,
)
from hcforge.infra.protocols import KeyValueStore
from hcforge.types import EncryptedSecret, Secret, utcnow


@dataclass(frozen=True, slots=True)
class ApiCredentials:
    """User-supplied cloud API access/secret key pair."""

    access_key: str = ""
    secret_key: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.access_key.strip() and self.secret_key.strip())

    def material(self) -> bytes:
        """Key-derivation input; empty when either half is missing."""
        if not self.complete:
            return b""
        return f"{self.access_key.strip()}:{self.secret_key.strip()}".encode()


def derive_key(secret_material: bytes, salt: bytes, iterations: int = PBKDF2_ITERATIONS) -> bytes:
    """Derive an AES-256 key from credential material and a salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret_material)


class CredentialVault:
    """Encrypts and decrypts resource secrets under the current API credentials."""

    def __init__(
        self,
        credentials: ApiCredentials | None = None,
        *,
        iterations: int = PBKDF2_ITERATIONS,
    ) -> None:
        self._credentials = credentials or ApiCredentials()
        self._iterations = iterations
        self._log = logger.bind(component="vault")

    @property
    def credentials(self) -> ApiCredentials:
        return self._credentials

    @property
    def available(self) -> bool:
        return self._credentials.complete

    def set_credentials(self, credentials: ApiCredentials) -> None:
        self._credentials = credentials

    def encrypt(self, plaintext: str) -> EncryptedSecret | None:
        """Encrypt ``plaintext``; ``None`` means "not persisted"."""
        material = self._credentials.material()
        if not material:
            self._log.debug("No API credentials configured; secret not persisted")
            return None

        salt = os.urandom(SALT_BYTES)
        nonce = os.urandom(NONCE_BYTES)
        key = derive_key(material, salt, self._iterations)
        ciphertext = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedSecret(salt=salt, nonce=nonce, ciphertext=ciphertext, updated_at=utcnow())

    def decrypt(self, record: EncryptedSecret) -> str | None:
        """Recover the plaintext; ``None`` when the current credentials cannot."""
        material = self._credentials.material()
        if not material:
            return None

        key = derive_key(material, record.salt, self._iterations)
        try:
            plaintext = AESGCM(key).decrypt(record.nonce, record.ciphertext, None)
        except (InvalidTag, ValueError):
            self._log.debug("Secret not recoverable with current credentials")
            return None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError:
            return None


class PasswordStore:
    """Persisted map of resource id to encrypted remote-login password.

    Plaintext values are cached in memory after the first successful
    decrypt so repeated session connects do not re-run the KDF.
    """

    def __init__(self, vault: CredentialVault, store: KeyValueStore) -> None:
        self._vault = vault
        self._store = store
        self._records: dict[str, EncryptedSecret] = {}
        self._plain: dict[str, str] = {}
        self._log = logger.bind(component="vault")

    async def load(self) -> int:
        """Load persisted records, dropping malformed ones. Returns the count kept."""
        raw = await self._store.get(StoreKey.SERVER_PASSWORDS)
        self._records.clear()
        self._plain.clear()
        if not isinstance(raw, dict):
            return 0

        dropped = 0
        for resource_id, value in raw.items():
            record = EncryptedSecret.from_record(value)
            if not isinstance(resource_id, str) or not resource_id or record is None:
                dropped += 1
                continue
            self._records[resource_id] = record
        if dropped:
            self._log.warning(f"Dropped {dropped} malformed password record(s)")
        return len(self._records)

    async def _persist(self) -> None:
        await self._store.set(
            StoreKey.SERVER_PASSWORDS,
            {rid: record.to_record() for rid, record in self._records.items()},
        )

    async def remember(self, secret: Secret) -> bool:
        """Encrypt and persist a secret. Returns False when it could not be persisted.

        Without credentials any older record for the same resource is dropped,
        so a later reload cannot resurrect the previous value.
        """
        self._plain[secret.resource_id] = secret.value
        record = await asyncio.to_thread(self._vault.encrypt, secret.value)
        if record is None:
            if self._records.pop(secret.resource_id, None) is not None:
                await self._persist()
            return False
        self._records[secret.resource_id] = record
        await self._persist()
        return True

    async def recall(self, resource_id: str) -> str | None:
        if resource_id in self._plain:
            return self._plain[resource_id]
        record = self._records.get(resource_id)
        if record is None:
            return None
        plaintext = await asyncio.to_thread(self._vault.decrypt, record)
        if plaintext is not None:
            self._plain[resource_id] = plaintext
        return plaintext

    def has(self, resource_id: str) -> bool:
        return resource_id in self._plain or resource_id in self._records

    async def forget(self, resource_id: str) -> None:
        self._plain.pop(resource_id, None)
        if self._records.pop(resource_id, None) is not None:
            await self._persist()

    def invalidate_plaintext(self) -> None:
        """Drop decrypted values, e.g. after the API credentials changed."""
        self._plain.clear()
