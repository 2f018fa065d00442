"""API key encryption service using AES-256-GCM."""

import base64
import hashlib
import logging
import os
import secrets
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from azure.keyvault.secrets import SecretClient
from azure.identity import DefaultAzureCredential
from sqlalchemy.orm import Session

from workflow_engine.config import settings
from workflow_engine.exceptions import CredentialError
from workflow_engine.models.batch_credential import BatchCredential

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12  # 96-bit GCM nonce


@dataclass(frozen=True)
class EncryptedCredential:
    """Ciphertext (with GCM tag appended) and the nonce it was sealed with."""

    ciphertext: bytes
    nonce: bytes

    def to_dict(self) -> dict:
        return {
            "ciphertext": base64.b64encode(self.ciphertext).decode(),
            "nonce": base64.b64encode(self.nonce).decode(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedCredential":
        try:
            return cls(
                ciphertext=base64.b64decode(data["ciphertext"], validate=True),
                nonce=base64.b64decode(data["nonce"], validate=True),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CredentialError(f"Malformed encrypted credential: {e}")


def generate_encryption_key() -> str:
    """Generate a new random master key as 64 hex characters (32 bytes)."""
    return secrets.token_hex(KEY_LENGTH)


def _wipe(buffer: bytearray):
    for i in range(len(buffer)):
        buffer[i] = 0


class CredentialVault:
    """Seals caller-supplied API keys at rest and unseals them per API call."""

    def __init__(self, key: Optional[Union[str, bytes]] = None):
        self._key = self._parse_key(key) if key is not None else None

    @property
    def key(self) -> bytes:
        """Lazy load the master key."""
        if self._key is None:
            self._key = self._parse_key(self._get_encryption_key())
        return self._key

    def _get_encryption_key(self) -> str:
        """Get master key from environment, development derivation, or Azure Key Vault."""
        # Priority 1: Direct environment variable (ENCRYPTION_KEY)
        if settings.ENCRYPTION_KEY:
            logger.info("Using API key encryption key from environment variable")
            return settings.ENCRYPTION_KEY

        # Priority 2: Development mode - derive from SECRET_KEY
        if settings.ENVIRONMENT == "development":
            logger.warning("Using development encryption key - not for production!")
            return hashlib.sha256(settings.SECRET_KEY.encode()).hexdigest()

        # Priority 3: Azure Key Vault
        if settings.AZURE_KEY_VAULT_URL:
            try:
                client = SecretClient(
                    vault_url=settings.AZURE_KEY_VAULT_URL,
                    credential=DefaultAzureCredential()
                )
                secret = client.get_secret(settings.ENCRYPTION_KEY_NAME)
                logger.info("Using API key encryption key from Azure Key Vault")
                return secret.value
            except Exception as e:
                logger.error(f"Failed to get encryption key from Key Vault: {e}")
                raise CredentialError(f"Encryption key unavailable: {e}")

        raise CredentialError(
            "No encryption key configured. Set ENCRYPTION_KEY environment variable "
            "or configure AZURE_KEY_VAULT_URL with the encryption key secret."
        )

    @staticmethod
    def _parse_key(key: Union[str, bytes]) -> bytes:
        """Accept 32 raw bytes or 64 hex characters."""
        if isinstance(key, (bytes, bytearray)):
            raw = bytes(key)
        elif isinstance(key, str):
            try:
                raw = bytes.fromhex(key)
            except ValueError:
                raise CredentialError("Encryption key must be 64 hex characters")
        else:
            raise CredentialError("Encryption key must be bytes or a hex string")

        if len(raw) != KEY_LENGTH:
            raise CredentialError(f"Encryption key must be {KEY_LENGTH} bytes, got {len(raw)}")
        return raw

    def encrypt(self, plaintext: str) -> EncryptedCredential:
        """Encrypt an API key with a fresh random nonce."""
        if not plaintext or not isinstance(plaintext, str):
            raise CredentialError("Invalid plaintext: must be a non-empty string")

        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = AESGCM(self.key).encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedCredential(ciphertext=ciphertext, nonce=nonce)

    def decrypt_to_buffer(self, ciphertext: bytes, nonce: bytes, key: Optional[Union[str, bytes]] = None) -> bytearray:
        """Decrypt into a mutable buffer the caller is expected to wipe."""
        raw_key = self._parse_key(key) if key is not None else self.key

        if not ciphertext or not nonce:
            raise CredentialError("Missing ciphertext or nonce")
        if len(nonce) != NONCE_LENGTH:
            raise CredentialError(f"Nonce must be {NONCE_LENGTH} bytes, got {len(nonce)}")

        try:
            return bytearray(AESGCM(raw_key).decrypt(nonce, ciphertext, None))
        except InvalidTag:
            logger.error("API key decryption failed: authentication tag mismatch")
            raise CredentialError("Credential authentication failed (tampered or wrong key)")

    def decrypt(self, ciphertext: bytes, nonce: bytes, key: Optional[Union[str, bytes]] = None) -> str:
        """Decrypt an API key. Fails with CredentialError on tampering or a malformed key."""
        buffer = self.decrypt_to_buffer(ciphertext, nonce, key)
        try:
            return buffer.decode("utf-8")
        except UnicodeDecodeError:
            raise CredentialError("Decrypted credential is not valid UTF-8")
        finally:
            _wipe(buffer)

    @contextmanager
    def unsealed(self, credential: EncryptedCredential) -> Iterator[bytearray]:
        """Yield the decrypted key for the scope of one API call, then zero it."""
        buffer = self.decrypt_to_buffer(credential.ciphertext, credential.nonce)
        try:
            yield buffer
        finally:
            _wipe(buffer)

    # Persistence of the sealed credential for the lifetime of a batch

    def store(self, db: Session, batch_id: str, credential: EncryptedCredential):
        """Attach a sealed credential to a batch (caller commits)."""
        db.add(BatchCredential(
            batch_id=batch_id,
            ciphertext=credential.ciphertext,
            nonce=credential.nonce
        ))

    def fetch(self, db: Session, batch_id: str) -> EncryptedCredential:
        """Load the sealed credential for a batch."""
        row = db.query(BatchCredential).filter(BatchCredential.batch_id == batch_id).first()
        if row is None:
            raise CredentialError(f"No credential stored for batch {batch_id}")
        return EncryptedCredential(ciphertext=row.ciphertext, nonce=row.nonce)

    def discard(self, db: Session, batch_id: str) -> bool:
        """Delete the sealed credential once the batch is terminal (caller commits)."""
        deleted = db.query(BatchCredential).filter(BatchCredential.batch_id == batch_id).delete()
        if deleted:
            logger.info(f"Discarded credential for batch {batch_id}")
        return bool(deleted)
