"""
Wallet custody for escrow contracts.

Each contract gets a fresh ed25519 keypair. The 64-byte secret (seed followed
by public key, the layout Solana tooling uses) is encrypted with AES-256-GCM
under the engine's master key and only ever stored in that form:

    <nonce hex>:<tag hex>:<ciphertext hex>

A random 12-byte nonce per call means encrypting the same secret twice never
yields the same ciphertext. GCM authentication means a tampered ciphertext
fails to decrypt instead of producing a wrong key.

Every decrypt, recover, validate and rotate call is appended to the key
access log with the actor and purpose. Log lines only ever carry
``hash_for_logging`` fingerprints, never key material.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from dataclasses import dataclass, field
from typing import Optional

import base58
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from nacl import signing
from nacl.exceptions import CryptoError

from .constants import CustodyDefaults
from .exceptions import ConfigurationError, SecurityFailure
from .models import KeyAccessRecord, KeyOperation, new_id
from .store.base import EscrowStore

logger = logging.getLogger(__name__)


def hash_for_logging(value: str | bytes) -> str:
    """Short SHA-256 fingerprint that is safe to log."""
    if isinstance(value, str):
        value = value.encode()
    return hashlib.sha256(value).hexdigest()[: CustodyDefaults.LOG_HASH_CHARS]


class Keypair:
    """An ed25519 signing keypair recovered from custody."""

    __slots__ = ("_signing_key",)

    def __init__(self, signing_key: signing.SigningKey):
        self._signing_key = signing_key

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(signing.SigningKey.generate())

    @classmethod
    def from_secret(cls, secret: bytes) -> "Keypair":
        """Rebuild from a 64-byte seed+pubkey secret (or a bare 32-byte seed)."""
        if len(secret) not in (32, 64):
            raise SecurityFailure("Invalid secret key length")
        try:
            key = signing.SigningKey(secret[:32])
        except (CryptoError, ValueError, TypeError) as e:
            raise SecurityFailure("Invalid secret key") from e
        if len(secret) == 64 and bytes(key.verify_key) != secret[32:]:
            raise SecurityFailure("Secret key does not match its embedded public key")
        return cls(key)

    @property
    def public_key(self) -> bytes:
        return bytes(self._signing_key.verify_key)

    @property
    def address(self) -> str:
        return base58.b58encode(self.public_key).decode()

    def secret(self) -> bytes:
        return bytes(self._signing_key) + self.public_key

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def __repr__(self) -> str:
        return f"Keypair(address={self.address!r})"


@dataclass(frozen=True, slots=True)
class CustodialWallet:
    address: str
    encrypted_secret: str = field(repr=False)


def _load_master_key(key_hex: str) -> bytes:
    try:
        key = bytes.fromhex(key_hex)
    except ValueError as e:
        raise ConfigurationError("Encryption key must be hex encoded") from e
    if len(key) != CustodyDefaults.KEY_BYTES:
        raise ConfigurationError(
            f"Encryption key must be {CustodyDefaults.KEY_BYTES * 2} hex characters"
        )
    return key


class WalletCustody:
    """Generates, encrypts and recovers per-contract custodial keypairs."""

    def __init__(self, encryption_key: str, store: Optional[EscrowStore] = None):
        self._key = _load_master_key(encryption_key)
        self._store = store
        self.key_fingerprint = hash_for_logging(self._key)

    # -- encryption ----------------------------------------------------------

    @staticmethod
    def _encrypt_with(key: bytes, plaintext: bytes) -> str:
        nonce = secrets.token_bytes(CustodyDefaults.NONCE_BYTES)
        sealed = AESGCM(key).encrypt(nonce, plaintext, None)
        # AESGCM appends the 16-byte tag to the ciphertext
        body, tag = sealed[: -CustodyDefaults.TAG_BYTES], sealed[-CustodyDefaults.TAG_BYTES:]
        return f"{nonce.hex()}:{tag.hex()}:{body.hex()}"

    @staticmethod
    def _decrypt_with(key: bytes, ciphertext: str) -> bytes:
        parts = ciphertext.split(":")
        if len(parts) != 3:
            raise SecurityFailure("Invalid encrypted data format")
        try:
            nonce, tag, body = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise SecurityFailure("Invalid encrypted data format") from e
        if len(nonce) != CustodyDefaults.NONCE_BYTES or len(tag) != CustodyDefaults.TAG_BYTES:
            raise SecurityFailure("Invalid encrypted data format")
        try:
            return AESGCM(key).decrypt(nonce, body + tag, None)
        except InvalidTag as e:
            raise SecurityFailure("Decryption failed: data is corrupted or was tampered with") from e

    def encrypt(self, plaintext: bytes) -> str:
        return self._encrypt_with(self._key, plaintext)

    async def decrypt(
        self,
        ciphertext: str,
        *,
        actor: str,
        purpose: str,
        escrow_id: Optional[str] = None,
    ) -> bytes:
        try:
            plaintext = self._decrypt_with(self._key, ciphertext)
        except SecurityFailure as e:
            await self._record(KeyOperation.DECRYPT, actor, purpose, escrow_id, False, e.message)
            raise
        await self._record(KeyOperation.DECRYPT, actor, purpose, escrow_id, True)
        return plaintext

    # -- wallet lifecycle ----------------------------------------------------

    async def generate_wallet(self, escrow_id: Optional[str] = None) -> CustodialWallet:
        """Create a fresh custodial wallet; the secret leaves only encrypted."""
        keypair = Keypair.generate()
        wallet = CustodialWallet(keypair.address, self.encrypt(keypair.secret()))
        await self._record(KeyOperation.ENCRYPT, "system", "wallet_generation", escrow_id, True)
        logger.info("Generated custodial wallet %s for escrow %s", wallet.address, escrow_id)
        return wallet

    async def recover_keypair(
        self,
        ciphertext: str,
        *,
        actor: str,
        purpose: str,
        escrow_id: Optional[str] = None,
    ) -> Keypair:
        """Decrypt and rebuild a signing keypair, raising SecurityFailure on any problem."""
        try:
            keypair = Keypair.from_secret(self._decrypt_with(self._key, ciphertext))
        except SecurityFailure as e:
            await self._record(KeyOperation.RECOVER, actor, purpose, escrow_id, False, e.message)
            logger.error(
                "Keypair recovery failed for escrow %s (ciphertext %s)",
                escrow_id, hash_for_logging(ciphertext),
            )
            raise
        await self._record(KeyOperation.RECOVER, actor, purpose, escrow_id, True)
        return keypair

    async def validate_key_pair(
        self,
        address: str,
        ciphertext: str,
        *,
        actor: str = "system",
        escrow_id: Optional[str] = None,
    ) -> bool:
        """True if ``ciphertext`` decrypts to the secret behind ``address``."""
        try:
            keypair = Keypair.from_secret(self._decrypt_with(self._key, ciphertext))
        except SecurityFailure as e:
            await self._record(KeyOperation.VALIDATE, actor, "key_validation", escrow_id, False, e.message)
            return False
        valid = keypair.address == address
        await self._record(
            KeyOperation.VALIDATE, actor, "key_validation", escrow_id, valid,
            None if valid else "address mismatch",
        )
        return valid

    async def rotate_encryption_key(
        self,
        ciphertext: str,
        new_key: str,
        *,
        actor: str,
        escrow_id: Optional[str] = None,
    ) -> str:
        """Re-encrypt a secret under ``new_key``. The caller persists the result."""
        new_master = _load_master_key(new_key)
        try:
            plaintext = self._decrypt_with(self._key, ciphertext)
        except SecurityFailure as e:
            await self._record(KeyOperation.ROTATE, actor, "key_rotation", escrow_id, False, e.message)
            raise
        rotated = self._encrypt_with(new_master, plaintext)
        await self._record(KeyOperation.ROTATE, actor, "key_rotation", escrow_id, True)
        logger.info(
            "Rotated custodial key for escrow %s from master %s to %s",
            escrow_id, self.key_fingerprint, hash_for_logging(new_master),
        )
        return rotated

    async def _record(
        self,
        operation: KeyOperation,
        actor: str,
        purpose: str,
        escrow_id: Optional[str],
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        logger.info(
            "Key access %s by %s for %s (escrow %s): %s",
            operation.value, actor, purpose, escrow_id, "ok" if success else error,
        )
        if self._store is None:
            return
        await self._store.append_key_access(
            KeyAccessRecord(
                id=new_id("key"),
                operation=operation,
                actor=actor,
                purpose=purpose,
                success=success,
                escrow_id=escrow_id,
                key_fingerprint=self.key_fingerprint,
                error=error,
            )
        )
