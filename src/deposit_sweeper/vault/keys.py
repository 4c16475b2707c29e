"""Key vault adapter for encrypted wallet keys.

Stored blobs are ``base64(salt[64] | iv[16] | tag[16] | ciphertext)``. The
AES-256-GCM key is derived from the master secret with PBKDF2-HMAC-SHA512
(100 000 iterations) over the per-blob salt. Decrypted key material is only
ever returned to the caller; it is never logged or persisted.
"""

from __future__ import annotations

import base64
import binascii
import json
import os
from typing import TYPE_CHECKING

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from eth_account import Account
from solders.keypair import Keypair

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000


class KeyVaultError(Exception):
    """Base exception for key vault errors."""


class KeyDecryptionError(KeyVaultError):
    """Raised when a blob is malformed or fails authentication."""


class KeyVault:
    """Decrypts stored wallet key blobs into signing keys on demand."""

    def __init__(self, master_key: str) -> None:
        if not master_key:
            raise KeyVaultError("Master encryption key must not be empty")
        self._master_key = master_key.encode()

    def _derive_key(self, salt: bytes) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA512(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=PBKDF2_ITERATIONS,
        )
        return kdf.derive(self._master_key)

    def encrypt(self, secret: str) -> str:
        """Encrypt a secret into the stored blob format.

        Args:
            secret: Plaintext key material (hex EVM key, base58/base64 Solana key).

        Returns:
            Base64 blob suitable for ``deposit_addresses.encrypted_private_key``.
        """
        salt = os.urandom(SALT_LENGTH)
        iv = os.urandom(IV_LENGTH)
        sealed = AESGCM(self._derive_key(salt)).encrypt(iv, secret.encode(), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(salt + iv + tag + ciphertext).decode()

    def decrypt(self, blob: str) -> str:
        """Decrypt a stored blob.

        Raises:
            KeyDecryptionError: If the blob cannot be decoded or authenticated.
        """
        try:
            data = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as e:
            raise KeyDecryptionError("Encrypted key is not valid base64") from e

        header = SALT_LENGTH + IV_LENGTH + TAG_LENGTH
        if len(data) <= header:
            raise KeyDecryptionError("Encrypted key blob is truncated")

        salt = data[:SALT_LENGTH]
        iv = data[SALT_LENGTH : SALT_LENGTH + IV_LENGTH]
        tag = data[SALT_LENGTH + IV_LENGTH : header]
        ciphertext = data[header:]
        try:
            plaintext = AESGCM(self._derive_key(salt)).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as e:
            raise KeyDecryptionError("Encrypted key failed authentication (wrong master key?)") from e
        return plaintext.decode()

    def evm_account(self, blob: str) -> LocalAccount:
        """Decrypt a blob into an ``eth_account`` signing account."""
        secret = self.decrypt(blob).strip()
        try:
            return Account.from_key(secret if secret.startswith("0x") else "0x" + secret)
        except (ValueError, binascii.Error) as e:
            raise KeyDecryptionError("Decrypted value is not a valid EVM private key") from e

    def solana_keypair(self, blob: str) -> Keypair:
        """Decrypt a blob into a Solana ``Keypair``.

        Accepts a JSON byte array, hex, base64 or base58 encoded secret key,
        or a 32-byte seed in any of those encodings.
        """
        return keypair_from_secret(self.decrypt(blob))


def keypair_from_secret(secret: str) -> Keypair:
    """Build a Solana keypair from its textual secret-key encodings."""
    secret = secret.strip()
    raw: bytes | None = None
    if secret.startswith("["):
        try:
            raw = bytes(json.loads(secret))
        except (ValueError, TypeError) as e:
            raise KeyDecryptionError("Decrypted value is not a valid JSON key array") from e
    elif len(secret) in (64, 128) and all(c in "0123456789abcdefABCDEF" for c in secret):
        raw = bytes.fromhex(secret)
    else:
        try:
            decoded = base64.b64decode(secret, validate=True)
        except (binascii.Error, ValueError):
            decoded = b""
        if len(decoded) in (32, 64):
            raw = decoded

    try:
        if raw is None:
            return Keypair.from_base58_string(secret)
        if len(raw) == 32:
            return Keypair.from_seed(raw)
        return Keypair.from_bytes(raw)
    except ValueError as e:
        raise KeyDecryptionError("Decrypted value is not a valid Solana secret key") from e
