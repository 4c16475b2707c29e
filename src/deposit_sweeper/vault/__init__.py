"""Key vault - decryption of stored wallet keys."""

from deposit_sweeper.vault.keys import KeyDecryptionError, KeyVault, KeyVaultError, keypair_from_secret

__all__ = [
    "KeyDecryptionError",
    "KeyVault",
    "KeyVaultError",
    "keypair_from_secret",
]
