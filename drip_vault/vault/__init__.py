"""Vault Engine — password-gated, encrypted, drip-fed media storage.

Security Note (Threat Model):
    The master key is held in process memory while the engine is
    UNLOCKED, and decrypted copies exist on disk until the caller
    removes them. A memory dump of the process or access to the temp
    directory can expose media. This is an accepted limitation.
"""

from .config import VaultConfig
from .crypto import derive_key, derive_subkey, encrypt_stream, decrypt_stream
from .key_manager import KeyManager
from .scheduler import CycleScheduler, day_start, secure_shuffle
from .engine import VaultEngine, VaultState

__all__ = [
    "VaultConfig",
    "derive_key",
    "derive_subkey",
    "encrypt_stream",
    "decrypt_stream",
    "KeyManager",
    "CycleScheduler",
    "day_start",
    "secure_shuffle",
    "VaultEngine",
    "VaultState",
]
