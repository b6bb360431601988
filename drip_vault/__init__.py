"""Drip Vault.

Encrypted media vault that releases a few items per day.
"""
from .version import __version__
from .data import CycleState, ImportSource, MediaRecord, TodayMedia
from .exceptions import (
    VaultError,
    InvalidPasswordError,
    NotUnlockedError,
    AuthenticationError,
    StorageError,
    NotFoundError,
    OperationCancelledError,
)
from .vault import VaultConfig, VaultEngine, VaultState

__all__ = (
    "__version__",
    "CycleState",
    "ImportSource",
    "MediaRecord",
    "TodayMedia",
    "VaultError",
    "InvalidPasswordError",
    "NotUnlockedError",
    "AuthenticationError",
    "StorageError",
    "NotFoundError",
    "OperationCancelledError",
    "VaultConfig",
    "VaultEngine",
    "VaultState",
)
