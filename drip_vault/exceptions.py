"""Exceptions raised by the vault engine and its collaborators."""
from typing import Optional


class VaultError(Exception):
    """Base exception for every vault failure."""

    def __init__(self, message: str, *, recoverable: Optional[bool] = None):
        super().__init__(message)
        self.recoverable = recoverable


class InvalidPasswordError(VaultError):
    """The password does not match the stored verifier."""


class NotUnlockedError(VaultError):
    """An operation needing the session key ran while the vault is locked."""


class AuthenticationError(VaultError):
    """AEAD tag mismatch: ciphertext corrupted or wrong key/nonce."""


class StorageError(VaultError):
    """The persistent store, secret store or blob storage failed."""


class NotFoundError(VaultError, KeyError):
    """No media record exists for the given ID."""

    def __str__(self) -> str:
        # KeyError would quote the message otherwise.
        return str(self.args[0]) if self.args else ''


class OperationCancelledError(VaultError):
    """A long-running operation was cancelled before it completed."""
