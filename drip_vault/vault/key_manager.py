"""
KeyManager — Password verification and master key derivation.

The vault salt and the password verifier (SHA-256 of the derived key)
live in the Secret Store. The first password ever entered becomes the
vault password; afterwards a password is accepted only if its derived
key hashes to the stored verifier.

Security Note:
    Neither the password nor the key is ever persisted or logged.
"""
import base64
import hashlib
import hmac
import logging

from ..exceptions import InvalidPasswordError, StorageError
from ..storage import SecretStore
from .config import DEFAULT_KDF_ITERATIONS
from .crypto import SALT_SIZE, derive_key, generate_salt

logger = logging.getLogger("drip_vault.vault")

SALT_KEY = "salt"
VERIFIER_KEY = "password_verifier"


def _decode(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except ValueError as err:
        raise StorageError(f"Stored {name} is not valid base64") from err


class KeyManager:
    """Derives and verifies the master key against the Secret Store."""

    def __init__(
        self,
        secrets: SecretStore,
        iterations: int = DEFAULT_KDF_ITERATIONS,
    ):
        self._secrets = secrets
        self._iterations = iterations

    @property
    def is_initialized(self) -> bool:
        """True once a password verifier has been stored."""
        return self._secrets.get_string(VERIFIER_KEY) is not None

    def _load_salt(self) -> bytes:
        stored = self._secrets.get_string(SALT_KEY)
        if stored is None:
            salt = generate_salt()
            self._secrets.put_string(
                SALT_KEY, base64.b64encode(salt).decode("ascii")
            )
            logger.info("Vault salt generated")
            return salt
        salt = _decode(stored, "salt")
        if len(salt) != SALT_SIZE:
            raise StorageError(
                f"Stored salt must be {SALT_SIZE} bytes, got {len(salt)}"
            )
        return salt

    def unlock(self, password: str) -> bytes:
        """Return the master key for ``password``.

        On the very first unlock the verifier for this password is stored
        (vault bootstrap).

        Args:
            password: The vault password.

        Returns:
            32-byte master key.

        Raises:
            InvalidPasswordError: If the password does not match.
            StorageError: If the Secret Store fails or holds bad data.
        """
        salt = self._load_salt()
        key = derive_key(password.encode("utf-8"), salt, self._iterations)
        digest = hashlib.sha256(key).digest()

        stored = self._secrets.get_string(VERIFIER_KEY)
        if stored is None:
            self._secrets.put_string(
                VERIFIER_KEY, base64.b64encode(digest).decode("ascii")
            )
            logger.info("Vault password verifier stored")
            return key

        if not hmac.compare_digest(_decode(stored, "verifier"), digest):
            logger.warning("Vault unlock rejected: invalid password")
            raise InvalidPasswordError("Invalid password", recoverable=True)
        return key
