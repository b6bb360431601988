"""
Vault Crypto Core — Password key derivation and streaming AES-GCM.

- Password layer: PBKDF2-HMAC-SHA512(password, salt, 120k) → 256-bit master key
- Sub-keys: HKDF-SHA256(master key, context) for domain separation
- Blob layer: AES-256-GCM over byte streams, [ciphertext][GCM tag 16B],
  with the 12-byte nonce kept next to the record instead of in the blob

Security Note:
    Never log plaintext, ciphertext or key material.
    Nonces are random 96-bit and drawn fresh for every encryption.
"""
import os
import logging
from typing import BinaryIO, Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import AuthenticationError, OperationCancelledError
from .config import DEFAULT_CHUNK_SIZE, DEFAULT_KDF_ITERATIONS

logger = logging.getLogger("drip_vault.vault")

NONCE_SIZE = 12  # 96-bit nonce
TAG_SIZE = 16  # 128-bit GCM tag
KEY_LENGTH = 32  # AES-256
SALT_SIZE = 16  # 128-bit salt


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def generate_salt() -> bytes:
    """Return 16 cryptographically random bytes."""
    return os.urandom(SALT_SIZE)


def derive_key(
    password: bytes,
    salt: bytes,
    iterations: int = DEFAULT_KDF_ITERATIONS,
) -> bytes:
    """Derive the 32-byte master key from a password with PBKDF2-HMAC-SHA512.

    An empty password is accepted; rejecting blank passwords is the
    caller's job.

    Args:
        password: Password bytes (UTF-8 encoded text).
        salt: 16-byte vault salt.
        iterations: PBKDF2 iteration count.

    Returns:
        32-byte derived key.

    Raises:
        ValueError: If the salt has the wrong size or iterations < 1.
    """
    if isinstance(password, str):
        password = password.encode("utf-8")
    if len(salt) != SALT_SIZE:
        raise ValueError(
            f"salt must be {SALT_SIZE} bytes, got {len(salt)}"
        )
    if iterations < 1:
        raise ValueError("iterations must be a positive integer")
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password)


def derive_subkey(seed: bytes, context: str) -> bytes:
    """Derive a 32-byte sub-key using HKDF-SHA256.

    Args:
        seed: Input key material (the master key).
        context: Context string for domain separation (e.g. "drip-vault-store").

    Returns:
        32-byte derived key.
    """
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_LENGTH,
        salt=None,  # deterministic: the same master key always opens the store
        info=context.encode("utf-8"),
    )
    return hkdf.derive(seed)


# ---------------------------------------------------------------------------
# One-shot encryption (small documents)
# ---------------------------------------------------------------------------

def encrypt(plaintext: bytes, key: bytes) -> tuple[bytes, bytes]:
    """Encrypt a buffer with AES-256-GCM.

    Returns:
        Tuple of (ciphertext + tag, nonce).
    """
    nonce = os.urandom(NONCE_SIZE)
    return AESGCM(key).encrypt(nonce, plaintext, None), nonce


def decrypt(ciphertext: bytes, key: bytes, nonce: bytes) -> bytes:
    """Decrypt a buffer produced by :func:`encrypt` or :func:`encrypt_stream`.

    Raises:
        AuthenticationError: If the tag does not verify.
    """
    if len(ciphertext) < TAG_SIZE:
        raise AuthenticationError(
            f"ciphertext too short: {len(ciphertext)} bytes (minimum {TAG_SIZE})"
        )
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, None)
    except InvalidTag as err:
        raise AuthenticationError(
            "Authentication tag mismatch: data corrupted or wrong key"
        ) from err


# ---------------------------------------------------------------------------
# Streaming encryption (media blobs)
# ---------------------------------------------------------------------------

def _check_cancel(cancel: Optional[Callable[[], bool]]) -> None:
    if cancel is not None and cancel():
        raise OperationCancelledError("Stream operation cancelled")


def encrypt_stream(
    source: BinaryIO,
    sink: BinaryIO,
    key: bytes,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> bytes:
    """Encrypt ``source`` into ``sink`` with AES-256-GCM.

    Format written to sink: [ciphertext][GCM tag 16B].

    Args:
        source: Readable binary stream with the plaintext.
        sink: Writable binary stream receiving the ciphertext.
        key: 32-byte AES key.
        chunk_size: Bytes read per iteration.

    Returns:
        The fresh 12-byte nonce used for this stream.
    """
    nonce = os.urandom(NONCE_SIZE)
    encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            break
        sink.write(encryptor.update(chunk))
    sink.write(encryptor.finalize())
    sink.write(encryptor.tag)
    return nonce


def decrypt_stream(
    source: BinaryIO,
    sink: BinaryIO,
    key: bytes,
    nonce: bytes,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    cancel: Optional[Callable[[], bool]] = None,
) -> int:
    """Decrypt a stream written by :func:`encrypt_stream`.

    Plaintext reaches ``sink`` before the tag is checked; the caller must
    discard whatever was written when this raises.

    Args:
        source: Readable binary stream with [ciphertext][tag].
        sink: Writable binary stream receiving the plaintext.
        key: 32-byte AES key.
        nonce: The 12-byte nonce returned by encryption.
        chunk_size: Bytes read per iteration.
        cancel: Optional callable polled between chunks.

    Returns:
        Number of plaintext bytes written.

    Raises:
        AuthenticationError: If the stream is truncated or the tag
            does not verify.
        OperationCancelledError: If ``cancel`` returned True.
    """
    if len(nonce) != NONCE_SIZE:
        raise AuthenticationError(
            f"nonce must be {NONCE_SIZE} bytes, got {len(nonce)}"
        )
    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).decryptor()
    # the last TAG_SIZE bytes of the stream are the tag: always hold them back
    pending = b""
    written = 0
    while True:
        _check_cancel(cancel)
        chunk = source.read(chunk_size)
        if not chunk:
            break
        pending += chunk
        if len(pending) > TAG_SIZE:
            body, pending = pending[:-TAG_SIZE], pending[-TAG_SIZE:]
            out = decryptor.update(body)
            sink.write(out)
            written += len(out)
    if len(pending) < TAG_SIZE:
        raise AuthenticationError(
            "ciphertext truncated: authentication tag missing"
        )
    try:
        out = decryptor.finalize_with_tag(pending)
    except InvalidTag as err:
        raise AuthenticationError(
            "Authentication tag mismatch: data corrupted or wrong key"
        ) from err
    sink.write(out)
    return written + len(out)
