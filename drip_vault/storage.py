"""
Vault storage collaborators.

- ``MediaStore``: records by ID plus the single CycleState.
- ``SecretStore``: string key/value pairs (salt, password verifier).
- ``BlobStore``: encrypted blobs and thumbnails addressed by opaque refs.

Each interface has an in-memory implementation and a file-backed one.
``FileMediaStore`` keeps the whole document encrypted with AES-GCM under
a key derived from the passphrase it is opened with.

Security Note:
    Never log record contents, salts, verifiers or passphrases.
"""
import os
import logging
import threading
from pathlib import Path
from typing import Any, BinaryIO, Callable, Iterable, Optional, Protocol

import orjson

from .data import CycleState, MediaRecord
from .exceptions import AuthenticationError, NotFoundError, StorageError
from .vault.crypto import NONCE_SIZE, decrypt, derive_subkey, encrypt

logger = logging.getLogger("drip_vault.storage")

Listener = Callable[[str], None]

_STORE_CONTEXT = "drip-vault-db"
_FORMAT_VERSION = 1


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class MediaStore(Protocol):
    """Persistent Store: atomic, durable-on-return record operations."""

    def get_media_by_id(self, media_id: str) -> Optional[MediaRecord]: ...

    def get_media_by_ids(self, ids: Iterable[str]) -> list[MediaRecord]: ...

    def insert_media(self, record: MediaRecord) -> None: ...

    def update_viewed_at(self, media_id: str, ts: Any) -> None: ...

    def update_thumb_ref(self, media_id: str, ref: Optional[str]) -> None: ...

    def delete_media(self, media_id: str) -> None: ...

    def list_all_media_ids(self) -> list[str]: ...

    def count_media(self) -> int: ...

    def get_cycle_state(self) -> Optional[CycleState]: ...

    def put_cycle_state(self, state: CycleState) -> None: ...

    def subscribe(self, listener: Listener) -> Callable[[], None]: ...

    def close(self) -> None: ...


class SecretStore(Protocol):
    """Secret Store: string key/value pairs."""

    def get_string(self, key: str) -> Optional[str]: ...

    def put_string(self, key: str, value: str) -> None: ...


class BlobStore(Protocol):
    """Filesystem-like storage for encrypted blobs."""

    def open_write(self, ref: str) -> BinaryIO: ...

    def open_read(self, ref: str) -> BinaryIO: ...

    def delete(self, ref: str) -> None: ...

    def exists(self, ref: str) -> bool: ...


# ---------------------------------------------------------------------------
# Media store
# ---------------------------------------------------------------------------

class MemoryMediaStore:
    """Media store kept in process memory.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._media: dict[str, MediaRecord] = {}
        self._cycle: Optional[CycleState] = None
        self._listeners: list[Listener] = []

    # ------------------------------------------------------------------
    # Reactive read
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` to be called with the operation name
        after every successful write. Returns an unsubscribe callable."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def _notify(self, operation: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(operation)
            except Exception as err:
                logger.warning("Store listener failed on %s: %s", operation, err)

    def _commit(self) -> None:
        """Hook for durable implementations; called under the lock."""

    # ------------------------------------------------------------------
    # Media records
    # ------------------------------------------------------------------

    def get_media_by_id(self, media_id: str) -> Optional[MediaRecord]:
        with self._lock:
            record = self._media.get(media_id)
            return record.model_copy() if record is not None else None

    def get_media_by_ids(self, ids: Iterable[str]) -> list[MediaRecord]:
        """Return the records for ``ids`` in the given order, skipping unknown IDs."""
        with self._lock:
            return [
                self._media[media_id].model_copy()
                for media_id in ids if media_id in self._media
            ]

    def insert_media(self, record: MediaRecord) -> None:
        with self._lock:
            previous = self._media.get(record.id)
            self._media[record.id] = record.model_copy()
            try:
                self._commit()
            except Exception:
                self._restore_media(record.id, previous)
                raise
        self._notify("insert_media")

    def update_viewed_at(self, media_id: str, ts: Any) -> None:
        self._update(media_id, "update_viewed_at", viewed_at=ts)

    def update_thumb_ref(self, media_id: str, ref: Optional[str]) -> None:
        self._update(media_id, "update_thumb_ref", thumb_ref=ref)

    def _update(self, media_id: str, operation: str, **changes) -> None:
        with self._lock:
            previous = self._media.get(media_id)
            if previous is None:
                raise NotFoundError(f"Media {media_id} not found")
            self._media[media_id] = previous.model_copy(update=changes)
            try:
                self._commit()
            except Exception:
                self._restore_media(media_id, previous)
                raise
        self._notify(operation)

    def delete_media(self, media_id: str) -> None:
        with self._lock:
            previous = self._media.pop(media_id, None)
            if previous is None:
                return
            try:
                self._commit()
            except Exception:
                self._media[media_id] = previous
                raise
        self._notify("delete_media")

    def _restore_media(self, media_id: str, previous: Optional[MediaRecord]) -> None:
        if previous is None:
            self._media.pop(media_id, None)
        else:
            self._media[media_id] = previous

    def list_all_media_ids(self) -> list[str]:
        with self._lock:
            return list(self._media.keys())

    def count_media(self) -> int:
        with self._lock:
            return len(self._media)

    # ------------------------------------------------------------------
    # Cycle state
    # ------------------------------------------------------------------

    def get_cycle_state(self) -> Optional[CycleState]:
        with self._lock:
            return self._cycle.model_copy(deep=True) if self._cycle else None

    def put_cycle_state(self, state: CycleState) -> None:
        with self._lock:
            previous = self._cycle
            self._cycle = state.model_copy(deep=True)
            try:
                self._commit()
            except Exception:
                self._cycle = previous
                raise
        self._notify("put_cycle_state")

    def close(self) -> None:
        with self._lock:
            self._listeners.clear()


def _atomic_write(path: Path, data: bytes, mode: int = 0o600) -> None:
    tmp = path.with_name(f".{path.name}.tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class FileMediaStore(MemoryMediaStore):
    """Media store persisted as one encrypted orjson document.

    Format on disk: [nonce 12B][AES-GCM(payload) + tag 16B], keyed with
    HKDF(passphrase, "drip-vault-db"). Every write rewrites the document
    atomically, so a crash leaves either the old or the new version.
    """

    def __init__(self, path: Any, passphrase: bytes):
        super().__init__()
        self.path = Path(path)
        self._key = derive_subkey(passphrase, _STORE_CONTEXT)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            logger.debug("Creating media store at %s", self.path)
            return
        try:
            raw = self.path.read_bytes()
        except OSError as err:
            raise StorageError(f"Cannot read media store: {err}") from err
        if len(raw) < NONCE_SIZE:
            raise StorageError("Media store is truncated")
        try:
            payload = decrypt(raw[NONCE_SIZE:], self._key, raw[:NONCE_SIZE])
        except AuthenticationError as err:
            raise StorageError(
                "Cannot open media store: wrong key or corrupted file",
                recoverable=False,
            ) from err
        try:
            document = orjson.loads(payload)
            self._media = {
                item["id"]: MediaRecord.from_dict(item)
                for item in document.get("media", [])
            }
            cycle = document.get("cycle")
            self._cycle = CycleState.from_dict(cycle) if cycle else None
        except (orjson.JSONDecodeError, ValueError, KeyError) as err:
            raise StorageError(f"Media store is malformed: {err}") from err
        logger.debug("Media store loaded: %d record(s)", len(self._media))

    def _commit(self) -> None:
        document = {
            "version": _FORMAT_VERSION,
            "media": [record.to_dict() for record in self._media.values()],
            "cycle": self._cycle.to_dict() if self._cycle else None,
        }
        ciphertext, nonce = encrypt(orjson.dumps(document), self._key)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(self.path, nonce + ciphertext)
        except OSError as err:
            raise StorageError(f"Cannot write media store: {err}") from err

    def close(self) -> None:
        super().close()
        self._key = b""


# ---------------------------------------------------------------------------
# Secret store
# ---------------------------------------------------------------------------

class MemorySecretStore:
    """Secret store kept in process memory."""

    def __init__(self, values: Optional[dict[str, str]] = None):
        self._values: dict[str, str] = dict(values or {})

    def get_string(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def put_string(self, key: str, value: str) -> None:
        self._values[key] = value


class FileSecretStore:
    """Secret store persisted as an orjson document with mode 0600."""

    def __init__(self, path: Any):
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            return orjson.loads(self.path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as err:
            raise StorageError(f"Cannot read secret store: {err}") from err

    def get_string(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read().get(key)

    def put_string(self, key: str, value: str) -> None:
        with self._lock:
            values = self._read()
            values[key] = value
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                _atomic_write(self.path, orjson.dumps(values))
            except OSError as err:
                raise StorageError(f"Cannot write secret store: {err}") from err


# ---------------------------------------------------------------------------
# Blob store
# ---------------------------------------------------------------------------

class DirectoryBlobStore:
    """Blobs stored as files under a root directory; refs are file names."""

    def __init__(self, root: Any):
        self.root = Path(root)

    def path_for(self, ref: str) -> Path:
        path = (self.root / ref).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Blob ref escapes the blob directory: {ref}")
        return path

    def open_write(self, ref: str) -> BinaryIO:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            return open(self.path_for(ref), "wb")
        except OSError as err:
            raise StorageError(f"Cannot create blob {ref}: {err}") from err

    def open_read(self, ref: str) -> BinaryIO:
        try:
            return open(self.path_for(ref), "rb")
        except FileNotFoundError as err:
            raise StorageError(f"Blob {ref} is missing") from err
        except OSError as err:
            raise StorageError(f"Cannot open blob {ref}: {err}") from err

    def delete(self, ref: str) -> None:
        try:
            self.path_for(ref).unlink(missing_ok=True)
        except OSError as err:
            raise StorageError(f"Cannot delete blob {ref}: {err}") from err

    def exists(self, ref: str) -> bool:
        return self.path_for(ref).exists()
