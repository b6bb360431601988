"""
VaultEngine — Public API of the media vault.

Provides:
- ``unlock(password)`` / ``lock()`` — derive the session key and open the store
- ``import_media(sources)`` — encrypt sources into blob storage
- ``today()`` — the day window of items and how many are already viewed
- ``mark_viewed(id)`` / ``delete(id)`` — advance or shrink the schedule
- ``decrypt_to_temp(record)`` — authenticated plaintext copy for playback

The engine is a two-state machine (LOCKED → UNLOCKED → LOCKED). Every
public coroutine runs its blocking body on a worker thread. Callers
serialize operations per vault; the engine holds no ambient singletons.

Security Note:
    The master key lives only on the engine instance while UNLOCKED.
    Never log passwords, keys, nonces or media contents.
"""
import os
import uuid
import asyncio
import logging
import threading
from enum import Enum
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from ..data import ImportSource, MediaRecord, TodayMedia
from ..exceptions import (
    InvalidPasswordError,
    NotFoundError,
    NotUnlockedError,
    StorageError,
)
from ..storage import (
    BlobStore,
    DirectoryBlobStore,
    FileMediaStore,
    FileSecretStore,
    MediaStore,
    SecretStore,
)
from .config import VaultConfig
from .crypto import TAG_SIZE, decrypt_stream, derive_subkey, encrypt_stream
from .key_manager import KeyManager
from .scheduler import CycleScheduler

logger = logging.getLogger("drip_vault.vault")

StoreFactory = Callable[[bytes], MediaStore]
ThumbnailCallback = Callable[[MediaRecord], Optional[str]]
Source = Union[ImportSource, str, os.PathLike]

_STORE_CONTEXT = "drip-vault-store"
_BLOB_CONTEXT = "drip-vault-blob"


class VaultState(Enum):
    """Lifecycle state of a vault engine."""
    LOCKED = "locked"
    UNLOCKED = "unlocked"


async def _run_worker(
    func: Callable[..., Any],
    *args: Any,
    cancel: threading.Event,
    on_abandoned: Optional[Callable[[Any], None]] = None,
) -> Any:
    """Run ``func`` on a worker thread.

    If the awaiting task is cancelled, ``cancel`` is set and the worker is
    awaited to completion before CancelledError propagates, so the worker
    never outlives the call. ``on_abandoned`` receives a result produced
    after cancellation.
    """
    worker = asyncio.ensure_future(asyncio.to_thread(func, *args))
    try:
        return await asyncio.shield(worker)
    except asyncio.CancelledError:
        cancel.set()
        (outcome,) = await asyncio.gather(worker, return_exceptions=True)
        if on_abandoned is not None and not isinstance(outcome, BaseException):
            on_abandoned(outcome)
        raise


class VaultEngine:
    """Media vault bound to one set of stores.

    Args:
        secret_store: Holds the salt and the password verifier.
        blob_store: Holds encrypted media blobs and thumbnails.
        store_factory: Opens the persistent record store with a passphrase.
        config: Engine settings; defaults to ``VaultConfig()``.
        clock: Returns local "now"; defaults to ``datetime.now``.
        temp_dir: Default directory for decrypted copies.
    """

    def __init__(
        self,
        secret_store: SecretStore,
        blob_store: BlobStore,
        store_factory: StoreFactory,
        config: Optional[VaultConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
        temp_dir: Optional[Path] = None,
    ):
        self.config = config or VaultConfig()
        self._secrets = secret_store
        self._blobs = blob_store
        self._store_factory = store_factory
        self._clock = clock or datetime.now
        self._temp_dir = Path(temp_dir) if temp_dir else self.config.temp_dir
        self._keys = KeyManager(secret_store, self.config.kdf_iterations)
        self._lock = threading.RLock()
        self._state = VaultState.LOCKED
        self._key: Optional[bytes] = None
        self._store: Optional[MediaStore] = None
        self._scheduler: Optional[CycleScheduler] = None

    @classmethod
    def open(
        cls,
        vault_path: Any,
        config: Optional[VaultConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "VaultEngine":
        """Build a file-backed engine rooted at ``vault_path``.

        Layout: ``secrets.json``, ``vault.db``, ``blobs/`` and
        ``decrypted/`` (unless ``config.temp_dir`` is set).
        """
        root = Path(vault_path)
        try:
            root.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            raise StorageError(f"Cannot create vault at {root}: {err}") from err
        config = config or VaultConfig()
        return cls(
            secret_store=FileSecretStore(root / "secrets.json"),
            blob_store=DirectoryBlobStore(root / "blobs"),
            store_factory=lambda passphrase: FileMediaStore(
                root / "vault.db", passphrase
            ),
            config=config,
            clock=clock,
            temp_dir=config.temp_dir or root / "decrypted",
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> VaultState:
        return self._state

    @property
    def is_unlocked(self) -> bool:
        return self._state is VaultState.UNLOCKED

    def _require_unlocked(self) -> tuple[bytes, MediaStore, CycleScheduler]:
        if self._state is not VaultState.UNLOCKED:
            raise NotUnlockedError("Vault is locked", recoverable=True)
        return self._key, self._store, self._scheduler

    def _unlock(self, password: str) -> None:
        if not password or not password.strip():
            raise InvalidPasswordError("Password cannot be empty", recoverable=True)
        with self._lock:
            master = self._keys.unlock(password)
            if self.config.domain_separation:
                blob_key = derive_subkey(master, _BLOB_CONTEXT)
                store_passphrase = derive_subkey(master, _STORE_CONTEXT)
            else:
                blob_key = store_passphrase = master
            # the current session stays open until the new one is verified
            self._lock_session()
            store = self._store_factory(store_passphrase)
            self._key = blob_key
            self._store = store
            self._scheduler = CycleScheduler(
                store,
                daily_limit=self.config.daily_limit,
                day_start_hour=self.config.day_start_hour,
                reshuffle_scope=self.config.reshuffle_scope,
            )
            self._state = VaultState.UNLOCKED
        logger.info("Vault unlocked")

    async def unlock(self, password: str) -> None:
        """Verify ``password``, keep the session key and open the store.

        Raises:
            InvalidPasswordError: If the password is blank or wrong.
            StorageError: If the Secret Store or the record store fails.
        """
        await asyncio.to_thread(self._unlock, password)

    def _lock_session(self) -> None:
        store = self._store
        self._key = None
        self._store = None
        self._scheduler = None
        self._state = VaultState.LOCKED
        if store is not None:
            store.close()

    def lock(self) -> None:
        """Forget the session key and close the store. Idempotent."""
        with self._lock:
            was_unlocked = self.is_unlocked
            self._lock_session()
        if was_unlocked:
            logger.info("Vault locked")

    def close(self) -> None:
        self.lock()

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def _import_one(
        self,
        source: ImportSource,
        key: bytes,
        store: MediaStore,
        on_thumbnail: Optional[ThumbnailCallback],
    ) -> MediaRecord:
        media_id = str(uuid.uuid4())
        ref = f"{media_id}.enc"
        try:
            with source.open() as src, self._blobs.open_write(ref) as sink:
                nonce = encrypt_stream(src, sink, key, self.config.chunk_size)
                written = sink.tell() - TAG_SIZE
            record = MediaRecord(
                id=media_id,
                original_name=source.name,
                mime_type=source.mime_type,
                size_bytes=source.size or max(0, written),
                imported_at=self._clock(),
                encrypted_ref=ref,
                nonce=nonce,
            )
            store.insert_media(record)
        except BaseException:
            self._discard_blob(ref)
            raise

        if on_thumbnail is not None:
            try:
                thumb_ref = on_thumbnail(record)
            except Exception as err:
                logger.warning("Thumbnail generation failed for %s: %s", media_id, err)
                return record
            if thumb_ref:
                try:
                    store.update_thumb_ref(media_id, thumb_ref)
                except Exception as err:
                    logger.warning(
                        "Could not attach thumbnail to %s: %s", media_id, err
                    )
                    self._discard_blob(thumb_ref)
                else:
                    record = record.model_copy(update={"thumb_ref": thumb_ref})
        return record

    def _discard_blob(self, ref: str) -> None:
        """Best-effort removal of a blob left behind by a failed step."""
        try:
            self._blobs.delete(ref)
        except Exception as err:
            logger.warning("Could not remove stray blob %s: %s", ref, err)

    def _import_batch(
        self,
        sources: list[Source],
        on_thumbnail: Optional[ThumbnailCallback],
        cancel: threading.Event,
    ) -> int:
        with self._lock:
            key, store, scheduler = self._require_unlocked()
            count = 0
            try:
                for source in sources:
                    if cancel.is_set():
                        logger.info("Import cancelled after %d item(s)", count)
                        break
                    if not isinstance(source, ImportSource):
                        source = ImportSource.from_path(source)
                    try:
                        self._import_one(source, key, store, on_thumbnail)
                    except Exception as err:
                        logger.error("Failed to import %s: %s", source.name, err)
                        continue
                    count += 1
            finally:
                if count > 0:
                    scheduler.reconcile(self._clock())
            logger.info("Imported %d of %d item(s)", count, len(sources))
            return count

    async def import_media(
        self,
        sources: Iterable[Source],
        on_thumbnail: Optional[ThumbnailCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> int:
        """Encrypt and store each source; return how many succeeded.

        A failing source is logged and skipped. Setting ``cancel`` stops
        the batch before the next item; items already imported stay.

        Raises:
            NotUnlockedError: If the vault is locked.
        """
        cancel = cancel or threading.Event()
        return await _run_worker(
            self._import_batch,
            list(sources),
            on_thumbnail,
            cancel,
            cancel=cancel,
        )

    # ------------------------------------------------------------------
    # Schedule
    # ------------------------------------------------------------------

    def _today(self) -> TodayMedia:
        with self._lock:
            _, _, scheduler = self._require_unlocked()
            items, daily_index = scheduler.resolve_today(self._clock())
            return TodayMedia(items=items, daily_index=daily_index)

    async def today(self) -> TodayMedia:
        """Resolve the current day window (crossing day boundaries first)."""
        return await asyncio.to_thread(self._today)

    def _get_record(self, store: MediaStore, media_id: str) -> MediaRecord:
        record = store.get_media_by_id(media_id)
        if record is None:
            raise NotFoundError(f"Media {media_id} not found")
        return record

    def _mark_viewed(self, media_id: str) -> None:
        with self._lock:
            _, store, scheduler = self._require_unlocked()
            self._get_record(store, media_id)
            scheduler.mark_viewed(media_id, self._clock())

    async def mark_viewed(self, media_id: str) -> None:
        """Stamp the record as viewed and advance today's daily index.

        Raises:
            NotFoundError: If no record has this ID.
        """
        await asyncio.to_thread(self._mark_viewed, media_id)

    def _delete(self, media_id: str) -> None:
        with self._lock:
            _, store, scheduler = self._require_unlocked()
            record = self._get_record(store, media_id)
            self._blobs.delete(record.encrypted_ref)
            if record.thumb_ref:
                self._blobs.delete(record.thumb_ref)
            store.delete_media(media_id)
            scheduler.remove(media_id)
        logger.info("Deleted media %s", media_id)

    async def delete(self, media_id: str) -> None:
        """Remove the blob, thumbnail and record, and drop it from the cycle.

        Raises:
            NotFoundError: If no record has this ID.
        """
        await asyncio.to_thread(self._delete, media_id)

    def _media_count(self) -> int:
        _, store, _ = self._require_unlocked()
        return store.count_media()

    async def media_count(self) -> int:
        """Total number of records in the vault."""
        return await asyncio.to_thread(self._media_count)

    def _get_media(self, media_id: str) -> MediaRecord:
        _, store, _ = self._require_unlocked()
        return self._get_record(store, media_id)

    async def get_media(self, media_id: str) -> MediaRecord:
        return await asyncio.to_thread(self._get_media, media_id)

    # ------------------------------------------------------------------
    # Decryption
    # ------------------------------------------------------------------

    def _decrypt_to_temp(
        self,
        record: MediaRecord,
        dest_dir: Optional[Path],
        cancel: threading.Event,
    ) -> Path:
        key, _, _ = self._require_unlocked()
        directory = Path(dest_dir) if dest_dir else self._temp_dir
        if directory is None:
            raise StorageError("No directory configured for decrypted files")
        target = directory / record.id
        partial = directory / f"{record.id}.part"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            with self._blobs.open_read(record.encrypted_ref) as src, \
                    open(partial, "wb") as sink:
                decrypt_stream(
                    src, sink, key, record.nonce,
                    chunk_size=self.config.chunk_size,
                    cancel=cancel.is_set,
                )
            os.replace(partial, target)
        except OSError as err:
            partial.unlink(missing_ok=True)
            raise StorageError(f"Cannot write decrypted copy: {err}") from err
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return target

    async def decrypt_to_temp(
        self,
        record: MediaRecord,
        dest_dir: Optional[Path] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Path:
        """Decrypt ``record`` to ``dest_dir/<record id>`` and return the path.

        The file only appears once the whole blob has authenticated; the
        caller owns it and must delete it.

        Raises:
            NotUnlockedError: If the vault is locked.
            AuthenticationError: If the blob fails authentication.
            OperationCancelledError: If ``cancel`` was set mid-way.
        """
        cancel = cancel or threading.Event()
        return await _run_worker(
            self._decrypt_to_temp,
            record,
            dest_dir,
            cancel,
            cancel=cancel,
            on_abandoned=lambda path: path.unlink(missing_ok=True),
        )
