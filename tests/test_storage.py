"""
Tests for storage collaborators and data models.

Tests cover:
- MemoryMediaStore copies, ordering and change notifications
- FileMediaStore encryption at rest, reload and wrong passphrase
- FileSecretStore persistence and permissions
- DirectoryBlobStore refs
- MediaRecord / CycleState serialization and VaultConfig validation
"""
import os
import stat
from datetime import datetime

import pytest
from pydantic import ValidationError

from drip_vault.data import CycleState, ImportSource, MediaRecord, TodayMedia
from drip_vault.exceptions import NotFoundError, StorageError
from drip_vault.storage import (
    DirectoryBlobStore,
    FileMediaStore,
    FileSecretStore,
    MemoryMediaStore,
)
from drip_vault.vault.config import VaultConfig

from .conftest import make_record

ANCHOR = datetime(2024, 3, 1, 7, 0)


class TestMemoryMediaStore:

    def test_insert_and_get(self, media_store):
        record = make_record('a')
        media_store.insert_media(record)
        assert media_store.get_media_by_id('a') == record
        assert media_store.get_media_by_id('zzz') is None
        assert media_store.count_media() == 1

    def test_returns_copies(self, media_store):
        media_store.insert_media(make_record('a'))
        state = CycleState(order=['a'], day_anchor=ANCHOR)
        media_store.put_cycle_state(state)
        media_store.get_cycle_state().order.append('b')
        assert media_store.get_cycle_state().order == ['a']

    def test_get_by_ids_keeps_requested_order(self, media_store):
        for media_id in 'abc':
            media_store.insert_media(make_record(media_id))
        records = media_store.get_media_by_ids(['c', 'x', 'a'])
        assert [r.id for r in records] == ['c', 'a']

    def test_update_viewed_at(self, media_store):
        media_store.insert_media(make_record('a'))
        media_store.update_viewed_at('a', ANCHOR)
        assert media_store.get_media_by_id('a').viewed_at == ANCHOR
        with pytest.raises(NotFoundError):
            media_store.update_viewed_at('zzz', ANCHOR)

    def test_delete(self, media_store):
        media_store.insert_media(make_record('a'))
        media_store.delete_media('a')
        media_store.delete_media('a')
        assert media_store.list_all_media_ids() == []

    def test_subscribe(self, media_store):
        events = []
        unsubscribe = media_store.subscribe(events.append)
        media_store.insert_media(make_record('a'))
        media_store.put_cycle_state(CycleState(order=['a'], day_anchor=ANCHOR))
        unsubscribe()
        media_store.delete_media('a')
        assert events == ['insert_media', 'put_cycle_state']


class TestFileMediaStore:

    def test_reload(self, tmp_path):
        path = tmp_path / 'vault.db'
        store = FileMediaStore(path, b'k' * 32)
        store.insert_media(make_record('a', thumb_ref='a.thumb'))
        store.update_viewed_at('a', ANCHOR)
        store.put_cycle_state(CycleState(order=['a'], pointer=1, day_anchor=ANCHOR))

        reopened = FileMediaStore(path, b'k' * 32)
        record = reopened.get_media_by_id('a')
        assert record.thumb_ref == 'a.thumb'
        assert record.viewed_at == ANCHOR
        assert record.nonce == b'\x00' * 12
        assert reopened.get_cycle_state().pointer == 1

    def test_encrypted_at_rest(self, tmp_path):
        path = tmp_path / 'vault.db'
        FileMediaStore(path, b'k' * 32).insert_media(
            make_record('a', original_name='holiday-photo.jpg')
        )
        assert b'holiday-photo' not in path.read_bytes()

    def test_wrong_passphrase(self, tmp_path):
        path = tmp_path / 'vault.db'
        FileMediaStore(path, b'k' * 32).insert_media(make_record('a'))
        with pytest.raises(StorageError):
            FileMediaStore(path, b'x' * 32)

    def test_corrupt_file(self, tmp_path):
        path = tmp_path / 'vault.db'
        path.write_bytes(b'garbage')
        with pytest.raises(StorageError):
            FileMediaStore(path, b'k' * 32)

    def test_failed_commit_rolls_back(self, tmp_path):
        class Failing(FileMediaStore):
            def _commit(self):
                raise StorageError('disk full')

        store = Failing(tmp_path / 'vault.db', b'k' * 32)
        with pytest.raises(StorageError):
            store.insert_media(make_record('a'))
        assert store.get_media_by_id('a') is None


class TestFileSecretStore:

    def test_persists(self, tmp_path):
        path = tmp_path / 'secrets.json'
        FileSecretStore(path).put_string('salt', 'abc')
        assert FileSecretStore(path).get_string('salt') == 'abc'
        assert FileSecretStore(path).get_string('other') is None

    def test_private_permissions(self, tmp_path):
        path = tmp_path / 'secrets.json'
        FileSecretStore(path).put_string('salt', 'abc')
        if os.name == 'posix':
            assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_corrupt(self, tmp_path):
        path = tmp_path / 'secrets.json'
        path.write_text('{not json')
        with pytest.raises(StorageError):
            FileSecretStore(path).get_string('salt')


class TestDirectoryBlobStore:

    def test_write_read_delete(self, tmp_path):
        blobs = DirectoryBlobStore(tmp_path / 'blobs')
        with blobs.open_write('x.enc') as fh:
            fh.write(b'data')
        assert blobs.exists('x.enc')
        with blobs.open_read('x.enc') as fh:
            assert fh.read() == b'data'
        blobs.delete('x.enc')
        blobs.delete('x.enc')
        assert not blobs.exists('x.enc')

    def test_missing_blob(self, tmp_path):
        with pytest.raises(StorageError):
            DirectoryBlobStore(tmp_path).open_read('nope.enc')

    def test_ref_cannot_escape(self, tmp_path):
        with pytest.raises(StorageError):
            DirectoryBlobStore(tmp_path / 'blobs').open_write('../escape')


class TestModels:

    def test_record_round_trip(self):
        record = make_record('a', nonce=bytes(range(12)), viewed_at=ANCHOR)
        data = record.to_dict()
        assert isinstance(data['nonce'], str)
        assert MediaRecord.from_dict(data) == record

    def test_nonce_size_validated(self):
        with pytest.raises(ValidationError):
            make_record('a', nonce=b'short')

    def test_cycle_state_window(self):
        state = CycleState(order=list('abcdefghij'), pointer=5, day_anchor=ANCHOR)
        assert state.remaining == 5
        assert state.window(3) == list('fgh')
        assert state.window(7) == list('fghij')

    def test_cycle_state_rejects_negative(self):
        with pytest.raises(ValidationError):
            CycleState(pointer=-1, day_anchor=ANCHOR)

    def test_today_remaining(self):
        today = TodayMedia(items=[make_record('a'), make_record('b')], daily_index=1)
        assert today.remaining == 1
        assert len(today) == 2

    def test_import_source_from_path(self, tmp_path):
        path = tmp_path / 'clip.mp4'
        path.write_bytes(b'1234')
        source = ImportSource.from_path(path)
        assert source.name == 'clip.mp4'
        assert source.mime_type == 'video/mp4'
        assert source.size == 4
        with source.open() as fh:
            assert fh.read() == b'1234'


class TestVaultConfig:

    def test_defaults(self):
        config = VaultConfig()
        assert config.kdf_iterations == 120_000
        assert config.daily_limit == 7
        assert config.day_start_hour == 7
        assert config.reshuffle_scope == 'suffix'

    def test_invalid_scope(self):
        with pytest.raises(ValidationError):
            VaultConfig(reshuffle_scope='sideways')

    def test_invalid_hour(self):
        with pytest.raises(ValidationError):
            VaultConfig(day_start_hour=24)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv('DRIP_VAULT_DAILY_LIMIT', '3')
        monkeypatch.setenv('DRIP_VAULT_RESHUFFLE_SCOPE', 'FULL')
        monkeypatch.setenv('DRIP_VAULT_DOMAIN_SEPARATION', 'false')
        config = VaultConfig.from_env()
        assert config.daily_limit == 3
        assert config.reshuffle_scope == 'full'
        assert config.domain_separation is False
