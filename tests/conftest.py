import uuid
from datetime import datetime, timedelta

import pytest

from drip_vault.data import MediaRecord
from drip_vault.storage import (
    DirectoryBlobStore,
    MemoryMediaStore,
    MemorySecretStore,
)
from drip_vault.vault import VaultConfig, VaultEngine


class FakeClock:
    """Controllable local clock."""
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def next_day(self, hour: int = 8) -> datetime:
        self.now = (self.now + timedelta(days=1)).replace(
            hour=hour, minute=0, second=0, microsecond=0
        )
        return self.now


def make_record(media_id: str = None, **kwargs) -> MediaRecord:
    media_id = media_id or str(uuid.uuid4())
    values = {
        'id': media_id,
        'original_name': f'{media_id}.jpg',
        'mime_type': 'image/jpeg',
        'size_bytes': 10,
        'imported_at': datetime(2024, 3, 1, 8, 0),
        'encrypted_ref': f'{media_id}.enc',
        'nonce': b'\x00' * 12,
    }
    values.update(kwargs)
    return MediaRecord(**values)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 8, 0))


@pytest.fixture
def media_store():
    return MemoryMediaStore()


@pytest.fixture
def config():
    return VaultConfig(kdf_iterations=1000, chunk_size=1024)


@pytest.fixture
def engine(tmp_path, clock, config, media_store):
    """Engine over in-memory record/secret stores and a temp blob dir."""
    return VaultEngine(
        secret_store=MemorySecretStore(),
        blob_store=DirectoryBlobStore(tmp_path / 'blobs'),
        store_factory=lambda passphrase: media_store,
        config=config,
        clock=clock,
        temp_dir=tmp_path / 'decrypted',
    )
