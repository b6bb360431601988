"""Tests for KeyManager bootstrap and password verification."""
import base64
import hashlib

import pytest

from drip_vault.exceptions import InvalidPasswordError, StorageError
from drip_vault.storage import MemorySecretStore
from drip_vault.vault.key_manager import SALT_KEY, VERIFIER_KEY, KeyManager


@pytest.fixture
def secrets():
    return MemorySecretStore()


@pytest.fixture
def manager(secrets):
    return KeyManager(secrets, iterations=1000)


class TestUnlock:

    def test_bootstrap_then_same_password(self, manager):
        first = manager.unlock('abc')
        second = manager.unlock('abc')
        assert first == second
        assert len(first) == 32

    def test_wrong_password_rejected(self, manager):
        manager.unlock('abc')
        with pytest.raises(InvalidPasswordError):
            manager.unlock('xyz')

    def test_rejection_does_not_mutate(self, manager, secrets):
        manager.unlock('abc')
        before = dict(secrets._values)
        with pytest.raises(InvalidPasswordError):
            manager.unlock('xyz')
        assert secrets._values == before

    def test_bootstrap_persists_salt_and_verifier(self, manager, secrets):
        assert not manager.is_initialized
        key = manager.unlock('abc')
        assert manager.is_initialized
        salt = base64.b64decode(secrets.get_string(SALT_KEY))
        verifier = base64.b64decode(secrets.get_string(VERIFIER_KEY))
        assert len(salt) == 16
        assert verifier == hashlib.sha256(key).digest()

    def test_salt_is_stable(self, manager, secrets):
        manager.unlock('abc')
        salt = secrets.get_string(SALT_KEY)
        manager.unlock('abc')
        assert secrets.get_string(SALT_KEY) == salt

    def test_new_manager_same_store(self, secrets):
        key = KeyManager(secrets, iterations=1000).unlock('abc')
        assert KeyManager(secrets, iterations=1000).unlock('abc') == key

    def test_corrupted_salt(self, secrets):
        secrets.put_string(SALT_KEY, 'not base64!!')
        with pytest.raises(StorageError):
            KeyManager(secrets, iterations=1000).unlock('abc')

    def test_wrong_size_salt(self, secrets):
        secrets.put_string(SALT_KEY, base64.b64encode(b'short').decode('ascii'))
        with pytest.raises(StorageError):
            KeyManager(secrets, iterations=1000).unlock('abc')
