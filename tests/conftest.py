"""
Shared fixtures for the AuthVault test suite.
"""
import hashlib

import pytest

from authenticator import Authenticator
from crypto_utils import CryptoUtils
from storage import Storage
from vault import Vault


class FixedDeviceCrypto(CryptoUtils):
    """CryptoUtils whose device key comes from a fixed identity string."""

    def __init__(self, device_id: str = "test-host/home/test/linuxx86_64"):
        self.device_id = device_id

    def device_key(self) -> bytes:
        return hashlib.sha256(self.device_id.encode('utf-8')).digest()


@pytest.fixture
def crypto():
    return FixedDeviceCrypto()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "vault" / "authenticator.db")


@pytest.fixture
def storage(db_path):
    store = Storage(db_path)
    yield store
    store.close()


@pytest.fixture
def vault(crypto, storage):
    return Vault(crypto, storage)


@pytest.fixture
def service(vault):
    return Authenticator(vault)
