import sqlite3
import threading

import pytest

from conftest import FixedDeviceCrypto
from crypto_utils import encode_bytes
from errors import (
    DecryptionFailedError,
    InvalidFormatError,
    InvalidPasswordError,
    InvalidStateError,
    LockedError,
    NoPasswordSetError,
    NotFoundError,
    NotInitializedError,
)
from models import Account, Settings
from storage import Storage
from vault import (
    META_DEVICE_VERIFIER,
    META_PASSWORD_VERIFIER,
    META_SALT,
    KeySource,
    Vault,
    VaultState,
)

PASSWORD = "Sup3rSecret"


def make_account(account_id="acc-1", name="alice", issuer="Example"):
    return Account(id=account_id, name=name, issuer=issuer, secret="JBSWY3DPEHPK3PXP")


@pytest.fixture
def reopen(db_path):
    """Open a second vault instance on the same database file."""
    opened = []

    def _open(crypto=None):
        store = Storage(db_path)
        opened.append(store)
        return Vault(crypto or FixedDeviceCrypto(), store)

    yield _open
    for store in opened:
        store.close()


# --- Lifecycle -----------------------------------------------------------------

def test_new_vault_is_uninitialized(vault):
    assert vault.state is VaultState.UNINITIALIZED
    assert not vault.is_initialized()
    assert not vault.has_password()
    assert not vault.needs_unlock()


def test_initialize(vault, storage):
    vault.initialize()

    assert vault.state is VaultState.UNLOCKED
    assert vault.key_source is KeySource.DEVICE
    assert storage.has_metadata(META_SALT)
    assert storage.has_metadata(META_DEVICE_VERIFIER)
    assert not storage.has_metadata(META_PASSWORD_VERIFIER)
    assert storage.get_settings() is not None


def test_initialize_twice_fails(vault):
    vault.initialize()
    with pytest.raises(InvalidStateError):
        vault.initialize()


def test_lock_zeroes_key(vault):
    vault.initialize()
    key = vault._master_key

    vault.lock()

    assert vault.state is VaultState.LOCKED
    assert vault.key_source is None
    assert bytes(key) == b"\x00" * len(key)


def test_first_access_initializes_lazily(vault):
    vault.save_account(make_account())
    assert vault.is_initialized()
    assert vault.key_source is KeySource.DEVICE


def test_status_has_no_key_material(vault):
    vault.initialize()
    status = vault.status()
    assert status['state'] == "unlocked"
    assert status['key_source'] == "device"
    assert status['rows'] == {'metadata': 2, 'accounts': 0, 'settings': 1}
    assert all(not isinstance(v, (bytes, bytearray)) for v in status.values())


# --- Accounts ------------------------------------------------------------------

def test_save_and_get_account(vault):
    vault.initialize()
    account = make_account()
    vault.save_account(account)

    assert vault.get_account("acc-1") == account
    assert vault.get_all_accounts() == [account]


def test_save_replaces_by_id(vault):
    vault.save_account(make_account(name="old"))
    vault.save_account(make_account(name="new"))
    assert [a.name for a in vault.get_all_accounts()] == ["new"]


def test_save_requires_id(vault):
    with pytest.raises(ValueError):
        vault.save_account(Account(id=""))


def test_missing_account(vault):
    vault.initialize()
    with pytest.raises(NotFoundError):
        vault.get_account("nope")


def test_records_are_encrypted_at_rest(vault, storage):
    vault.save_account(make_account(name="plaintext-name"))
    blob = storage.get_account("acc-1")
    assert "plaintext-name" not in blob
    assert "JBSWY3DPEHPK3PXP" not in blob


def test_lazy_device_unlock_on_new_instance(vault, reopen):
    vault.save_account(make_account())

    other = reopen()
    assert other.state is VaultState.LOCKED
    assert other.get_all_accounts() == [make_account()]
    assert other.key_source is KeySource.DEVICE


def test_delete_accounts(vault):
    vault.save_account(make_account("a"))
    vault.save_account(make_account("b"))
    vault.save_account(make_account("c"))

    assert vault.delete_account("a")
    assert not vault.delete_account("a")
    assert vault.delete_all_accounts() == 2
    assert vault.get_all_accounts() == []


def test_one_corrupt_row_among_three(vault, storage):
    vault.save_account(make_account("a"))
    vault.save_account(make_account("b"))
    vault.save_account(make_account("c"))
    storage.put_account("b", encode_bytes(b"\x01" * 50))

    assert sorted(a.id for a in vault.get_all_accounts()) == ["a", "c"]


def test_corrupt_rows_are_skipped_in_bulk_reads(vault, storage):
    vault.save_account(make_account("a"))
    vault.save_account(make_account("b"))
    storage.put_account("bad", encode_bytes(b"\x00" * 40))
    storage.put_account("garbled", "***not base64***")

    assert sorted(a.id for a in vault.get_all_accounts()) == ["a", "b"]

    with pytest.raises(DecryptionFailedError):
        vault.get_account("bad")
    with pytest.raises(InvalidFormatError):
        vault.get_account("garbled")


# --- Password lifecycle ----------------------------------------------------

def test_set_password_preserves_accounts(vault, storage, crypto):
    vault.save_account(make_account("a"))
    vault.save_account(make_account("b"))
    device_blob = storage.get_account("a")

    vault.set_password(PASSWORD)

    assert vault.key_source is KeySource.PASSWORD
    assert vault.has_password()
    assert not storage.has_metadata(META_DEVICE_VERIFIER)
    assert sorted(a.id for a in vault.get_all_accounts()) == ["a", "b"]

    new_blob = storage.get_account("a")
    assert new_blob != device_blob
    with pytest.raises(DecryptionFailedError):
        crypto.decrypt_from_text(new_blob, crypto.device_key())


def test_password_vault_stays_locked_on_reopen(vault, reopen):
    vault.save_account(make_account())
    vault.set_password(PASSWORD)

    other = reopen()
    assert other.state is VaultState.LOCKED
    assert other.needs_unlock()
    with pytest.raises(LockedError):
        other.get_all_accounts()
    with pytest.raises(InvalidStateError):
        other.unlock_with_device_key()
    with pytest.raises(InvalidPasswordError):
        other.unlock("wrong password")
    assert other.state is VaultState.LOCKED

    other.unlock(PASSWORD)
    assert other.state is VaultState.UNLOCKED
    assert other.get_all_accounts() == [make_account()]


def test_verify_password(vault):
    vault.initialize()
    assert not vault.verify_password(PASSWORD)
    vault.set_password(PASSWORD)
    vault.lock()

    assert vault.verify_password(PASSWORD)
    assert not vault.verify_password("nope")
    assert vault.state is VaultState.LOCKED


def test_unlock_without_password(vault):
    with pytest.raises(NotInitializedError):
        vault.unlock(PASSWORD)
    vault.initialize()
    with pytest.raises(NoPasswordSetError):
        vault.unlock(PASSWORD)


def test_set_empty_password_rejected(vault):
    vault.initialize()
    with pytest.raises(ValueError):
        vault.set_password("")


def test_set_password_when_locked(vault):
    vault.set_password(PASSWORD)
    vault.lock()
    with pytest.raises(LockedError):
        vault.set_password("another")


def test_change_password(vault, reopen):
    vault.save_account(make_account())
    vault.set_password(PASSWORD)
    vault.change_password("N3wPassword")

    other = reopen()
    with pytest.raises(InvalidPasswordError):
        other.unlock(PASSWORD)
    other.unlock("N3wPassword")
    assert other.get_all_accounts() == [make_account()]


def test_remove_password(vault, storage, reopen):
    vault.save_account(make_account())
    vault.set_password(PASSWORD)
    vault.remove_password()

    assert vault.key_source is KeySource.DEVICE
    assert not storage.has_metadata(META_PASSWORD_VERIFIER)
    assert storage.has_metadata(META_DEVICE_VERIFIER)

    other = reopen()
    assert not other.needs_unlock()
    assert other.get_all_accounts() == [make_account()]
    assert other.get_settings().password_enabled is False


def test_rotation_drops_unreadable_rows(vault, storage):
    vault.save_account(make_account("a"))
    storage.put_account("bad", encode_bytes(b"\x00" * 40))

    vault.set_password(PASSWORD)

    assert [account_id for account_id, _ in storage.list_accounts()] == ["a"]


def test_failed_rotation_rolls_back(vault, storage, reopen, monkeypatch):
    vault.save_account(make_account("a"))
    vault.save_account(make_account("b"))
    salt_before = storage.get_metadata(META_SALT)

    def broken_put(account_id, blob):
        raise RuntimeError("disk full")

    monkeypatch.setattr(storage, "put_account", broken_put)
    with pytest.raises(RuntimeError):
        vault.set_password(PASSWORD)
    monkeypatch.undo()

    assert vault.key_source is KeySource.DEVICE
    assert storage.get_metadata(META_SALT) == salt_before
    assert not storage.has_metadata(META_PASSWORD_VERIFIER)
    assert storage.has_metadata(META_DEVICE_VERIFIER)
    assert sorted(a.id for a in vault.get_all_accounts()) == ["a", "b"]

    other = reopen()
    assert sorted(a.id for a in other.get_all_accounts()) == ["a", "b"]


def test_commit_blocked_by_reader_rolls_back(db_path, reopen):
    store = Storage(db_path, timeout=0.1)
    vault = Vault(FixedDeviceCrypto(), store)
    vault.save_account(make_account("a"))

    # An open read transaction keeps a SHARED lock, so COMMIT cannot finish
    reader = sqlite3.connect(db_path, isolation_level=None)
    reader.execute("BEGIN")
    reader.execute("SELECT * FROM accounts").fetchall()
    try:
        with pytest.raises(sqlite3.OperationalError):
            vault.set_password(PASSWORD)
    finally:
        reader.execute("ROLLBACK")
        reader.close()

    assert not store.conn.in_transaction
    assert vault.key_source is KeySource.DEVICE

    vault.save_account(make_account("b"))
    vault.set_password(PASSWORD)
    store.close()

    other = reopen()
    other.unlock(PASSWORD)
    assert sorted(a.id for a in other.get_all_accounts()) == ["a", "b"]


def test_saves_during_password_change_survive(vault):
    vault.initialize()
    errors = []

    def writer(offset):
        try:
            for i in range(10):
                vault.save_account(make_account(f"w{offset}-{i}"))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=writer, args=(n,)) for n in range(3)]
    for thread in threads:
        thread.start()
    vault.set_password(PASSWORD)
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(vault.get_all_accounts()) == 30

    vault.lock()
    vault.unlock(PASSWORD)
    assert len(vault.get_all_accounts()) == 30


def test_update_account_is_atomic(vault):
    vault.save_account(make_account("a"))

    def bump(account):
        account.counter += 1

    threads = [threading.Thread(target=vault.update_account, args=("a", bump)) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert vault.get_account("a").counter == 8
    with pytest.raises(NotFoundError):
        vault.update_account("missing", bump)


def test_state_reads_wait_for_lock(vault):
    vault.initialize()
    results = []
    checks = [vault.is_initialized, vault.has_password, vault.is_unlocked, lambda: vault.key_source]

    with vault._lock:
        thread = threading.Thread(target=lambda: results.extend(check() for check in checks))
        thread.start()
        thread.join(0.2)
        assert thread.is_alive()
        assert results == []

    thread.join()
    assert results == [True, False, True, KeySource.DEVICE]


# --- Device key recovery -------------------------------------------------------

def test_foreign_device_reinitializes_silently(vault, reopen):
    vault.save_account(make_account())

    other = reopen(FixedDeviceCrypto("another-machine"))
    assert other.get_all_accounts() == []
    assert other.key_source is KeySource.DEVICE

    other.save_account(make_account("fresh"))
    assert [a.id for a in other.get_all_accounts()] == ["fresh"]


def test_password_unlock_does_not_reinitialize(vault, reopen):
    vault.save_account(make_account())
    vault.set_password(PASSWORD)

    other = reopen(FixedDeviceCrypto("another-machine"))
    with pytest.raises(InvalidPasswordError):
        other.unlock("wrong")
    other.unlock(PASSWORD)
    assert other.get_all_accounts() == [make_account()]


def test_missing_device_verifier_reinitializes(vault, storage, reopen):
    vault.initialize()
    salt_before = storage.get_metadata(META_SALT)
    storage.delete_metadata(META_DEVICE_VERIFIER)

    other = reopen()
    other.unlock_with_device_key()

    assert other.state is VaultState.UNLOCKED
    assert storage.get_metadata(META_SALT) != salt_before
    assert storage.has_metadata(META_DEVICE_VERIFIER)


def test_garbled_device_verifier_reinitializes(vault, storage, reopen):
    vault.initialize()
    storage.set_metadata(META_DEVICE_VERIFIER, "%%%")

    other = reopen()
    other.unlock_with_device_key()
    assert other.is_unlocked()


# --- Settings ------------------------------------------------------------------

def test_settings_round_trip(vault):
    vault.initialize()
    vault.save_settings(Settings(theme="dark", auto_lock_minutes=15))

    settings = vault.get_settings()
    assert settings.theme == "dark"
    assert settings.auto_lock_minutes == 15
    assert settings.password_enabled is False


def test_password_enabled_follows_verifier(vault):
    vault.initialize()
    vault.save_settings(Settings(password_enabled=True))
    assert vault.get_settings().password_enabled is False

    vault.set_password(PASSWORD)
    assert vault.get_settings().password_enabled is True


def test_missing_settings_row_yields_defaults(vault, storage):
    vault.initialize()
    storage.connect().execute("DELETE FROM settings")
    assert vault.get_settings() == Settings()


def test_settings_survive_rotation(vault):
    vault.initialize()
    vault.save_settings(Settings(theme="dark", auto_lock_minutes=0))
    vault.set_password(PASSWORD)

    settings = vault.get_settings()
    assert settings.theme == "dark"
    assert settings.auto_lock_minutes == 0
