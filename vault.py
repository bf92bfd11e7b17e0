"""
Encrypted account vault for AuthVault.

The vault owns the master key and the lock state. Every account and the
settings record are encrypted directly with the live master key before they
reach storage; switching between the device key and a password key rewrites
all of them under the new key in one storage transaction.
"""
import logging
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from crypto_utils import CryptoUtils, decode_bytes, encode_bytes
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

# Configure logging
logger = logging.getLogger(__name__)

META_SALT = "salt"
META_DEVICE_VERIFIER = "device_verifier"
META_PASSWORD_VERIFIER = "password_verifier"


class VaultState(Enum):
    UNINITIALIZED = "uninitialized"
    LOCKED = "locked"
    UNLOCKED = "unlocked"


class KeySource(Enum):
    DEVICE = "device"
    PASSWORD = "password"


class Vault:
    """Lock state machine and record encryption over a Storage instance.

    All public methods run under one re-entrant lock, so unlocks, key
    rotations and record writes never interleave. Key derivation is slow
    (Argon2id, 64 MiB) and runs while the lock is held; callers with an event
    loop should invoke password operations from a worker thread.
    """

    def __init__(self, crypto: CryptoUtils, storage: Storage):
        """
        Initialize the vault.

        Args:
            crypto: CryptoUtils instance
            storage: Storage instance (tables are created if missing)
        """
        self.crypto = crypto
        self.storage = storage
        self._lock = threading.RLock()
        self._master_key: Optional[bytearray] = None
        self._key_source: Optional[KeySource] = None

        self.storage.init_db()

    # === State ===

    @property
    def state(self) -> VaultState:
        with self._lock:
            if self._master_key is not None:
                return VaultState.UNLOCKED
            if not self.is_initialized():
                return VaultState.UNINITIALIZED
            return VaultState.LOCKED

    @property
    def key_source(self) -> Optional[KeySource]:
        with self._lock:
            return self._key_source

    def is_initialized(self) -> bool:
        with self._lock:
            return self.storage.has_metadata(META_SALT)

    def has_password(self) -> bool:
        with self._lock:
            return self.storage.has_metadata(META_PASSWORD_VERIFIER)

    def is_unlocked(self) -> bool:
        with self._lock:
            return self._master_key is not None

    def needs_unlock(self) -> bool:
        """True when records can only be reached with the user's password."""
        with self._lock:
            return self.has_password() and not self.is_unlocked()

    def status(self) -> Dict[str, Any]:
        """Vault status for diagnostics. Never includes key material."""
        with self._lock:
            return {
                'state': self.state.value,
                'initialized': self.is_initialized(),
                'has_password': self.has_password(),
                'unlocked': self.is_unlocked(),
                'key_source': self._key_source.value if self._key_source else None,
                'db_path': self.storage.db_path,
                'rows': self.storage.counts(),
            }

    def _set_master_key(self, key: bytes, source: KeySource):
        self._clear_master_key()
        self._master_key = bytearray(key)
        self._key_source = source

    def _clear_master_key(self):
        if self._master_key is not None:
            for i in range(len(self._master_key)):
                self._master_key[i] = 0
        self._master_key = None
        self._key_source = None

    def _key(self) -> bytes:
        return bytes(self._master_key)

    # === Lifecycle ===

    def initialize(self):
        """
        Set up a fresh store under the device key.

        Raises:
            InvalidStateError: If the store is already initialized
        """
        with self._lock:
            if self.is_initialized():
                raise InvalidStateError("vault is already initialized")

            salt = self.crypto.generate_salt()
            key = self.crypto.device_key()

            with self.storage.transaction():
                self.storage.set_metadata(META_SALT, encode_bytes(salt))
                self.storage.set_metadata(
                    META_DEVICE_VERIFIER, encode_bytes(self.crypto.create_verifier(key))
                )
                self.storage.put_settings(self.crypto.encrypt_to_text(Settings().to_json(), key))

            self._set_master_key(key, KeySource.DEVICE)
            logger.info("Initialized new vault at %s", self.storage.db_path)

    def lock(self):
        """Forget the master key. Used by the auto-lock policy."""
        with self._lock:
            if self._master_key is not None:
                logger.info("Vault locked")
            self._clear_master_key()

    def unlock(self, password: str):
        """
        Unlock with the user's password.

        Raises:
            NotInitializedError: No salt stored
            NoPasswordSetError: No password verifier stored
            InvalidPasswordError: Password does not open the verifier
        """
        with self._lock:
            key = self._derive_and_verify(password)
            self._set_master_key(key, KeySource.PASSWORD)
            logger.info("Vault unlocked with password")

    def verify_password(self, password: str) -> bool:
        """Check a password without changing the lock state."""
        with self._lock:
            try:
                self._derive_and_verify(password)
            except (NotInitializedError, NoPasswordSetError, InvalidPasswordError, InvalidFormatError):
                return False
            return True

    def _derive_and_verify(self, password: str) -> bytes:
        salt_encoded = self.storage.get_metadata(META_SALT)
        if salt_encoded is None:
            raise NotInitializedError("database not initialized")

        verifier_encoded = self.storage.get_metadata(META_PASSWORD_VERIFIER)
        if verifier_encoded is None:
            raise NoPasswordSetError("no password set")

        key = self.crypto.derive_key(password, decode_bytes(salt_encoded))
        if not self.crypto.verify_key(decode_bytes(verifier_encoded), key):
            raise InvalidPasswordError("invalid password")
        return key

    def unlock_with_device_key(self):
        """
        Unlock with the device key.

        If the device verifier is missing or does not match this machine, the
        vault is reinitialized under a fresh salt and device verifier instead
        of failing (see reinitialize_with_device_key).

        Raises:
            InvalidStateError: If a password is configured
        """
        with self._lock:
            if self.has_password():
                raise InvalidStateError("a password is set, use unlock(password)")
            self._unlock_with_device_key()

    def _unlock_with_device_key(self):
        if not self.is_initialized():
            self.initialize()
            return

        key = self.crypto.device_key()

        verifier_encoded = self.storage.get_metadata(META_DEVICE_VERIFIER)
        if verifier_encoded is None:
            logger.warning("Device verifier not found")
            self.reinitialize_with_device_key()
            return

        try:
            verifier = decode_bytes(verifier_encoded)
        except InvalidFormatError:
            logger.warning("Device verifier is not valid base64")
            self.reinitialize_with_device_key()
            return

        if not self.crypto.verify_key(verifier, key):
            logger.warning("Device key verification failed")
            self.reinitialize_with_device_key()
            return

        self._set_master_key(key, KeySource.DEVICE)
        logger.debug("Vault unlocked with device key")

    def reinitialize_with_device_key(self):
        """
        Replace the salt and device verifier with fresh ones for this machine.

        Records already encrypted under a different key stay in storage but can
        no longer be decrypted; bulk listings will skip them. This is the
        recovery path for a store copied from another machine or left in a
        legacy state, and it loses data by design.
        """
        with self._lock:
            salt = self.crypto.generate_salt()
            key = self.crypto.device_key()

            with self.storage.transaction():
                self.storage.set_metadata(META_SALT, encode_bytes(salt))
                self.storage.set_metadata(
                    META_DEVICE_VERIFIER, encode_bytes(self.crypto.create_verifier(key))
                )

            self._set_master_key(key, KeySource.DEVICE)
            logger.warning("Vault reinitialized with device key; existing records may be unreadable")

    def _ensure_unlocked(self):
        """Unlock lazily with the device key when no password is configured."""
        if self.is_unlocked():
            return
        if not self.has_password():
            self._unlock_with_device_key()
            return
        raise LockedError("database is locked, password required")

    # === Password lifecycle ===

    def set_password(self, password: str):
        """
        Protect the vault with a password.

        Generates a new salt, writes a password verifier, drops the device
        verifier and re-encrypts every account and the settings record under
        the derived key.

        Raises:
            ValueError: If the password is empty
            LockedError: If the vault is locked behind an existing password
        """
        if not password:
            raise ValueError("password must not be empty")

        with self._lock:
            self._ensure_unlocked()

            salt = self.crypto.generate_salt()
            new_key = self.crypto.derive_key(password, salt)

            self._rotate_key(
                new_key,
                salt,
                verifier_name=META_PASSWORD_VERIFIER,
                stale_verifier_name=META_DEVICE_VERIFIER,
                password_enabled=True,
            )
            self._set_master_key(new_key, KeySource.PASSWORD)
            logger.info("Password protection enabled")

    def change_password(self, new_password: str):
        self.set_password(new_password)

    def remove_password(self):
        """
        Drop password protection and return to the device key.

        Raises:
            LockedError: If the vault is locked behind the password
        """
        with self._lock:
            self._ensure_unlocked()

            salt = self.crypto.generate_salt()
            new_key = self.crypto.device_key()

            self._rotate_key(
                new_key,
                salt,
                verifier_name=META_DEVICE_VERIFIER,
                stale_verifier_name=META_PASSWORD_VERIFIER,
                password_enabled=False,
            )
            self._set_master_key(new_key, KeySource.DEVICE)
            logger.info("Password protection removed")

    def _rotate_key(self, new_key: bytes, salt: bytes, verifier_name: str,
                    stale_verifier_name: str, password_enabled: bool):
        accounts = self._read_all_accounts()
        settings = self._read_settings()
        settings.password_enabled = password_enabled

        with self.storage.transaction():
            self.storage.set_metadata(META_SALT, encode_bytes(salt))
            self.storage.set_metadata(
                verifier_name, encode_bytes(self.crypto.create_verifier(new_key))
            )
            self.storage.delete_metadata(stale_verifier_name)

            self.storage.put_settings(self.crypto.encrypt_to_text(settings.to_json(), new_key))

            self.storage.delete_all_accounts()
            for account in accounts:
                self.storage.put_account(
                    account.id, self.crypto.encrypt_to_text(account.to_json(), new_key)
                )

        logger.info("Re-encrypted %d accounts under new key", len(accounts))

    # === Accounts ===

    def save_account(self, account: Account):
        """Encrypt and store an account (insert or replace by id)."""
        if not account.id:
            raise ValueError("account id must not be empty")

        with self._lock:
            self._ensure_unlocked()
            self.storage.put_account(
                account.id, self.crypto.encrypt_to_text(account.to_json(), self._key())
            )

    def get_account(self, account_id: str) -> Account:
        """
        Get a single account.

        Raises:
            NotFoundError: No account with this id
            DecryptionFailedError / InvalidFormatError: Record is unreadable
        """
        with self._lock:
            self._ensure_unlocked()

            blob = self.storage.get_account(account_id)
            if blob is None:
                raise NotFoundError(f"account not found: {account_id}")
            return Account.from_json(self.crypto.decrypt_from_text(blob, self._key()))

    def update_account(self, account_id: str, update: Callable[[Account], None]) -> Account:
        """
        Read, modify and save one account without another operation in between.

        Args:
            account_id: Account to change
            update: Called with the decrypted account; mutates it in place

        Returns:
            The saved account

        Raises:
            NotFoundError: No account with this id
        """
        with self._lock:
            account = self.get_account(account_id)
            update(account)
            self.save_account(account)
            return account

    def get_all_accounts(self) -> List[Account]:
        """Get every readable account. Unreadable rows are logged and skipped."""
        with self._lock:
            self._ensure_unlocked()
            return self._read_all_accounts()

    def _read_all_accounts(self) -> List[Account]:
        accounts = []
        key = self._key()

        for account_id, blob in self.storage.list_accounts():
            try:
                accounts.append(Account.from_json(self.crypto.decrypt_from_text(blob, key)))
            except (DecryptionFailedError, InvalidFormatError) as e:
                logger.warning("Skipping unreadable account %s: %s", account_id, e)

        return accounts

    def delete_account(self, account_id: str) -> bool:
        with self._lock:
            self._ensure_unlocked()
            return self.storage.delete_account(account_id)

    def delete_all_accounts(self) -> int:
        with self._lock:
            self._ensure_unlocked()
            return self.storage.delete_all_accounts()

    # === Settings ===

    def save_settings(self, settings: Settings):
        with self._lock:
            self._ensure_unlocked()
            settings.password_enabled = self.has_password()
            self.storage.put_settings(self.crypto.encrypt_to_text(settings.to_json(), self._key()))

    def get_settings(self) -> Settings:
        """
        Get settings. A missing record yields defaults; an unreadable one raises.
        """
        with self._lock:
            self._ensure_unlocked()
            blob = self.storage.get_settings()
            if blob is None:
                settings = Settings()
            else:
                settings = Settings.from_json(self.crypto.decrypt_from_text(blob, self._key()))
            settings.password_enabled = self.has_password()
            return settings

    def _read_settings(self) -> Settings:
        blob = self.storage.get_settings()
        if blob is None:
            return Settings()
        try:
            return Settings.from_json(self.crypto.decrypt_from_text(blob, self._key()))
        except (DecryptionFailedError, InvalidFormatError) as e:
            logger.warning("Settings unreadable, using defaults: %s", e)
            return Settings()
