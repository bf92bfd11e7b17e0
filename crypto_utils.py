"""
Cryptographic utilities for AuthVault.
Handles key derivation, the device key, authenticated encryption and key verification.
"""
import base64
import binascii
import hashlib
import logging
import os
import platform
import secrets
import socket

from argon2.low_level import Type, hash_secret_raw
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.exceptions import InvalidTag

from errors import DecryptionFailedError, InvalidFormatError

# Configure logging
logger = logging.getLogger(__name__)

# Argon2id work parameters. Every stored verifier depends on these values.
ARGON2_TIME_COST = 1
ARGON2_MEMORY_COST = 64 * 1024  # KiB (64 MiB)
ARGON2_PARALLELISM = 4
KEY_SIZE = 32  # AES-256

SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16

VERIFIER_PLAINTEXT = b"AUTHENTICATOR_KEY_VERIFIER_V1"

# platform.machine() spellings mapped to the architecture names used in the
# device identity (amd64, arm64, 386, arm)
ARCH_NAMES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i386": "386",
    "i686": "386",
    "x86": "386",
    "armv6l": "arm",
    "armv7l": "arm",
}


class CryptoUtils:
    """Key derivation and AES-GCM envelope encryption for vault records."""

    def derive_key(self, password: str, salt: bytes) -> bytes:
        """
        Derive a 32-byte encryption key from a password.

        Args:
            password: User's password
            salt: Salt stored in the vault metadata

        Returns:
            Derived key bytes
        """
        return hash_secret_raw(
            secret=password.encode('utf-8'),
            salt=salt,
            time_cost=ARGON2_TIME_COST,
            memory_cost=ARGON2_MEMORY_COST,
            parallelism=ARGON2_PARALLELISM,
            hash_len=KEY_SIZE,
            type=Type.ID,
        )

    def device_key(self) -> bytes:
        """
        Derive the default key from local machine identity.

        The inputs (hostname, home directory, OS and architecture) are easy to
        guess, so this key only obfuscates the vault. It is used while the user
        has not set a password and must not be treated as equivalent to one.

        The architecture is spelled amd64/arm64/386/arm (see ARCH_NAMES), not
        as platform.machine() reports it, so existing stores keep their key.

        Returns:
            SHA-256 digest of the device identity string
        """
        device_id = socket.gethostname()
        device_id += os.path.expanduser("~")
        device_id += platform.system().lower() + machine_arch()
        return hashlib.sha256(device_id.encode('utf-8')).digest()

    def generate_salt(self) -> bytes:
        """Generate a random salt for key derivation."""
        return secrets.token_bytes(SALT_SIZE)

    def encrypt_data(self, data: bytes, key: bytes) -> bytes:
        """
        Encrypt data using AES-GCM.

        Args:
            data: Data to encrypt
            key: Encryption key (32 bytes for AES-256)

        Returns:
            nonce || ciphertext || tag
        """
        # Generate a random nonce
        nonce = secrets.token_bytes(NONCE_SIZE)

        aesgcm = AESGCM(bytes(key))
        return nonce + aesgcm.encrypt(nonce, data, None)

    def decrypt_data(self, blob: bytes, key: bytes) -> bytes:
        """
        Decrypt data produced by encrypt_data.

        Args:
            blob: nonce || ciphertext || tag
            key: Encryption key

        Returns:
            Decrypted data

        Raises:
            InvalidFormatError: If the blob is shorter than nonce + tag
            DecryptionFailedError: If authentication fails (wrong key or tampered data)
        """
        if len(blob) < NONCE_SIZE + TAG_SIZE:
            raise InvalidFormatError("invalid encrypted data format")

        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            aesgcm = AESGCM(bytes(key))
            return aesgcm.decrypt(nonce, ciphertext, None)
        except (InvalidTag, ValueError) as e:
            raise DecryptionFailedError("decryption failed: invalid key or corrupted data") from e

    def encrypt_to_text(self, data: bytes, key: bytes) -> str:
        """Encrypt data and return it as standard base64 text."""
        return encode_bytes(self.encrypt_data(data, key))

    def decrypt_from_text(self, encoded: str, key: bytes) -> bytes:
        """Decrypt a standard base64 blob produced by encrypt_to_text."""
        return self.decrypt_data(decode_bytes(encoded), key)

    def create_verifier(self, key: bytes) -> bytes:
        """Encrypt the verifier constant under a key."""
        return self.encrypt_data(VERIFIER_PLAINTEXT, key)

    def verify_key(self, encrypted_verifier: bytes, key: bytes) -> bool:
        """
        Check a candidate key against a stored verifier.

        Successful decryption is the only proof accepted; keys are never
        compared directly.
        """
        try:
            self.decrypt_data(encrypted_verifier, key)
        except (DecryptionFailedError, InvalidFormatError):
            return False
        return True


def encode_bytes(data: bytes) -> str:
    """Encode bytes as standard base64 text."""
    return base64.b64encode(data).decode('ascii')


def decode_bytes(encoded: str) -> bytes:
    """Decode standard base64 text, raising InvalidFormatError on bad input."""
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidFormatError(f"failed to decode base64: {e}") from e


def machine_arch() -> str:
    """Normalized CPU architecture name of this machine."""
    machine = platform.machine().lower()
    return ARCH_NAMES.get(machine, machine)
