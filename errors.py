"""
Exception types for AuthVault.
"""


class VaultError(Exception):
    """Base error for all vault, crypto and codec failures."""
    pass


class NotInitializedError(VaultError):
    """The store has no salt/verifier metadata yet."""
    pass


class InvalidStateError(VaultError):
    """Operation is not valid in the vault's current state."""
    pass


class InvalidPasswordError(VaultError):
    """Derived key did not open the password verifier."""
    pass


class NoPasswordSetError(VaultError):
    """Password unlock requested but no password verifier exists."""
    pass


class LockedError(VaultError):
    """Vault is locked and a password is required."""
    pass


class DecryptionFailedError(VaultError):
    """Authentication tag mismatch or corrupt ciphertext."""
    pass


class InvalidFormatError(VaultError):
    """Malformed envelope, base64, JSON or URI."""
    pass


class InvalidSecretError(VaultError):
    """Secret is not valid base32."""
    pass


class UnsupportedAlgorithmError(InvalidFormatError):
    """Unknown algorithm in a standard otpauth URI."""
    pass


class UnsupportedDigitCountError(InvalidFormatError):
    """Unknown digit count in a standard otpauth URI."""
    pass


class ProtocolDecodeError(VaultError):
    """Malformed varint, length prefix or field in a migration payload."""
    pass


class NotFoundError(VaultError):
    """Missing account or QR payload."""
    pass
