"""
Data models for AuthVault.
"""
import json
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict

from errors import InvalidFormatError


def _load_object(data: bytes, kind: str) -> Dict[str, Any]:
    try:
        obj = json.loads(data)
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidFormatError(f"invalid {kind} JSON: {e}") from e
    if not isinstance(obj, dict):
        raise InvalidFormatError(f"invalid {kind} JSON: expected an object")
    return obj


@dataclass
class Account:
    """One OTP account stored in the vault."""
    id: str
    name: str = ""
    issuer: str = ""
    secret: str = ""  # Base32
    algorithm: str = "SHA1"  # SHA1, SHA256, SHA512, MD5
    digits: int = 6
    type: str = "TOTP"  # TOTP or HOTP
    counter: int = 0  # HOTP only
    period: int = 30  # TOTP only, 0 means 30
    group: str = ""

    def to_json(self) -> bytes:
        return json.dumps(asdict(self)).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> "Account":
        obj = _load_object(data, "account")
        known = {f.name for f in fields(cls)}
        if not isinstance(obj.get("id"), str):
            raise InvalidFormatError("account record has no id")
        try:
            return cls(**{k: v for k, v in obj.items() if k in known})
        except TypeError as e:
            raise InvalidFormatError(f"invalid account record: {e}") from e

    @property
    def is_hotp(self) -> bool:
        return self.type.upper() == "HOTP"


@dataclass
class Settings:
    """User preferences. password_enabled mirrors whether a password verifier exists."""
    password_enabled: bool = False
    theme: str = "light"
    auto_lock_minutes: int = 5  # 0 disables auto-lock

    def to_json(self) -> bytes:
        return json.dumps(asdict(self)).encode('utf-8')

    @classmethod
    def from_json(cls, data: bytes) -> "Settings":
        obj = _load_object(data, "settings")
        settings = cls()
        if "password_enabled" in obj:
            settings.password_enabled = bool(obj["password_enabled"])
        if "theme" in obj:
            settings.theme = str(obj["theme"])
        if "auto_lock_minutes" in obj:
            try:
                settings.auto_lock_minutes = max(0, int(obj["auto_lock_minutes"]))
            except (TypeError, ValueError) as e:
                raise InvalidFormatError(f"invalid auto_lock_minutes: {e}") from e
        return settings
