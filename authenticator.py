"""
Caller-facing operations for AuthVault.

Maps URIs, QR images and manual input onto vault records and back. Failures are
logged and reported through result objects so UI and CLI layers can show a
message without handling every exception type.
"""
import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional

import otp
import qr
from errors import InvalidSecretError, VaultError
from migration import (
    MIGRATION_SCHEME,
    STANDARD_SCHEME,
    OtpParameters,
    algorithm_from_name,
    decode_migration_uri,
    digits_from_count,
    encode_migration_uri,
    encode_standard_uri,
    parse_standard_uri,
    type_from_name,
)
from models import Account, Settings
from vault import Vault

# Configure logging
logger = logging.getLogger(__name__)

PLACEHOLDER_CODE = "------"
ERROR_CODE = "ERROR"

# Code lengths accepted for new or edited accounts
SUPPORTED_DIGITS = (6, 8)


@dataclass
class ImportResult:
    success: bool
    message: str
    count: int = 0
    accounts: List[Account] = field(default_factory=list)


@dataclass
class CodeResult:
    code: str
    remaining: int = 0
    progress: int = 0


@dataclass
class ExportResult:
    success: bool
    message: str
    uri: str = ""
    qr_png: bytes = b""


def account_from_params(param: OtpParameters, period: int = otp.DEFAULT_PERIOD) -> Account:
    """Create a new vault record (fresh id) from decoded URI parameters."""
    return Account(
        id=str(uuid.uuid4()),
        name=param.name,
        issuer=param.issuer,
        secret=otp.encode_secret(param.secret),
        algorithm=param.algorithm_name,
        digits=param.digit_count,
        type=param.type_name,
        counter=param.counter,
        period=period,
    )


def params_from_account(account: Account) -> OtpParameters:
    """
    Convert a vault record for export.

    Raises:
        InvalidSecretError: If the stored secret is not base32
    """
    param = OtpParameters(
        secret=otp.decode_secret(account.secret),
        name=account.name,
        issuer=account.issuer,
        algorithm=algorithm_from_name(account.algorithm),
        digits=digits_from_count(account.digits),
        type=type_from_name(account.type),
    )
    if account.is_hotp:
        param.counter = account.counter
    return param


class Authenticator:
    """Operations offered to the UI/CLI layers on top of a Vault."""

    def __init__(self, vault: Vault, qr_size: int = qr.DEFAULT_QR_SIZE):
        """
        Initialize the service.

        Args:
            vault: Vault instance
            qr_size: Default edge length in pixels for exported QR codes
        """
        self.vault = vault
        self.qr_size = qr_size

    # === Import ===

    def import_from_migration_uri(self, uri: str) -> ImportResult:
        """Import every account contained in an otpauth-migration:// URI."""
        try:
            params = decode_migration_uri(uri)
        except VaultError as e:
            logger.error("Failed to parse migration URI: %s", e)
            return ImportResult(success=False, message=f"Parse failed: {e}")

        accounts = []
        for param in params:
            account = account_from_params(param)
            try:
                self.vault.save_account(account)
            except VaultError as e:
                logger.error("Failed to save imported account %s: %s", account.name, e)
                continue
            accounts.append(account)

        logger.info("Imported %d of %d accounts from migration URI", len(accounts), len(params))
        return ImportResult(
            success=True,
            message=f"Imported {len(accounts)} accounts",
            count=len(accounts),
            accounts=accounts,
        )

    def import_from_standard_uri(self, uri: str) -> ImportResult:
        """Import a single account from an otpauth:// URI."""
        try:
            param, period = parse_standard_uri(uri)
        except VaultError as e:
            logger.error("Failed to parse otpauth URI: %s", e)
            return ImportResult(success=False, message=f"Parse failed: {e}")

        account = account_from_params(param, period)
        try:
            self.vault.save_account(account)
        except VaultError as e:
            logger.error("Failed to save account %s: %s", account.name, e)
            return ImportResult(success=False, message=f"Save failed: {e}")

        logger.info("Imported account from otpauth URI")
        return ImportResult(
            success=True,
            message=f"Added account: {account.name}",
            count=1,
            accounts=[account],
        )

    def import_from_uri(self, uri: str) -> ImportResult:
        """Dispatch on the URI scheme."""
        uri = (uri or "").strip()
        if uri.startswith(MIGRATION_SCHEME):
            return self.import_from_migration_uri(uri)
        if uri.startswith(STANDARD_SCHEME):
            return self.import_from_standard_uri(uri)
        return ImportResult(success=False, message=f"Unsupported URI format: {uri[:40]}")

    def import_from_image(self, image) -> ImportResult:
        """
        Import from a QR code image.

        Args:
            image: Raw image bytes or a base64 string / data URL
        """
        try:
            data = qr.image_bytes_from_data_url(image) if isinstance(image, str) else image
            uri = qr.decode_image(data)
        except VaultError as e:
            logger.error("QR recognition failed: %s", e)
            return ImportResult(success=False, message=f"QR recognition failed: {e}")

        return self.import_from_uri(uri)

    def import_from_file(self, path: str) -> ImportResult:
        """Import from a QR code image file."""
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except OSError as e:
            logger.error("Failed to read %s: %s", path, e)
            return ImportResult(success=False, message=f"Failed to read file: {e}")

        return self.import_from_image(data)

    # === Accounts ===

    def get_all_accounts(self) -> List[Account]:
        try:
            return self.vault.get_all_accounts()
        except VaultError as e:
            logger.error("Failed to list accounts: %s", e)
            return []

    def add_account(self, name: str, issuer: str, secret: str, algorithm: str = "SHA1",
                    otp_type: str = "TOTP", digits: int = 6, period: int = 30,
                    group: str = "") -> ImportResult:
        """Add an account entered by hand."""
        try:
            if not otp.decode_secret(secret):
                raise InvalidSecretError("secret is empty")
        except InvalidSecretError as e:
            return ImportResult(success=False, message=f"Invalid secret: {e}")

        if digits not in SUPPORTED_DIGITS:
            return ImportResult(success=False, message=f"Unsupported digit count: {digits}")

        account = Account(
            id=str(uuid.uuid4()),
            name=name,
            issuer=issuer,
            secret=otp.normalize_secret(secret),
            algorithm=otp.Algorithm.from_name(algorithm).value,
            digits=digits,
            type=otp.OtpType.from_name(otp_type).value,
            period=period,
            counter=0,
            group=group,
        )

        try:
            self.vault.save_account(account)
        except VaultError as e:
            logger.error("Failed to save account %s: %s", name, e)
            return ImportResult(success=False, message=f"Save failed: {e}")

        return ImportResult(success=True, message="Account added", count=1, accounts=[account])

    def delete_account(self, account_id: str) -> bool:
        try:
            return self.vault.delete_account(account_id)
        except VaultError as e:
            logger.error("Failed to delete account %s: %s", account_id, e)
            return False

    def delete_accounts(self, account_ids: List[str]) -> int:
        return sum(1 for account_id in account_ids if self.delete_account(account_id))

    def delete_all_accounts(self) -> bool:
        try:
            self.vault.delete_all_accounts()
        except VaultError as e:
            logger.error("Failed to delete all accounts: %s", e)
            return False
        return True

    def _update(self, account_id: str, **changes) -> bool:
        def apply(account: Account):
            for name, value in changes.items():
                setattr(account, name, value)

        try:
            self.vault.update_account(account_id, apply)
        except VaultError as e:
            logger.error("Failed to update account %s: %s", account_id, e)
            return False
        return True

    def update_account(self, account_id: str, name: str, issuer: str, group: str) -> bool:
        """Update the display fields of an account."""
        return self._update(account_id, name=name, issuer=issuer, group=group)

    def update_account_group(self, account_id: str, group: str) -> bool:
        return self._update(account_id, group=group)

    def update_accounts_group(self, account_ids: List[str], group: str) -> int:
        return sum(1 for account_id in account_ids if self.update_account_group(account_id, group))

    def update_account_advanced(self, account_id: str, algorithm: str, digits: int, period: int) -> bool:
        """
        Change algorithm, digits and period.

        Codes generated afterwards will differ from the ones the service
        expects unless it was set up with the same values.
        """
        if digits not in SUPPORTED_DIGITS:
            logger.error("Rejected digit count %s for account %s", digits, account_id)
            return False

        logger.warning("Changing OTP parameters of account %s; generated codes will change", account_id)
        return self._update(
            account_id,
            algorithm=otp.Algorithm.from_name(algorithm).value,
            digits=digits,
            period=period,
        )

    def get_account_secret(self, account_id: str, password: str = "") -> str:
        """
        Reveal an account secret. Requires the password when one is set.

        Returns:
            Secret text, or an empty string if verification or lookup fails
        """
        if self.vault.has_password() and not self.vault.verify_password(password):
            logger.warning("Secret reveal refused for account %s: bad password", account_id)
            return ""

        try:
            return self.vault.get_account(account_id).secret
        except VaultError as e:
            logger.error("Failed to read account %s: %s", account_id, e)
            return ""

    def get_groups(self) -> List[str]:
        """Sorted unique non-empty group labels."""
        return sorted({a.group for a in self.get_all_accounts() if a.group})

    # === Codes ===

    def generate_code(self, account_id: str, now: Optional[float] = None) -> CodeResult:
        try:
            account = self.vault.get_account(account_id)
        except VaultError as e:
            logger.error("Cannot generate code for %s: %s", account_id, e)
            return CodeResult(code=PLACEHOLDER_CODE)
        return self._code_for(account, now)

    def _code_for(self, account: Account, now: Optional[float] = None) -> CodeResult:
        try:
            if account.is_hotp:
                code = otp.generate_hotp(account.secret, account.algorithm, account.digits, account.counter)
                return CodeResult(code=code)

            code, remaining = otp.generate_totp(
                account.secret, account.algorithm, account.digits, account.period, now
            )
        except (InvalidSecretError, ValueError) as e:
            logger.error("Code generation failed for %s: %s", account.id, e)
            return CodeResult(code=ERROR_CODE)

        return CodeResult(code=code, remaining=remaining, progress=otp.progress(account.period, now))

    def increment_counter(self, account_id: str) -> CodeResult:
        """Advance an HOTP counter and return the new code."""
        def advance(account: Account):
            if account.is_hotp:
                account.counter += 1

        try:
            account = self.vault.update_account(account_id, advance)
        except VaultError as e:
            logger.error("Cannot advance counter for %s: %s", account_id, e)
            return CodeResult(code=PLACEHOLDER_CODE)
        return self._code_for(account)

    # === Export ===

    def _export_params(self, account_ids: List[str]) -> List[OtpParameters]:
        accounts = {a.id: a for a in self.get_all_accounts()}
        params = []
        for account_id in account_ids:
            account = accounts.get(account_id)
            if account is None:
                logger.warning("Export skipped missing account %s", account_id)
                continue
            try:
                params.append(params_from_account(account))
            except InvalidSecretError as e:
                logger.warning("Export skipped account %s: %s", account_id, e)
        return params

    def export_to_migration_uri(self, account_ids: List[str]) -> ExportResult:
        params = self._export_params(account_ids)
        if not params:
            return ExportResult(success=False, message="No accounts selected")

        uri = encode_migration_uri(params)
        return ExportResult(success=True, message=f"Exported {len(params)} accounts", uri=uri)

    def export_to_standard_uri(self, account_id: str) -> ExportResult:
        try:
            account = self.vault.get_account(account_id)
            uri = encode_standard_uri(params_from_account(account), account.period)
        except VaultError as e:
            logger.error("Failed to export account %s: %s", account_id, e)
            return ExportResult(success=False, message=f"Export failed: {e}")
        return ExportResult(success=True, message=f"Exported account: {account.name}", uri=uri)

    def export_to_qr(self, account_ids: List[str], size: int = 0) -> ExportResult:
        """Export accounts as a migration QR code (PNG)."""
        result = self.export_to_migration_uri(account_ids)
        if not result.success:
            return result

        result.qr_png = qr.encode_text(result.uri, size or self.qr_size)
        return result

    # === Password lifecycle ===

    def is_password_enabled(self) -> bool:
        return self.vault.has_password()

    def needs_unlock(self) -> bool:
        return self.vault.needs_unlock()

    def unlock(self, password: str) -> bool:
        try:
            self.vault.unlock(password)
        except VaultError as e:
            logger.warning("Unlock failed: %s", e)
            return False
        return True

    def lock(self):
        self.vault.lock()

    def verify_password(self, password: str) -> bool:
        return self.vault.verify_password(password)

    def enable_password(self, password: str) -> bool:
        if not password:
            return False
        try:
            self.vault.set_password(password)
        except VaultError as e:
            logger.error("Failed to enable password: %s", e)
            return False
        return True

    def disable_password(self, current_password: str) -> bool:
        if not self.vault.verify_password(current_password):
            return False
        try:
            self.vault.remove_password()
        except VaultError as e:
            logger.error("Failed to disable password: %s", e)
            return False
        return True

    def change_password(self, current_password: str, new_password: str) -> bool:
        if not new_password or not self.vault.verify_password(current_password):
            return False
        try:
            self.vault.change_password(new_password)
        except VaultError as e:
            logger.error("Failed to change password: %s", e)
            return False
        return True

    # === Settings ===

    def get_settings(self) -> Settings:
        try:
            return self.vault.get_settings()
        except VaultError as e:
            logger.error("Failed to read settings: %s", e)
            return Settings(password_enabled=self.vault.has_password())

    def _save_settings(self, settings: Settings) -> bool:
        try:
            self.vault.save_settings(settings)
        except VaultError as e:
            logger.error("Failed to save settings: %s", e)
            return False
        return True

    def set_theme(self, theme: str) -> bool:
        settings = self.get_settings()
        settings.theme = theme
        return self._save_settings(settings)

    def set_auto_lock_minutes(self, minutes: int) -> bool:
        settings = self.get_settings()
        settings.auto_lock_minutes = max(0, minutes)
        return self._save_settings(settings)

    def get_auto_lock_minutes(self) -> int:
        return self.get_settings().auto_lock_minutes
