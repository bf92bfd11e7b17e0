"""
Utility functions for AuthVault.
"""
import re
import logging
import asyncio
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from models import Account

# Configure logging
logger = logging.getLogger(__name__)


def validate_password_strength(password: str) -> tuple:
    """
    Validate password strength.

    Args:
        password: Password to validate

    Returns:
        Tuple of (is_valid, message)
    """
    if len(password) < 8:
        return False, "Password must be at least 8 characters long"

    if not re.search(r'[A-Z]', password):
        return False, "Password must contain at least one uppercase letter"

    if not re.search(r'[a-z]', password):
        return False, "Password must contain at least one lowercase letter"

    if not re.search(r'[0-9]', password):
        return False, "Password must contain at least one digit"

    return True, "Password is strong"


def account_label(account: Account) -> str:
    """Issuer and name as shown in listings."""
    if account.issuer:
        return f"{account.issuer} ({account.name})" if account.name else account.issuer
    return account.name or "(unnamed)"


def format_account_list(accounts: List[Account]) -> str:
    """
    Format accounts for display.

    Args:
        accounts: Accounts to list

    Returns:
        Formatted string
    """
    if not accounts:
        return "No accounts found."

    result = "Your accounts:\n\n"
    for account in sorted(accounts, key=lambda a: (a.group, a.issuer.lower(), a.name.lower())):
        result += f"• {account_label(account)}\n"
        result += f"  ID: {account.id}\n"
        result += f"  Type: {account.type} {account.algorithm} {account.digits} digits"
        if account.is_hotp:
            result += f", counter {account.counter}\n"
        else:
            result += f", {account.period or 30}s\n"
        if account.group:
            result += f"  Group: {account.group}\n"
        result += "\n"

    return result


def format_code(code: str) -> str:
    """Split a code in two halves for readability (123 456)."""
    if not code.isdigit() or len(code) < 6:
        return code
    half = len(code) // 2
    return f"{code[:half]} {code[half:]}"


class AutoLockManager:
    """Lock the vault after a period of inactivity.

    A timeout of 0 minutes disables auto-lock.
    """

    def __init__(self, lock_callback: Callable[[], None], timeout_minutes: int = 5,
                 clock: Callable[[], datetime] = datetime.now):
        """
        Initialize auto-lock manager.

        Args:
            lock_callback: Called once when the timeout expires (usually Vault.lock)
            timeout_minutes: Inactivity timeout in minutes
            clock: Time source
        """
        self.lock_callback = lock_callback
        self.timeout_minutes = timeout_minutes
        self.clock = clock
        self.expires_at: Optional[datetime] = None
        self.touch()

    def set_timeout(self, timeout_minutes: int) -> None:
        self.timeout_minutes = max(0, timeout_minutes)
        self.touch()

    def touch(self) -> None:
        """Record user activity and push the deadline forward."""
        if self.timeout_minutes <= 0:
            self.expires_at = None
            return
        self.expires_at = self.clock() + timedelta(minutes=self.timeout_minutes)

    def check(self) -> bool:
        """
        Lock if the deadline has passed.

        Returns:
            True if the vault was locked by this call
        """
        if self.expires_at is None or self.clock() < self.expires_at:
            return False

        self.expires_at = None
        logger.info("Auto-lock after %s minutes of inactivity", self.timeout_minutes)
        self.lock_callback()
        return True

    async def run(self, interval: float = 1.0) -> None:
        """Background task that checks the deadline periodically."""
        while True:
            await asyncio.sleep(interval)
            self.check()
