#!/usr/bin/env python3
"""
AuthVault - Local two-factor authentication code vault
Main entry point for the command line application.
"""
import os
import sys
import logging
import argparse
import shlex
from getpass import getpass

from dotenv import load_dotenv

from crypto_utils import CryptoUtils
from storage import Storage
from vault import Vault
from authenticator import Authenticator
from utils import AutoLockManager, format_account_list, format_code, validate_password_strength

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".authvault", "authenticator.db")


def setup_logging(log_file: str, level: str):
    """Configure root logging to a file and stderr."""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))

    logging.basicConfig(
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='AuthVault - Local two-factor code vault')
    parser.add_argument('--db', help='Path to the vault database')
    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init', help='Create a new vault')
    sub.add_parser('status', help='Show vault status')
    sub.add_parser('list', help='List accounts')
    sub.add_parser('groups', help='List account groups')

    code = sub.add_parser('code', help='Show the current code of an account')
    code.add_argument('id')
    code.add_argument('--next', action='store_true', help='Advance an HOTP counter first')

    add = sub.add_parser('add', help='Add an account by hand')
    add.add_argument('name')
    add.add_argument('secret')
    add.add_argument('--issuer', default='')
    add.add_argument('--algorithm', default='SHA1', choices=['SHA1', 'SHA256', 'SHA512', 'MD5'])
    add.add_argument('--type', default='TOTP', choices=['TOTP', 'HOTP'])
    add.add_argument('--digits', type=int, default=6, choices=[6, 8])
    add.add_argument('--period', type=int, default=30)
    add.add_argument('--group', default='')

    imp = sub.add_parser('import', help='Import an otpauth:// or otpauth-migration:// URI')
    imp.add_argument('uri')

    imp_img = sub.add_parser('import-image', help='Import from a QR code image file')
    imp_img.add_argument('path')

    exp = sub.add_parser('export', help='Export accounts as a migration URI')
    exp.add_argument('ids', nargs='+')
    exp.add_argument('--qr', metavar='FILE', help='Also write a PNG QR code')
    exp.add_argument('--size', type=int, default=0, help='QR code size in pixels')

    delete = sub.add_parser('delete', help='Delete accounts')
    delete.add_argument('ids', nargs='+')

    sub.add_parser('set-password', help='Enable or change password protection')
    sub.add_parser('remove-password', help='Disable password protection')

    timeout = sub.add_parser('lock-timeout', help='Set the auto-lock timeout in minutes (0 disables)')
    timeout.add_argument('minutes', type=int)

    sub.add_parser('shell', help='Run commands interactively with auto-lock')

    return parser


def read_password(prompt: str) -> str:
    """Password from AUTHVAULT_PASSWORD, or prompt for it."""
    return os.getenv('AUTHVAULT_PASSWORD') or getpass(prompt)


def ensure_unlocked(service: Authenticator) -> bool:
    if not service.needs_unlock():
        return True
    if service.unlock(read_password('Password: ')):
        return True
    print("Invalid password.", file=sys.stderr)
    return False


def run_command(args, service: Authenticator) -> int:
    vault = service.vault

    if args.command == 'init':
        if vault.is_initialized():
            print("Vault already initialized.")
            return 1
        vault.initialize()
        print(f"Vault created at {vault.storage.db_path}")
        return 0

    if args.command == 'status':
        for key, value in vault.status().items():
            print(f"{key}: {value}")
        return 0

    if not ensure_unlocked(service):
        return 1

    if args.command == 'list':
        print(format_account_list(service.get_all_accounts()))

    elif args.command == 'groups':
        for group in service.get_groups():
            print(group)

    elif args.command == 'code':
        result = service.increment_counter(args.id) if args.next else service.generate_code(args.id)
        if result.remaining:
            print(f"{format_code(result.code)}  ({result.remaining}s)")
        else:
            print(format_code(result.code))
        return 0 if result.code.isdigit() else 1

    elif args.command == 'add':
        result = service.add_account(
            args.name, args.issuer, args.secret, args.algorithm,
            args.type, args.digits, args.period, args.group
        )
        print(result.message)
        return 0 if result.success else 1

    elif args.command == 'import':
        result = service.import_from_uri(args.uri)
        print(result.message)
        return 0 if result.success else 1

    elif args.command == 'import-image':
        result = service.import_from_file(args.path)
        print(result.message)
        return 0 if result.success else 1

    elif args.command == 'export':
        result = service.export_to_qr(args.ids, args.size) if args.qr else service.export_to_migration_uri(args.ids)
        if not result.success:
            print(result.message, file=sys.stderr)
            return 1
        print(result.uri)
        if args.qr:
            with open(args.qr, 'wb') as f:
                f.write(result.qr_png)
            print(f"QR code written to {args.qr}")

    elif args.command == 'delete':
        count = service.delete_accounts(args.ids)
        print(f"Deleted {count} accounts")

    elif args.command == 'set-password':
        new_password = getpass('New password: ')
        if new_password != getpass('Confirm password: '):
            print("Passwords don't match.", file=sys.stderr)
            return 1
        is_strong, message = validate_password_strength(new_password)
        if not is_strong:
            print(f"Warning: {message}")
        if service.is_password_enabled():
            ok = service.change_password(read_password('Current password: '), new_password)
        else:
            ok = service.enable_password(new_password)
        print("Password set." if ok else "Failed to set password.")
        return 0 if ok else 1

    elif args.command == 'remove-password':
        if not service.is_password_enabled():
            print("No password is set.")
            return 0
        ok = service.disable_password(read_password('Current password: '))
        print("Password removed." if ok else "Failed to remove password.")
        return 0 if ok else 1

    elif args.command == 'lock-timeout':
        ok = service.set_auto_lock_minutes(args.minutes)
        print(f"Auto-lock set to {service.get_auto_lock_minutes()} minutes" if ok else "Failed to save settings.")
        return 0 if ok else 1

    return 0


def run_shell(service: Authenticator, parser: argparse.ArgumentParser) -> int:
    """Read subcommands from stdin until EOF or `quit`."""
    manager = AutoLockManager(service.lock, service.get_auto_lock_minutes())
    print("AuthVault shell. Type 'help' for commands, 'quit' to leave.")

    while True:
        try:
            line = input('authvault> ').strip()
        except EOFError:
            print()
            break

        if not line:
            continue
        if line in ('quit', 'exit'):
            break
        if line == 'help':
            parser.print_help()
            continue

        manager.check()
        try:
            args = parser.parse_args(shlex.split(line))
        except SystemExit:
            # argparse already printed the usage error
            continue
        except ValueError as e:
            print(f"Error: {e}", file=sys.stderr)
            continue

        if args.command == 'shell':
            continue

        run_command(args, service)
        manager.set_timeout(service.get_auto_lock_minutes())

    service.lock()
    return 0


def main(argv=None) -> int:
    """Main function to run the CLI."""
    # Load environment variables
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    # Get configuration from environment
    db_path = args.db or os.getenv('AUTHVAULT_DB_PATH', DEFAULT_DB_PATH)
    log_file = os.getenv('AUTHVAULT_LOG_FILE', 'authvault.log')
    log_level = os.getenv('AUTHVAULT_LOG_LEVEL', 'INFO')
    qr_size = int(os.getenv('AUTHVAULT_QR_SIZE', '512'))

    setup_logging(log_file, log_level)

    # Initialize components
    storage = Storage(db_path)
    vault = Vault(CryptoUtils(), storage)
    service = Authenticator(vault, qr_size=qr_size)

    try:
        if args.command == 'shell':
            return run_shell(service, parser)
        return run_command(args, service)
    finally:
        vault.lock()
        storage.close()


if __name__ == '__main__':
    sys.exit(main())
