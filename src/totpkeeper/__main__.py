"""totpkeeper CLI.

Usage:
    python -m totpkeeper list [--query Q]      # Accounts with live codes
    python -m totpkeeper code <id|name>        # Current code for one account
    python -m totpkeeper add NAME SECRET       # Add an account (--issuer, --uri)
    python -m totpkeeper rename <id> NAME      # Rename an account
    python -m totpkeeper delete <id>           # Delete an account
    python -m totpkeeper import FILE           # Import a YAML/JSON batch
    python -m totpkeeper sync                  # Sync once with the server
    python -m totpkeeper watch                 # Live codes + periodic sync
    python -m totpkeeper new-secret            # Generate a secret / master key
"""

from __future__ import annotations

import argparse
import logging
import sys
import time

from pydantic import ValidationError

from totpkeeper.auth.totp import compute, generate_secret, record_from_uri
from totpkeeper.config import Settings, load_import_file
from totpkeeper.crypto import generate_key
from totpkeeper.errors import AuthenticatorError
from totpkeeper.importer import ImportReconciler
from totpkeeper.models import Account, SyncOutcome
from totpkeeper.persistence import open_store
from totpkeeper.search import filter_accounts
from totpkeeper.store import AccountStore
from totpkeeper.sync.client import RemoteAccountsClient
from totpkeeper.sync.scheduler import SyncScheduler


def _print_codes(accounts: list[Account] | tuple[Account, ...], settings: Settings) -> None:
    print(f"\n{'ID':<10} {'Account':<28} {'Issuer':<16} {'Code':>10} {'Left':>5}")
    print("-" * 73)
    for a in accounts:
        code, remaining = compute(a.secret_key, step_seconds=settings.totp_step_s, digits=settings.totp_digits)
        print(f"  {a.id[:8]:<8} {a.account_name[:28]:<28} {(a.issuer or '-')[:16]:<16} {code:>10} {remaining:>4}s")
    print(f"\n  Total: {len(accounts)} accounts\n")


def _resolve(store: AccountStore, ref: str) -> Account:
    """Find an account by id, id prefix, or exact name."""
    matches = [a for a in store.list() if a.id.startswith(ref) or a.account_name == ref]
    if len(matches) != 1:
        print(f"Error: {'no' if not matches else 'ambiguous'} account matching {ref!r}")
        sys.exit(1)
    return matches[0]


def _build_scheduler(store: AccountStore, settings: Settings) -> tuple[SyncScheduler, RemoteAccountsClient]:
    client = RemoteAccountsClient(timeout=settings.sync_timeout_s)
    scheduler = SyncScheduler(
        store,
        client,
        credentials=settings.credentials,
        connectivity=lambda: client.is_reachable(settings.server_url),
        interval_s=settings.sync_interval_s,
    )
    return scheduler, client


def cmd_list(args: argparse.Namespace, settings: Settings) -> None:
    store, _ = open_store(settings)
    _print_codes(filter_accounts(store.list(), args.query or ""), settings)


def cmd_code(args: argparse.Namespace, settings: Settings) -> None:
    store, _ = open_store(settings)
    account = _resolve(store, args.ref)
    code, remaining = compute(account.secret_key, step_seconds=settings.totp_step_s, digits=settings.totp_digits)
    print(f"{code}  ({remaining}s left)")


def cmd_add(args: argparse.Namespace, settings: Settings) -> None:
    store, _ = open_store(settings)
    if args.uri:
        record = record_from_uri(args.uri)
    elif args.name and args.secret:
        record = {"account_name": args.name, "secret_key": args.secret, "issuer": args.issuer}
    else:
        print("Error: NAME and SECRET (or --uri) are required")
        sys.exit(1)
    account_id = store.insert(record)
    print(f"Added account {account_id}")


def cmd_rename(args: argparse.Namespace, settings: Settings) -> None:
    store, _ = open_store(settings)
    account = _resolve(store, args.ref)
    store.rename(account.id, args.name)
    print(f"Renamed {account.account_name!r} to {args.name!r}")


def cmd_delete(args: argparse.Namespace, settings: Settings) -> None:
    store, _ = open_store(settings)
    account = _resolve(store, args.ref)
    store.delete(account.id)
    print(f"Deleted {account.account_name!r}")


def cmd_import(args: argparse.Namespace, settings: Settings) -> None:
    store, _ = open_store(settings)
    outcome = ImportReconciler().apply(store, load_import_file(args.file))
    print(f"Imported {len(outcome.accepted)} accounts, rejected {len(outcome.rejected)}")
    for rejection in outcome.rejected:
        print(f"  - {type(rejection.reason).__name__}: {rejection.message}")


def cmd_sync(args: argparse.Namespace, settings: Settings) -> None:
    store, _ = open_store(settings)
    scheduler, client = _build_scheduler(store, settings)
    with client:
        report = scheduler.sync_now()
    if report.outcome == SyncOutcome.COMPLETED:
        print(f"Sync success: {report.inserted} added, {report.updated} updated. All your accounts are up to date.")
    elif report.outcome == SyncOutcome.SKIPPED:
        print(f"Sync skipped: {report.reason}")
    else:
        print(f"Sync error ({report.error_kind}): {report.reason}")
        sys.exit(1)


def cmd_watch(args: argparse.Namespace, settings: Settings) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%H:%M:%S",
    )
    store, _ = open_store(settings)
    scheduler, client = _build_scheduler(store, settings)
    if settings.credentials.complete:
        scheduler.start()
    print("Watching codes. Press Ctrl+C to stop.")
    try:
        while True:
            _print_codes(store.list(), settings)
            state = scheduler.state
            if state.last_error:
                print(f"  Last sync error ({state.last_error_kind}): {state.last_error}")
            time.sleep(args.every)
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        scheduler.stop()
        client.close()


def cmd_new_secret(args: argparse.Namespace, settings: Settings) -> None:
    print(generate_key() if args.master_key else generate_secret())


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="totpkeeper",
        description="totpkeeper: TOTP account vault with live codes and remote sync",
    )
    sub = parser.add_subparsers(dest="command", help="Command to run")

    p_list = sub.add_parser("list", help="List accounts with current codes")
    p_list.add_argument("--query", "-q", help="Filter by account name")

    p_code = sub.add_parser("code", help="Show the current code for one account")
    p_code.add_argument("ref", help="Account id, id prefix, or name")

    p_add = sub.add_parser("add", help="Add an account")
    p_add.add_argument("name", nargs="?")
    p_add.add_argument("secret", nargs="?")
    p_add.add_argument("--issuer")
    p_add.add_argument("--uri", help="otpauth:// URI instead of NAME/SECRET")

    p_rename = sub.add_parser("rename", help="Rename an account")
    p_rename.add_argument("ref")
    p_rename.add_argument("name")

    p_delete = sub.add_parser("delete", help="Delete an account")
    p_delete.add_argument("ref")

    p_import = sub.add_parser("import", help="Import accounts from a YAML/JSON file")
    p_import.add_argument("file")

    sub.add_parser("sync", help="Sync once with the server")

    p_watch = sub.add_parser("watch", help="Print live codes and sync periodically")
    p_watch.add_argument("--every", type=float, default=5.0, help="Redraw interval in seconds")

    p_secret = sub.add_parser("new-secret", help="Generate a TOTP secret")
    p_secret.add_argument("--master-key", action="store_true", help="Generate a file encryption key instead")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    dispatch = {
        "list": cmd_list,
        "code": cmd_code,
        "add": cmd_add,
        "rename": cmd_rename,
        "delete": cmd_delete,
        "import": cmd_import,
        "sync": cmd_sync,
        "watch": cmd_watch,
        "new-secret": cmd_new_secret,
    }
    try:
        dispatch[args.command](args, Settings())
    except (AuthenticatorError, FileNotFoundError) as e:
        print(f"Error: {e}")
        sys.exit(1)
    except ValidationError as e:
        print(f"Error: invalid configuration: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
