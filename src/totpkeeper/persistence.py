"""JSON account file, optionally encrypted, kept in step with the store."""

from __future__ import annotations

import binascii
import json
import logging
import os
from collections.abc import Callable, Iterable
from pathlib import Path

from cryptography.exceptions import InvalidTag
from pydantic import ValidationError

from totpkeeper import crypto
from totpkeeper.clock import Clock
from totpkeeper.config import Settings
from totpkeeper.errors import PersistenceError
from totpkeeper.models import Account, ChangeEvent
from totpkeeper.store import AccountStore

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1


class AccountFile:
    """Reads and writes the full account list to one file.

    Writes go to a temporary file that is then renamed over the target, so
    a crash mid-write leaves the previous file intact.
    """

    def __init__(self, path: Path | str, master_key: str | None = None) -> None:
        self.path = Path(path)
        self.master_key = master_key or None

    def load(self) -> list[Account]:
        if not self.path.exists():
            return []
        try:
            doc = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e
        if not isinstance(doc, dict):
            raise PersistenceError(f"{self.path} is not an account file")

        if doc.get("encrypted"):
            if not self.master_key:
                raise PersistenceError(f"{self.path} is encrypted but no master key is set")
            try:
                doc = json.loads(crypto.decrypt(doc["payload"], key=self.master_key))
            except (InvalidTag, KeyError, ValueError, binascii.Error) as e:
                raise PersistenceError(f"Cannot decrypt {self.path}") from e

        if doc.get("version") != FORMAT_VERSION:
            raise PersistenceError(f"Unsupported account file version: {doc.get('version')}")
        try:
            return [Account.model_validate(item) for item in doc.get("accounts", [])]
        except ValidationError as e:
            raise PersistenceError(f"Corrupt account record in {self.path}: {e}") from e

    def save(self, accounts: Iterable[Account]) -> None:
        """Write the full list. Raises PersistenceError if nothing was written."""
        doc = {
            "version": FORMAT_VERSION,
            "accounts": [account.model_dump(mode="json") for account in accounts],
        }
        text = json.dumps(doc, indent=2)
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            if self.master_key:
                text = json.dumps({
                    "version": FORMAT_VERSION,
                    "encrypted": True,
                    "payload": crypto.encrypt(text, key=self.master_key),
                })
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, self.path)
        except (OSError, ValueError) as e:
            tmp.unlink(missing_ok=True)
            raise PersistenceError(f"Cannot save {self.path}: {e}") from e
        logger.debug("Saved %d accounts to %s", len(doc["accounts"]), self.path)

    def check_key(self) -> None:
        """Fail early on a master key that could never encrypt a save."""
        if not self.master_key:
            return
        try:
            crypto.load_key(self.master_key)
        except ValueError as e:
            raise PersistenceError(str(e)) from e

    def bind(self, store: AccountStore) -> Callable[[], None]:
        """Save after every store change. Returns the unsubscribe callable.

        A failed save is raised to whoever made the change.
        """

        def on_change(event: ChangeEvent) -> None:
            self.save(store.list())

        return store.subscribe(on_change, raise_errors=True)


def open_store(settings: Settings, clock: Clock | None = None) -> tuple[AccountStore, AccountFile]:
    """Load the configured account file into a new store and keep it saved."""
    account_file = AccountFile(settings.data_file, master_key=settings.master_key)
    account_file.check_key()
    store = AccountStore(clock=clock)
    store.load(account_file.load())
    account_file.bind(store)
    logger.info("Loaded %d accounts from %s", len(store), account_file.path)
    return store, account_file
