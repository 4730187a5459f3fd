"""In-memory authoritative account collection.

Every mutation runs behind one re-entrant lock, bumps ``revision`` exactly
once and notifies subscribers exactly once, so downstream views can compare
revisions instead of account lists.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from totpkeeper.auth.totp import validate_secret
from totpkeeper.clock import Clock, system_clock, utc_now
from totpkeeper.errors import AuthenticatorError, DuplicateAccount, ImportValidationError, NotFound
from totpkeeper.models import Account, ChangeEvent, ChangeKind, new_account_id

logger = logging.getLogger(__name__)

Listener = Callable[[ChangeEvent], None]
MergePlan = Callable[[Sequence[Account]], Sequence[Account]]

MUTABLE_FIELDS = frozenset({"account_name", "issuer"})
_FIELD_ALIASES = {"accountName": "account_name", "secretKey": "secret_key"}


def coerce_fields(record: Mapping[str, Any]) -> dict[str, Any]:
    """Accept camelCase or snake_case keys for account fields."""
    return {_FIELD_ALIASES.get(key, key): value for key, value in record.items()}


class AccountStore:
    """Ordered collection of accounts with change notification."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or system_clock
        self._accounts: dict[str, Account] = {}
        self._revision = 0
        self._listeners: list[tuple[Listener, bool]] = []
        self._lock = threading.RLock()

    # --- Reads ---

    @property
    def revision(self) -> int:
        return self._revision

    def list(self) -> tuple[Account, ...]:
        with self._lock:
            return tuple(self._accounts.values())

    def get(self, account_id: str) -> Account:
        with self._lock:
            try:
                return self._accounts[account_id]
            except KeyError:
                raise NotFound(account_id) from None

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._accounts

    # --- Subscriptions ---

    def subscribe(self, listener: Listener, raise_errors: bool = False) -> Callable[[], None]:
        """Register ``listener``; returns a callable that unsubscribes it.

        Failures in ordinary listeners are logged. With ``raise_errors`` the
        failure is re-raised to the caller of the mutation once every
        listener has run; the in-memory change itself stays applied.
        """
        entry = (listener, raise_errors)
        with self._lock:
            self._listeners.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._listeners:
                    self._listeners.remove(entry)

        return unsubscribe

    # --- Mutations ---

    def insert(
        self,
        account_name: str | Account | Mapping[str, Any],
        secret_key: str | None = None,
        issuer: str | None = None,
    ) -> str:
        """Add a new account and return its id.

        Accepts either explicit fields or a single record (an Account or a
        mapping with account fields). A fresh id is assigned unless the
        record carries one that is not in use yet.
        """
        with self._lock:
            account = self._build(account_name, secret_key, issuer)
            self._check_duplicate(account)
            self._accounts[account.id] = account
            self._commit(ChangeKind.INSERT, (account.id,))
            logger.info("Inserted account %s", account.id)
            return account.id

    def insert_many(
        self, records: Iterable[Account | Mapping[str, Any]]
    ) -> tuple[list[Account], list[tuple[Any, Exception]]]:
        """Insert a batch with one notification. Each item succeeds or fails alone."""
        accepted: list[Account] = []
        failed: list[tuple[Any, Exception]] = []
        with self._lock:
            for record in records:
                try:
                    account = self._build(record)
                    self._check_duplicate(account)
                except (AuthenticatorError, ValueError) as e:
                    failed.append((record, e))
                    continue
                self._accounts[account.id] = account
                accepted.append(account)
            if accepted:
                self._commit(ChangeKind.IMPORT, tuple(a.id for a in accepted))
        return accepted, failed

    def update(self, account_id: str, **fields: Any) -> Account:
        """Change mutable fields (``account_name``, ``issuer``) of an account."""
        fields = coerce_fields(fields)
        immutable = set(fields) - MUTABLE_FIELDS
        if immutable:
            raise ValueError(f"Fields cannot be updated in place: {sorted(immutable)}")
        with self._lock:
            current = self.get(account_id)
            candidate = Account(
                id=current.id,
                account_name=fields.get("account_name", current.account_name),
                issuer=fields.get("issuer", current.issuer),
                secret_key=current.secret_key,
                changed_at=utc_now(self._clock),
            )
            if not candidate.account_name.strip():
                raise ValueError("Account name cannot be empty")
            self._check_duplicate(candidate, ignore_id=account_id)
            self._accounts[account_id] = candidate
            self._commit(ChangeKind.UPDATE, (account_id,))
            return candidate

    def rename(self, account_id: str, account_name: str) -> Account:
        return self.update(account_id, account_name=account_name)

    def delete(self, account_id: str) -> None:
        with self._lock:
            if account_id not in self._accounts:
                raise NotFound(account_id)
            del self._accounts[account_id]
            self._commit(ChangeKind.DELETE, (account_id,))
            logger.info("Deleted account %s", account_id)

    def reconcile(self, plan: MergePlan, kind: ChangeKind = ChangeKind.SYNC) -> tuple[Account, ...]:
        """Replace the contents with ``plan(current)`` in one atomic step.

        ``plan`` runs under the store lock against the live contents. If it
        raises, or returns a collection with duplicate ids, nothing changes.
        """
        with self._lock:
            current = tuple(self._accounts.values())
            result = list(plan(current))
            replacement: dict[str, Account] = {}
            for account in result:
                if account.id in replacement:
                    raise ValueError(f"Merge produced duplicate id {account.id}")
                replacement[account.id] = account
            if list(replacement.values()) == list(current):
                return current
            changed = tuple(
                a.id for a in result if self._accounts.get(a.id) != a
            ) + tuple(i for i in self._accounts if i not in replacement)
            self._accounts = replacement
            self._commit(kind, changed)
            return tuple(result)

    def load(self, accounts: Iterable[Account]) -> None:
        """Replace the contents with persisted accounts, keeping their fields."""
        self.reconcile(lambda _current: list(accounts), kind=ChangeKind.LOAD)

    # --- Internals ---

    def _build(
        self,
        record: str | Account | Mapping[str, Any],
        secret_key: str | None = None,
        issuer: str | None = None,
    ) -> Account:
        if isinstance(record, Account):
            fields = record.model_dump()
        elif isinstance(record, Mapping):
            fields = coerce_fields(record)
        else:
            fields = {"account_name": record, "secret_key": secret_key, "issuer": issuer}

        name = fields.get("account_name")
        if not isinstance(name, str) or not name.strip():
            raise ImportValidationError("Account name is required")
        account_id = fields.get("id")
        if not account_id or account_id in self._accounts:
            account_id = new_account_id()
        return Account(
            id=str(account_id),
            account_name=name.strip(),
            issuer=fields.get("issuer"),
            secret_key=validate_secret(fields.get("secret_key") or ""),
            changed_at=utc_now(self._clock),
        )

    def _check_duplicate(self, candidate: Account, ignore_id: str | None = None) -> None:
        key = candidate.identity_key
        for existing in self._accounts.values():
            if existing.id != ignore_id and existing.identity_key == key:
                raise DuplicateAccount(candidate.account_name, candidate.issuer)

    def _commit(self, kind: ChangeKind, account_ids: tuple[str, ...]) -> None:
        self._revision += 1
        event = ChangeEvent(revision=self._revision, kind=kind, account_ids=account_ids)
        failure: Exception | None = None
        for listener, raise_errors in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                if not raise_errors:
                    logger.warning("Store listener failed for %s", event, exc_info=True)
                elif failure is None:
                    failure = e
        if failure is not None:
            raise failure
