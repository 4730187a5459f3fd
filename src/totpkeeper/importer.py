"""Merging scanned or imported account batches into the store.

A batch never fails as a whole: every record is validated and
de-duplicated on its own, and rejected records are reported back with the
reason so the caller can show counts to the user.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from totpkeeper.auth.totp import record_from_uri, validate_secret
from totpkeeper.errors import AuthenticatorError, DuplicateAccount, ImportValidationError
from totpkeeper.models import Account, ImportOutcome, Rejection, ScanErr, ScanOk, ScanResult
from totpkeeper.store import AccountStore, coerce_fields

logger = logging.getLogger(__name__)


def _to_account(record: Any) -> Account:
    if isinstance(record, Account):
        fields = record.model_dump()
    elif isinstance(record, str):
        fields = record_from_uri(record.strip())
    elif isinstance(record, Mapping):
        fields = coerce_fields(record)
    else:
        raise ImportValidationError(f"Unsupported record type: {type(record).__name__}")

    name = fields.get("account_name")
    if not isinstance(name, str) or not name.strip():
        raise ImportValidationError("Account name is required")
    issuer = fields.get("issuer")
    if issuer is not None and not isinstance(issuer, str):
        raise ImportValidationError("Issuer must be text")
    return Account(
        account_name=name.strip(),
        issuer=issuer,
        secret_key=validate_secret(fields.get("secret_key") or ""),
    )


class ImportReconciler:
    """Validates incoming records and applies the store's duplicate policy."""

    def merge(self, existing: Sequence[Account], incoming: Iterable[Any]) -> ImportOutcome:
        """Split ``incoming`` into accepted accounts and rejections.

        Pure: neither ``existing`` nor any store is modified. Records that
        duplicate ``existing`` or an earlier record of the same batch are
        rejected with DuplicateAccount.
        """
        outcome, _sources = self._plan(existing, incoming)
        return outcome

    def apply(self, store: AccountStore, incoming: Iterable[Any]) -> ImportOutcome:
        """Merge ``incoming`` against the store and insert what passes."""
        planned, sources = self._plan(store.list(), incoming)
        inserted, failed = store.insert_many(planned.accepted)
        outcome = ImportOutcome(accepted=inserted, rejected=list(planned.rejected))
        for account, error in failed:
            # Lost a race with a concurrent insert between planning and commit.
            outcome.rejected.append(Rejection(record=sources[account.id], reason=error))
        logger.info(
            "Imported %d accounts, rejected %d", len(outcome.accepted), len(outcome.rejected)
        )
        return outcome

    def ingest(self, store: AccountStore, result: ScanResult) -> ImportOutcome:
        """Apply a scanner result; a failed scan raises ImportValidationError."""
        if isinstance(result, ScanErr):
            raise ImportValidationError(result.reason)
        if not isinstance(result, ScanOk):
            raise TypeError(f"Expected ScanOk or ScanErr, got {type(result).__name__}")
        return self.apply(store, result.records)

    def _plan(
        self, existing: Sequence[Account], incoming: Iterable[Any]
    ) -> tuple[ImportOutcome, dict[str, Any]]:
        outcome = ImportOutcome()
        sources: dict[str, Any] = {}
        seen = {account.identity_key for account in existing}
        for record in incoming:
            try:
                account = _to_account(record)
            except AuthenticatorError as e:
                outcome.rejected.append(Rejection(record=record, reason=e))
                continue
            if account.identity_key in seen:
                duplicate = DuplicateAccount(account.account_name, account.issuer)
                outcome.rejected.append(Rejection(record=record, reason=duplicate))
                continue
            seen.add(account.identity_key)
            sources[account.id] = record
            outcome.accepted.append(account)
        return outcome, sources
