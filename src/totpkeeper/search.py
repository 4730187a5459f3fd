"""Filtering the account list by display name."""

from __future__ import annotations

import threading
from collections.abc import Sequence

from totpkeeper.models import Account
from totpkeeper.store import AccountStore


def filter_accounts(accounts: Sequence[Account], query: str) -> Sequence[Account]:
    """Case-insensitive substring match on ``account_name``.

    A blank query returns ``accounts`` itself, untouched.
    """
    if not query or not query.strip():
        return accounts
    needle = query.casefold()
    return [a for a in accounts if needle in a.account_name.casefold()]


class SearchIndex:
    """Cached search results over a store.

    Results are recomputed only when the store revision or the query
    changes; anything else (countdown ticks, repeated reads) hits the cache.
    """

    def __init__(self, store: AccountStore, query: str = "") -> None:
        self._store = store
        self._query = query
        self._key: tuple[int, str] | None = None
        self._results: tuple[Account, ...] = ()
        self._lock = threading.Lock()
        self.recompute_count = 0

    @property
    def query(self) -> str:
        return self._query

    def set_query(self, query: str) -> tuple[Account, ...]:
        self._query = query
        return self.results()

    def results(self) -> tuple[Account, ...]:
        with self._lock:
            key = (self._store.revision, self._query)
            if key != self._key:
                self._results = tuple(filter_accounts(self._store.list(), self._query))
                self._key = key
                self.recompute_count += 1
            return self._results
