"""Last-writer-wins merge of the remote account list into local accounts."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from totpkeeper.models import Account

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    accounts: list[Account] = field(default_factory=list)
    inserted: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    needs_push: bool = False


def merge_remote(local: Sequence[Account], remote: Sequence[Account]) -> MergeResult:
    """Combine ``local`` and ``remote`` by account id.

    - remote only: added.
    - local only: kept (a sync never deletes local accounts).
    - both: the newer ``changed_at`` wins; on a tie the local copy wins.

    The result follows remote order, then local-only accounts in their
    existing order. A remote account whose (issuer, name, secret) matches a
    different account already present is skipped in favour of that one; for
    an id known on both sides the local copy is kept.
    """
    result = MergeResult()
    local_by_id = {account.id: account for account in local}
    owners = {account.identity_key: account.id for account in local}
    placed: set[str] = set()

    for incoming in remote:
        if incoming.id in placed:
            logger.warning("Remote list repeats account id %s", incoming.id)
            continue
        current = local_by_id.get(incoming.id)
        if current is None:
            if incoming.identity_key in owners:
                logger.info("Skipping remote account %s: duplicates a local account", incoming.id)
                result.skipped.append(incoming.id)
                continue
            owners[incoming.identity_key] = incoming.id
            result.accounts.append(incoming)
            result.inserted.append(incoming.id)
        elif incoming.changed_at <= current.changed_at:
            result.accounts.append(current)
        elif owners.get(incoming.identity_key, incoming.id) != incoming.id:
            logger.info("Keeping local account %s: remote change duplicates another account", incoming.id)
            result.skipped.append(incoming.id)
            result.accounts.append(current)
        else:
            if owners.get(current.identity_key) == current.id:
                del owners[current.identity_key]
            owners[incoming.identity_key] = incoming.id
            result.accounts.append(incoming)
            if incoming != current:
                result.updated.append(incoming.id)
        placed.add(incoming.id)

    result.accounts.extend(account for account in local if account.id not in placed)
    result.needs_push = result.accounts != list(remote)
    return result
