"""Pydantic models for data flowing between the store, sync and import."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

DEFAULT_ICON_CDN = "https://cdn.casbin.org/img"


def new_account_id() -> str:
    return uuid4().hex


# === Enums ===


class SyncStatus(StrEnum):
    IDLE = "idle"
    SYNCING = "syncing"
    FAILED = "failed"


class SyncOutcome(StrEnum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ChangeKind(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"
    IMPORT = "import"
    SYNC = "sync"
    LOAD = "load"


# === Accounts ===


class Account(BaseModel):
    """A single TOTP account. Instances are immutable; the store swaps them."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_account_id)
    account_name: str
    issuer: str | None = None
    secret_key: str
    changed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @field_validator("issuer")
    @classmethod
    def _blank_issuer_is_none(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @field_validator("changed_at")
    @classmethod
    def _force_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    @property
    def identity_key(self) -> tuple[str, str, str]:
        """Key used for duplicate detection: (issuer, account name, secret)."""
        return (self.issuer or "", self.account_name, self.secret_key)

    def icon_url(self, cdn_base: str = DEFAULT_ICON_CDN) -> str:
        """Issuer logo URL, falling back to the generic icon."""
        base = cdn_base.rstrip("/")
        if not self.issuer:
            return f"{base}/social_default.png"
        return f"{base}/social_{self.issuer.lower()}.png"


class RemoteAccount(BaseModel):
    """Account as exchanged with the sync server (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    account_name: str
    issuer: str | None = None
    secret_key: str
    changed_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> RemoteAccount:
        return cls(
            id=account.id,
            account_name=account.account_name,
            issuer=account.issuer,
            secret_key=account.secret_key,
            changed_at=account.changed_at,
        )

    def to_account(self) -> Account:
        return Account(
            id=self.id,
            account_name=self.account_name,
            issuer=self.issuer,
            secret_key=self.secret_key,
            changed_at=self.changed_at,
        )

    def wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# === Store notifications ===


@dataclass(frozen=True)
class ChangeEvent:
    """One logically distinct mutation batch applied to the store."""

    revision: int
    kind: ChangeKind
    account_ids: tuple[str, ...] = ()


# === Sync ===


@dataclass
class SyncState:
    """Live state of one SyncScheduler. Read through ``SyncScheduler.state``."""

    status: SyncStatus = SyncStatus.IDLE
    last_sync_at: datetime | None = None
    last_error: str | None = None
    last_error_kind: str | None = None

    @property
    def in_flight(self) -> bool:
        return self.status == SyncStatus.SYNCING


@dataclass(frozen=True)
class SyncReport:
    """What a single sync attempt did."""

    outcome: SyncOutcome
    reason: str | None = None
    inserted: int = 0
    updated: int = 0
    error_kind: str | None = None


@dataclass(frozen=True)
class Credentials:
    server_url: str = ""
    access_token: str = ""
    username: str = ""

    @property
    def complete(self) -> bool:
        return bool(self.server_url and self.access_token and self.username)


# === Import / scan ===


@dataclass(frozen=True)
class ScanOk:
    """Scanner produced one or more records (dicts or otpauth:// URIs)."""

    records: list[Any] = field(default_factory=list)


@dataclass(frozen=True)
class ScanErr:
    """Scanner or file import failed before producing records."""

    reason: str


ScanResult = ScanOk | ScanErr


@dataclass(frozen=True)
class Rejection:
    """An incoming record that was not imported, and why."""

    record: Any
    reason: Exception

    @property
    def message(self) -> str:
        return str(self.reason)


@dataclass
class ImportOutcome:
    accepted: list[Account] = field(default_factory=list)
    rejected: list[Rejection] = field(default_factory=list)
