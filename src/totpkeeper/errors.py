"""Domain exceptions for the authenticator core."""

from __future__ import annotations


class AuthenticatorError(Exception):
    """Base class for every error raised by totpkeeper."""


class InvalidSecret(AuthenticatorError):
    """Secret is not valid base32 or carries too little key material."""


class DuplicateAccount(AuthenticatorError):
    """issuer + account name + secret already exist in the store."""

    def __init__(self, account_name: str, issuer: str | None):
        label = f"{account_name} ({issuer})" if issuer else account_name
        super().__init__(f"Duplicate account: {label}")
        self.account_name = account_name
        self.issuer = issuer


class NotFound(AuthenticatorError):
    """No account with the given id."""

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}")
        self.account_id = account_id


class ImportValidationError(AuthenticatorError):
    """An imported or scanned record could not be turned into an account."""


class PersistenceError(AuthenticatorError):
    """The account file could not be read or decrypted."""


class SyncError(AuthenticatorError):
    """Base for remote sync failures. ``kind`` is shown to the user."""

    kind = "sync"


class SyncNetworkError(SyncError):
    kind = "network"


class SyncAuthError(SyncError):
    kind = "auth"


class SyncServerError(SyncError):
    kind = "server"


class SyncTimeout(SyncError):
    kind = "timeout"
