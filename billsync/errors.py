"""Error taxonomy shared by the local store, generators, reconciler and sessions."""
from __future__ import annotations

from typing import Dict, Optional


class BillingError(Exception):
    """Base class for every error raised by billsync."""


class StorageFailure(BillingError):
    """The local database failed (quota, corruption, locked file). Never retried by the store."""


class NotFound(BillingError):
    """A referenced store, invoice, employee or remote row does not exist."""


class Conflict(BillingError):
    """The remote store already holds a row with the same identity."""


class SequenceExhausted(BillingError):
    """The daily invoice counter for a store reached its cap."""


class SyncFailure(BillingError):
    """Base class for failures while replaying the sync queue."""


class TransientSyncFailure(SyncFailure):
    """Network, timeout or rate-limit error. Retried with backoff."""


class PermanentSyncFailure(SyncFailure):
    """Remote validation or policy rejection. Needs manual intervention."""


class SessionExpired(BillingError):
    """The local session is gone or past its expiry; re-authenticate."""


class AuthenticationError(BillingError):
    """Credentials were rejected."""


class UploadFailure(BillingError):
    """The file storage collaborator refused or failed an upload."""


class ValidationError(BillingError):
    """Input failed validation. ``errors`` maps field name to message."""

    def __init__(self, message: str, errors: Optional[Dict[str, str]] = None):
        super().__init__(message)
        self.errors = dict(errors or {})


class RenderFailure(BillingError):
    """The document renderer refused or failed a render request."""
