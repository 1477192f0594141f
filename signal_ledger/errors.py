"""Exception hierarchy for the ledger engines.

Only ``StoreUnavailableError`` is allowed to escape a batch operation.
Everything else is caught per record and reported in the batch result.
"""

from __future__ import annotations

from typing import Any


class LedgerError(Exception):
    """Base class for ledger errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.context = context or {}


class StoreUnavailableError(LedgerError):
    """The ledger store cannot be reached at all."""


class StoreWriteError(LedgerError):
    """A single write against the store failed."""

    def __init__(self, message: str, record_id: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.record_id = record_id


class InvalidSignalDataError(LedgerError):
    """Persisted signal data that cannot be valued (e.g. entry price <= 0)."""

    def __init__(self, message: str, signal_id: str = "", field: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.signal_id = signal_id
        self.field = field


class InvariantViolationError(LedgerError):
    """A lifecycle invariant does not hold for a stored signal."""

    def __init__(self, message: str, signal_id: str = "", **kwargs: Any):
        super().__init__(message, **kwargs)
        self.signal_id = signal_id


class ProviderNotFoundError(LedgerError):
    """No provider is registered under the given address."""

    def __init__(self, address: str):
        super().__init__(f"Provider not found: {address}", context={"address": address})
        self.address = address
