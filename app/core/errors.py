# app/core/errors.py
"""
Typed domain errors for the dispatch engine.

Each error maps to a specific HTTP status code.  The transport layer
registers one exception handler for ``DispatchError`` and converts it to
a JSON response, so route handlers carry no error mapping logic.

Ledger errors (``InvalidAmount``, ``InsufficientCredits`` and the refund
errors) are the only ones that abort a whole dispatch request.  Gateway
and distance errors are recovered per candidate.
"""
from __future__ import annotations


class DispatchError(Exception):
    """Base class for all dispatch domain errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class LedgerError(DispatchError):
    """Credit ledger rejected the operation."""

    status_code = 400


class InvalidAmount(LedgerError):
    status_code = 400

    def __init__(self, amount: int):
        self.amount = amount
        super().__init__(f"Amount must be positive, got {amount}")


class InsufficientCredits(LedgerError):
    status_code = 402

    def __init__(self, available: int, required: int):
        self.available = available
        self.required = required
        super().__init__(f"Insufficient credits. Available: {available}, Required: {required}")


class TransactionNotFound(LedgerError):
    status_code = 404

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} not found")


class NotOwnedByOwner(LedgerError):
    status_code = 403

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} does not belong to this owner")


class NotAConsumption(LedgerError):
    status_code = 400

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} is not a consumption")


class AlreadyRefunded(LedgerError):
    status_code = 409

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Transaction {transaction_id} has already been refunded")


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class GatewayUnavailable(DispatchError):
    """SMS or push provider is not configured."""

    status_code = 503


class DistanceLookupFailed(DispatchError):
    """Distance service call failed; callers fall back to text matching."""

    status_code = 502


class SmsSendFailed(DispatchError):
    """SMS provider rejected or failed the send; recorded per contact."""

    status_code = 502


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

class JobOrTemplateNotFound(DispatchError):
    status_code = 404


class NotFoundError(DispatchError):
    """Generic resource lookup failure (contact, delivery, campaign)."""

    status_code = 404
