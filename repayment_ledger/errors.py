"""
Ledger Error Taxonomy

Every failure raised by the engine is a LedgerError. Validation and lookup
errors also subclass the builtin ValueError / LookupError so callers that only
know the builtins still catch them.
"""


class LedgerError(Exception):
    """Base class for all ledger engine errors"""


class ValidationError(LedgerError, ValueError):
    """Malformed or out-of-range input, rejected before any mutation"""


class InvalidTermsError(ValidationError):
    """Loan terms that cannot produce a valid amortization schedule"""


class NotFoundError(LedgerError, LookupError):
    """Unknown ledger, installment or transaction"""


class StateConflictError(LedgerError):
    """Operation not allowed in the ledger's current state"""


class ConcurrentModificationError(StateConflictError):
    """Ledger was modified by another writer since it was loaded"""


class InternalError(LedgerError):
    """Unexpected failure; the mutation was not committed"""
