# services/transaction_errors.py
"""
Error taxonomy for the transaction engine.

All errors subclass ValueError so existing `except ValueError` handlers keep
working; the boundary maps `kind` to an HTTP status.
"""


class TransactionError(ValueError):
    kind = "transaction_error"
    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {"error": self.kind, "message": self.message}


class ValidationError(TransactionError):
    """Missing or malformed input. Raised before the store is touched."""
    kind = "validation"
    status_code = 400

    def __init__(self, message: str, fields=None):
        super().__init__(message)
        self.fields = list(fields or [])

    def to_dict(self):
        out = super().to_dict()
        if self.fields:
            out["fields"] = self.fields
        return out


class PreconditionError(TransactionError):
    """A league rule rejects the action against current state."""
    kind = "precondition"
    status_code = 409


class ConsistencyError(TransactionError):
    """Undo refused: later transactions changed the affected entries."""
    kind = "consistency"
    status_code = 409


class StoreError(TransactionError):
    """Persistence failure. The unit of work was rolled back."""
    kind = "db_error"
    status_code = 500

    def __init__(self, message: str = "Database error"):
        super().__init__(message)
