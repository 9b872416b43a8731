class LedgerError(Exception):
    code = "ledger_error"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(LedgerError):
    code = "not_found"


class ItemNotFoundError(NotFoundError):
    def __init__(self, item_id, details: dict | None = None):
        self.item_id = item_id
        super().__init__("Stock item not found.", {"item_id": str(item_id), **(details or {})})


class LogNotFoundError(NotFoundError):
    def __init__(self, log_id, details: dict | None = None):
        self.log_id = log_id
        super().__init__("Stock log entry not found.", {"log_id": str(log_id), **(details or {})})


class InvariantViolationError(LedgerError):
    """Raised when a write would leave stock negative or bypass the log ledger."""

    code = "invariant_violation"


class StoreUnavailableError(LedgerError):
    code = "store_unavailable"
