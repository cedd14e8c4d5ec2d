from datetime import timedelta
from typing import Optional


class LedgerServiceError(Exception):
    status_code = 400
    code = "ledger_error"

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message, **self.context}


class ValidationError(LedgerServiceError):
    status_code = 422
    code = "validation_error"


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class SameAccountError(ValidationError):
    code = "same_account"


class InsufficientFundsError(LedgerServiceError):
    status_code = 409
    code = "insufficient_funds"


class InvalidStateError(LedgerServiceError):
    status_code = 409
    code = "invalid_state"


class NotFoundError(LedgerServiceError):
    status_code = 404
    code = "not_found"


class AccountNotFoundError(NotFoundError):
    code = "account_not_found"


class TransactionNotFoundError(NotFoundError):
    code = "transaction_not_found"


class AlreadyClaimedError(LedgerServiceError):
    status_code = 429
    code = "already_claimed"

    def __init__(self, message: str, remaining: timedelta):
        super().__init__(message, remaining_seconds=int(remaining.total_seconds()))
        self.remaining = remaining


class UnauthorizedError(LedgerServiceError):
    status_code = 403
    code = "unauthorized"


class IdempotencyConflictError(LedgerServiceError):
    status_code = 409
    code = "idempotency_conflict"

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message, idempotency_key=key)
        self.key = key
