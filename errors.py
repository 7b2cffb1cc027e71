from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    ACCOUNT_NOT_ACTIVE = "ACCOUNT_NOT_ACTIVE"
    CURRENCY_MISMATCH = "CURRENCY_MISMATCH"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    SAME_ACCOUNT = "SAME_ACCOUNT"
    IDEMPOTENCY_CONFLICT = "IDEMPOTENCY_CONFLICT"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    NOT_FOUND = "NOT_FOUND"


ERROR_DESCRIPTIONS: Dict[ErrorCode, str] = {
    ErrorCode.VALIDATION_ERROR: "Request body or parameters failed validation (e.g. invalid UUID, missing required field).",
    ErrorCode.ACCOUNT_NOT_FOUND: "The specified account ID does not exist.",
    ErrorCode.ACCOUNT_NOT_ACTIVE: "The account is not in ACTIVE status (e.g. FROZEN or CLOSED).",
    ErrorCode.CURRENCY_MISMATCH: "Source and destination account currencies do not match the transfer currency.",
    ErrorCode.INSUFFICIENT_BALANCE: "The source account does not have enough available balance for the transfer.",
    ErrorCode.SAME_ACCOUNT: "Source and destination account IDs are the same; transfers must be between different accounts.",
    ErrorCode.IDEMPOTENCY_CONFLICT: (
        "The same reference was used with a different request body (amount, accounts, or currency). "
        "Use a unique reference per transfer or send the same body for retries."
    ),
    ErrorCode.INTERNAL_ERROR: "An unexpected server error occurred. Check logs and the request id for details.",
    ErrorCode.NOT_FOUND: "The requested resource or endpoint was not found.",
}


class AppError(Exception):
    """Base class for errors that carry a stable, machine-readable code."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(AppError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


class AccountNotFoundError(AppError):
    code = ErrorCode.ACCOUNT_NOT_FOUND
    status_code = 404

    def __init__(self, account_id: str):
        super().__init__(f"Account not found: {account_id}", {"account_id": account_id})
        self.account_id = account_id


class AccountNotActiveError(AppError):
    code = ErrorCode.ACCOUNT_NOT_ACTIVE
    status_code = 422

    def __init__(self, account_id: str, status: str):
        super().__init__(
            f"Account {account_id} is not active (status: {status})",
            {"account_id": account_id, "status": status},
        )
        self.account_id = account_id
        self.status = status


class CurrencyMismatchError(AppError):
    code = ErrorCode.CURRENCY_MISMATCH
    status_code = 422

    def __init__(self, currency: str, source_currency: str, destination_currency: str):
        super().__init__(
            "Source and destination currencies do not match",
            {
                "currency": currency,
                "source_currency": source_currency,
                "destination_currency": destination_currency,
            },
        )


class InsufficientBalanceError(AppError):
    code = ErrorCode.INSUFFICIENT_BALANCE
    status_code = 422

    def __init__(self, account_id: str):
        super().__init__("Insufficient available balance", {"account_id": account_id})
        self.account_id = account_id


class SameAccountError(AppError):
    code = ErrorCode.SAME_ACCOUNT
    status_code = 422

    def __init__(self, account_id: str):
        super().__init__("Source and destination accounts must be different", {"account_id": account_id})


class IdempotencyConflictError(AppError):
    code = ErrorCode.IDEMPOTENCY_CONFLICT
    status_code = 409

    def __init__(self, reference: str):
        super().__init__(
            "This reference was already used for a transfer with different amount, accounts, or currency",
            {"reference": reference},
        )
        self.reference = reference


class TransferNotFoundError(AppError):
    code = ErrorCode.NOT_FOUND
    status_code = 404

    def __init__(self, identifier: str):
        super().__init__(f"Transfer not found: {identifier}", {"identifier": identifier})


class EndpointDisabledError(AppError):
    code = ErrorCode.NOT_FOUND
    status_code = 404

    def __init__(self):
        super().__init__("Not found")
