"""
Error Taxonomy

Every error raised by the engine carries a stable ``code`` and a human
readable ``message``. The category base classes decide how the REST layer
maps an error to an HTTP status and whether callers may retry.
"""

from typing import Any, Dict, Optional


class BankingError(Exception):
    """Base class for all engine errors"""
    code = "BANKING_ERROR"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


# Not found

class NotFoundError(BankingError, LookupError):
    code = "NOT_FOUND"


class AccountNotFound(NotFoundError):
    code = "ACCOUNT_NOT_FOUND"


class TransactionNotFound(NotFoundError):
    code = "TRANSACTION_NOT_FOUND"


class RestrictionNotFound(NotFoundError):
    code = "RESTRICTION_NOT_FOUND"


class OwnerNotFound(NotFoundError):
    code = "OWNER_NOT_FOUND"


class PatternNotFound(NotFoundError):
    code = "PATTERN_NOT_FOUND"


# Validation

class ValidationError(BankingError, ValueError):
    code = "VALIDATION_ERROR"


class InvalidAmount(ValidationError):
    code = "INVALID_AMOUNT"


class InvalidRange(ValidationError):
    code = "INVALID_RANGE"


class OverlappingRange(ValidationError):
    code = "OVERLAPPING_RANGE"


class SameAccountTransfer(ValidationError):
    code = "SAME_ACCOUNT_TRANSFER"


class AccountLimitExceeded(ValidationError):
    code = "ACCOUNT_LIMIT_EXCEEDED"


class PositiveBalance(ValidationError):
    code = "POSITIVE_BALANCE"


class AuthenticationFailed(ValidationError):
    code = "AUTHENTICATION_FAILED"


# Funds

class InsufficientFunds(BankingError):
    code = "INSUFFICIENT_FUNDS"


# State conflicts

class StateConflict(BankingError):
    code = "STATE_CONFLICT"


class InvalidStateTransition(StateConflict):
    code = "INVALID_STATE_TRANSITION"


class NotPending(StateConflict):
    code = "NOT_PENDING"


class NotAuthorized(StateConflict):
    code = "NOT_AUTHORIZED"


class AccountNotActive(StateConflict):
    code = "ACCOUNT_NOT_ACTIVE"


# Collaborators and resources

class CollaboratorUnavailable(BankingError):
    code = "COLLABORATOR_UNAVAILABLE"
    retryable = True


class RateLimitExceeded(BankingError):
    code = "RATE_LIMIT_EXCEEDED"
    retryable = True


class PartialSettlement(BankingError):
    """Balances moved but a movement record could not be written"""
    code = "PARTIAL_SETTLEMENT"


_ERRORS_BY_CODE: Dict[str, type] = {}


def _register(cls: type) -> None:
    _ERRORS_BY_CODE[cls.code] = cls
    for subclass in cls.__subclasses__():
        _register(subclass)


_register(BankingError)


def error_from_code(code: str, message: str) -> BankingError:
    """Rebuild a typed error from a code received over the message bus"""
    error_cls: Optional[type] = _ERRORS_BY_CODE.get(code)
    if error_cls is None:
        return BankingError(message)
    return error_cls(message)
