# rewards_engine/errors.py
"""
Error taxonomy shared by all engine operations.
"""


class RewardsError(Exception):
    """Base class; `code` is a stable discriminant for the API layer."""

    code = "rewards_error"
    retryable = False

    def __init__(self, message: str = "", **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def toDict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.details
        }


class NotFound(RewardsError):
    code = "not_found"


class AlreadyProcessed(RewardsError):
    """Work already done; callers treat it as success."""
    code = "already_processed"


class IntegrityViolation(RewardsError):
    """Corrupt tree or ledger. Alert, do not retry."""
    code = "integrity_violation"


class AlreadyPlaced(IntegrityViolation):
    code = "already_placed"


class TransientStoreFailure(RewardsError):
    """Nothing was committed; the whole unit can be retried."""
    code = "transient_store_failure"
    retryable = True


class ValidationFailure(RewardsError):
    code = "validation_failure"
