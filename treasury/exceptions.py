"""
Treasury Exceptions

Custom exception classes for the treasury ledger.

Every exception carries an HTTP-equivalent ``status_code`` so the transport
layer can map it without knowing the ledger internals.
"""


class TreasuryException(Exception):
    """Base exception for the treasury."""
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__doc__ or ""

    def to_dict(self) -> dict:
        return {"message": self.message}


class ValidationError(TreasuryException):
    """Caller input is invalid."""
    status_code = 400


class MissingParameterError(ValidationError):
    """A required request parameter is absent."""
    pass


class InvalidParameterError(ValidationError):
    """A request parameter is present but malformed."""
    pass


class NotFoundError(TreasuryException):
    """No operation matches the given transfer id."""
    status_code = 404


class DuplicateIdError(TreasuryException):
    """An operation with the same transfer id already exists."""
    status_code = 409


class LifecycleError(TreasuryException):
    """Illegal operation status change."""
    status_code = 409


class AlreadyClosedError(LifecycleError):
    """Operation is already closed."""

    def __init__(self, transfer_id: str):
        super().__init__(f"Operation {transfer_id} is already closed")
        self.transfer_id = transfer_id


class InvalidTransitionError(LifecycleError):
    """Transition not allowed from the current status."""
    pass


class ClaimConflictError(TreasuryException):
    """Stored status changed between read and write."""
    status_code = 409


class SettlementRemainderError(TreasuryException):
    """Netting left a residual balance that is carried forward."""

    def __init__(self, debtor: str, creditor: str, remainder):
        super().__init__(
            f"Settlement remainder {remainder} from {debtor} to {creditor} carried forward"
        )
        self.debtor = debtor
        self.creditor = creditor
        self.remainder = remainder


class ChainContextError(TreasuryException):
    """Chain context provider failed."""
    status_code = 502


class ConfigurationError(TreasuryException):
    """Configuration error."""
    pass
