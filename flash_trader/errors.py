"""
Error kinds raised by ledger operations.

Every error aborts the whole operation. Codes are stable so that clients
can match on them without parsing messages.
"""


class ValidationError(Exception):
    """Raised when an operation cannot be applied."""
    code = 6000

    @property
    def kind(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'code': self.code, 'message': str(self)}


class Unauthorized(ValidationError):
    code = 6001


class InvalidAmount(ValidationError):
    code = 6002


class InsufficientBalance(ValidationError):
    code = 6003


class LockNotExpired(ValidationError):
    code = 6004


class FlashLoanNotRepaid(ValidationError):
    code = 6005


class AccountAlreadyInitialized(ValidationError):
    code = 6006


class TypeMismatch(ValidationError):
    code = 6007


class ArithmeticOverflow(ValidationError):
    code = 6008


class AccountNotFound(ValidationError):
    code = 6009


class AccountMismatch(ValidationError):
    """Two accounts named by an instruction do not belong together."""
    code = 6010


class AccountRetired(ValidationError):
    code = 6011


class InvalidInstruction(ValidationError):
    code = 6012


class ReplayedInstruction(ValidationError):
    code = 6013


class ReentrantOperation(ValidationError):
    code = 6014


class ComputeBudgetExceeded(ValidationError):
    code = 6015

