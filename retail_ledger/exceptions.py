"""
Ledger Exceptions

Domain errors raised by the ledger core. All of them derive from
ValueError, so callers that only care about "the request was rejected"
can keep catching ValueError.
"""


class LedgerError(ValueError):
    """Base class for business rule violations"""
    pass


class InvalidIbanError(LedgerError):
    """Malformed recipient IBAN, or no account behind the recipient IBAN"""
    pass


class InvalidAmountError(LedgerError):
    """Amount is missing, not a number, or not strictly positive"""
    pass


class SameAccountTransferError(LedgerError):
    """Sender and recipient IBAN are the same"""
    pass


class AccountNotFoundError(LedgerError):
    pass


class InsufficientFundsError(LedgerError):
    """Withdrawal would drive the balance below zero"""
    pass


class TransactionNotFoundError(LedgerError):
    pass


class UsernameExistsError(LedgerError):
    pass


class RecipientAlreadySavedError(LedgerError):
    pass


class AccountExistsError(LedgerError):
    """IBAN or account number already belongs to another account"""
    pass
