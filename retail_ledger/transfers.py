"""
Transfer Engine Module

Orchestrates money movement between accounts: validation, per-account
balance mutation and the transaction record. The engine keeps no state of
its own; accounts and transactions live in their stores.
"""

from typing import List, Optional

from .accounts import Account, AccountStore
from .audit import AuditTrail, AuditEventType
from .exceptions import (
    AccountNotFoundError, InvalidAmountError, InvalidIbanError,
    SameAccountTransferError, TransactionNotFoundError
)
from .logging_config import get_logger, log_action
from .transactions import (
    Transaction, TransactionStatus, TransactionStore, TransactionType
)
from .validation import (
    clean_iban, to_money, validate_amount, validate_distinct_accounts,
    validate_iban
)


class TransferEngine:
    """
    Moves funds between two accounts and records the history
    """

    def __init__(
        self,
        account_store: AccountStore,
        transaction_store: TransactionStore,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.account_store = account_store
        self.transaction_store = transaction_store
        self.audit_trail = audit_trail
        self.logger = get_logger("retail_ledger.transfers")

    def transfer(
        self,
        from_iban: str,
        to_iban: str,
        to_first_name: str,
        to_last_name: str,
        amount,
        description: Optional[str] = None
    ) -> Transaction:
        """
        Transfer funds from one IBAN to another

        Checks run in a fixed order and nothing is mutated until the sender
        has been debited. A recipient name that does not match the real
        account holder only sets a warning on the transaction.

        Args:
            from_iban: Sender IBAN
            to_iban: Recipient IBAN
            to_first_name: Recipient first name as claimed by the caller
            to_last_name: Recipient last name as claimed by the caller
            amount: Amount to move, must be positive
            description: Free text shown in the history

        Returns:
            The COMPLETED Transaction

        Raises:
            InvalidIbanError: malformed recipient IBAN or unknown recipient
            InvalidAmountError: amount not strictly positive
            SameAccountTransferError: sender and recipient are the same IBAN
            AccountNotFoundError: unknown sender IBAN
            InsufficientFundsError: sender balance lower than amount
        """
        if not validate_iban(to_iban):
            raise InvalidIbanError("Invalid IBAN format")

        if not validate_amount(amount):
            raise InvalidAmountError("Transfer amount must be positive")

        if not validate_distinct_accounts(from_iban, to_iban):
            raise SameAccountTransferError("Cannot transfer money to your own account")

        value = to_money(amount)

        sender = self.account_store.get_by_iban(from_iban)
        if sender is None:
            raise AccountNotFoundError("Your account not found")

        # Reported as an IBAN problem, not a missing account
        recipient = self.account_store.get_by_iban(to_iban)
        if recipient is None:
            raise InvalidIbanError("Recipient IBAN not found. Please check the IBAN and try again.")

        transaction = Transaction(
            amount=value,
            transaction_type=TransactionType.TRANSFER,
            status=TransactionStatus.PENDING,
            from_iban=sender.iban,
            to_iban=recipient.iban,
            from_first_name=sender.first_name,
            from_last_name=sender.last_name,
            to_first_name=to_first_name,
            to_last_name=to_last_name,
            from_account_number=sender.account_number,
            to_account_number=recipient.account_number,
            description=description
        )

        if not recipient.holder_matches(to_first_name, to_last_name):
            transaction.warning = f"Name mismatch: Account holder is {recipient.full_name}"
            log_action(
                self.logger, "warning", "Recipient name mismatch",
                action="transfer", resource=f"account:{recipient.id}",
                extra={
                    "claimed": f"{to_first_name} {to_last_name}",
                    "to_iban": recipient.iban
                }
            )

        self.account_store.withdraw(sender.account_number, value)
        try:
            self.account_store.deposit(recipient.account_number, value)
        except Exception as e:
            self._compensate(sender, transaction, e)
            raise

        transaction.complete()
        self.transaction_store.save(transaction)

        self._audit(AuditEventType.TRANSFER_COMPLETED, transaction)
        log_action(
            self.logger, "info", "Transfer completed",
            action="transfer", resource=f"transaction:{transaction.id}",
            extra={
                "from_iban": transaction.from_iban,
                "to_iban": transaction.to_iban,
                "amount": str(value),
                "warning": transaction.warning
            }
        )
        return transaction

    def _compensate(self, sender: Account, transaction: Transaction, error: Exception) -> None:
        """Give the sender back what was withdrawn after a failed deposit"""
        log_action(
            self.logger, "error", "Deposit failed after withdrawal, compensating sender",
            action="compensate", resource=f"account:{sender.id}",
            extra={
                "from_iban": transaction.from_iban,
                "to_iban": transaction.to_iban,
                "amount": str(transaction.amount),
                "error": str(error)
            }
        )
        try:
            self.account_store.deposit(sender.account_number, transaction.amount)
        except Exception:
            self.logger.critical(
                "Compensation failed, %s withdrawn from %s was not credited anywhere",
                transaction.amount, sender.account_number, exc_info=True
            )
            raise

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.TRANSFER_COMPENSATED,
                entity_type="account",
                entity_id=sender.id,
                metadata={
                    "to_iban": transaction.to_iban,
                    "amount": transaction.amount,
                    "error": str(error)
                }
            )

    # Cash movements

    def record_deposit(self, account_number: str, amount) -> Transaction:
        """Record a COMPLETED deposit without touching any balance"""
        return self._record(TransactionType.DEPOSIT, amount, to_account_number=account_number)

    def record_withdrawal(self, account_number: str, amount) -> Transaction:
        """Record a COMPLETED withdrawal without touching any balance"""
        return self._record(TransactionType.WITHDRAWAL, amount, from_account_number=account_number)

    def _record(self, transaction_type: TransactionType, amount, **sides) -> Transaction:
        if not validate_amount(amount):
            raise InvalidAmountError("Amount must be positive")

        transaction = Transaction(
            amount=to_money(amount),
            transaction_type=transaction_type,
            status=TransactionStatus.COMPLETED,
            **sides
        )
        self.transaction_store.save(transaction)
        self._audit(AuditEventType.TRANSACTION_RECORDED, transaction)
        return transaction

    def deposit(self, account_number: str, amount) -> Transaction:
        """Credit an account and record the deposit"""
        self.account_store.deposit(account_number, amount)
        return self.record_deposit(account_number, amount)

    def withdraw(self, account_number: str, amount) -> Transaction:
        """Debit an account and record the withdrawal"""
        self.account_store.withdraw(account_number, amount)
        return self.record_withdrawal(account_number, amount)

    # Queries

    def get_transaction(self, transaction_id: str) -> Transaction:
        transaction = self.transaction_store.find_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError(f"Transaction not found with id: {transaction_id}")
        return transaction

    def get_all_transactions(self) -> List[Transaction]:
        return self.transaction_store.find_all()

    def get_transactions_by_iban(self, iban: str) -> List[Transaction]:
        return self.transaction_store.find_by_iban(clean_iban(iban))

    def get_transactions_by_account_number(self, account_number: str) -> List[Transaction]:
        return self.transaction_store.find_by_account_number(account_number)

    def get_recipient_ibans(self, from_iban: str) -> List[str]:
        return self.transaction_store.distinct_recipient_ibans(clean_iban(from_iban))

    def _audit(self, event_type: AuditEventType, transaction: Transaction) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="transaction",
                entity_id=transaction.id,
                metadata={
                    "transaction_type": transaction.transaction_type,
                    "amount": transaction.amount,
                    "from_account": transaction.from_account_number,
                    "to_account": transaction.to_account_number
                }
            )
