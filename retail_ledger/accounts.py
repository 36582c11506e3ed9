"""
Account Management Module

Stores customer accounts keyed by id with lookups by IBAN, account number
and username. Balances change only through withdraw() and deposit(), each of
which runs as one locked read-modify-write on a single account.
"""

from decimal import Decimal, Inexact
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from enum import Enum
import random
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .exceptions import (
    AccountExistsError, AccountNotFoundError, InsufficientFundsError,
    InvalidAmountError, RecipientAlreadySavedError, UsernameExistsError
)
from .locks import AccountLockRegistry
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord
from .validation import clean_iban, money_context, to_money


class AccountStatus(Enum):
    """Account lifecycle states"""
    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"


@dataclass
class Account(StorageRecord):
    """Customer account holding a single balance"""
    iban: str
    account_number: str
    first_name: str
    last_name: str
    balance: Decimal
    status: AccountStatus = AccountStatus.ACTIVE
    username: Optional[str] = None
    saved_recipient_ibans: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not isinstance(self.balance, Decimal):
            self.balance = Decimal(str(self.balance))
        if self.balance < Decimal('0'):
            raise ValueError("Account balance cannot be negative")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    def holder_matches(self, first_name: Optional[str], last_name: Optional[str]) -> bool:
        """Case-insensitive comparison against the real account holder"""
        return (
            (first_name or "").casefold() == self.first_name.casefold() and
            (last_name or "").casefold() == self.last_name.casefold()
        )


class AccountNumberGenerator:
    """
    Source of new account numbers and IBANs.

    Pass a seed for reproducible numbers in tests.
    """

    def __init__(self, seed: Optional[int] = None, country_code: str = "DE"):
        self._random = random.Random(seed)
        self._lock = threading.Lock()
        self.country_code = country_code

    def next_account_number(self) -> str:
        with self._lock:
            return f"{self._random.randrange(10 ** 10):010d}"

    def next_iban(self) -> str:
        with self._lock:
            return f"{self.country_code}{self._random.randrange(10 ** 20):020d}"


class AccountStore:
    """
    Durable mapping from IBAN / account number to Account records
    """

    MAX_NUMBER_ATTEMPTS = 50

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        number_generator: Optional[AccountNumberGenerator] = None,
        lock_registry: Optional[AccountLockRegistry] = None,
        starting_balance: Optional[Decimal] = None
    ):
        config = get_config()
        self.storage = storage
        self.audit_trail = audit_trail
        self.number_generator = number_generator or AccountNumberGenerator(
            country_code=config.iban_country_code
        )
        self.locks = lock_registry or AccountLockRegistry()
        if starting_balance is None:
            starting_balance = Decimal(config.starting_balance)
        self.starting_balance = starting_balance
        self.table_name = "accounts"
        self.logger = get_logger("retail_ledger.accounts")
        self._create_lock = threading.Lock()

    def _audit(self, event_type: AuditEventType, account: Account, metadata: Dict) -> None:
        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="account",
                entity_id=account.id,
                metadata=metadata
            )

    # Lookups

    def get_account(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return self._account_from_dict(data)
        return None

    def get_by_iban(self, iban: str) -> Optional[Account]:
        return self._find_one("iban", clean_iban(iban))

    def get_by_account_number(self, account_number: str) -> Optional[Account]:
        return self._find_one("account_number", account_number)

    def get_by_username(self, username: str) -> Optional[Account]:
        return self._find_one("username", username)

    def get_all_accounts(self) -> List[Account]:
        return [self._account_from_dict(data) for data in self.storage.load_all(self.table_name)]

    def _find_one(self, key: str, value: Optional[str]) -> Optional[Account]:
        if not value:
            return None
        found = self.storage.find(self.table_name, {key: value})
        if found:
            return self._account_from_dict(found[0])
        return None

    def _require_by_number(self, account_number: str) -> Account:
        account = self.get_by_account_number(account_number)
        if not account:
            raise AccountNotFoundError(f"Account not found with account number: {account_number}")
        return account

    def _require_by_id(self, account_id: str) -> Account:
        account = self.get_account(account_id)
        if not account:
            raise AccountNotFoundError(f"Account not found with id: {account_id}")
        return account

    # Writes

    def save(self, account: Account) -> Account:
        """
        Upsert an account, refreshing updated_at

        For an account that is already stored, balance, IBAN, account number
        and creation time are taken from storage under the account's lock;
        only withdraw() and deposit() move money. A new account must not
        reuse an existing IBAN or account number.

        Raises:
            AccountExistsError: new account collides with a stored one
            UsernameExistsError: new account reuses a stored username
        """
        stored = self.get_account(account.id)
        if stored is None:
            with self._create_lock:
                if self.get_account(account.id) is None:
                    self._check_unique(account)
                    return self._write(account)
            stored = self._require_by_id(account.id)

        with self.locks.hold(stored.account_number):
            stored = self._require_by_id(account.id)
            account.balance = stored.balance
            account.iban = stored.iban
            account.account_number = stored.account_number
            account.created_at = stored.created_at
            return self._write(account)

    def _check_unique(self, account: Account) -> None:
        if self.get_by_iban(account.iban):
            raise AccountExistsError(f"IBAN already in use: {account.iban}")
        if self.get_by_account_number(account.account_number):
            raise AccountExistsError(f"Account number already in use: {account.account_number}")
        if account.username and self.get_by_username(account.username):
            raise UsernameExistsError("Username already exists")

    def _write(self, account: Account) -> Account:
        account.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, account.id, self._account_to_dict(account))
        return account

    def create_account(
        self,
        first_name: str,
        last_name: str,
        username: Optional[str] = None
    ) -> Account:
        """
        Open a new account with the configured starting balance

        Args:
            first_name: Account holder first name
            last_name: Account holder last name
            username: Optional login name, must be unique

        Returns:
            Created Account object
        """
        with self._create_lock:
            if username and self.get_by_username(username):
                raise UsernameExistsError("Username already exists")

            account_number = self._unique_value(
                self.number_generator.next_account_number, "account_number"
            )
            iban = self._unique_value(self.number_generator.next_iban, "iban")

            now = datetime.now(timezone.utc)
            account = Account(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                iban=iban,
                account_number=account_number,
                first_name=first_name,
                last_name=last_name,
                balance=self.starting_balance,
                username=username
            )
            self._write(account)

        self._audit(AuditEventType.ACCOUNT_OPENED, account, {
            "iban": iban,
            "account_number": account_number,
            "starting_balance": account.balance
        })
        log_action(
            self.logger, "info", "Account opened",
            action="create_account", resource=f"account:{account.id}",
            extra={"account_number": account_number, "iban": iban}
        )
        return account

    def _unique_value(self, generate, key: str) -> str:
        for _ in range(self.MAX_NUMBER_ATTEMPTS):
            value = generate()
            if not self.storage.find(self.table_name, {key: value}):
                return value
        raise RuntimeError(f"Could not generate a unique {key}")

    def update_account(
        self,
        account_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        status: Optional[AccountStatus] = None
    ) -> Account:
        """Update holder names or status. Balance is not writable here."""
        account = self._require_by_id(account_id)
        with self.locks.hold(account.account_number):
            account = self._require_by_id(account_id)
            changes = {}
            if first_name is not None:
                account.first_name = first_name
                changes["first_name"] = first_name
            if last_name is not None:
                account.last_name = last_name
                changes["last_name"] = last_name
            if status is not None:
                account.status = status
                changes["status"] = status
            self._write(account)

        self._audit(AuditEventType.ACCOUNT_UPDATED, account, changes)
        return account

    def withdraw(self, account_number: str, amount) -> Account:
        """
        Debit an account

        The balance check and the debit happen under the account's lock, so
        an InsufficientFundsError always leaves the account untouched.

        Raises:
            InvalidAmountError: amount is not a positive whole-cent value
            AccountNotFoundError: unknown account number
            InsufficientFundsError: balance lower than amount
        """
        value = self._positive_amount(amount)
        with self.locks.hold(account_number):
            account = self._require_by_number(account_number)
            if account.balance < value:
                raise InsufficientFundsError("Insufficient balance")
            account.balance = self._apply(account.balance, value, debit=True)
            self._write(account)
            self._audit(AuditEventType.BALANCE_DEBITED, account, {
                "amount": value,
                "balance_after": account.balance
            })

        log_action(
            self.logger, "debug", "Account debited",
            action="withdraw", resource=f"account:{account.id}",
            extra={"amount": str(value), "balance_after": str(account.balance)}
        )
        return account

    def deposit(self, account_number: str, amount) -> Account:
        """
        Credit an account

        Raises:
            InvalidAmountError: amount is not a positive whole-cent value
            AccountNotFoundError: unknown account number
        """
        value = self._positive_amount(amount)
        with self.locks.hold(account_number):
            account = self._require_by_number(account_number)
            account.balance = self._apply(account.balance, value)
            self._write(account)
            self._audit(AuditEventType.BALANCE_CREDITED, account, {
                "amount": value,
                "balance_after": account.balance
            })

        log_action(
            self.logger, "debug", "Account credited",
            action="deposit", resource=f"account:{account.id}",
            extra={"amount": str(value), "balance_after": str(account.balance)}
        )
        return account

    @staticmethod
    def _positive_amount(amount) -> Decimal:
        value = to_money(amount)
        if value is None or value <= Decimal('0'):
            raise InvalidAmountError("Amount must be a positive number of whole cents")
        return value

    @staticmethod
    def _apply(balance: Decimal, amount: Decimal, debit: bool = False) -> Decimal:
        try:
            with money_context():
                return balance - amount if debit else balance + amount
        except Inexact:
            raise InvalidAmountError("Balance out of range")

    # Saved recipients

    def add_saved_recipient(self, account_id: str, recipient_iban: str) -> Account:
        account = self._require_by_id(account_id)
        recipient_iban = clean_iban(recipient_iban)
        with self.locks.hold(account.account_number):
            account = self._require_by_id(account_id)
            if recipient_iban in account.saved_recipient_ibans:
                raise RecipientAlreadySavedError("Recipient already saved")
            account.saved_recipient_ibans.append(recipient_iban)
            self._write(account)

        self._audit(AuditEventType.RECIPIENT_SAVED, account, {"iban": recipient_iban})
        return account

    def remove_saved_recipient(self, account_id: str, recipient_iban: str) -> Account:
        account = self._require_by_id(account_id)
        recipient_iban = clean_iban(recipient_iban)
        with self.locks.hold(account.account_number):
            account = self._require_by_id(account_id)
            if recipient_iban in account.saved_recipient_ibans:
                account.saved_recipient_ibans.remove(recipient_iban)
                self._write(account)
                self._audit(AuditEventType.RECIPIENT_REMOVED, account, {"iban": recipient_iban})
        return account

    def get_saved_recipients(self, account_id: str) -> List[Account]:
        """Resolve saved IBANs to accounts, skipping IBANs that no longer resolve"""
        account = self._require_by_id(account_id)
        recipients = []
        for iban in account.saved_recipient_ibans:
            recipient = self.get_by_iban(iban)
            if recipient:
                recipients.append(recipient)
        return recipients

    # Serialization

    def _account_to_dict(self, account: Account) -> Dict:
        result = account.to_dict()
        result['balance'] = str(account.balance)
        result['status'] = account.status.value
        result['saved_recipient_ibans'] = list(account.saved_recipient_ibans)
        return result

    def _account_from_dict(self, data: Dict) -> Account:
        return Account(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            iban=data['iban'],
            account_number=data['account_number'],
            first_name=data['first_name'],
            last_name=data['last_name'],
            balance=Decimal(data['balance']),
            status=AccountStatus(data['status']),
            username=data.get('username'),
            saved_recipient_ibans=list(data.get('saved_recipient_ibans') or [])
        )
