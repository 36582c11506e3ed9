"""
Transaction Records Module

Append-mostly store of transaction records. A record is written PENDING,
flipped once to COMPLETED, and never changes afterwards.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
import threading
import uuid

from .storage import StorageInterface


class TransactionType(Enum):
    """Types of ledger transactions"""
    TRANSFER = "TRANSFER"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"


class TransactionStatus(Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


@dataclass
class Transaction:
    """
    A single movement of funds.

    Recipient names are the ones claimed by the caller, not necessarily the
    real account holder; see warning.
    """
    amount: Decimal
    transaction_type: TransactionType
    status: TransactionStatus = TransactionStatus.PENDING
    from_iban: Optional[str] = None
    to_iban: Optional[str] = None
    from_first_name: Optional[str] = None
    from_last_name: Optional[str] = None
    to_first_name: Optional[str] = None
    to_last_name: Optional[str] = None
    from_account_number: Optional[str] = None
    to_account_number: Optional[str] = None
    description: Optional[str] = None
    warning: Optional[str] = None
    transaction_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            self.amount = Decimal(str(self.amount))
        if not self.amount > Decimal('0'):
            raise ValueError("Transaction amount must be positive")

    @property
    def is_completed(self) -> bool:
        return self.status == TransactionStatus.COMPLETED

    def complete(self) -> None:
        """Flip PENDING to COMPLETED. Allowed exactly once."""
        if self.status != TransactionStatus.PENDING:
            raise ValueError(f"Cannot complete transaction in {self.status.value} state")
        self.status = TransactionStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'from_iban': self.from_iban,
            'to_iban': self.to_iban,
            'from_first_name': self.from_first_name,
            'from_last_name': self.from_last_name,
            'to_first_name': self.to_first_name,
            'to_last_name': self.to_last_name,
            'from_account_number': self.from_account_number,
            'to_account_number': self.to_account_number,
            'amount': str(self.amount),
            'transaction_type': self.transaction_type.value,
            'status': self.status.value,
            'description': self.description,
            'warning': self.warning,
            'transaction_date': self.transaction_date.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            from_iban=data.get('from_iban'),
            to_iban=data.get('to_iban'),
            from_first_name=data.get('from_first_name'),
            from_last_name=data.get('from_last_name'),
            to_first_name=data.get('to_first_name'),
            to_last_name=data.get('to_last_name'),
            from_account_number=data.get('from_account_number'),
            to_account_number=data.get('to_account_number'),
            amount=Decimal(data['amount']),
            transaction_type=TransactionType(data['transaction_type']),
            status=TransactionStatus(data['status']),
            description=data.get('description'),
            warning=data.get('warning'),
            transaction_date=datetime.fromisoformat(data['transaction_date'])
        )


class TransactionStore:
    """
    Stores transaction records and answers history queries.
    Query results come back in the order records were first saved.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "transactions"
        self._lock = threading.Lock()

    def save(self, transaction: Transaction) -> Transaction:
        """
        Persist a transaction, assigning an id if it has none

        Raises:
            ValueError: if a COMPLETED record with this id is already stored
        """
        with self._lock:
            if transaction.id is None:
                transaction.id = str(uuid.uuid4())
            else:
                existing = self.storage.load(self.table_name, transaction.id)
                if existing and existing['status'] == TransactionStatus.COMPLETED.value:
                    raise ValueError(f"Transaction {transaction.id} is completed and cannot be modified")
            self.storage.save(self.table_name, transaction.id, transaction.to_dict())
        return transaction

    def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return Transaction.from_dict(data)
        return None

    def find_all(self) -> List[Transaction]:
        return [Transaction.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def find_by_account_number(self, account_number: str) -> List[Transaction]:
        """Transactions where either side is the given account"""
        if not account_number:
            return []
        return [
            t for t in self.find_all()
            if account_number in (t.from_account_number, t.to_account_number)
        ]

    def find_by_iban(self, iban: str) -> List[Transaction]:
        """Transactions where either side is the given IBAN"""
        if not iban:
            return []
        return [t for t in self.find_all() if iban in (t.from_iban, t.to_iban)]

    def distinct_recipient_ibans(self, from_iban: str) -> List[str]:
        """Recipient IBANs of everything sent from from_iban, first-seen order"""
        sent = self.storage.find(self.table_name, {'from_iban': from_iban})
        recipients = []
        seen = set()
        for data in sent:
            to_iban = data.get('to_iban')
            if to_iban is None or to_iban in seen:
                continue
            seen.add(to_iban)
            recipients.append(to_iban)
        return recipients
