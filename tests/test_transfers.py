"""
Test suite for the transfer engine

Covers the validation order, balance conservation, the name-mismatch
warning, insufficient funds, compensation after a failed deposit and
concurrent transfers.
"""

import pytest
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from retail_ledger.accounts import AccountNumberGenerator, AccountStore
from retail_ledger.audit import AuditTrail, AuditEventType
from retail_ledger.exceptions import (
    AccountNotFoundError, InsufficientFundsError, InvalidAmountError,
    InvalidIbanError, SameAccountTransferError, TransactionNotFoundError
)
from retail_ledger.storage import InMemoryStorage
from retail_ledger.transactions import (
    TransactionStatus, TransactionStore, TransactionType
)
from retail_ledger.transfers import TransferEngine


JOHN_IBAN = "DE89370400440532013000"
JANE_IBAN = "DE75512108001245126199"


class FixedNumberGenerator(AccountNumberGenerator):
    """Hands out predefined account numbers and IBANs in order"""

    def __init__(self, account_numbers, ibans):
        super().__init__()
        self._account_numbers = iter(account_numbers)
        self._ibans = iter(ibans)

    def next_account_number(self):
        return next(self._account_numbers)

    def next_iban(self):
        return next(self._ibans)


class FailingDepositAccountStore(AccountStore):
    """Account store whose deposits into one account always fail"""

    fail_for = None

    def deposit(self, account_number, amount):
        if account_number == self.fail_for:
            raise RuntimeError("storage unavailable")
        return super().deposit(account_number, amount)


class TwoAccountLedger:
    """John Doe and Jane Smith with 1000.00 each"""

    account_store_class = AccountStore

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.account_store = self.account_store_class(
            self.storage,
            self.audit_trail,
            number_generator=FixedNumberGenerator(
                ["0000012345", "0000067890"], [JOHN_IBAN, JANE_IBAN]
            ),
            starting_balance=Decimal("1000.00")
        )
        self.transaction_store = TransactionStore(self.storage)
        self.engine = TransferEngine(self.account_store, self.transaction_store, self.audit_trail)

        self.john = self.account_store.create_account("John", "Doe")
        self.jane = self.account_store.create_account("Jane", "Smith")

    def balance(self, account):
        return self.account_store.get_account(account.id).balance

    def assert_untouched(self):
        assert self.balance(self.john) == Decimal("1000.00")
        assert self.balance(self.jane) == Decimal("1000.00")
        assert self.transaction_store.find_all() == []


class TestTransferEngine(TwoAccountLedger):
    """Test transfers between two accounts"""

    def test_successful_transfer(self):
        transaction = self.engine.transfer(
            JOHN_IBAN, JANE_IBAN, "Jane", "Smith", Decimal("100.00"), "Test transfer"
        )

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.transaction_type == TransactionType.TRANSFER
        assert transaction.warning is None
        assert transaction.id is not None
        assert transaction.amount == Decimal("100.00")
        assert transaction.from_first_name == "John"
        assert transaction.from_last_name == "Doe"
        assert transaction.from_account_number == "0000012345"
        assert transaction.to_account_number == "0000067890"
        assert transaction.description == "Test transfer"

        assert self.balance(self.john) == Decimal("900.00")
        assert self.balance(self.jane) == Decimal("1100.00")
        assert self.transaction_store.find_by_id(transaction.id) == transaction

    def test_transfer_conserves_money(self):
        before = self.balance(self.john) + self.balance(self.jane)
        for amount in ["0.01", "33.33", "250", "0.66"]:
            self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", amount)
        self.engine.transfer(JANE_IBAN, JOHN_IBAN, "John", "Doe", "12.34")

        assert self.balance(self.john) + self.balance(self.jane) == before
        assert self.balance(self.john) == Decimal("1000.00") - Decimal("284.00") + Decimal("12.34")

    def test_name_mismatch_sets_warning(self):
        transaction = self.engine.transfer(
            JOHN_IBAN, JANE_IBAN, "Wrong", "Name", Decimal("100.00"), "Test transfer"
        )

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.warning
        assert "Name mismatch" in transaction.warning
        assert "Jane Smith" in transaction.warning
        assert transaction.to_first_name == "Wrong"
        assert transaction.to_last_name == "Name"
        assert self.balance(self.john) == Decimal("900.00")
        assert self.balance(self.jane) == Decimal("1100.00")

    def test_name_comparison_ignores_case(self):
        transaction = self.engine.transfer(JOHN_IBAN, JANE_IBAN, "JANE", "smith", Decimal("1"))
        assert transaction.warning is None

    def test_invalid_iban(self):
        with pytest.raises(InvalidIbanError, match="Invalid IBAN format"):
            self.engine.transfer(JOHN_IBAN, "INVALID_IBAN", "Jane", "Smith", Decimal("100.00"))
        self.assert_untouched()

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-50"), None, "abc"])
    def test_invalid_amount(self, amount):
        with pytest.raises(InvalidAmountError):
            self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", amount)
        self.assert_untouched()

    @pytest.mark.parametrize("amount", [Decimal("6E-26"), "0.001", "100.005"])
    def test_sub_cent_amount_is_rejected(self, amount):
        with pytest.raises(InvalidAmountError, match="Transfer amount must be positive"):
            self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", amount)
        self.assert_untouched()

    def test_recorded_amount_matches_balance_movement(self):
        amount = Decimal("12345678901234567890123456789.78")
        self.engine.deposit(self.john.account_number, amount)
        transaction = self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", amount)

        assert transaction.amount == amount
        assert self.balance(self.john) == Decimal("1000.00")
        assert self.balance(self.jane) == Decimal("12345678901234567890123457789.78")

    def test_same_account(self):
        with pytest.raises(SameAccountTransferError):
            self.engine.transfer(JOHN_IBAN, JOHN_IBAN, "John", "Doe", Decimal("50"))
        self.assert_untouched()

    def test_validation_precedence(self):
        """Bad IBAN beats bad amount, which beats self-transfer"""
        with pytest.raises(InvalidIbanError):
            self.engine.transfer("INVALID", "INVALID", "X", "Y", Decimal("-1"))
        with pytest.raises(InvalidAmountError):
            self.engine.transfer(JOHN_IBAN, JOHN_IBAN, "John", "Doe", Decimal("-1"))
        with pytest.raises(SameAccountTransferError):
            self.engine.transfer(JOHN_IBAN, JOHN_IBAN, "John", "Doe", Decimal("1"))
        self.assert_untouched()

    def test_sender_not_found(self):
        with pytest.raises(AccountNotFoundError, match="Your account not found"):
            self.engine.transfer(
                "DE02120300000000202051", JANE_IBAN, "Jane", "Smith", Decimal("100")
            )
        self.assert_untouched()

    def test_recipient_not_found_is_an_iban_error(self):
        with pytest.raises(InvalidIbanError, match="Recipient IBAN not found"):
            self.engine.transfer(
                JOHN_IBAN, "DE02120300000000202051", "Max", "Muster", Decimal("100")
            )
        self.assert_untouched()

    def test_insufficient_funds(self):
        self.account_store.withdraw(self.john.account_number, Decimal("980.00"))
        assert self.balance(self.john) == Decimal("20.00")

        with pytest.raises(InsufficientFundsError):
            self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", Decimal("50.00"))

        assert self.balance(self.john) == Decimal("20.00")
        assert self.balance(self.jane) == Decimal("1000.00")
        assert self.transaction_store.find_all() == []

    def test_transfer_accepts_spaced_lowercase_iban(self):
        transaction = self.engine.transfer(
            JOHN_IBAN, "de75 5121 0800 1245 1261 99", "Jane", "Smith", "10"
        )
        assert transaction.to_iban == JANE_IBAN

    def test_transfer_is_audited(self):
        transaction = self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", "10")
        events = self.audit_trail.get_events_for_entity("transaction", transaction.id)
        assert [e.event_type for e in events] == [AuditEventType.TRANSFER_COMPLETED]
        assert self.audit_trail.verify_integrity()['valid']

    def test_history_queries(self):
        self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", "10")
        self.engine.transfer(JANE_IBAN, JOHN_IBAN, "John", "Doe", "5")
        self.engine.deposit(self.john.account_number, "1")

        assert len(self.engine.get_transactions_by_iban(JOHN_IBAN)) == 2
        assert len(self.engine.get_transactions_by_account_number(self.john.account_number)) == 3
        assert len(self.engine.get_all_transactions()) == 3
        assert self.engine.get_recipient_ibans(JOHN_IBAN) == [JANE_IBAN]

    def test_recipient_ibans_are_distinct(self):
        self.account_store.number_generator = FixedNumberGenerator(
            ["0000011111"], ["DE02120300000000202051"]
        )
        max_account = self.account_store.create_account("Max", "Muster")

        self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", "1")
        self.engine.transfer(JOHN_IBAN, max_account.iban, "Max", "Muster", "1")
        self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", "1")

        assert self.engine.get_recipient_ibans(JOHN_IBAN) == [JANE_IBAN, max_account.iban]

    def test_get_transaction(self):
        transaction = self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", "10")
        assert self.engine.get_transaction(transaction.id).amount == Decimal("10")

        with pytest.raises(TransactionNotFoundError, match="Transaction not found with id"):
            self.engine.get_transaction("tx1")

    def test_concurrent_transfers_in_both_directions(self):
        rounds = 40

        def send(from_iban, to_iban, first, last):
            return self.engine.transfer(from_iban, to_iban, first, last, Decimal("1.00"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = []
            for _ in range(rounds):
                futures.append(pool.submit(send, JOHN_IBAN, JANE_IBAN, "Jane", "Smith"))
                futures.append(pool.submit(send, JANE_IBAN, JOHN_IBAN, "John", "Doe"))
            for future in futures:
                future.result(timeout=30)

        assert self.balance(self.john) == Decimal("1000.00")
        assert self.balance(self.jane) == Decimal("1000.00")
        assert len(self.transaction_store.find_all()) == 2 * rounds

    def test_concurrent_drain_never_goes_negative(self):
        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [
                pool.submit(self.engine.transfer, JOHN_IBAN, JANE_IBAN, "Jane", "Smith", Decimal("300"))
                for _ in range(10)
            ]
            completed = 0
            for future in futures:
                try:
                    future.result(timeout=30)
                    completed += 1
                except InsufficientFundsError:
                    pass

        assert completed == 3
        assert self.balance(self.john) == Decimal("100.00")
        assert self.balance(self.jane) == Decimal("1900.00")


class TestTransferCompensation(TwoAccountLedger):
    """A failed deposit gives the sender the money back"""

    account_store_class = FailingDepositAccountStore

    def test_failed_deposit_restores_sender(self):
        self.account_store.fail_for = self.jane.account_number

        with pytest.raises(RuntimeError, match="storage unavailable"):
            self.engine.transfer(JOHN_IBAN, JANE_IBAN, "Jane", "Smith", Decimal("100.00"))

        assert self.balance(self.john) == Decimal("1000.00")
        assert self.balance(self.jane) == Decimal("1000.00")
        assert self.transaction_store.find_all() == []

        events = self.audit_trail.get_events_for_entity("account", self.john.id)
        assert events[-1].event_type == AuditEventType.TRANSFER_COMPENSATED


class TestCashRecords:
    """Deposit and withdrawal records"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.account_store = AccountStore(
            self.storage,
            number_generator=FixedNumberGenerator(["0000012345"], [JOHN_IBAN]),
            starting_balance=Decimal("1000.00")
        )
        self.transaction_store = TransactionStore(self.storage)
        self.engine = TransferEngine(self.account_store, self.transaction_store)
        self.account = self.account_store.create_account("John", "Doe")

    def test_record_deposit_does_not_touch_balance(self):
        transaction = self.engine.record_deposit("12345", Decimal("200"))

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.transaction_type == TransactionType.DEPOSIT
        assert transaction.amount == Decimal("200")
        assert transaction.to_account_number == "12345"
        assert transaction.from_account_number is None
        assert transaction.to_iban is None
        assert self.account_store.get_account(self.account.id).balance == Decimal("1000.00")

    def test_record_withdrawal_does_not_touch_balance(self):
        transaction = self.engine.record_withdrawal("12345", Decimal("150"))

        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.transaction_type == TransactionType.WITHDRAWAL
        assert transaction.from_account_number == "12345"
        assert self.transaction_store.find_by_id(transaction.id) == transaction

    def test_record_rejects_non_positive_amount(self):
        with pytest.raises(InvalidAmountError):
            self.engine.record_deposit("12345", Decimal("0"))

    def test_deposit_and_withdraw_move_balance_and_record(self):
        self.engine.deposit(self.account.account_number, "50.50")
        self.engine.withdraw(self.account.account_number, "20.25")

        assert self.account_store.get_account(self.account.id).balance == Decimal("1030.25")
        types = [
            t.transaction_type
            for t in self.engine.get_transactions_by_account_number(self.account.account_number)
        ]
        assert types == [TransactionType.DEPOSIT, TransactionType.WITHDRAWAL]

    def test_failed_withdraw_records_nothing(self):
        with pytest.raises(InsufficientFundsError):
            self.engine.withdraw(self.account.account_number, "5000")
        assert self.transaction_store.find_all() == []

    def test_sub_cent_deposit_records_nothing(self):
        with pytest.raises(InvalidAmountError):
            self.engine.deposit(self.account.account_number, "1E-26")
        with pytest.raises(InvalidAmountError):
            self.engine.record_withdrawal("12345", "0.001")
        assert self.transaction_store.find_all() == []
        assert self.account_store.get_account(self.account.id).balance == Decimal("1000.00")
