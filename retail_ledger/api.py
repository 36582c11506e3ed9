"""
FastAPI REST API Module

Thin HTTP boundary over the ledger core. Request parsing and the mapping
of ledger errors to status codes live here; every business rule lives in
the core modules.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from fastapi import FastAPI, HTTPException, Depends, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .accounts import Account, AccountNumberGenerator, AccountStore
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .exceptions import (
    AccountNotFoundError, LedgerError, TransactionNotFoundError
)
from .logging_config import setup_logging_from_config
from .storage import InMemoryStorage, SQLiteStorage
from .transactions import TransactionStore
from .transfers import TransferEngine


class TransferRequest(BaseModel):
    from_iban: str
    to_iban: str
    to_first_name: str
    to_last_name: str
    amount: str = Field(..., description="Decimal amount as string")
    description: Optional[str] = None


class CashRequest(BaseModel):
    account_number: str
    amount: str = Field(..., description="Decimal amount as string")


class CreateAccountRequest(BaseModel):
    first_name: str
    last_name: str
    username: Optional[str] = None


class SavedRecipientRequest(BaseModel):
    recipient_iban: str


class LedgerSystem:
    """Ledger components wired to one storage backend"""

    def __init__(self, config: Optional[LedgerConfig] = None):
        config = config or get_config()
        if config.use_sqlite:
            self.storage = SQLiteStorage(config.database_path)
        else:
            self.storage = InMemoryStorage()

        self.audit_trail = AuditTrail(self.storage) if config.enable_audit_logging else None
        self.account_store = AccountStore(
            self.storage,
            self.audit_trail,
            number_generator=AccountNumberGenerator(country_code=config.iban_country_code),
            starting_balance=Decimal(config.starting_balance)
        )
        self.transaction_store = TransactionStore(self.storage)
        self.transfer_engine = TransferEngine(
            self.account_store, self.transaction_store, self.audit_trail
        )


# Global ledger instance
ledger_system = LedgerSystem()


app = FastAPI(
    title="Retail Ledger API",
    description="IBAN accounts, transfers and transaction history",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_ledger_system() -> LedgerSystem:
    return ledger_system


def _http_error(error: LedgerError) -> HTTPException:
    if isinstance(error, (AccountNotFoundError, TransactionNotFoundError)):
        return HTTPException(status_code=404, detail=str(error))
    return HTTPException(status_code=400, detail=str(error))


def _account_response(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "iban": account.iban,
        "account_number": account.account_number,
        "username": account.username,
        "first_name": account.first_name,
        "last_name": account.last_name,
        "balance": str(account.balance),
        "status": account.status.value,
        "saved_recipient_ibans": account.saved_recipient_ibans,
        "created_at": account.created_at.isoformat(),
        "updated_at": account.updated_at.isoformat()
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


# Transaction endpoints

@app.post("/transactions/transfer", status_code=status.HTTP_201_CREATED)
async def transfer(
    request: TransferRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Transfer money to another IBAN"""
    try:
        transaction = system.transfer_engine.transfer(
            from_iban=request.from_iban,
            to_iban=request.to_iban,
            to_first_name=request.to_first_name,
            to_last_name=request.to_last_name,
            amount=request.amount,
            description=request.description
        )
    except LedgerError as e:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "message": str(e), "transaction": None}
        )

    return {"success": True, "message": None, "transaction": transaction.to_dict()}


@app.post("/transactions/deposit", status_code=status.HTTP_201_CREATED)
async def deposit(
    request: CashRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Cash deposit into an account"""
    try:
        transaction = system.transfer_engine.deposit(request.account_number, request.amount)
    except LedgerError as e:
        raise _http_error(e)
    return transaction.to_dict()


@app.post("/transactions/withdraw", status_code=status.HTTP_201_CREATED)
async def withdraw(
    request: CashRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Cash withdrawal from an account"""
    try:
        transaction = system.transfer_engine.withdraw(request.account_number, request.amount)
    except LedgerError as e:
        raise _http_error(e)
    return transaction.to_dict()


@app.get("/transactions")
async def list_transactions(system: LedgerSystem = Depends(get_ledger_system)):
    return [t.to_dict() for t in system.transfer_engine.get_all_transactions()]


@app.get("/transactions/recipients/{iban}")
async def get_recipient_ibans(iban: str, system: LedgerSystem = Depends(get_ledger_system)):
    """IBANs the given account has sent money to"""
    return system.transfer_engine.get_recipient_ibans(iban)


@app.get("/transactions/iban/{iban}")
async def get_transactions_by_iban(iban: str, system: LedgerSystem = Depends(get_ledger_system)):
    return [t.to_dict() for t in system.transfer_engine.get_transactions_by_iban(iban)]


@app.get("/transactions/account/{account_number}")
async def get_transactions_by_account(
    account_number: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    return [
        t.to_dict()
        for t in system.transfer_engine.get_transactions_by_account_number(account_number)
    ]


@app.get("/transactions/{transaction_id}")
async def get_transaction(transaction_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    try:
        return system.transfer_engine.get_transaction(transaction_id).to_dict()
    except LedgerError as e:
        raise _http_error(e)


# Account endpoints

@app.post("/accounts", status_code=status.HTTP_201_CREATED)
async def create_account(
    request: CreateAccountRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    """Open an account with the starting balance"""
    try:
        account = system.account_store.create_account(
            first_name=request.first_name,
            last_name=request.last_name,
            username=request.username
        )
    except LedgerError as e:
        raise _http_error(e)
    return _account_response(account)


@app.get("/accounts/number/{account_number}")
async def get_account_by_number(account_number: str, system: LedgerSystem = Depends(get_ledger_system)):
    account = system.account_store.get_by_account_number(account_number)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return _account_response(account)


@app.get("/accounts/iban/{iban}")
async def get_account_by_iban(iban: str, system: LedgerSystem = Depends(get_ledger_system)):
    account = system.account_store.get_by_iban(iban)
    if not account:
        raise HTTPException(status_code=404, detail="Account not found")
    return _account_response(account)


@app.post("/accounts/{account_id}/saved-recipients")
async def add_saved_recipient(
    account_id: str,
    request: SavedRecipientRequest,
    system: LedgerSystem = Depends(get_ledger_system)
):
    try:
        account = system.account_store.add_saved_recipient(account_id, request.recipient_iban)
    except LedgerError as e:
        raise _http_error(e)
    return _account_response(account)


@app.get("/accounts/{account_id}/saved-recipients")
async def get_saved_recipients(account_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    try:
        recipients = system.account_store.get_saved_recipients(account_id)
    except LedgerError as e:
        raise _http_error(e)
    return [
        {"iban": r.iban, "first_name": r.first_name, "last_name": r.last_name}
        for r in recipients
    ]


@app.delete("/accounts/{account_id}/saved-recipients/{recipient_iban}")
async def remove_saved_recipient(
    account_id: str,
    recipient_iban: str,
    system: LedgerSystem = Depends(get_ledger_system)
):
    try:
        account = system.account_store.remove_saved_recipient(account_id, recipient_iban)
    except LedgerError as e:
        raise _http_error(e)
    return _account_response(account)


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging_from_config(config)
    uvicorn.run(
        "retail_ledger.api:app",
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
