"""
FastAPI REST API Module

Exposes account creation, account search, deposits, withdrawals and balance
queries. Route handlers are plain functions so FastAPI runs them in its
worker thread pool; concurrent requests against one account are serialized
by the balance coordinator, not by the event loop.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union
import threading

from fastapi import FastAPI, Depends, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from . import __version__
from .accounts import Account, AccountStore
from .audit import AuditTrail
from .balance import BalanceCoordinator, BalanceSummary
from .clock import Clock, SystemClock
from .config import BankLedgerConfig, get_config
from .errors import BankingError, InternalError, InvalidInput
from .ledger import LedgerEntry, TransactionLedger
from .locks import AccountLockManager
from .logging_config import get_logger, setup_logging
from .money import format_amount
from .storage import StorageInterface, create_storage


logger = get_logger("bank_ledger.api")


# Pydantic models for API requests
class CreateAccountRequest(BaseModel):
    account_holder_name: str = ""
    account_number: str = ""


class TransactionRequest(BaseModel):
    account_id: int
    amount: Union[str, float, int] = Field(..., description="Decimal amount; strings preserve precision")


# Banking System Context
class BankingSystem:
    """Ledger service with all components wired together"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        settings: Optional[BankLedgerConfig] = None,
        clock: Optional[Clock] = None
    ):
        settings = settings or get_config()
        self.settings = settings
        self.storage = storage or create_storage(settings.storage_backend, settings.database_path)
        self.clock = clock or SystemClock()

        self.audit_trail = AuditTrail(self.storage) if settings.enable_audit_logging else None
        self.account_store = AccountStore(self.storage, self.audit_trail, self.clock)
        self.ledger = TransactionLedger(self.storage, self.account_store)
        self.lock_manager = AccountLockManager(settings.lock_timeout_seconds)
        self.balance_coordinator = BalanceCoordinator(
            self.storage,
            self.account_store,
            self.ledger,
            lock_manager=self.lock_manager,
            clock=self.clock,
            audit_trail=self.audit_trail
        )

    def close(self) -> None:
        self.storage.close()


_system_lock = threading.Lock()


def get_banking_system(request: Request) -> BankingSystem:
    """Dependency returning the app's banking system, built on first use"""
    with _system_lock:
        system = getattr(request.app.state, "banking_system", None)
        if system is None:
            system = BankingSystem()
            request.app.state.banking_system = system
        return system


def _respond(status_code: int, message: str, data: Any = None, success: bool = True) -> JSONResponse:
    body: Dict[str, Any] = {"success": success, "message": message}
    if data is not None:
        body["data"] = data
    return JSONResponse(status_code=status_code, content=body)


def _account_payload(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "account_holder_name": account.holder_name,
        "account_number": account.account_number
    }


def _entry_payload(entry: LedgerEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "account_id": entry.account_id,
        "trans_type": entry.kind.value,
        "amount": format_amount(entry.amount),
        "trans_time": entry.timestamp.isoformat()
    }


def _balance_payload(summary: BalanceSummary) -> Dict[str, Any]:
    return {
        "account_id": summary.account.id,
        "account_number": summary.account.account_number,
        "account_holder": summary.account.holder_name,
        "balance": format_amount(summary.balance)
    }


def create_app(system: Optional[BankingSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Bank Ledger API",
        description="Accounts with an append-only transaction ledger and derived balances",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.banking_system = system

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Configure appropriately for production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BankingError)
    async def banking_error_handler(request: Request, exc: BankingError):
        if isinstance(exc, InternalError):
            logger.error(
                f"{request.method} {request.url.path} failed: {exc.message}",
                exc_info=(type(exc), exc, exc.__traceback__)
            )
            message = "Internal error, please retry"
        else:
            message = exc.message
        return JSONResponse(
            status_code=exc.http_status,
            content={"success": False, "message": message, "error": exc.code}
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=InvalidInput.http_status,
            content={
                "success": False,
                "message": "Invalid request payload",
                "error": InvalidInput.code
            }
        )

    @app.get("/health")
    def health_check():
        """Health check endpoint"""
        return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/accounts", status_code=status.HTTP_201_CREATED)
    def create_account(
        request: CreateAccountRequest,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Create a new account"""
        account = system.account_store.create_account(
            holder_name=request.account_holder_name,
            account_number=request.account_number
        )
        return _respond(201, "Account created successfully", _account_payload(account))

    @app.get("/accounts/search")
    def search_accounts(
        name: str = "",
        number: str = "",
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Search accounts by holder name or account number"""
        accounts = system.account_store.find_accounts(name_filter=name, number_filter=number)
        if not accounts:
            return _respond(200, "No accounts found", success=False)
        return _respond(
            200,
            f"Found {len(accounts)} account(s)",
            [_account_payload(account) for account in accounts]
        )

    @app.post("/transactions/deposit", status_code=status.HTTP_201_CREATED)
    def deposit(
        request: TransactionRequest,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Make a deposit"""
        entry = system.balance_coordinator.deposit(request.account_id, request.amount)
        return _respond(201, "Deposit completed successfully", _entry_payload(entry))

    @app.post("/transactions/withdraw", status_code=status.HTTP_201_CREATED)
    def withdraw(
        request: TransactionRequest,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Make a withdrawal"""
        entry = system.balance_coordinator.withdraw(request.account_id, request.amount)
        return _respond(201, "Withdrawal completed successfully", _entry_payload(entry))

    @app.get("/accounts/{account_id}/balance")
    def get_balance(
        account_id: int,
        system: BankingSystem = Depends(get_banking_system)
    ):
        """Get the derived balance of an account"""
        summary = system.balance_coordinator.get_balance_summary(account_id)
        return _respond(200, "Balance retrieved successfully", _balance_payload(summary))

    return app


app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    settings = get_config()
    setup_logging(settings.log_level, fmt=settings.log_format, log_file=settings.log_file)
    uvicorn.run(
        "bank_ledger.api:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=debug,
        log_level=settings.log_level.lower()
    )
