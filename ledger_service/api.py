"""
Ledger Service HTTP API

FastAPI surface over the ledger system. Money travels as
``{"amount": "<decimal string>", "currency": "USD"}``. Ledger errors map
to HTTP status codes in one exception handler.
"""

from datetime import datetime
from typing import Any, Dict, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse

from . import __version__
from .config import get_config
from .currency import Currency
from .errors import (
    InsufficientFunds, InvalidAmount, InvalidState, LedgerError, NotFound,
    UnexpectedError, UnsupportedOperation
)
from .journal import Transaction
from .ledger import Account, AccountType
from .loans import Loan
from .logging_config import get_logger, log_action, setup_logging
from .schemas import (
    CreateAccountRequest, CreateCustomerRequest, DepositRequest, DormancyBatchRequest,
    InterestBatchRequest, LoanApplicationRequest, LoanDecisionRequest, LoanPaymentRequest,
    MoneyModel, PenaltyBatchRequest, StatusChangeRequest, TransferRequest, WithdrawRequest
)
from .system import LedgerSystem

logger = get_logger("ledger.api")

# Checked in order; the first matching class decides the status code
ERROR_STATUS = (
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidState, status.HTTP_409_CONFLICT),
    (InsufficientFunds, status.HTTP_409_CONFLICT),
    (InvalidAmount, 422),
    (UnsupportedOperation, status.HTTP_400_BAD_REQUEST),
    (UnexpectedError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def status_for(error: LedgerError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


def get_ledger_system(request: Request) -> LedgerSystem:
    return request.app.state.system


def money_dict(money) -> Dict[str, str]:
    return {"amount": str(money.amount), "currency": money.currency.code}


def account_to_response(account: Account) -> Dict[str, Any]:
    return {
        "id": account.id,
        "account_number": account.account_number,
        "customer_id": account.customer_id,
        "branch_code": account.branch_code,
        "account_type": account.account_type.value,
        "currency": account.currency.code,
        "status": account.status.value,
        "balance": money_dict(account.balance),
        "available_balance": money_dict(account.available_balance),
        "minimum_balance": money_dict(account.minimum_balance),
        "overdraft_limit": money_dict(account.overdraft_limit),
        "interest_rate": str(account.interest_rate),
        "created_at": account.created_at.isoformat()
    }


def transaction_to_response(entry: Transaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "reference": entry.reference,
        "transaction_type": entry.transaction_type.value,
        "direction": entry.direction.value,
        "amount": money_dict(entry.amount),
        "balance_before": money_dict(entry.balance_before),
        "balance_after": money_dict(entry.balance_after),
        "description": entry.description,
        "linked_transaction_id": entry.linked_transaction_id,
        "transfer_id": entry.transfer_id,
        "created_at": entry.created_at.isoformat()
    }


def loan_to_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "reference": loan.reference,
        "customer_id": loan.customer_id,
        "account_id": loan.account_id,
        "status": loan.status.value,
        "principal": money_dict(loan.principal),
        "annual_rate": str(loan.annual_rate),
        "tenure_months": loan.tenure_months,
        "emi": money_dict(loan.emi),
        "outstanding_balance": money_dict(loan.outstanding_balance),
        "total_paid": money_dict(loan.total_paid),
        "next_emi_date": loan.next_emi_date.isoformat() if loan.next_emi_date else None
    }


customers_router = APIRouter()
accounts_router = APIRouter()
transfers_router = APIRouter()
loans_router = APIRouter()
batch_router = APIRouter()


@customers_router.post("", status_code=status.HTTP_201_CREATED)
def create_customer(request: CreateCustomerRequest,
                    system: LedgerSystem = Depends(get_ledger_system)):
    """Create a new customer"""
    customer = system.customers.create_customer(request.name, request.email, request.branch_code)
    return {"customer_id": customer.id, "branch_code": customer.branch_code,
            "message": "Customer created successfully"}


@accounts_router.post("", status_code=status.HTTP_201_CREATED)
def open_account(request: CreateAccountRequest,
                 system: LedgerSystem = Depends(get_ledger_system)):
    """Open a new account"""
    if request.account_type not in AccountType.__members__:
        raise UnsupportedOperation(f"Unknown account type: {request.account_type}")
    if request.currency and request.currency not in Currency.__members__:
        raise InvalidAmount(f"Unknown currency: {request.currency}")

    account = system.ledger.open_account(
        customer_id=request.customer_id,
        account_type=AccountType[request.account_type],
        currency=Currency[request.currency] if request.currency else None,
        interest_rate=request.interest_rate,
        minimum_balance=request.minimum_balance,
        overdraft_limit=request.overdraft_limit,
        opening_deposit=request.opening_deposit,
        branch_code=request.branch_code,
        name=request.name
    )
    return account_to_response(account)


@accounts_router.get("/{account_id}")
def get_account(account_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    """Get account details"""
    return account_to_response(system.ledger.require_account(account_id))


@accounts_router.get("/{account_id}/transactions")
def get_account_transactions(account_id: str, limit: Optional[int] = 50,
                             system: LedgerSystem = Depends(get_ledger_system)):
    """Get journal entries for an account, most recent last"""
    system.ledger.require_account(account_id)
    entries = system.journal.for_account(account_id)
    if limit:
        entries = entries[-limit:]
    return {"transactions": [transaction_to_response(entry) for entry in entries]}


@accounts_router.post("/{account_id}/deposit")
def deposit(account_id: str, request: DepositRequest,
            system: LedgerSystem = Depends(get_ledger_system)):
    """Deposit into an account"""
    result = system.operations.deposit(account_id, request.amount.to_money(),
                                       request.description, request.performed_by)
    return {"transaction_ref": result.transaction_ref,
            "new_balance": MoneyModel.from_money(result.new_balance).model_dump()}


@accounts_router.post("/{account_id}/withdraw")
def withdraw(account_id: str, request: WithdrawRequest,
             system: LedgerSystem = Depends(get_ledger_system)):
    """Withdraw from an account"""
    result = system.operations.withdraw(account_id, request.amount.to_money(),
                                        request.performed_by, request.description)
    return {"transaction_ref": result.transaction_ref,
            "new_balance": MoneyModel.from_money(result.new_balance).model_dump()}


@accounts_router.post("/{account_id}/freeze")
def freeze_account(account_id: str, request: StatusChangeRequest,
                   system: LedgerSystem = Depends(get_ledger_system)):
    """Freeze an account"""
    account = system.ledger.freeze_account(account_id, request.reason, request.performed_by)
    return account_to_response(account)


@accounts_router.post("/{account_id}/close")
def close_account(account_id: str, request: StatusChangeRequest,
                  system: LedgerSystem = Depends(get_ledger_system)):
    """Close an account with a zero balance"""
    account = system.ledger.close_account(account_id, request.reason, request.performed_by)
    return account_to_response(account)


@transfers_router.post("", status_code=status.HTTP_201_CREATED)
def create_transfer(request: TransferRequest,
                    system: LedgerSystem = Depends(get_ledger_system)):
    """Transfer funds between two accounts"""
    result = system.transfers.transfer(request.from_account_id, request.to_account_id,
                                       request.amount.to_money(), request.description,
                                       request.performed_by)
    return {"transfer_ref": result.transfer_ref, "fee": money_dict(result.fee),
            "message": result.message}


@loans_router.post("", status_code=status.HTTP_201_CREATED)
def apply_for_loan(request: LoanApplicationRequest,
                   system: LedgerSystem = Depends(get_ledger_system)):
    """Apply for a loan"""
    loan = system.loans.apply_for_loan(request.customer_id, request.account_id,
                                       request.principal.to_money(), request.annual_rate,
                                       request.tenure_months, request.performed_by)
    return loan_to_response(loan)


@loans_router.get("/{loan_id}")
def get_loan(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    return loan_to_response(system.loans.require_loan(loan_id))


@loans_router.post("/{loan_id}/approve")
def approve_loan(loan_id: str, request: LoanDecisionRequest,
                 system: LedgerSystem = Depends(get_ledger_system)):
    """Approve a pending loan"""
    return loan_to_response(system.loans.approve_loan(loan_id, request.approved_by))


@loans_router.post("/{loan_id}/disburse")
def disburse_loan(loan_id: str, request: LoanDecisionRequest,
                  system: LedgerSystem = Depends(get_ledger_system)):
    """Disburse an approved loan"""
    amount, message = system.loans.disburse(loan_id, request.approved_by)
    return {"disbursed_amount": money_dict(amount), "message": message}


@loans_router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def record_loan_payment(loan_id: str, request: LoanPaymentRequest,
                        system: LedgerSystem = Depends(get_ledger_system)):
    """Record a loan repayment"""
    payment = system.loans.record_payment(loan_id, request.amount.to_money(),
                                          request.payment_date, request.performed_by)
    return {
        "payment_id": payment.id,
        "principal_component": money_dict(payment.principal_component),
        "interest_component": money_dict(payment.interest_component),
        "penalty_component": money_dict(payment.penalty_component),
        "outstanding_after": money_dict(payment.outstanding_after)
    }


@loans_router.get("/{loan_id}/schedule")
def get_loan_schedule(loan_id: str, system: LedgerSystem = Depends(get_ledger_system)):
    """Repayment schedule"""
    schedule = system.loans.get_schedule(loan_id)
    return {
        "emi": str(schedule.emi),
        "installments": [
            {
                "number": row.number,
                "due_date": row.due_date.isoformat(),
                "emi": str(row.emi),
                "principal": str(row.principal),
                "interest": str(row.interest),
                "remaining_balance": str(row.remaining_balance)
            }
            for row in schedule
        ]
    }


@batch_router.post("/interest")
def run_interest(request: InterestBatchRequest,
                 system: LedgerSystem = Depends(get_ledger_system)):
    """Run interest accrual"""
    return system.batch.run_interest_accrual(request.period, request.as_of,
                                             workers=request.workers).to_dict()


@batch_router.post("/dormancy")
def run_dormancy(request: DormancyBatchRequest,
                 system: LedgerSystem = Depends(get_ledger_system)):
    """Mark dormant accounts"""
    return system.batch.mark_dormant_accounts(request.as_of, request.inactivity_days,
                                              workers=request.workers).to_dict()


@batch_router.post("/penalties")
def run_penalties(request: PenaltyBatchRequest,
                  system: LedgerSystem = Depends(get_ledger_system)):
    """Apply overdue loan penalties"""
    return system.batch.process_loan_penalties(request.as_of, request.period,
                                               workers=request.workers).to_dict()


def create_app(system: Optional[LedgerSystem] = None) -> FastAPI:
    """Create and configure the FastAPI application"""
    app = FastAPI(
        title="Banking Ledger API",
        description="Transactional ledger with atomic transfers, batch jobs and loans",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )
    app.state.system = system or LedgerSystem()

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        code = status_for(exc)
        level = "error" if code >= 500 else "warning"
        log_action(logger, level, exc.message, action="http_error",
                   resource=request.url.path, extra={"error": exc.code, "status": code})
        return JSONResponse(status_code=code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return JSONResponse(status_code=422,
                            content={"error": "invalid_request", "message": str(exc)})

    app.include_router(customers_router, prefix="/customers", tags=["Customers"])
    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])
    app.include_router(transfers_router, prefix="/transfers", tags=["Transfers"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(batch_router, prefix="/batch", tags=["Batch"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "banking_ledger",
            "version": __version__,
            "timestamp": datetime.now().isoformat()
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, fmt=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "ledger_service.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )


if __name__ == "__main__":
    run_server()
