"""
Ledger error taxonomy

Every failure surfaced by the ledger is one of these types. They derive
from ValueError so callers that treat validation problems generically keep
working.
"""

from typing import Any, Dict, Optional


class LedgerError(ValueError):
    """Base exception for all ledger failures"""

    code = "ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        result = {"error": self.code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class NotFound(LedgerError):
    """Referenced account, loan, customer or record does not exist"""

    code = "not_found"


class AccountNotFound(NotFound):
    code = "account_not_found"

    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found", {"account_id": account_id})


class CustomerNotFound(NotFound):
    code = "customer_not_found"

    def __init__(self, customer_id: str):
        super().__init__(f"Customer {customer_id} not found", {"customer_id": customer_id})


class LoanNotFound(NotFound):
    code = "loan_not_found"

    def __init__(self, loan_id: str):
        super().__init__(f"Loan {loan_id} not found", {"loan_id": loan_id})


class TransactionNotFound(NotFound):
    code = "transaction_not_found"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} not found",
                         {"transaction_id": transaction_id})


class TransferNotFound(NotFound):
    code = "transfer_not_found"

    def __init__(self, transfer_id: str):
        super().__init__(f"Transfer {transfer_id} not found", {"transfer_id": transfer_id})


class InvalidState(LedgerError):
    """The entity's status disallows the operation"""

    code = "invalid_state"


class InvalidAccountState(InvalidState):
    code = "invalid_account_state"


class InvalidLoanState(InvalidState):
    code = "invalid_loan_state"


class InvalidAmount(LedgerError):
    """Non-positive, malformed or wrong-currency amount"""

    code = "invalid_amount"


class InsufficientFunds(LedgerError):
    """The debit would break the minimum balance / overdraft floor"""

    code = "insufficient_funds"


class UnsupportedOperation(LedgerError):
    """Operation is not valid for this account or loan type"""

    code = "unsupported_operation"


class UnexpectedError(LedgerError):
    """Storage or integrity failure"""

    code = "unexpected"
