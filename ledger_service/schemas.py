"""
Pydantic schemas for API requests and responses
"""

from datetime import date, datetime
from typing import Optional
from pydantic import BaseModel, Field

from .currency import Money, Currency, to_decimal
from .errors import InvalidAmount


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field("USD", description="Currency code (USD, EUR, etc.)")

    def to_money(self) -> Money:
        if self.currency not in Currency.__members__:
            raise InvalidAmount(f"Unknown currency: {self.currency}")
        try:
            return Money(to_decimal(self.amount), Currency[self.currency])
        except ValueError as e:
            raise InvalidAmount(str(e))

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


# Customer schemas
class CreateCustomerRequest(BaseModel):
    name: str
    email: str
    branch_code: Optional[str] = None


# Account schemas
class CreateAccountRequest(BaseModel):
    customer_id: str
    account_type: str = Field(..., description="SAVINGS, CURRENT or FIXED_DEPOSIT")
    currency: Optional[str] = Field(None, description="Currency code; ledger default when omitted")
    interest_rate: str = Field("0", description="Annual percent as decimal string")
    minimum_balance: Optional[str] = None
    overdraft_limit: Optional[str] = None
    opening_deposit: Optional[str] = None
    branch_code: Optional[str] = None
    name: str = ""


class DepositRequest(BaseModel):
    amount: MoneyModel
    description: str = ""
    performed_by: Optional[str] = None


class WithdrawRequest(BaseModel):
    amount: MoneyModel
    description: str = ""
    performed_by: Optional[str] = None


class StatusChangeRequest(BaseModel):
    reason: str
    performed_by: Optional[str] = None


class TransferRequest(BaseModel):
    from_account_id: str
    to_account_id: str
    amount: MoneyModel
    description: str = ""
    performed_by: Optional[str] = None


# Loan schemas
class LoanApplicationRequest(BaseModel):
    customer_id: str
    account_id: str
    principal: MoneyModel
    annual_rate: str = Field(..., description="Annual percent as decimal string, e.g. 8.5")
    tenure_months: int = Field(..., ge=1)
    performed_by: Optional[str] = None


class LoanDecisionRequest(BaseModel):
    approved_by: str


class LoanPaymentRequest(BaseModel):
    amount: MoneyModel
    payment_date: Optional[date] = None
    performed_by: Optional[str] = None


# Batch schemas
class InterestBatchRequest(BaseModel):
    period: Optional[str] = None
    as_of: Optional[datetime] = None
    workers: Optional[int] = Field(None, ge=1)


class DormancyBatchRequest(BaseModel):
    as_of: Optional[datetime] = None
    inactivity_days: Optional[int] = Field(None, ge=1)
    workers: Optional[int] = Field(None, ge=1)


class PenaltyBatchRequest(BaseModel):
    as_of: Optional[date] = None
    period: Optional[str] = None
    workers: Optional[int] = Field(None, ge=1)
