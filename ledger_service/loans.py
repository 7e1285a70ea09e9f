"""
Loan Module

Handles EMI calculation, repayment schedule generation, loan origination,
approval, disbursement, payment processing and overdue penalties.

The loan subsystem owns Loan, LoanPayment and LoanPenalty records. It never
writes account records itself: disbursements and repayments go through
Account Operations.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Dict, Iterator, List, Mapping, Optional, Tuple, Union
from enum import Enum
import calendar

from .audit import AuditTrail, AuditEventType
from .currency import Money, Currency, round_money, to_decimal
from .errors import (
    InvalidAmount, InvalidLoanState, LoanNotFound, UnexpectedError,
    UnsupportedOperation
)
from .identifiers import new_id, loan_reference
from .journal import TransactionType
from .ledger import AccountStatus, LedgerStore
from .locks import AccountLockManager
from .logging_config import get_logger, log_action
from .operations import AccountOperations, AmountLike, coerce_amount, require_status
from .storage import StorageInterface, StorageRecord

logger = get_logger("ledger.loans")

DEFAULT_PENALTY_TIERS = {90: Decimal('5'), 60: Decimal('3'), 30: Decimal('2'), 0: Decimal('1')}


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the end of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate: Decimal) -> Decimal:
    """Annual percent to monthly fraction, e.g. 12 -> 0.01"""
    return to_decimal(annual_rate) / Decimal('12') / Decimal('100')


def _validate_terms(principal: Decimal, annual_rate: Decimal, tenure_months: int) -> None:
    if principal <= 0:
        raise InvalidAmount("Principal must be positive")
    if annual_rate < 0:
        raise InvalidAmount("Interest rate cannot be negative")
    if not isinstance(tenure_months, int) or tenure_months < 1:
        raise InvalidAmount("Tenure must be at least one month")


def calculate_emi(principal: Union[Decimal, str, int], annual_rate: Union[Decimal, str, int],
                  tenure_months: int) -> Decimal:
    """
    Equated monthly installment, rounded half-up to 2 places.

    Standard amortization formula P * r * (1+r)^n / ((1+r)^n - 1) with
    r = annual_rate / 12 / 100; a zero rate gives the flat P / n.
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate)
    _validate_terms(principal, annual_rate, tenure_months)

    if annual_rate == 0:
        return round_money(principal / Decimal(tenure_months))

    rate = monthly_rate(annual_rate)
    factor = (Decimal('1') + rate) ** tenure_months
    return round_money(principal * rate * factor / (factor - Decimal('1')))


@dataclass(frozen=True)
class EmiInstallment:
    """Single row of a repayment schedule"""
    number: int
    due_date: date
    emi: Decimal
    principal: Decimal
    interest: Decimal
    remaining_balance: Decimal


class EmiSchedule:
    """
    Lazy repayment schedule. Rows are computed while iterating and every
    new iteration starts again from the first installment.
    """

    def __init__(self, principal: Union[Decimal, str, int], annual_rate: Union[Decimal, str, int],
                 tenure_months: int, start_date: date):
        self.principal = to_decimal(principal)
        self.annual_rate = to_decimal(annual_rate)
        self.tenure_months = tenure_months
        self.start_date = start_date
        self.emi = calculate_emi(self.principal, self.annual_rate, tenure_months)

    def __len__(self) -> int:
        return self.tenure_months

    def __iter__(self) -> Iterator[EmiInstallment]:
        rate = monthly_rate(self.annual_rate)
        remaining = self.principal

        for number in range(1, self.tenure_months + 1):
            interest = round_money(remaining * rate)
            if number == self.tenure_months:
                # Final row absorbs the rounding drift
                principal = remaining
                emi = principal + interest
            else:
                emi = self.emi
                principal = min(emi - interest, remaining)

            remaining = remaining - principal
            yield EmiInstallment(
                number=number,
                due_date=add_months(self.start_date, number),
                emi=emi,
                principal=principal,
                interest=interest,
                remaining_balance=remaining
            )

    def totals(self) -> Dict[str, Decimal]:
        """Sums over the whole schedule"""
        total_principal = Decimal('0')
        total_interest = Decimal('0')
        for row in self:
            total_principal += row.principal
            total_interest += row.interest
        return {
            "principal": total_principal,
            "interest": total_interest,
            "total": total_principal + total_interest
        }


def generate_emi_schedule(principal: Union[Decimal, str, int],
                          annual_rate: Union[Decimal, str, int],
                          tenure_months: int, start_date: date) -> EmiSchedule:
    """Repayment schedule of tenure_months rows due monthly after start_date"""
    return EmiSchedule(principal, annual_rate, tenure_months, start_date)


def penalty_rate(days_overdue: int, tiers: Mapping[int, Decimal] = DEFAULT_PENALTY_TIERS) -> Decimal:
    """Penalty percent for the highest threshold strictly exceeded"""
    ordered = sorted(tiers.items(), reverse=True)
    for threshold, rate in ordered:
        if days_overdue > threshold:
            return to_decimal(rate)
    return to_decimal(ordered[-1][1])


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "PENDING"        # Applied, awaiting approval
    APPROVED = "APPROVED"      # Approved, not yet disbursed
    ACTIVE = "ACTIVE"          # Disbursed, being repaid
    CLOSED = "CLOSED"          # Repaid in full, or rejected before disbursement
    DEFAULTED = "DEFAULTED"    # Written down as in default


@dataclass
class Loan(StorageRecord):
    """Loan with its terms and running totals"""
    reference: str
    customer_id: str
    account_id: str                # Disbursement and repayment account
    currency: Currency
    principal: Money
    annual_rate: Decimal           # Percent, e.g. 8.5
    tenure_months: int
    emi: Money
    total_paid: Money
    principal_paid: Money
    interest_paid: Money
    penalties_charged: Money
    penalties_paid: Money
    outstanding_balance: Money
    period_paid: Money             # Interest and principal paid toward next_emi_date
    period_interest_paid: Money
    status: LoanStatus = LoanStatus.PENDING
    next_emi_date: Optional[date] = None
    approved_by: Optional[str] = None
    disbursed_at: Optional[datetime] = None
    installments_paid: int = 0
    closed_at: Optional[datetime] = None
    closure_reason: Optional[str] = None

    def __post_init__(self):
        if self.outstanding_balance.is_negative():
            raise UnexpectedError("Loan outstanding balance cannot be negative",
                                  {"loan_id": self.id})

    @property
    def penalties_due(self) -> Money:
        return self.penalties_charged - self.penalties_paid

    @property
    def principal_outstanding(self) -> Money:
        return self.outstanding_balance - self.penalties_due

    @property
    def lock_key(self) -> str:
        return f"loan:{self.id}"


@dataclass
class LoanPayment(StorageRecord):
    """Immutable record of a loan payment"""
    loan_id: str
    transaction_id: str
    payment_date: date
    amount: Money
    principal_component: Money
    interest_component: Money
    penalty_component: Money
    outstanding_after: Money
    status: str = "COMPLETED"


@dataclass
class LoanPenalty(StorageRecord):
    """Immutable record of one overdue penalty"""
    loan_id: str
    period: str
    days_overdue: int
    rate: Decimal
    amount: Money
    assessed_on: date


class LoanManager:
    """
    Manages loan lifecycle from application through payoff
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: LedgerStore,
        operations: AccountOperations,
        audit_trail: AuditTrail,
        locks: Optional[AccountLockManager] = None,
        penalty_tiers: Optional[Mapping[int, Union[Decimal, str]]] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.operations = operations
        self.audit_trail = audit_trail
        self.locks = locks or ledger.locks
        self.penalty_tiers = {int(days): to_decimal(rate)
                              for days, rate in (penalty_tiers or DEFAULT_PENALTY_TIERS).items()}
        self.loans_table = "loans"
        self.payments_table = "loan_payments"
        self.penalties_table = "loan_penalties"

    def apply_for_loan(
        self,
        customer_id: str,
        account_id: str,
        principal: AmountLike,
        annual_rate: Union[Decimal, str, int],
        tenure_months: int,
        performed_by: Optional[str] = None
    ) -> Loan:
        """
        Create a PENDING loan application

        Args:
            customer_id: Borrower
            account_id: Borrower's account used for disbursement and repayment
            principal: Amount to borrow
            annual_rate: Annual interest rate in percent
            tenure_months: Number of monthly installments

        Returns:
            Created Loan object
        """
        customer = self.ledger.customers.require_customer(customer_id)
        account = self.ledger.require_account(account_id)
        if account.customer_id != customer.id:
            raise UnsupportedOperation("Loan account must belong to the borrower",
                                       {"account_id": account_id, "customer_id": customer_id})

        principal_money = coerce_amount(principal, account.currency)
        try:
            rate = to_decimal(annual_rate)
        except ValueError as e:
            raise InvalidAmount(str(e))
        emi = calculate_emi(principal_money.amount, rate, tenure_months)

        now = datetime.now(timezone.utc)
        zero = Money.zero(account.currency)
        loan = Loan(
            id=new_id(),
            created_at=now,
            updated_at=now,
            reference=loan_reference(now.date()),
            customer_id=customer.id,
            account_id=account.id,
            currency=account.currency,
            principal=principal_money,
            annual_rate=rate,
            tenure_months=tenure_months,
            emi=Money(emi, account.currency),
            total_paid=zero,
            principal_paid=zero,
            interest_paid=zero,
            penalties_charged=zero,
            penalties_paid=zero,
            outstanding_balance=principal_money,
            period_paid=zero,
            period_interest_paid=zero
        )

        with self.storage.atomic():
            self._save_loan(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPLIED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "reference": loan.reference,
                    "customer_id": customer.id,
                    "principal": principal_money,
                    "annual_rate": rate,
                    "tenure_months": tenure_months,
                    "emi": loan.emi
                },
                user_id=performed_by
            )

        log_action(logger, "info", "Loan application created", action="apply_for_loan",
                   resource=f"loan:{loan.id}", performed_by=performed_by,
                   extra={"principal": str(principal_money.amount), "emi": str(emi)})
        return loan

    def approve_loan(self, loan_id: str, approved_by: str) -> Loan:
        """Approve a pending loan"""
        return self._transition(loan_id, (LoanStatus.PENDING,), LoanStatus.APPROVED,
                                AuditEventType.LOAN_APPROVED, approved_by, "approved")

    def reject_loan(self, loan_id: str, reason: str, performed_by: Optional[str] = None) -> Loan:
        """Reject a pending or approved loan before disbursement"""
        return self._transition(loan_id, (LoanStatus.PENDING, LoanStatus.APPROVED),
                                LoanStatus.CLOSED, AuditEventType.LOAN_REJECTED,
                                performed_by, reason)

    def mark_defaulted(self, loan_id: str, reason: str, performed_by: Optional[str] = None) -> Loan:
        return self._transition(loan_id, (LoanStatus.ACTIVE,), LoanStatus.DEFAULTED,
                                AuditEventType.LOAN_DEFAULTED, performed_by, reason)

    def _transition(self, loan_id: str, allowed_from: Tuple[LoanStatus, ...],
                    new_status: LoanStatus, event_type: AuditEventType,
                    performed_by: Optional[str], reason: str) -> Loan:
        with self.locks.hold(f"loan:{loan_id}"), self.storage.atomic():
            loan = self.require_loan(loan_id)
            old_status = loan.status
            if old_status not in allowed_from:
                raise InvalidLoanState(
                    f"Cannot change loan status from {old_status.value} to {new_status.value}",
                    {"loan_id": loan_id, "status": old_status.value}
                )

            loan.status = new_status
            if new_status == LoanStatus.APPROVED:
                loan.approved_by = performed_by
            if new_status == LoanStatus.CLOSED:
                loan.closed_at = datetime.now(timezone.utc)
                loan.closure_reason = reason
            loan.touch()
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"old_status": old_status.value, "new_status": new_status.value,
                          "reason": reason},
                user_id=performed_by
            )

        log_action(logger, "info", f"Loan {new_status.value.lower()}", action="loan_status",
                   resource=f"loan:{loan_id}", performed_by=performed_by,
                   extra={"from": old_status.value, "to": new_status.value})
        return loan

    def disburse(self, loan_id: str, approved_by: str,
                 as_of: Optional[date] = None) -> Tuple[Money, str]:
        """
        Disburse an approved loan into its linked account

        Credits the principal as a DEPOSIT entry, activates the loan and sets
        the first EMI date one month after disbursement, all in one unit.

        Returns:
            (disbursed_amount, message)

        Raises:
            InvalidLoanState: Loan is not APPROVED
            InvalidAccountState: Linked account is not ACTIVE
        """
        loan = self.require_loan(loan_id)
        with self.locks.hold(loan.lock_key, loan.account_id), self.storage.atomic():
            loan = self.require_loan(loan_id)
            if loan.status != LoanStatus.APPROVED:
                raise InvalidLoanState(
                    f"Loan must be APPROVED to disburse, not {loan.status.value}",
                    {"loan_id": loan_id, "status": loan.status.value}
                )
            account = self.ledger.require_account(loan.account_id)
            require_status(account, (AccountStatus.ACTIVE,), "disburse to")

            entry = self.operations.credit(
                loan.account_id, loan.principal, TransactionType.DEPOSIT,
                description=f"Loan disbursement {loan.reference}",
                performed_by=approved_by
            )

            now = datetime.now(timezone.utc)
            disbursed_on = as_of or now.date()
            loan.status = LoanStatus.ACTIVE
            loan.disbursed_at = now
            loan.outstanding_balance = loan.principal
            loan.next_emi_date = add_months(disbursed_on, 1)
            loan.touch()
            self._save_loan(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_DISBURSED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"amount": loan.principal, "transaction_id": entry.id,
                          "next_emi_date": loan.next_emi_date},
                user_id=approved_by
            )

        message = f"Disbursed {loan.principal.to_string()} to account {account.account_number}"
        log_action(logger, "info", "Loan disbursed", action="disburse",
                   resource=f"loan:{loan_id}", performed_by=approved_by,
                   extra={"amount": str(loan.principal.amount), "reference": entry.reference})
        return loan.principal, message

    def record_payment(
        self,
        loan_id: str,
        amount: AmountLike,
        payment_date: Optional[date] = None,
        performed_by: Optional[str] = None
    ) -> LoanPayment:
        """
        Apply a repayment debited from the loan's linked account

        Allocation order: outstanding penalties, then interest for the period
        (outstanding principal x monthly rate, less what this period already
        paid), then principal. Once the interest and principal paid since the
        last due date reach the EMI, the next due date advances by a month.
        The loan closes when nothing is outstanding.

        Raises:
            InvalidLoanState: Loan is not ACTIVE or DEFAULTED
            InvalidAmount: Non-positive amount or more than is owed
            InsufficientFunds / InvalidAccountState: Account cannot be debited
        """
        loan = self.require_loan(loan_id)
        with self.locks.hold(loan.lock_key, loan.account_id), self.storage.atomic():
            loan = self.require_loan(loan_id)
            if loan.status not in (LoanStatus.ACTIVE, LoanStatus.DEFAULTED):
                raise InvalidLoanState(
                    f"Cannot record payment on a {loan.status.value} loan",
                    {"loan_id": loan_id, "status": loan.status.value}
                )

            money = coerce_amount(amount, loan.currency)
            penalty_component, interest_component, principal_component = \
                self._allocate(loan, money)

            entry = self.operations.debit(
                loan.account_id, money, TransactionType.WITHDRAWAL,
                description=f"Loan payment {loan.reference}",
                performed_by=performed_by, operation="withdraw"
            )

            loan.total_paid = loan.total_paid + money
            loan.penalties_paid = loan.penalties_paid + penalty_component
            loan.interest_paid = loan.interest_paid + interest_component
            loan.principal_paid = loan.principal_paid + principal_component
            loan.outstanding_balance = (
                loan.outstanding_balance - principal_component - penalty_component
            )
            loan.period_interest_paid = loan.period_interest_paid + interest_component
            loan.period_paid = loan.period_paid + interest_component + principal_component
            if loan.period_paid >= loan.emi and loan.next_emi_date:
                loan.next_emi_date = add_months(loan.next_emi_date, 1)
                loan.installments_paid += 1
                loan.period_paid = Money.zero(loan.currency)
                loan.period_interest_paid = Money.zero(loan.currency)

            paid_off = loan.outstanding_balance.is_zero()
            if paid_off:
                loan.status = LoanStatus.CLOSED
                loan.closed_at = datetime.now(timezone.utc)
                loan.closure_reason = "paid off"
                loan.next_emi_date = None
            loan.touch()
            self._save_loan(loan)

            now = datetime.now(timezone.utc)
            payment = LoanPayment(
                id=new_id(),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                transaction_id=entry.id,
                payment_date=payment_date or now.date(),
                amount=money,
                principal_component=principal_component,
                interest_component=interest_component,
                penalty_component=penalty_component,
                outstanding_after=loan.outstanding_balance
            )
            self._save_payment(payment)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAYMENT_MADE,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "payment_id": payment.id,
                    "amount": money,
                    "principal": principal_component,
                    "interest": interest_component,
                    "penalty": penalty_component,
                    "outstanding_after": loan.outstanding_balance
                },
                user_id=performed_by
            )
            if paid_off:
                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_PAID_OFF,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"total_paid": loan.total_paid},
                    user_id=performed_by
                )

        log_action(logger, "info", "Loan payment recorded", action="loan_payment",
                   resource=f"loan:{loan_id}", performed_by=performed_by,
                   extra={"amount": str(money.amount),
                          "outstanding_after": str(loan.outstanding_balance.amount)})
        return payment

    def interest_due(self, loan: Loan) -> Money:
        """Interest for the current period not yet collected"""
        interest = Money(round_money(loan.principal_outstanding.amount * monthly_rate(loan.annual_rate)),
                         loan.currency)
        remaining = interest - loan.period_interest_paid
        return Money.zero(loan.currency) if remaining.is_negative() else remaining

    def payoff_amount(self, loan: Loan) -> Money:
        """Largest payment accepted right now"""
        return loan.outstanding_balance + self.interest_due(loan)

    def _allocate(self, loan: Loan, amount: Money) -> Tuple[Money, Money, Money]:
        """Split a payment into (penalty, interest, principal)"""
        payoff = self.payoff_amount(loan)
        if amount > payoff:
            raise InvalidAmount(
                f"Payment {amount.to_string()} exceeds the amount owed {payoff.to_string()}",
                {"loan_id": loan.id, "payoff": str(payoff.amount)}
            )

        penalty = min(amount, loan.penalties_due)
        remaining = amount - penalty
        interest = min(remaining, self.interest_due(loan))
        principal = remaining - interest
        return penalty, interest, principal

    def assess_penalty(self, loan: Loan, as_of: date, period: str,
                       performed_by: Optional[str] = None) -> Optional[LoanPenalty]:
        """
        Charge an overdue penalty of EMI x tier rate to one loan

        Returns:
            The LoanPenalty, or None when the loan is not overdue on as_of
        """
        with self.locks.hold(loan.lock_key), self.storage.atomic():
            loan = self.require_loan(loan.id)
            if loan.status != LoanStatus.ACTIVE:
                raise InvalidLoanState(f"Cannot penalise a {loan.status.value} loan",
                                       {"loan_id": loan.id})
            if not loan.next_emi_date or loan.next_emi_date >= as_of:
                return None

            days_overdue = (as_of - loan.next_emi_date).days
            rate = penalty_rate(days_overdue, self.penalty_tiers)
            amount = Money(loan.emi.amount * rate / Decimal('100'), loan.currency)
            if not amount.is_positive():
                return None

            loan.penalties_charged = loan.penalties_charged + amount
            loan.outstanding_balance = loan.outstanding_balance + amount
            loan.touch()
            self._save_loan(loan)

            now = datetime.now(timezone.utc)
            penalty = LoanPenalty(
                id=new_id(),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                period=period,
                days_overdue=days_overdue,
                rate=rate,
                amount=amount,
                assessed_on=as_of
            )
            self._save_penalty(penalty)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PENALTY_ASSESSED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={"period": period, "days_overdue": days_overdue, "rate": rate,
                          "amount": amount, "outstanding_after": loan.outstanding_balance},
                user_id=performed_by
            )

        return penalty

    def get_schedule(self, loan_id: str) -> EmiSchedule:
        """Repayment schedule from the disbursement date (today if not yet disbursed)"""
        loan = self.require_loan(loan_id)
        start = loan.disbursed_at.date() if loan.disbursed_at else datetime.now(timezone.utc).date()
        return generate_emi_schedule(loan.principal.amount, loan.annual_rate,
                                     loan.tenure_months, start)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_data = self.storage.load(self.loans_table, loan_id)
        if loan_data:
            return self._loan_from_dict(loan_data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise LoanNotFound(loan_id)
        return loan

    def get_customer_loans(self, customer_id: str) -> List[Loan]:
        """Get all loans for a customer"""
        loans_data = self.storage.find(self.loans_table, {"customer_id": customer_id})
        return [self._loan_from_dict(data) for data in loans_data]

    def list_loans(self, status: Optional[LoanStatus] = None) -> List[Loan]:
        filters = {"status": status.value} if status else {}
        return [self._loan_from_dict(data) for data in self.storage.find(self.loans_table, filters)]

    def iter_loan_chunks(self, chunk_size: int,
                         status: Optional[LoanStatus] = None) -> Iterator[List[Loan]]:
        filters = {"status": status.value} if status else None
        for chunk in self.storage.iter_chunks(self.loans_table, chunk_size, filters):
            yield [self._loan_from_dict(data) for data in chunk]

    def get_loan_payments(self, loan_id: str) -> List[LoanPayment]:
        """Get all payments for a loan, oldest first"""
        payments_data = self.storage.find(self.payments_table, {"loan_id": loan_id})
        payments = [self._payment_from_dict(data) for data in payments_data]
        payments.sort(key=lambda p: p.created_at)
        return payments

    def get_loan_penalties(self, loan_id: str) -> List[LoanPenalty]:
        penalties_data = self.storage.find(self.penalties_table, {"loan_id": loan_id})
        penalties = [self._penalty_from_dict(data) for data in penalties_data]
        penalties.sort(key=lambda p: p.created_at)
        return penalties

    def _save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def _save_payment(self, payment: LoanPayment) -> None:
        if self.storage.exists(self.payments_table, payment.id):
            raise UnexpectedError(f"Loan payment {payment.id} already recorded")
        result = payment.to_dict()
        result['currency'] = payment.amount.currency.code
        self.storage.save(self.payments_table, payment.id, result)

    def _save_penalty(self, penalty: LoanPenalty) -> None:
        result = penalty.to_dict()
        result['currency'] = penalty.amount.currency.code
        self.storage.save(self.penalties_table, penalty.id, result)

    def _loan_from_dict(self, data: Dict) -> Loan:
        """Convert dictionary to Loan"""
        currency = Currency[data['currency']]

        def get_money(field: str) -> Money:
            return Money(data[field], currency)

        def get_datetime(field: str) -> Optional[datetime]:
            return datetime.fromisoformat(data[field]) if data.get(field) else None

        next_emi_date = data.get('next_emi_date')
        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            reference=data['reference'],
            customer_id=data['customer_id'],
            account_id=data['account_id'],
            currency=currency,
            principal=get_money('principal'),
            annual_rate=Decimal(data['annual_rate']),
            tenure_months=data['tenure_months'],
            emi=get_money('emi'),
            total_paid=get_money('total_paid'),
            principal_paid=get_money('principal_paid'),
            interest_paid=get_money('interest_paid'),
            penalties_charged=get_money('penalties_charged'),
            penalties_paid=get_money('penalties_paid'),
            outstanding_balance=get_money('outstanding_balance'),
            period_paid=get_money('period_paid'),
            period_interest_paid=get_money('period_interest_paid'),
            status=LoanStatus(data['status']),
            next_emi_date=date.fromisoformat(next_emi_date) if next_emi_date else None,
            approved_by=data.get('approved_by'),
            disbursed_at=get_datetime('disbursed_at'),
            installments_paid=data.get('installments_paid', 0),
            closed_at=get_datetime('closed_at'),
            closure_reason=data.get('closure_reason')
        )

    def _payment_from_dict(self, data: Dict) -> LoanPayment:
        currency = Currency[data['currency']]
        return LoanPayment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            transaction_id=data['transaction_id'],
            payment_date=date.fromisoformat(data['payment_date']),
            amount=Money(data['amount'], currency),
            principal_component=Money(data['principal_component'], currency),
            interest_component=Money(data['interest_component'], currency),
            penalty_component=Money(data['penalty_component'], currency),
            outstanding_after=Money(data['outstanding_after'], currency),
            status=data.get('status', "COMPLETED")
        )

    def _penalty_from_dict(self, data: Dict) -> LoanPenalty:
        currency = Currency[data['currency']]
        return LoanPenalty(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            period=data['period'],
            days_overdue=data['days_overdue'],
            rate=Decimal(data['rate']),
            amount=Money(data['amount'], currency),
            assessed_on=date.fromisoformat(data['assessed_on'])
        )
