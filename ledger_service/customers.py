"""
Customer Management Module

Customers are the owners referenced by accounts and loans. The ledger only
needs their identity and home branch.
"""

from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, List, Optional
import re

from .audit import AuditTrail, AuditEventType
from .errors import CustomerNotFound
from .identifiers import new_id
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger("ledger.customers")

EMAIL_PATTERN = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'


@dataclass
class Customer(StorageRecord):
    """Account and loan owner"""
    name: str
    email: str
    branch_code: str

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("Customer name is required")
        if not re.match(EMAIL_PATTERN, self.email):
            raise ValueError("Invalid email format")


class CustomerManager:
    """Creates and looks up customers"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 default_branch_code: str = "HQ"):
        self.storage = storage
        self.audit_trail = audit_trail
        self.default_branch_code = default_branch_code
        self.table_name = "customers"

    def create_customer(self, name: str, email: str,
                        branch_code: Optional[str] = None) -> Customer:
        """
        Create a new customer

        Args:
            name: Full name
            email: Contact email address
            branch_code: Home branch; defaults to the configured branch

        Returns:
            Created Customer object
        """
        now = datetime.now(timezone.utc)
        customer = Customer(
            id=new_id(),
            created_at=now,
            updated_at=now,
            name=name.strip(),
            email=email,
            branch_code=branch_code or self.default_branch_code
        )

        self.storage.save(self.table_name, customer.id, customer.to_dict())

        self.audit_trail.log_event(
            event_type=AuditEventType.CUSTOMER_CREATED,
            entity_type="customer",
            entity_id=customer.id,
            metadata={"name": customer.name, "branch_code": customer.branch_code}
        )
        log_action(logger, "info", "Customer created", action="create_customer",
                   resource=f"customer:{customer.id}")

        return customer

    def get_customer(self, customer_id: str) -> Optional[Customer]:
        """Get customer by ID"""
        customer_dict = self.storage.load(self.table_name, customer_id)
        if customer_dict:
            return self._customer_from_dict(customer_dict)
        return None

    def require_customer(self, customer_id: str) -> Customer:
        """Get customer by ID or raise CustomerNotFound"""
        customer = self.get_customer(customer_id)
        if customer is None:
            raise CustomerNotFound(customer_id)
        return customer

    def get_customer_by_email(self, email: str) -> Optional[Customer]:
        """Get customer by email address"""
        customers = self.storage.find(self.table_name, {"email": email})
        if customers:
            return self._customer_from_dict(customers[0])
        return None

    def list_customers(self) -> List[Customer]:
        return [self._customer_from_dict(data) for data in self.storage.load_all(self.table_name)]

    def _customer_from_dict(self, data: Dict) -> Customer:
        """Convert dictionary to Customer"""
        return Customer(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            name=data['name'],
            email=data['email'],
            branch_code=data['branch_code']
        )
