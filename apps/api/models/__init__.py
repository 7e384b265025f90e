"""Models package."""

from .account import Account
from .ledger_entry import LedgerEntry
from .operation import Operation
from .subscription import SubscriptionState
from .billing_event import BillingEventRecord
from .audit_log import AuditLogEntry
from .operation_catalog import CatalogOperation
