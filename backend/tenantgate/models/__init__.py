from .tenancy import Tenant, BillingRecord, BillingPayment, ReactivationCode
from .auth import Account, SessionToken, ExchangeToken
from .devices import DeviceRecord
from .audit import ImpersonationAuditRecord
from .demo import DemoSession, DemoOriginLock, AuthAttempt
from .business import (
    StoreSettings,
    Product,
    Order,
    OrderItem,
    Expense,
    ServiceBooking,
    Feedback,
    AcceptedOperation,
)
from .security import SecurityEvent

__all__ = [
    "Tenant",
    "BillingRecord",
    "BillingPayment",
    "ReactivationCode",
    "Account",
    "SessionToken",
    "ExchangeToken",
    "DeviceRecord",
    "ImpersonationAuditRecord",
    "DemoSession",
    "DemoOriginLock",
    "AuthAttempt",
    "StoreSettings",
    "Product",
    "Order",
    "OrderItem",
    "Expense",
    "ServiceBooking",
    "Feedback",
    "AcceptedOperation",
    "SecurityEvent",
]
