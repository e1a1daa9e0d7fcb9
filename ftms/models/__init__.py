"""SQLAlchemy models for the FTMS revenue core."""

from ftms.models.reference import (
    InstallmentFrequency,
    RevenueCategory,
    PaymentMethod,
    PaymentStatus,
    SystemConfiguration,
)
from ftms.models.bus_trip import BusTripCache
from ftms.models.revenue import (
    InstallmentStatus,
    RevenueRecord,
    RevenueInstallment,
    RevenuePayment,
    RevenueAttachment,
)
from ftms.models.loan import (
    EmployeeRole,
    LoanStatus,
    ShortageLoan,
    LoanInstallment,
    LoanPayment,
)
from ftms.models.audit import AuditLog
from ftms.models.error_log import ErrorLog, ErrorSeverity

__all__ = [
    "InstallmentFrequency",
    "RevenueCategory",
    "PaymentMethod",
    "PaymentStatus",
    "SystemConfiguration",
    "BusTripCache",
    "InstallmentStatus",
    "RevenueRecord",
    "RevenueInstallment",
    "RevenuePayment",
    "RevenueAttachment",
    "EmployeeRole",
    "LoanStatus",
    "ShortageLoan",
    "LoanInstallment",
    "LoanPayment",
    "AuditLog",
    "ErrorLog",
    "ErrorSeverity",
]
