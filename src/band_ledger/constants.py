"""Enumerations and fixed identifiers shared across the band ledger.

The data access layer, the lifecycle engine, the report aggregator and the CLI
all import their vocabulary from here so sheet names, stored codes and log
categories never drift apart.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Sequence


# Actor recorded when no authenticated identity is available.
SYSTEM_ACTOR_ID = "system"

# Upper bound on redraws of the random code suffix before giving up.
MAX_CODE_ATTEMPTS = 25


class VisitorType(str, Enum):
    """Visitor categories; the value is the letter printed in band codes."""

    ADULT = "A"
    CHILD = "C"

    @property
    def label(self) -> str:
        return "Adult" if self is VisitorType.ADULT else "Child"


class TransactionType(str, Enum):
    """Money movements recorded in the transaction ledger."""

    DEPOSIT = "deposit"
    REFUND = "refund"


class ActivityAction(str, Enum):
    """Audit categories written to the activity log."""

    BAND_PRINTED = "Band Printed"
    VISITOR_ENTRY = "Visitor Entry"
    VISITOR_EXIT = "Visitor Exit"
    DEPOSIT_REFUNDED = "Deposit Refunded"
    REPORT_GENERATED = "Report Generated"


class UserRole(str, Enum):
    """Roles yielded by the identity collaborator. Never checked by the core."""

    STAFF = "staff"
    ADMIN = "admin"
    OWNER = "owner"


class ReportPeriod(str, Enum):
    """Bucketing granularity for dashboard analytics."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    SIX_MONTH = "sixMonth"


class SheetName(str, Enum):
    """Worksheets making up the ledger store."""

    BANDS = "Bands"
    TRANSACTIONS = "Transactions"
    ACTIVITY_LOGS = "ActivityLogs"
    REPORTS = "Reports"


DEFAULT_DEPOSITS: Mapping[VisitorType, int] = {
    VisitorType.ADULT: 50,
    VisitorType.CHILD: 30,
}


SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.BANDS.value: [
        "BandID",
        "Code",
        "VisitorType",
        "DepositAmount",
        "PrintedBy",
        "PrintedAt",
        "EntryTime",
        "ExitTime",
        "IsActive",
        "IsRefunded",
    ],
    SheetName.TRANSACTIONS.value: [
        "TransactionID",
        "BandID",
        "TransactionType",
        "Amount",
        "Timestamp",
        "ProcessedBy",
    ],
    SheetName.ACTIVITY_LOGS.value: [
        "LogID",
        "UserID",
        "Action",
        "Details",
        "Timestamp",
    ],
    SheetName.REPORTS.value: [
        "ReportID",
        "StartDate",
        "EndDate",
        "TotalVisitors",
        "TotalAdults",
        "TotalChildren",
        "TotalDeposits",
        "TotalRefunds",
        "GeneratedBy",
        "GeneratedAt",
    ],
}


__all__ = [
    "SYSTEM_ACTOR_ID",
    "MAX_CODE_ATTEMPTS",
    "VisitorType",
    "TransactionType",
    "ActivityAction",
    "UserRole",
    "ReportPeriod",
    "SheetName",
    "DEFAULT_DEPOSITS",
    "SHEET_COLUMNS",
]
