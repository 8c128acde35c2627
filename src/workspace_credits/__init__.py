"""Usage-metered credit ledger for workspaces."""

from workspace_credits.config import Settings, get_settings
from workspace_credits.exceptions import (
    ConcurrencyExhaustedError,
    CreditError,
    CreditErrorCode,
    InsufficientCreditsError,
    InvalidPlanError,
    LedgerCommitError,
    LimitExceededError,
    ReservationNotFoundError,
    SpendingLimitExceededError,
    StaleVersionError,
    SubscriptionNotFoundError,
    WorkspaceNotFoundError,
)
from workspace_credits.ledger import DeferredTransactionLedger, add_credits, ledger_scope
from workspace_credits.limits import AdmissionController, ResourceDirectory, StaticPlanLimits
from workspace_credits.models import (
    CreditReservation,
    CreditTransaction,
    Reservation,
    ResourceKind,
    SpendingLimit,
    SubscriptionPlanLimits,
    TimeFrame,
    TransactionRecord,
    TransactionSource,
    WorkspaceBalance,
)
from workspace_credits.observability import setup_observability
from workspace_credits.reservations import ReservationManager
from workspace_credits.settlement import MeteredOperation, SettlementEngine, metered_operation
from workspace_credits.store import InMemoryRecordStore, RecordStore, atomic_update
from workspace_credits.sweeper import ReservationSweeper

__all__ = [
    "AdmissionController",
    "ConcurrencyExhaustedError",
    "CreditError",
    "CreditErrorCode",
    "CreditReservation",
    "CreditTransaction",
    "DeferredTransactionLedger",
    "InMemoryRecordStore",
    "InsufficientCreditsError",
    "InvalidPlanError",
    "LedgerCommitError",
    "LimitExceededError",
    "MeteredOperation",
    "RecordStore",
    "Reservation",
    "ReservationManager",
    "ReservationNotFoundError",
    "ReservationSweeper",
    "ResourceDirectory",
    "ResourceKind",
    "SettlementEngine",
    "Settings",
    "SpendingLimit",
    "SpendingLimitExceededError",
    "StaleVersionError",
    "StaticPlanLimits",
    "SubscriptionNotFoundError",
    "SubscriptionPlanLimits",
    "TimeFrame",
    "TransactionRecord",
    "TransactionSource",
    "WorkspaceBalance",
    "WorkspaceNotFoundError",
    "add_credits",
    "atomic_update",
    "get_settings",
    "ledger_scope",
    "metered_operation",
    "setup_observability",
]
