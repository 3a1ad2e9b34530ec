"""
Treasury Operation Ledger

Durable record of every operation and its lifecycle:
  - Operation model and enums
  - Operation Store contract with in-memory and SQLite backends
  - Query filters and pagination
  - Lifecycle state machine
"""

from .operation import (
    NETTABLE_TYPES,
    Operation,
    OperationStatus,
    OperationType,
)
from .filters import (
    ByClearingBatch,
    ByDateRange,
    ByStatus,
    ByTransferId,
    ByType,
    ByUser,
    ClaimedBy,
    Filter,
    NO_FILTER,
    NoFilter,
    Obligations,
    Pagination,
    ScanOrder,
    resolve_filter,
)
from .store import InMemoryOperationStore, OperationStore
from .state_machine import OperationStateMachine

__all__ = [
    "NETTABLE_TYPES",
    "Operation",
    "OperationStatus",
    "OperationType",
    "ByClearingBatch",
    "ByDateRange",
    "ByStatus",
    "ByTransferId",
    "ByType",
    "ByUser",
    "ClaimedBy",
    "Filter",
    "NO_FILTER",
    "NoFilter",
    "Obligations",
    "Pagination",
    "ScanOrder",
    "resolve_filter",
    "InMemoryOperationStore",
    "OperationStore",
    "OperationStateMachine",
]
