"""
Operation Query Filters

Filters are tagged variants: exactly one variant is resolved from the
caller's query parameters and then applied by the store, either in Python
(``matches``) or as a SQL condition (``where``).

The public API honors a single filter dimension per query.  When several are
supplied the winner is picked by a fixed priority:

    transferId > type > status > user > date range > none

Pagination follows the REST contract: ``page`` defaults to 1,
``page_size`` enables paging, ``offset = (page - 1) * page_size``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, List, Optional, Tuple

from ..exceptions import InvalidParameterError
from ..validation import is_present, parse_address
from .operation import NETTABLE_TYPES, Operation, OperationStatus, OperationType, format_date, parse_date

SqlClause = Tuple[str, List[Any]]


class ScanOrder(str, Enum):
    ASCENDING = "asc"
    DESCENDING = "desc"


class Filter:
    """Base class of all filter variants."""

    def matches(self, op: Operation) -> bool:
        raise NotImplementedError

    def where(self) -> SqlClause:
        raise NotImplementedError


@dataclass(frozen=True)
class NoFilter(Filter):
    def matches(self, op: Operation) -> bool:
        return True

    def where(self) -> SqlClause:
        return "1 = 1", []


NO_FILTER = NoFilter()


@dataclass(frozen=True)
class ByTransferId(Filter):
    transfer_id: str

    def matches(self, op: Operation) -> bool:
        return op.transfer_id == self.transfer_id

    def where(self) -> SqlClause:
        return "transfer_id = ?", [self.transfer_id]


@dataclass(frozen=True)
class ByType(Filter):
    type: OperationType

    def matches(self, op: Operation) -> bool:
        return op.type == self.type

    def where(self) -> SqlClause:
        return "type = ?", [self.type.value]


@dataclass(frozen=True)
class ByStatus(Filter):
    status: OperationStatus

    def matches(self, op: Operation) -> bool:
        return op.status == self.status

    def where(self) -> SqlClause:
        return "status = ?", [self.status.value]


@dataclass(frozen=True)
class ByUser(Filter):
    user: str

    def matches(self, op: Operation) -> bool:
        return op.user == self.user

    def where(self) -> SqlClause:
        return "user = ?", [self.user]


@dataclass(frozen=True)
class ByDateRange(Filter):
    """``start`` inclusive, ``end`` exclusive; either bound may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def matches(self, op: Operation) -> bool:
        if self.start is not None and op.date < self.start:
            return False
        if self.end is not None and op.date >= self.end:
            return False
        return True

    def where(self) -> SqlClause:
        clauses, params = [], []
        if self.start is not None:
            clauses.append("date >= ?")
            params.append(format_date(self.start))
        if self.end is not None:
            clauses.append("date < ?")
            params.append(format_date(self.end))
        return " AND ".join(clauses) or "1 = 1", params


# -- Internal variants used by the clearing engine --------------------------

@dataclass(frozen=True)
class Obligations(Filter):
    """Open inter-marketplace debts eligible for netting."""

    def matches(self, op: Operation) -> bool:
        return op.is_obligation

    def where(self) -> SqlClause:
        placeholders = ", ".join("?" for _ in NETTABLE_TYPES)
        return (
            f"status = ? AND type IN ({placeholders}) "
            "AND counterparty IS NOT NULL AND amount IS NOT NULL AND CAST(amount AS REAL) > 0",
            [OperationStatus.OPEN.value] + [t.value for t in NETTABLE_TYPES],
        )


@dataclass(frozen=True)
class ByClearingBatch(Filter):
    """Clearing operations created by one pass."""
    batch_id: str

    def matches(self, op: Operation) -> bool:
        return op.type == OperationType.CLEARING and op.batch_id == self.batch_id

    def where(self) -> SqlClause:
        return "type = ? AND batch_id = ?", [OperationType.CLEARING.value, self.batch_id]


@dataclass(frozen=True)
class ClaimedBy(Filter):
    """Obligations claimed by one pass."""
    batch_id: str

    def matches(self, op: Operation) -> bool:
        return op.claimed_by == self.batch_id

    def where(self) -> SqlClause:
        return "claimed_by = ?", [self.batch_id]


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _parse_enum(enum_cls, value: str, name: str):
    try:
        return enum_cls(value.strip())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidParameterError(f"{name} must be one of: {allowed}")


def _parse_bound(value: Optional[str], name: str) -> Optional[datetime]:
    if not is_present(value):
        return None
    try:
        return parse_date(str(value).strip())
    except ValueError:
        raise InvalidParameterError(f"{name} must be an ISO-8601 date, got {value!r}")


def resolve_filter(
    transfer_id: Optional[str] = None,
    type: Optional[str] = None,
    status: Optional[str] = None,
    user: Optional[str] = None,
    fromdate: Optional[str] = None,
    todate: Optional[str] = None,
) -> Filter:
    """Pick the single filter to apply, by fixed priority."""
    if is_present(transfer_id):
        return ByTransferId(str(transfer_id).strip())
    if is_present(type):
        return ByType(_parse_enum(OperationType, type, "type"))
    if is_present(status):
        return ByStatus(_parse_enum(OperationStatus, status, "status"))
    if is_present(user):
        return ByUser(parse_address(user, "user"))
    if is_present(fromdate) or is_present(todate):
        return ByDateRange(_parse_bound(fromdate, "fromdate"), _parse_bound(todate, "todate"))
    return NO_FILTER


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------

def _as_number(value: Any) -> Optional[int]:
    """Parse a page parameter; ``None`` when absent or not a valid number."""
    if not is_present(value) or isinstance(value, bool):
        return None
    try:
        number = int(str(value).strip())
    except ValueError:
        return None
    return number if number > 0 else None


@dataclass(frozen=True)
class Pagination:
    page: int
    offset: Optional[int]
    limit: Optional[int]

    @classmethod
    def from_params(cls, page: Any = None, page_size: Any = None) -> Pagination:
        """
        Translate ``page``/``page_size`` into ``offset``/``limit``.

        Without a valid ``page_size`` the whole result set is returned from
        the start.  An invalid ``page`` disables the offset only.
        """
        page_number = 1 if not is_present(page) else _as_number(page)
        size = _as_number(page_size)
        limit = size
        offset = (page_number - 1) * size if (page_number and size) else None
        return cls(page=page_number or 1, offset=offset, limit=limit)
