"""
Operation Store

Durable keyed storage of Operation records.  The store holds no business
logic: it guarantees id uniqueness, read-after-write visibility, and
compare-and-swap replacement of records keyed on their stored status.

Two backends implement the contract:
  - InMemoryOperationStore  (this module; tests and single-process use)
  - SQLiteOperationStore    (treasury.ledger.sqlite_store)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

from ..exceptions import ClaimConflictError, DuplicateIdError, NotFoundError
from .filters import NO_FILTER, Filter, ScanOrder
from .operation import Operation, OperationStatus

# (new version of a record, status the stored record must still have)
Swap = Tuple[Operation, OperationStatus]


class OperationStore(ABC):
    """Storage contract shared by every ledger backend."""

    @abstractmethod
    async def put(self, operation: Operation) -> None:
        """
        Insert a new operation.

        Raises:
            DuplicateIdError: if the transfer id is already stored
        """

    @abstractmethod
    async def get(self, transfer_id: str) -> Operation:
        """
        Raises:
            NotFoundError: if no operation has this transfer id
        """

    @abstractmethod
    async def scan(
        self,
        flt: Filter = NO_FILTER,
        order: ScanOrder = ScanOrder.ASCENDING,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Operation]:
        """Matching operations ordered by (date, transfer id)."""

    @abstractmethod
    async def commit(self, swaps: Sequence[Swap] = (), inserts: Sequence[Operation] = ()) -> None:
        """
        Apply several compare-and-swap replacements and inserts atomically.

        Nothing is written unless every swapped record still has its
        expected status and no insert collides with a stored id.

        Raises:
            NotFoundError: a swapped record does not exist
            ClaimConflictError: a swapped record changed status meanwhile
            DuplicateIdError: an insert reuses a stored id
        """

    async def swap(self, operation: Operation, expected: OperationStatus) -> None:
        """Replace one record if its stored status is still ``expected``."""
        await self.commit(swaps=[(operation, expected)])

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryOperationStore(OperationStore):
    """
    Dict-backed store.

    A single asyncio lock serializes mutations; the critical sections never
    await, so no caller waits longer than one dict update.
    """

    def __init__(self) -> None:
        self._records: Dict[str, Operation] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._records)

    async def put(self, operation: Operation) -> None:
        async with self._lock:
            if operation.transfer_id in self._records:
                raise DuplicateIdError(f"Transfer id {operation.transfer_id} already exists")
            self._records[operation.transfer_id] = operation

    async def get(self, transfer_id: str) -> Operation:
        try:
            return self._records[transfer_id]
        except KeyError:
            raise NotFoundError(f"Operation {transfer_id} not found")

    async def scan(
        self,
        flt: Filter = NO_FILTER,
        order: ScanOrder = ScanOrder.ASCENDING,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Operation]:
        matched = [op for op in self._records.values() if flt.matches(op)]
        matched.sort(
            key=lambda op: (op.date, op.transfer_id),
            reverse=order == ScanOrder.DESCENDING,
        )
        start = offset or 0
        end = start + limit if limit is not None else None
        return matched[start:end]

    async def commit(self, swaps: Sequence[Swap] = (), inserts: Sequence[Operation] = ()) -> None:
        async with self._lock:
            # Validate everything first so a failure leaves no partial write
            for operation, expected in swaps:
                current = self._records.get(operation.transfer_id)
                if current is None:
                    raise NotFoundError(f"Operation {operation.transfer_id} not found")
                if current.status != expected:
                    raise ClaimConflictError(
                        f"Operation {operation.transfer_id} is {current.status.value}, "
                        f"expected {expected.value}"
                    )
            new_ids = set()
            for operation in inserts:
                if operation.transfer_id in self._records or operation.transfer_id in new_ids:
                    raise DuplicateIdError(f"Transfer id {operation.transfer_id} already exists")
                new_ids.add(operation.transfer_id)

            for operation, _ in swaps:
                self._records[operation.transfer_id] = operation
            for operation in inserts:
                self._records[operation.transfer_id] = operation
