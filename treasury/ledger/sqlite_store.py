"""
SQLite Operation Store

Persistent ledger backend on aiosqlite.  Uniqueness is enforced by the
primary key; compare-and-swap is an ``UPDATE ... WHERE status = ?`` whose row
count tells whether the claim won.  Multi-record commits run inside one
transaction and roll back on the first conflict.
"""

import asyncio
import json
import os
import sqlite3
from decimal import Decimal
from typing import List, Optional, Sequence

import aiosqlite

from ..exceptions import ClaimConflictError, DuplicateIdError, NotFoundError
from ..logger import get_logger
from .filters import NO_FILTER, Filter, ScanOrder
from .operation import Operation, OperationStatus, OperationType, format_amount, format_date, parse_date
from .store import OperationStore, Swap

logger = get_logger(__name__)

_COLUMNS = (
    "transfer_id", "type", "status", "user", "date", "amount", "counterparty",
    "transfer_code", "batch_id", "claimed_by", "settles", "carried_forward",
)


class SQLiteOperationStore(OperationStore):
    """aiosqlite-backed operation ledger"""

    _SCHEMA = """
    CREATE TABLE IF NOT EXISTS operations (
        transfer_id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        status TEXT NOT NULL,
        user TEXT NOT NULL,
        date TEXT NOT NULL,
        amount TEXT,
        counterparty TEXT,
        transfer_code TEXT,
        batch_id TEXT,
        claimed_by TEXT,
        settles TEXT NOT NULL DEFAULT '[]',
        carried_forward INTEGER NOT NULL DEFAULT 0
    );
    CREATE INDEX IF NOT EXISTS idx_operations_date ON operations(date, transfer_id);
    CREATE INDEX IF NOT EXISTS idx_operations_status ON operations(status);
    CREATE INDEX IF NOT EXISTS idx_operations_user ON operations(user);
    CREATE INDEX IF NOT EXISTS idx_operations_batch ON operations(batch_id);
    CREATE INDEX IF NOT EXISTS idx_operations_claimed ON operations(claimed_by);
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.connection: Optional[aiosqlite.Connection] = None
        # One connection: reads wait for an in-flight commit so they never see
        # uncommitted rows
        self._lock = asyncio.Lock()

    @classmethod
    async def create(cls, db_path: str, wal_mode: bool = True) -> "SQLiteOperationStore":
        """Open the database and create the schema if needed."""
        self = cls(db_path)

        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        self.connection = await aiosqlite.connect(db_path)
        self.connection.row_factory = aiosqlite.Row
        if wal_mode and db_path != ":memory:":
            await self.connection.execute("PRAGMA journal_mode=WAL")
            await self.connection.execute("PRAGMA synchronous=NORMAL")

        for stmt in self._SCHEMA.strip().split(";"):
            stmt = stmt.strip()
            if stmt:
                await self.connection.execute(stmt)
        await self.connection.commit()

        logger.info(f"Operation ledger opened: {db_path}")
        return self

    async def close(self) -> None:
        if self.connection:
            await self.connection.close()
            self.connection = None

    # -- Row mapping --------------------------------------------------------

    @staticmethod
    def _to_row(op: Operation) -> tuple:
        return (
            op.transfer_id,
            op.type.value,
            op.status.value,
            op.user,
            format_date(op.date),
            format_amount(op.amount) if op.amount is not None else None,
            op.counterparty,
            op.transfer_code,
            op.batch_id,
            op.claimed_by,
            json.dumps(list(op.settles)),
            int(op.carried_forward),
        )

    @staticmethod
    def _from_row(row) -> Operation:
        return Operation(
            transfer_id=row["transfer_id"],
            type=OperationType(row["type"]),
            status=OperationStatus(row["status"]),
            user=row["user"],
            date=parse_date(row["date"]),
            amount=Decimal(row["amount"]) if row["amount"] is not None else None,
            counterparty=row["counterparty"],
            transfer_code=row["transfer_code"],
            batch_id=row["batch_id"],
            claimed_by=row["claimed_by"],
            settles=tuple(json.loads(row["settles"])),
            carried_forward=bool(row["carried_forward"]),
        )

    # -- Contract -----------------------------------------------------------

    async def _insert(self, op: Operation) -> None:
        placeholders = ", ".join("?" for _ in _COLUMNS)
        try:
            await self.connection.execute(
                f"INSERT INTO operations ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                self._to_row(op),
            )
        except sqlite3.IntegrityError:
            raise DuplicateIdError(f"Transfer id {op.transfer_id} already exists")

    async def _replace(self, op: Operation, expected: OperationStatus) -> None:
        assignments = ", ".join(f"{col} = ?" for col in _COLUMNS[1:])
        cursor = await self.connection.execute(
            f"UPDATE operations SET {assignments} WHERE transfer_id = ? AND status = ?",
            self._to_row(op)[1:] + (op.transfer_id, expected.value),
        )
        if cursor.rowcount == 1:
            return
        cursor = await self.connection.execute(
            "SELECT status FROM operations WHERE transfer_id = ?", (op.transfer_id,)
        )
        row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Operation {op.transfer_id} not found")
        raise ClaimConflictError(
            f"Operation {op.transfer_id} is {row['status']}, expected {expected.value}"
        )

    async def put(self, operation: Operation) -> None:
        await self.commit(inserts=[operation])

    async def get(self, transfer_id: str) -> Operation:
        async with self._lock:
            cursor = await self.connection.execute(
                "SELECT * FROM operations WHERE transfer_id = ?", (transfer_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            raise NotFoundError(f"Operation {transfer_id} not found")
        return self._from_row(row)

    async def scan(
        self,
        flt: Filter = NO_FILTER,
        order: ScanOrder = ScanOrder.ASCENDING,
        offset: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[Operation]:
        clause, params = flt.where()
        direction = "DESC" if order == ScanOrder.DESCENDING else "ASC"
        query = (
            f"SELECT * FROM operations WHERE {clause} "
            f"ORDER BY date {direction}, transfer_id {direction} LIMIT ? OFFSET ?"
        )
        params = list(params) + [limit if limit is not None else -1, offset or 0]
        async with self._lock:
            cursor = await self.connection.execute(query, params)
            rows = await cursor.fetchall()
        return [self._from_row(row) for row in rows]

    async def commit(self, swaps: Sequence[Swap] = (), inserts: Sequence[Operation] = ()) -> None:
        async with self._lock:
            try:
                for operation, expected in swaps:
                    await self._replace(operation, expected)
                for operation in inserts:
                    await self._insert(operation)
            except Exception:
                await self.connection.rollback()
                raise
            await self.connection.commit()
