"""
In-process transactional store.

Rows live in per-table dicts. A Transaction stages its writes and applies them
on commit, so readers outside the transaction only ever see committed state.
Row locks are exclusive and held until commit or rollback; waiting on a lock
goes through a wait-for check so a cycle is reported as a deadlock instead of
hanging. Unique keys are locked the same way, which makes a second insert of a
key reserved by an open transaction wait for that transaction to finish.
"""

import asyncio
import copy
import itertools
from collections import deque
from typing import Any, Callable, Deque, Dict, Hashable, List, Optional, Tuple

import structlog

logger = structlog.get_logger()

Row = Dict[str, Any]
LockKey = Tuple[Hashable, ...]


class StorageError(Exception):
    pass


class DeadlockDetectedError(StorageError):
    def __init__(self, txn_id: int, key: LockKey):
        super().__init__(f"Deadlock detected: transaction {txn_id} waiting on {key}")
        self.txn_id = txn_id
        self.key = key


class LockTimeoutError(StorageError):
    def __init__(self, txn_id: int, key: LockKey, timeout: float):
        super().__init__(f"Lock wait timeout after {timeout}s: transaction {txn_id} waiting on {key}")
        self.txn_id = txn_id
        self.key = key


class UniqueViolationError(StorageError):
    def __init__(self, table: str, column: str, value: Any):
        super().__init__(f"Duplicate value for {table}.{column}: {value!r}")
        self.table = table
        self.column = column
        self.value = value


class CheckViolationError(StorageError):
    def __init__(self, table: str, row_id: str):
        super().__init__(f"Check constraint failed for {table} row {row_id}")
        self.table = table
        self.row_id = row_id


class RowNotFoundError(StorageError):
    def __init__(self, table: str, row_id: str):
        super().__init__(f"No row {row_id} in {table}")
        self.table = table
        self.row_id = row_id


class TransactionClosedError(StorageError):
    pass


class _Lock:
    __slots__ = ("owner", "waiters")

    def __init__(self, owner: "Transaction"):
        self.owner = owner
        self.waiters: Deque[Tuple["Transaction", asyncio.Future]] = deque()


class Transaction:
    """Unit of work against a Database. Obtain through Database.begin()."""

    def __init__(self, db: "Database", txn_id: int):
        self.db = db
        self.id = txn_id
        self.state = "active"
        self._held: List[LockKey] = []
        self._inserts: Dict[str, Dict[str, Row]] = {}
        self._updates: Dict[str, Dict[str, Row]] = {}

    @property
    def is_active(self) -> bool:
        return self.state == "active"

    def _ensure_active(self) -> None:
        if not self.is_active:
            raise TransactionClosedError(f"Transaction {self.id} is {self.state}")

    def get(self, table: str, row_id: str) -> Optional[Row]:
        """Read a row including this transaction's own staged writes."""
        self._ensure_active()
        staged = self._inserts.get(table, {}).get(row_id)
        if staged is not None:
            return copy.deepcopy(staged)
        committed = self.db._tables[table].get(row_id)
        if committed is None:
            return None
        row = copy.deepcopy(committed)
        row.update(self._updates.get(table, {}).get(row_id, {}))
        return row

    async def lock_row(self, table: str, row_id: str) -> Optional[Row]:
        """SELECT ... FOR UPDATE. Returns None without locking when the row is absent."""
        self._ensure_active()
        if row_id not in self.db._tables[table] and row_id not in self._inserts.get(table, {}):
            return None
        await self.db._acquire(self, ("row", table, row_id))
        return self.get(table, row_id)

    async def insert(self, table: str, row: Row) -> Row:
        self._ensure_active()
        for column in self.db._unique.get(table, ()):
            value = row[column]
            await self.db._acquire(self, ("unique", table, column, value))
            if value in self.db._indexes[(table, column)] or any(
                r[column] == value for r in self._inserts.get(table, {}).values()
            ):
                raise UniqueViolationError(table, column, value)
        self.db._check(table, row)
        self._inserts.setdefault(table, {})[row["id"]] = copy.deepcopy(row)
        return copy.deepcopy(row)

    def update(self, table: str, row_id: str, changes: Row) -> Row:
        self._ensure_active()
        current = self.get(table, row_id)
        if current is None:
            raise RowNotFoundError(table, row_id)
        current.update(changes)
        self.db._check(table, current)
        if row_id in self._inserts.get(table, {}):
            self._inserts[table][row_id].update(copy.deepcopy(changes))
        else:
            self._updates.setdefault(table, {}).setdefault(row_id, {}).update(copy.deepcopy(changes))
        return current

    async def commit(self) -> None:
        self._ensure_active()
        await asyncio.sleep(0)
        self._ensure_active()
        self.db._apply(self._inserts, self._updates)
        self.state = "committed"
        self.db._release_all(self)

    async def rollback(self) -> None:
        if not self.is_active:
            return
        self._inserts.clear()
        self._updates.clear()
        self.state = "rolled_back"
        self.db._release_all(self)

    async def __aenter__(self) -> "Transaction":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


class Database:
    def __init__(
        self,
        tables: List[str],
        unique: Optional[Dict[str, Tuple[str, ...]]] = None,
        checks: Optional[Dict[str, Callable[[Row], bool]]] = None,
        lock_timeout: Optional[float] = None,
    ):
        self._tables: Dict[str, Dict[str, Row]] = {name: {} for name in tables}
        self._unique = unique or {}
        self._indexes: Dict[Tuple[str, str], Dict[Any, str]] = {
            (table, column): {} for table, columns in self._unique.items() for column in columns
        }
        self._checks = checks or {}
        self.lock_timeout = lock_timeout
        self._locks: Dict[LockKey, _Lock] = {}
        self._waiting: Dict[int, LockKey] = {}
        self._txn_ids = itertools.count(1)

    def begin(self) -> Transaction:
        return Transaction(self, next(self._txn_ids))

    # Committed reads

    def get(self, table: str, row_id: str) -> Optional[Row]:
        row = self._tables[table].get(row_id)
        return copy.deepcopy(row) if row is not None else None

    def get_by_unique(self, table: str, column: str, value: Any) -> Optional[Row]:
        row_id = self._indexes[(table, column)].get(value)
        return self.get(table, row_id) if row_id is not None else None

    def select(self, table: str, where: Optional[Callable[[Row], bool]] = None) -> List[Row]:
        """Committed rows in insertion order."""
        return [copy.deepcopy(r) for r in self._tables[table].values() if where is None or where(r)]

    def count(self, table: str) -> int:
        return len(self._tables[table])

    # Locking

    async def _acquire(self, txn: Transaction, key: LockKey) -> None:
        lock = self._locks.get(key)
        if lock is None:
            self._locks[key] = _Lock(txn)
            txn._held.append(key)
            return
        if lock.owner is txn:
            return

        self._detect_deadlock(txn, key)

        future = asyncio.get_running_loop().create_future()
        lock.waiters.append((txn, future))
        self._waiting[txn.id] = key
        try:
            if self.lock_timeout is None:
                await future
            else:
                await asyncio.wait_for(asyncio.shield(future), self.lock_timeout)
        except asyncio.TimeoutError:
            if future.done():
                # handed over at the deadline, keep it; rollback releases it
                return
            future.cancel()
            raise LockTimeoutError(txn.id, key, self.lock_timeout)
        except asyncio.CancelledError:
            future.cancel()
            raise
        finally:
            self._waiting.pop(txn.id, None)

    def _detect_deadlock(self, txn: Transaction, key: LockKey) -> None:
        seen = set()
        waited_key: Optional[LockKey] = key
        while waited_key is not None:
            lock = self._locks.get(waited_key)
            if lock is None:
                return
            owner = lock.owner
            if owner is txn:
                logger.warning("Deadlock detected", txn_id=txn.id, key=str(key))
                raise DeadlockDetectedError(txn.id, key)
            if owner.id in seen:
                return
            seen.add(owner.id)
            waited_key = self._waiting.get(owner.id)

    def _release_all(self, txn: Transaction) -> None:
        for key in txn._held:
            lock = self._locks.get(key)
            if lock is None or lock.owner is not txn:
                continue
            while lock.waiters:
                next_txn, future = lock.waiters.popleft()
                if future.done():
                    continue
                lock.owner = next_txn
                next_txn._held.append(key)
                future.set_result(None)
                break
            else:
                del self._locks[key]
        txn._held.clear()

    # Writes

    def _check(self, table: str, row: Row) -> None:
        check = self._checks.get(table)
        if check is not None and not check(row):
            raise CheckViolationError(table, row["id"])

    def _apply(self, inserts: Dict[str, Dict[str, Row]], updates: Dict[str, Dict[str, Row]]) -> None:
        for table, rows in updates.items():
            for row_id, changes in rows.items():
                self._tables[table][row_id].update(changes)
        for table, rows in inserts.items():
            for row_id, row in rows.items():
                self._tables[table][row_id] = row
                for column in self._unique.get(table, ()):
                    self._indexes[(table, column)][row[column]] = row_id

    def clear(self) -> None:
        for rows in self._tables.values():
            rows.clear()
        for index in self._indexes.values():
            index.clear()
