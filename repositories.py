from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo
import uuid

from config import get_settings
from models import Account, AccountStatus, AuditLog, EntryType, LedgerEntry, Transfer, TransferStatus
from storage import Database, Transaction, TransactionClosedError

ACCOUNTS = "accounts"
TRANSFERS = "transfers"
LEDGER_ENTRIES = "ledger_entries"
AUDIT_LOGS = "audit_logs"


def _now() -> datetime:
    return datetime.now(ZoneInfo(get_settings().timezone))


def _non_negative_balances(row: Dict[str, Any]) -> bool:
    return row["available_balance"] >= 0 and row["ledger_balance"] >= 0


def create_database(lock_timeout: Optional[float] = None) -> Database:
    return Database(
        tables=[ACCOUNTS, TRANSFERS, LEDGER_ENTRIES, AUDIT_LOGS],
        unique={TRANSFERS: ("reference",)},
        checks={ACCOUNTS: _non_negative_balances},
        lock_timeout=lock_timeout,
    )


def clamp_pagination(limit: int, offset: int, max_page_size: int) -> Tuple[int, int]:
    return min(max(1, limit), max_page_size), max(0, offset)


def _newest_first(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # Stable sort over reversed insertion order keeps ties newest-first too
    return sorted(reversed(rows), key=lambda r: r["created_at"], reverse=True)


class AccountRepository(ABC):
    @abstractmethod
    async def create(
        self,
        business_id: str,
        currency: str,
        available_balance: Decimal = Decimal("0"),
        ledger_balance: Decimal = Decimal("0"),
        status: AccountStatus = AccountStatus.ACTIVE,
        account_id: Optional[str] = None,
    ) -> Account:
        """Create an account. Balances default to zero and status to ACTIVE."""
        pass

    @abstractmethod
    async def find_by_id(self, account_id: str) -> Optional[Account]:
        """Unlocked point lookup of committed state."""
        pass

    @abstractmethod
    async def find_by_id_for_update(self, account_id: str, txn: Transaction) -> Optional[Account]:
        """Point lookup that write-locks the row until txn ends."""
        pass

    @abstractmethod
    async def update_status(self, account_id: str, status: AccountStatus) -> Optional[Account]:
        """Returns the updated account, or None if it doesn't exist."""
        pass

    @abstractmethod
    async def update_balances(
        self, account_id: str, available_delta: Decimal, ledger_delta: Decimal, txn: Transaction
    ) -> None:
        """Apply balance deltas. Must only be called within an active transaction."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class TransferRepository(ABC):
    @abstractmethod
    async def create(self, data: Dict[str, Any], txn: Transaction) -> Transfer:
        pass

    @abstractmethod
    async def find_by_id(self, transfer_id: str) -> Optional[Transfer]:
        pass

    @abstractmethod
    async def find_by_reference(self, reference: str) -> Optional[Transfer]:
        pass

    @abstractmethod
    async def find_all_by_account_id(self, account_id: str, limit: int, offset: int) -> Tuple[List[Transfer], int]:
        """Transfers where the account is source or destination, newest first, with total count."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class LedgerEntryRepository(ABC):
    @abstractmethod
    async def create_many(self, entries: List[Dict[str, Any]], txn: Transaction) -> List[LedgerEntry]:
        pass

    @abstractmethod
    async def create_for_top_up(
        self, account_id: str, amount: Decimal, balance_after: Decimal, txn: Transaction
    ) -> LedgerEntry:
        pass

    @abstractmethod
    async def find_all_by_account_id(
        self, account_id: str, limit: int, offset: int
    ) -> Tuple[List[LedgerEntry], int]:
        pass

    @abstractmethod
    async def iter_all_by_account_id(self, account_id: str) -> List[LedgerEntry]:
        """Every entry of the account in insertion order, unpaginated."""
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class AuditLogRepository(ABC):
    @abstractmethod
    async def create(self, data: Dict[str, Any], txn: Transaction) -> AuditLog:
        pass

    @abstractmethod
    async def find_by_transfer_id(self, transfer_id: str) -> Optional[AuditLog]:
        pass

    @abstractmethod
    async def count(self) -> int:
        pass


class InMemoryAccountRepository(AccountRepository):
    def __init__(self, db: Database):
        self.db = db

    async def create(
        self,
        business_id: str,
        currency: str,
        available_balance: Decimal = Decimal("0"),
        ledger_balance: Decimal = Decimal("0"),
        status: AccountStatus = AccountStatus.ACTIVE,
        account_id: Optional[str] = None,
    ) -> Account:
        now = _now()
        row = {
            "id": account_id or str(uuid.uuid4()),
            "business_id": business_id,
            "currency": currency,
            "available_balance": Decimal(available_balance),
            "ledger_balance": Decimal(ledger_balance),
            "status": AccountStatus(status),
            "created_at": now,
            "updated_at": now,
        }
        async with self.db.begin() as txn:
            created = await txn.insert(ACCOUNTS, row)
        return Account(**created)

    async def find_by_id(self, account_id: str) -> Optional[Account]:
        row = self.db.get(ACCOUNTS, account_id)
        return Account(**row) if row else None

    async def find_by_id_for_update(self, account_id: str, txn: Transaction) -> Optional[Account]:
        row = await txn.lock_row(ACCOUNTS, account_id)
        return Account(**row) if row else None

    async def update_status(self, account_id: str, status: AccountStatus) -> Optional[Account]:
        async with self.db.begin() as txn:
            if await txn.lock_row(ACCOUNTS, account_id) is None:
                return None
            txn.update(ACCOUNTS, account_id, {"status": AccountStatus(status), "updated_at": _now()})
        return await self.find_by_id(account_id)

    async def update_balances(
        self, account_id: str, available_delta: Decimal, ledger_delta: Decimal, txn: Transaction
    ) -> None:
        if not txn.is_active:
            raise TransactionClosedError("update_balances requires an active transaction")
        row = txn.get(ACCOUNTS, account_id)
        if row is None:
            return
        txn.update(ACCOUNTS, account_id, {
            "available_balance": row["available_balance"] + available_delta,
            "ledger_balance": row["ledger_balance"] + ledger_delta,
            "updated_at": _now(),
        })

    async def count(self) -> int:
        return self.db.count(ACCOUNTS)


class InMemoryTransferRepository(TransferRepository):
    def __init__(self, db: Database, max_page_size: int = 100):
        self.db = db
        self.max_page_size = max_page_size

    async def create(self, data: Dict[str, Any], txn: Transaction) -> Transfer:
        row = {
            "id": str(uuid.uuid4()),
            "source_account_id": data["source_account_id"],
            "destination_account_id": data["destination_account_id"],
            "amount": Decimal(data["amount"]),
            "currency": data["currency"],
            "reference": data["reference"],
            "status": TransferStatus.COMPLETED,
            "created_at": _now(),
        }
        return Transfer(**await txn.insert(TRANSFERS, row))

    async def find_by_id(self, transfer_id: str) -> Optional[Transfer]:
        row = self.db.get(TRANSFERS, transfer_id)
        return Transfer(**row) if row else None

    async def find_by_reference(self, reference: str) -> Optional[Transfer]:
        row = self.db.get_by_unique(TRANSFERS, "reference", reference)
        return Transfer(**row) if row else None

    async def find_all_by_account_id(self, account_id: str, limit: int, offset: int) -> Tuple[List[Transfer], int]:
        limit, offset = clamp_pagination(limit, offset, self.max_page_size)
        rows = _newest_first(self.db.select(
            TRANSFERS,
            lambda r: r["source_account_id"] == account_id or r["destination_account_id"] == account_id,
        ))
        return [Transfer(**r) for r in rows[offset:offset + limit]], len(rows)

    async def count(self) -> int:
        return self.db.count(TRANSFERS)


class InMemoryLedgerEntryRepository(LedgerEntryRepository):
    def __init__(self, db: Database, max_page_size: int = 100):
        self.db = db
        self.max_page_size = max_page_size

    async def create_many(self, entries: List[Dict[str, Any]], txn: Transaction) -> List[LedgerEntry]:
        now = _now()
        created = []
        for entry in entries:
            balance_after = entry.get("balance_after")
            row = {
                "id": str(uuid.uuid4()),
                "transfer_id": entry["transfer_id"],
                "account_id": entry["account_id"],
                "type": EntryType(entry["type"]),
                "amount": Decimal(entry["amount"]),
                "balance_after": Decimal(balance_after) if balance_after is not None else None,
                "created_at": now,
            }
            created.append(LedgerEntry(**await txn.insert(LEDGER_ENTRIES, row)))
        return created

    async def create_for_top_up(
        self, account_id: str, amount: Decimal, balance_after: Decimal, txn: Transaction
    ) -> LedgerEntry:
        entries = await self.create_many([{
            "transfer_id": None,
            "account_id": account_id,
            "type": EntryType.CREDIT,
            "amount": amount,
            "balance_after": balance_after,
        }], txn)
        return entries[0]

    async def find_all_by_account_id(
        self, account_id: str, limit: int, offset: int
    ) -> Tuple[List[LedgerEntry], int]:
        limit, offset = clamp_pagination(limit, offset, self.max_page_size)
        rows = _newest_first(self.db.select(LEDGER_ENTRIES, lambda r: r["account_id"] == account_id))
        return [LedgerEntry(**r) for r in rows[offset:offset + limit]], len(rows)

    async def iter_all_by_account_id(self, account_id: str) -> List[LedgerEntry]:
        return [LedgerEntry(**r) for r in self.db.select(LEDGER_ENTRIES, lambda r: r["account_id"] == account_id)]

    async def count(self) -> int:
        return self.db.count(LEDGER_ENTRIES)


class InMemoryAuditLogRepository(AuditLogRepository):
    def __init__(self, db: Database):
        self.db = db

    async def create(self, data: Dict[str, Any], txn: Transaction) -> AuditLog:
        row = {"id": str(uuid.uuid4()), "created_at": _now(), **data}
        return AuditLog(**await txn.insert(AUDIT_LOGS, row))

    async def find_by_transfer_id(self, transfer_id: str) -> Optional[AuditLog]:
        rows = self.db.select(AUDIT_LOGS, lambda r: r["transfer_id"] == transfer_id)
        return AuditLog(**rows[0]) if rows else None

    async def count(self) -> int:
        return self.db.count(AUDIT_LOGS)


def _build():
    settings = get_settings()
    db = create_database(settings.lock_timeout_seconds)
    return (
        db,
        InMemoryAccountRepository(db),
        InMemoryTransferRepository(db, settings.max_page_size),
        InMemoryLedgerEntryRepository(db, settings.max_page_size),
        InMemoryAuditLogRepository(db),
    )


# Singleton instances (one shared database per process)
_database, _account_repo, _transfer_repo, _ledger_repo, _audit_repo = _build()


def get_database() -> Database:
    return _database


def get_account_repository() -> AccountRepository:
    return _account_repo


def get_transfer_repository() -> TransferRepository:
    return _transfer_repo


def get_ledger_entry_repository() -> LedgerEntryRepository:
    return _ledger_repo


def get_audit_log_repository() -> AuditLogRepository:
    return _audit_repo


# For tests
def reset_repositories():
    """Reset all repositories to an empty database (for testing only)."""
    global _database, _account_repo, _transfer_repo, _ledger_repo, _audit_repo
    _database, _account_repo, _transfer_repo, _ledger_repo, _audit_repo = _build()
