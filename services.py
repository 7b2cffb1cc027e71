from decimal import Decimal
from typing import Callable, List, Optional, Tuple
import structlog

from errors import (
    AccountNotActiveError,
    AccountNotFoundError,
    CurrencyMismatchError,
    IdempotencyConflictError,
    InsufficientBalanceError,
    SameAccountError,
    TransferNotFoundError,
)
from models import (
    Account,
    AccountStatus,
    CreateAccountRequest,
    EntryType,
    LedgerEntry,
    ReconciliationResponse,
    Transfer,
    TransferRequest,
    TransferResponse,
)
from repositories import AccountRepository, AuditLogRepository, LedgerEntryRepository, TransferRepository
from storage import DeadlockDetectedError, Transaction, UniqueViolationError

# Configure structured logging
logger = structlog.get_logger()

# Attempts per transfer when the store reports a deadlock
MAX_ATTEMPTS = 3


def _matches(request: TransferRequest, existing: Transfer) -> bool:
    return (
        existing.source_account_id == request.source_account_id
        and existing.destination_account_id == request.destination_account_id
        and existing.currency == request.currency
        and existing.amount == request.amount
    )


class TransferService:
    def __init__(
        self,
        account_repo: AccountRepository,
        transfer_repo: TransferRepository,
        ledger_repo: LedgerEntryRepository,
        audit_repo: AuditLogRepository,
        begin_transaction: Callable[[], Transaction],
    ):
        self.account_repo = account_repo
        self.transfer_repo = transfer_repo
        self.ledger_repo = ledger_repo
        self.audit_repo = audit_repo
        self.begin_transaction = begin_transaction

    async def execute_transfer(self, request: TransferRequest) -> TransferResponse:
        """Move `amount` from source to destination exactly once per reference.

        A repeated reference with the same body returns the stored transfer; with a
        different body it raises IdempotencyConflictError. Business rule violations
        are raised immediately. Deadlocks reported by the store are retried with a
        fresh transaction, up to MAX_ATTEMPTS in total.
        """
        log = logger.bind(
            reference=request.reference,
            source_account_id=request.source_account_id,
            destination_account_id=request.destination_account_id,
            amount=str(request.amount),
            currency=request.currency,
        )

        if request.source_account_id == request.destination_account_id:
            raise SameAccountError(request.source_account_id)

        existing = await self.transfer_repo.find_by_reference(request.reference)
        if existing is not None:
            log.info("Returning existing transfer due to idempotency", transfer_id=existing.id)
            return self._resolve_existing(request, existing)

        last_error: Optional[Exception] = None
        for attempt in range(1, MAX_ATTEMPTS + 1):
            txn = self.begin_transaction()
            try:
                transfer = await self._attempt(request, txn)
                await txn.commit()
            except DeadlockDetectedError as e:
                await txn.rollback()
                last_error = e
                log.warning("Deadlock detected, retrying transfer", attempt=attempt, max_attempts=MAX_ATTEMPTS)
                continue
            except UniqueViolationError as e:
                await txn.rollback()
                if e.column != "reference":
                    raise
                # Lost the insert race to a concurrent request with the same reference
                existing = await self.transfer_repo.find_by_reference(request.reference)
                if existing is None:
                    raise
                log.info("Concurrent duplicate reference resolved", transfer_id=existing.id)
                return self._resolve_existing(request, existing)
            except BaseException:
                await txn.rollback()
                raise

            log.info("Transfer completed", transfer_id=transfer.id, attempt=attempt)
            return TransferResponse.from_transfer(transfer)

        log.error("Transfer failed after repeated deadlocks", max_attempts=MAX_ATTEMPTS)
        raise last_error

    def _resolve_existing(self, request: TransferRequest, existing: Transfer) -> TransferResponse:
        if not _matches(request, existing):
            logger.warning(
                "Reference reused with a different transfer body",
                reference=request.reference,
                transfer_id=existing.id,
            )
            raise IdempotencyConflictError(request.reference)
        return TransferResponse.from_transfer(existing)

    async def _attempt(self, request: TransferRequest, txn: Transaction) -> Transfer:
        source_id = request.source_account_id
        dest_id = request.destination_account_id
        amount = request.amount

        # Lock in a fixed order so two transfers over the same pair never wait on each other in a cycle
        locked = {}
        for account_id in sorted((source_id, dest_id)):
            locked[account_id] = await self.account_repo.find_by_id_for_update(account_id, txn)

        source = locked[source_id]
        dest = locked[dest_id]
        if source is None:
            raise AccountNotFoundError(source_id)
        if dest is None:
            raise AccountNotFoundError(dest_id)

        self._validate(request, source, dest)

        source_before = source.available_balance
        dest_before = dest.available_balance

        transfer = await self.transfer_repo.create({
            "source_account_id": source_id,
            "destination_account_id": dest_id,
            "amount": amount,
            "currency": request.currency,
            "reference": request.reference,
        }, txn)

        await self.account_repo.update_balances(source_id, -amount, -amount, txn)
        await self.account_repo.update_balances(dest_id, amount, amount, txn)

        source_after = source_before - amount
        dest_after = dest_before + amount

        await self.ledger_repo.create_many([
            {
                "transfer_id": transfer.id,
                "account_id": source_id,
                "type": EntryType.DEBIT,
                "amount": amount,
                "balance_after": source_after,
            },
            {
                "transfer_id": transfer.id,
                "account_id": dest_id,
                "type": EntryType.CREDIT,
                "amount": amount,
                "balance_after": dest_after,
            },
        ], txn)

        await self.audit_repo.create({
            "transfer_id": transfer.id,
            "reference": request.reference,
            "source_account_id": source_id,
            "destination_account_id": dest_id,
            "amount": amount,
            "currency": request.currency,
            "balance_source_before": source_before,
            "balance_source_after": source_after,
            "balance_dest_before": dest_before,
            "balance_dest_after": dest_after,
        }, txn)

        return transfer

    def _validate(self, request: TransferRequest, source: Account, dest: Account) -> None:
        for account in (source, dest):
            if account.status != AccountStatus.ACTIVE:
                logger.warning(
                    "Account not active",
                    account_id=account.id,
                    status=account.status.value,
                    reference=request.reference,
                )
                raise AccountNotActiveError(account.id, account.status.value)

        if source.currency != request.currency or dest.currency != request.currency:
            logger.warning(
                "Currency mismatch",
                currency=request.currency,
                source_currency=source.currency,
                destination_currency=dest.currency,
                reference=request.reference,
            )
            raise CurrencyMismatchError(request.currency, source.currency, dest.currency)

        if source.available_balance < request.amount:
            logger.warning(
                "Insufficient funds for transfer",
                account_id=source.id,
                current_balance=str(source.available_balance),
                requested_amount=str(request.amount),
                reference=request.reference,
            )
            raise InsufficientBalanceError(source.id)

    async def get_transfer(self, transfer_id: str) -> TransferResponse:
        transfer = await self.transfer_repo.find_by_id(transfer_id)
        if transfer is None:
            raise TransferNotFoundError(transfer_id)
        return TransferResponse.from_transfer(transfer)

    async def get_transfer_by_reference(self, reference: str) -> TransferResponse:
        transfer = await self.transfer_repo.find_by_reference(reference)
        if transfer is None:
            raise TransferNotFoundError(reference)
        return TransferResponse.from_transfer(transfer)


class AccountService:
    """Read paths, status changes and reconciliation for accounts."""

    def __init__(
        self,
        account_repo: AccountRepository,
        transfer_repo: TransferRepository,
        ledger_repo: LedgerEntryRepository,
    ):
        self.account_repo = account_repo
        self.transfer_repo = transfer_repo
        self.ledger_repo = ledger_repo

    async def get_account(self, account_id: str) -> Account:
        account = await self.account_repo.find_by_id(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def update_status(self, account_id: str, status: AccountStatus) -> Account:
        account = await self.account_repo.update_status(account_id, status)
        if account is None:
            raise AccountNotFoundError(account_id)
        logger.info("Account status updated", account_id=account_id, status=status.value)
        return account

    async def list_transfers(self, account_id: str, limit: int, offset: int) -> Tuple[List[Transfer], int]:
        await self.get_account(account_id)
        return await self.transfer_repo.find_all_by_account_id(account_id, limit, offset)

    async def list_ledger_entries(self, account_id: str, limit: int, offset: int) -> Tuple[List[LedgerEntry], int]:
        await self.get_account(account_id)
        return await self.ledger_repo.find_all_by_account_id(account_id, limit, offset)

    async def reconcile(self, account_id: str) -> ReconciliationResponse:
        """Rebuild the balance from the ledger and compare it with the stored balances."""
        account = await self.get_account(account_id)
        entries = await self.ledger_repo.iter_all_by_account_id(account_id)

        credits = sum((e.amount for e in entries if e.type == EntryType.CREDIT), Decimal("0"))
        debits = sum((e.amount for e in entries if e.type == EntryType.DEBIT), Decimal("0"))
        computed = credits - debits
        balanced = computed == account.ledger_balance == account.available_balance

        if not balanced:
            logger.error(
                "Ledger does not reconcile",
                account_id=account_id,
                computed_balance=str(computed),
                ledger_balance=str(account.ledger_balance),
                available_balance=str(account.available_balance),
            )

        return ReconciliationResponse(
            account_id=account_id,
            available_balance=account.available_balance,
            ledger_balance=account.ledger_balance,
            total_credits=credits,
            total_debits=debits,
            computed_balance=computed,
            entries_count=len(entries),
            balanced=balanced,
        )


class AdminService:
    """Account provisioning and administrative top-ups."""

    def __init__(
        self,
        account_repo: AccountRepository,
        ledger_repo: LedgerEntryRepository,
        begin_transaction: Callable[[], Transaction],
    ):
        self.account_repo = account_repo
        self.ledger_repo = ledger_repo
        self.begin_transaction = begin_transaction

    async def create_account(self, request: CreateAccountRequest, account_id: Optional[str] = None) -> Account:
        account = await self.account_repo.create(
            business_id=request.business_id,
            currency=request.currency,
            account_id=account_id,
        )
        logger.info("Account created", account_id=account.id, currency=account.currency)
        return account

    async def top_up_balance(self, account_id: str, amount: Decimal) -> Account:
        """Credit an account outside of any transfer, leaving one CREDIT entry without a transfer id."""
        txn = self.begin_transaction()
        try:
            account = await self.account_repo.find_by_id_for_update(account_id, txn)
            if account is None:
                raise AccountNotFoundError(account_id)
            if account.status != AccountStatus.ACTIVE:
                raise AccountNotActiveError(account_id, account.status.value)

            balance_after = account.available_balance + amount
            await self.account_repo.update_balances(account_id, amount, amount, txn)
            await self.ledger_repo.create_for_top_up(account_id, amount, balance_after, txn)
            await txn.commit()
        except BaseException:
            await txn.rollback()
            raise

        logger.info("Balance topped up", account_id=account_id, amount=str(amount), balance_after=str(balance_after))
        updated = await self.account_repo.find_by_id(account_id)
        if updated is None:
            raise AccountNotFoundError(account_id)
        return updated


# Factory functions for dependency injection
def get_transfer_service(
    account_repo: AccountRepository,
    transfer_repo: TransferRepository,
    ledger_repo: LedgerEntryRepository,
    audit_repo: AuditLogRepository,
    begin_transaction: Callable[[], Transaction],
) -> TransferService:
    return TransferService(account_repo, transfer_repo, ledger_repo, audit_repo, begin_transaction)


def get_account_service(
    account_repo: AccountRepository,
    transfer_repo: TransferRepository,
    ledger_repo: LedgerEntryRepository,
) -> AccountService:
    return AccountService(account_repo, transfer_repo, ledger_repo)


def get_admin_service(
    account_repo: AccountRepository,
    ledger_repo: LedgerEntryRepository,
    begin_transaction: Callable[[], Transaction],
) -> AdminService:
    return AdminService(account_repo, ledger_repo, begin_transaction)
