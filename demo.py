import asyncio
import time
from typing import List, Tuple
import structlog

from errors import AccountNotFoundError, AppError, ErrorCode
from models import (
    ConcurrencyDemoRequest,
    ConcurrencyDemoResponse,
    ConcurrencyDemoSummary,
    DirectionSummary,
    TransferOutcome,
    TransferRequest,
)
from repositories import AccountRepository
from services import TransferService

logger = structlog.get_logger()

SOURCE_TO_DESTINATION = "source_to_destination"
DESTINATION_TO_SOURCE = "destination_to_source"


class ConcurrencyDemoService:
    """Fires transfers in both directions between two accounts at once and reports the outcome."""

    def __init__(self, transfer_service: TransferService, account_repo: AccountRepository):
        self.transfer_service = transfer_service
        self.account_repo = account_repo

    async def run(self, request: ConcurrencyDemoRequest) -> ConcurrencyDemoResponse:
        start = time.monotonic()
        source_before, dest_before = await self._balances(request)

        base_ref = f"demo-{time.time_ns()}"
        tasks: List[Tuple[str, TransferRequest]] = []
        for i in range(request.source_to_dest.count):
            tasks.append((SOURCE_TO_DESTINATION, TransferRequest(
                source_account_id=request.source_account_id,
                destination_account_id=request.destination_account_id,
                amount=request.source_to_dest.amount_per_transfer,
                currency=request.currency,
                reference=f"{base_ref}-a2b-{i}",
            )))
        for i in range(request.dest_to_source.count):
            tasks.append((DESTINATION_TO_SOURCE, TransferRequest(
                source_account_id=request.destination_account_id,
                destination_account_id=request.source_account_id,
                amount=request.dest_to_source.amount_per_transfer,
                currency=request.currency,
                reference=f"{base_ref}-b2a-{i}",
            )))

        logger.info("Starting concurrent transfers demo", transfers=len(tasks), base_reference=base_ref)
        outcomes = await asyncio.gather(*(self._run_one(direction, req) for direction, req in tasks))
        duration_ms = int((time.monotonic() - start) * 1000)

        source_after, dest_after = await self._balances(request)

        summary = ConcurrencyDemoSummary(
            duration_ms=duration_ms,
            source_account_id=request.source_account_id,
            destination_account_id=request.destination_account_id,
            source_balance_before=source_before,
            source_balance_after=source_after,
            destination_balance_before=dest_before,
            destination_balance_after=dest_after,
            source_to_dest=self._summarize(outcomes, SOURCE_TO_DESTINATION, request.source_to_dest.count),
            dest_to_source=self._summarize(outcomes, DESTINATION_TO_SOURCE, request.dest_to_source.count),
        )
        logger.info(
            "Concurrent transfers demo finished",
            duration_ms=duration_ms,
            succeeded=summary.source_to_dest.succeeded + summary.dest_to_source.succeeded,
            failed=summary.source_to_dest.failed + summary.dest_to_source.failed,
        )
        return ConcurrencyDemoResponse(summary=summary, transfers=list(outcomes))

    async def _balances(self, request: ConcurrencyDemoRequest):
        source = await self.account_repo.find_by_id(request.source_account_id)
        if source is None:
            raise AccountNotFoundError(request.source_account_id)
        dest = await self.account_repo.find_by_id(request.destination_account_id)
        if dest is None:
            raise AccountNotFoundError(request.destination_account_id)
        return source.available_balance, dest.available_balance

    async def _run_one(self, direction: str, request: TransferRequest) -> TransferOutcome:
        try:
            result = await self.transfer_service.execute_transfer(request)
        except Exception as e:
            code = e.code.value if isinstance(e, AppError) else ErrorCode.INTERNAL_ERROR.value
            return TransferOutcome(
                reference=request.reference,
                direction=direction,
                amount=request.amount,
                status="failed",
                error_code=code,
                error_message=str(e),
            )
        return TransferOutcome(
            reference=result.reference,
            direction=direction,
            amount=result.amount,
            status="completed",
            transfer_id=result.id,
        )

    @staticmethod
    def _summarize(outcomes: List[TransferOutcome], direction: str, requested: int) -> DirectionSummary:
        mine = [o for o in outcomes if o.direction == direction]
        succeeded = sum(1 for o in mine if o.status == "completed")
        return DirectionSummary(requested=requested, succeeded=succeeded, failed=len(mine) - succeeded)
