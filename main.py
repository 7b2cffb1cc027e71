from fastapi import FastAPI, HTTPException, Request, Depends, Query, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from decimal import Decimal
from typing import Optional
from uuid import UUID
import logging
import structlog
import time
import uuid
from contextlib import asynccontextmanager

from config import get_settings
from demo import ConcurrencyDemoService
from errors import ERROR_DESCRIPTIONS, AppError, EndpointDisabledError, ErrorCode
from models import (
    Account,
    ConcurrencyDemoRequest,
    ConcurrencyDemoResponse,
    CreateAccountRequest,
    ErrorResponse,
    HealthResponse,
    LedgerEntryListResponse,
    PageMeta,
    ReconciliationResponse,
    TopUpRequest,
    TransferListResponse,
    TransferRequest,
    TransferResponse,
    UpdateAccountStatusRequest,
)
from repositories import (
    get_account_repository,
    get_audit_log_repository,
    get_database,
    get_ledger_entry_repository,
    get_transfer_repository,
)
from services import (
    AccountService,
    AdminService,
    TransferService,
    get_account_service,
    get_admin_service,
    get_transfer_service,
)

settings = get_settings()

# Configure structured logging
logging.basicConfig(format="%(message)s", level=settings.log_level.upper())

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer() if settings.log_format == "json" else structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"

# Demo accounts seeded on startup when seed_demo_accounts is set
DEMO_ACCOUNTS = [
    ("9816b2b9-8db7-44cc-abdc-172fde645d32", "biz-001"),
    ("8a6823d7-c652-4d67-8859-0e62ae5b8f52", "biz-002"),
]
DEMO_CURRENCY = "NGN"
DEMO_TOP_UP = Decimal("100000")

# Rate limiting
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)


# Dependency injection
def get_service(
    account_repo=Depends(get_account_repository),
    transfer_repo=Depends(get_transfer_repository),
    ledger_repo=Depends(get_ledger_entry_repository),
    audit_repo=Depends(get_audit_log_repository),
    database=Depends(get_database),
) -> TransferService:
    return get_transfer_service(account_repo, transfer_repo, ledger_repo, audit_repo, database.begin)


def get_accounts(
    account_repo=Depends(get_account_repository),
    transfer_repo=Depends(get_transfer_repository),
    ledger_repo=Depends(get_ledger_entry_repository),
) -> AccountService:
    return get_account_service(account_repo, transfer_repo, ledger_repo)


def get_admin(
    account_repo=Depends(get_account_repository),
    ledger_repo=Depends(get_ledger_entry_repository),
    database=Depends(get_database),
) -> AdminService:
    return get_admin_service(account_repo, ledger_repo, database.begin)


def require_test_endpoints():
    if not get_settings().enable_test_endpoints:
        raise EndpointDisabledError()


async def seed_demo_accounts():
    admin = get_admin_service(get_account_repository(), get_ledger_entry_repository(), get_database().begin)
    for account_id, business_id in DEMO_ACCOUNTS:
        if await get_account_repository().find_by_id(account_id) is not None:
            continue
        await admin.create_account(
            CreateAccountRequest(business_id=business_id, currency=DEMO_CURRENCY),
            account_id=account_id,
        )
        await admin.top_up_balance(account_id, DEMO_TOP_UP)
    logger.info("Demo accounts seeded", accounts=[a for a, _ in DEMO_ACCOUNTS])


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Starting Transfer Engine API", version=settings.app_version)
    if settings.seed_demo_accounts:
        await seed_demo_accounts()
    yield
    # Shutdown
    logger.info("Shutting down Transfer Engine API")


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    description="Account-to-account transfers with idempotent retries and an append-only ledger",
    version=settings.app_version,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)


# Request logging middleware
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    request.state.request_id = request_id
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)

    # Log request
    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        client_ip=request.client.host if request.client else None
    )

    response = await call_next(request)

    # Log response
    process_time = time.time() - start_time
    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time=round(process_time, 4)
    )

    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def _error_response(request: Request, status_code: int, detail: str, error_code: str, context=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(
            detail=detail,
            error_code=error_code,
            context=context or {},
            request_id=getattr(request.state, "request_id", None),
        ).model_dump(mode="json")
    )


# Health check endpoint
@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health Check",
    description="Check API health and get system statistics"
)
async def health_check(
    account_repo=Depends(get_account_repository),
    transfer_repo=Depends(get_transfer_repository)
):
    try:
        accounts_count = await account_repo.count()
        transfers_count = await transfer_repo.count()

        return HealthResponse(
            status="healthy",
            accounts_count=accounts_count,
            transfers_processed=transfers_count
        )
    except Exception as e:
        logger.error("Health check failed", error=str(e))
        raise HTTPException(
            status_code=500,
            detail="Health check failed"
        )


# Main transfer endpoint
@app.post(
    "/transfers",
    response_model=TransferResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Execute Transfer",
    description="Move money between two accounts; safe to retry with the same reference",
    responses={
        201: {"description": "Transfer completed (or an identical earlier transfer returned)"},
        400: {"model": ErrorResponse, "description": "Validation error"},
        404: {"model": ErrorResponse, "description": "Account not found"},
        409: {"model": ErrorResponse, "description": "Reference reused with a different body"},
        422: {"model": ErrorResponse, "description": "Business rule violation"},
        429: {"description": "Rate limit exceeded"},
        500: {"model": ErrorResponse, "description": "Internal server error"}
    }
)
@limiter.limit(lambda: f"{get_settings().rate_limit_per_minute}/minute")
async def create_transfer(
    request: Request,
    transfer_request: TransferRequest,
    service: TransferService = Depends(get_service)
):
    logger.info(
        "Transfer request received",
        reference=transfer_request.reference,
        source_account_id=transfer_request.source_account_id,
        destination_account_id=transfer_request.destination_account_id
    )

    result = await service.execute_transfer(transfer_request)

    logger.info(
        "Transfer request completed successfully",
        transfer_id=result.id,
        reference=transfer_request.reference
    )

    return result


@app.get("/transfers", response_model=TransferResponse, summary="Find Transfer By Reference")
async def get_transfer_by_reference(
    reference: str = Query(..., min_length=1, max_length=255),
    service: TransferService = Depends(get_service)
):
    return await service.get_transfer_by_reference(reference.strip())


@app.get("/transfers/{transfer_id}", response_model=TransferResponse, summary="Get Transfer")
async def get_transfer(transfer_id: UUID, service: TransferService = Depends(get_service)):
    return await service.get_transfer(str(transfer_id))


# Accounts
@app.get("/accounts/{account_id}", response_model=Account, summary="Get Account")
async def get_account(account_id: UUID, service: AccountService = Depends(get_accounts)):
    return await service.get_account(str(account_id))


@app.patch("/accounts/{account_id}", response_model=Account, summary="Update Account Status")
async def patch_account(
    account_id: UUID,
    body: UpdateAccountStatusRequest,
    service: AccountService = Depends(get_accounts)
):
    return await service.update_status(str(account_id), body.status)


@app.get("/accounts/{account_id}/transfers", response_model=TransferListResponse, summary="List Account Transfers")
async def list_account_transfers(
    account_id: UUID,
    limit: Optional[int] = Query(default=None),
    offset: int = Query(default=0),
    service: AccountService = Depends(get_accounts)
):
    limit, offset = _page(limit, offset)
    transfers, total = await service.list_transfers(str(account_id), limit, offset)
    return TransferListResponse(
        transfers=[TransferResponse.from_transfer(t) for t in transfers],
        meta=PageMeta(total=total, limit=limit, offset=offset),
    )


@app.get(
    "/accounts/{account_id}/ledger-entries",
    response_model=LedgerEntryListResponse,
    summary="List Account Ledger Entries"
)
async def list_account_ledger_entries(
    account_id: UUID,
    limit: Optional[int] = Query(default=None),
    offset: int = Query(default=0),
    service: AccountService = Depends(get_accounts)
):
    limit, offset = _page(limit, offset)
    entries, total = await service.list_ledger_entries(str(account_id), limit, offset)
    return LedgerEntryListResponse(ledger_entries=entries, meta=PageMeta(total=total, limit=limit, offset=offset))


@app.get(
    "/accounts/{account_id}/reconciliation",
    response_model=ReconciliationResponse,
    summary="Reconcile Account Against Ledger"
)
async def reconcile_account(account_id: UUID, service: AccountService = Depends(get_accounts)):
    return await service.reconcile(str(account_id))


def _page(limit, offset):
    current = get_settings()
    if limit is None:
        limit = current.default_page_size
    return min(max(1, limit), current.max_page_size), max(0, offset)


# Test-only endpoints
@app.post(
    "/accounts",
    response_model=Account,
    status_code=status.HTTP_201_CREATED,
    summary="Create Account",
    dependencies=[Depends(require_test_endpoints)]
)
async def create_account(body: CreateAccountRequest, admin: AdminService = Depends(get_admin)):
    return await admin.create_account(body)


@app.post(
    "/accounts/{account_id}/top-up",
    response_model=Account,
    summary="Top Up Balance",
    dependencies=[Depends(require_test_endpoints)]
)
async def top_up_account(account_id: UUID, body: TopUpRequest, admin: AdminService = Depends(get_admin)):
    return await admin.top_up_balance(str(account_id), body.amount)


@app.post(
    "/demo/concurrent-transfers",
    response_model=ConcurrencyDemoResponse,
    summary="Concurrent Transfers Demo",
    dependencies=[Depends(require_test_endpoints)]
)
async def concurrent_transfers_demo(
    body: ConcurrencyDemoRequest,
    service: TransferService = Depends(get_service),
    account_repo=Depends(get_account_repository)
):
    return await ConcurrencyDemoService(service, account_repo).run(body)


@app.get("/errors", summary="Error Codes", description="Every error_code the API can return")
async def list_error_codes():
    return {code.value: description for code, description in ERROR_DESCRIPTIONS.items()}


# Exception handlers
@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    logger.warning("Request failed", error_code=exc.code.value, detail=exc.message, **exc.context)
    return _error_response(request, exc.status_code, exc.message, exc.code.value, exc.context)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    fields = [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
    detail = "; ".join(f["msg"] for f in fields) or "Validation failed"
    return _error_response(request, 400, detail, ErrorCode.VALIDATION_ERROR.value, {"fields": fields})


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, str(exc.detail), f"HTTP_{exc.status_code}")


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled exception",
        error=str(exc),
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return _error_response(request, 500, "Internal server error", ErrorCode.INTERNAL_ERROR.value)


# Root endpoint
@app.get("/", include_in_schema=False)
async def root():
    return {"message": settings.app_name, "docs": "/docs"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
