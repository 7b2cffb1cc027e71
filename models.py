from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator, model_validator
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional
from datetime import datetime
from decimal import Decimal
import uuid


# Decimal in memory, number on the wire
Money = Annotated[Decimal, PlainSerializer(lambda v: float(v), return_type=float, when_used="json")]


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"
    CLOSED = "CLOSED"


class TransferStatus(str, Enum):
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"  # never persisted, see DESIGN.md


class EntryType(str, Enum):
    DEBIT = "DEBIT"
    CREDIT = "CREDIT"


def _validate_uuid(v: str) -> str:
    try:
        return str(uuid.UUID(v))
    except (ValueError, AttributeError, TypeError):
        raise ValueError("Invalid UUID format")


# Stored records

class Account(BaseModel):
    id: str
    business_id: str
    currency: str
    available_balance: Money
    ledger_balance: Money
    status: AccountStatus
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Transfer(BaseModel):
    id: str
    source_account_id: str
    destination_account_id: str
    amount: Money
    currency: str
    reference: str
    status: TransferStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class LedgerEntry(BaseModel):
    id: str
    transfer_id: Optional[str] = None
    account_id: str
    type: EntryType
    amount: Money
    balance_after: Optional[Money] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AuditLog(BaseModel):
    id: str
    transfer_id: str
    reference: str
    source_account_id: str
    destination_account_id: str
    amount: Money
    currency: str
    balance_source_before: Money
    balance_source_after: Money
    balance_dest_before: Money
    balance_dest_after: Money
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Requests

class TransferRequest(BaseModel):
    source_account_id: str = Field(..., description="Account to debit")
    destination_account_id: str = Field(..., description="Account to credit")
    amount: Decimal = Field(
        ...,
        gt=0,
        max_digits=20,
        decimal_places=4,
        description="Positive transfer amount"
    )
    currency: str = Field(..., min_length=1, max_length=3, description="Currency code of both accounts")
    reference: str = Field(
        ...,
        min_length=1,
        max_length=255,
        description="Client idempotency key, unique per logical transfer"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "source_account_id": "9816b2b9-8db7-44cc-abdc-172fde645d32",
            "destination_account_id": "8a6823d7-c652-4d67-8859-0e62ae5b8f52",
            "amount": 1500.00,
            "currency": "NGN",
            "reference": "invoice-2024-0001"
        }
    })

    @field_validator("source_account_id", "destination_account_id")
    @classmethod
    def validate_account_id(cls, v):
        return _validate_uuid(v)

    @field_validator("reference")
    @classmethod
    def validate_reference(cls, v):
        if not v.strip():
            raise ValueError("Reference is required")
        return v

    @model_validator(mode="after")
    def validate_distinct_accounts(self):
        if self.source_account_id == self.destination_account_id:
            raise ValueError("Source and destination accounts must be different")
        return self


class CreateAccountRequest(BaseModel):
    business_id: str = Field(..., min_length=1, max_length=64)
    currency: str = Field(..., min_length=3, max_length=3, description="Currency must be 3 characters (e.g. USD)")


class TopUpRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=20, decimal_places=4)


class UpdateAccountStatusRequest(BaseModel):
    status: AccountStatus


class DirectionConfig(BaseModel):
    count: int = Field(..., ge=1, le=100)
    amount_per_transfer: Decimal = Field(..., gt=0, max_digits=20, decimal_places=4)


class ConcurrencyDemoRequest(BaseModel):
    source_account_id: str
    destination_account_id: str
    currency: str = Field(..., min_length=1, max_length=3)
    source_to_dest: DirectionConfig
    dest_to_source: DirectionConfig

    @field_validator("source_account_id", "destination_account_id")
    @classmethod
    def validate_account_id(cls, v):
        return _validate_uuid(v)

    @model_validator(mode="after")
    def validate_distinct_accounts(self):
        if self.source_account_id == self.destination_account_id:
            raise ValueError("Source and destination accounts must be different")
        return self


# Responses

class TransferResponse(BaseModel):
    id: str = Field(..., description="Transfer identifier")
    reference: str
    amount: Money
    currency: str
    source_account_id: str
    destination_account_id: str
    status: TransferStatus
    created_at: datetime

    @classmethod
    def from_transfer(cls, transfer: Transfer) -> "TransferResponse":
        return cls(
            id=transfer.id,
            reference=transfer.reference,
            amount=transfer.amount,
            currency=transfer.currency,
            source_account_id=transfer.source_account_id,
            destination_account_id=transfer.destination_account_id,
            status=transfer.status,
            created_at=transfer.created_at,
        )


class PageMeta(BaseModel):
    total: int
    limit: int
    offset: int


class TransferListResponse(BaseModel):
    transfers: List[TransferResponse]
    meta: PageMeta


class LedgerEntryListResponse(BaseModel):
    ledger_entries: List[LedgerEntry]
    meta: PageMeta


class ReconciliationResponse(BaseModel):
    account_id: str
    available_balance: Money
    ledger_balance: Money
    total_credits: Money
    total_debits: Money
    computed_balance: Money
    entries_count: int
    balanced: bool


class TransferOutcome(BaseModel):
    reference: str
    direction: Literal["source_to_destination", "destination_to_source"]
    amount: Money
    status: Literal["completed", "failed"]
    transfer_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class DirectionSummary(BaseModel):
    requested: int
    succeeded: int
    failed: int


class ConcurrencyDemoSummary(BaseModel):
    duration_ms: int
    source_account_id: str
    destination_account_id: str
    source_balance_before: Money
    source_balance_after: Money
    destination_balance_before: Money
    destination_balance_after: Money
    source_to_dest: DirectionSummary
    dest_to_source: DirectionSummary


class ConcurrencyDemoResponse(BaseModel):
    scenario: Literal["concurrent_transfers_bidirectional"] = "concurrent_transfers_bidirectional"
    summary: ConcurrencyDemoSummary
    transfers: List[TransferOutcome]


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    error_code: str = Field(..., description="Machine-readable error code")
    context: Dict[str, Any] = Field(default_factory=dict, description="Structured error details")
    request_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now, description="Error timestamp")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Service health status")
    timestamp: datetime = Field(default_factory=datetime.now)
    accounts_count: int = Field(..., description="Number of accounts in system")
    transfers_processed: int = Field(..., description="Total transfers completed")
