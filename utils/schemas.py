"""
Pydantic Schemas - Data Validation Models

Defines the Pydantic schemas used throughout the export worker:
- Inbound "export ready" job descriptions (queue payload)
- Job lease records persisted in the lease store

Usage:
    from utils.schemas import ExportRequest

    request = ExportRequest(**payload)
    prefix = f"exports/{request.customer_id}/{request.jobId}/"
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, ClassVar, Optional

from pydantic import BaseModel, Field, field_validator

UNKNOWN_CUSTOMER = "unknown"


class ExportMetadata(BaseModel):
    """Optional descriptive metadata attached to an export request."""

    customerId: Optional[str] = Field(default=None, description="Customer owning the export")
    requestedBy: Optional[str] = Field(default=None, description="User who requested the export")
    exportType: Optional[str] = Field(default=None, description="Export type label")


class ExportRequest(BaseModel):
    """Export-ready notification consumed from the queue.

    Validates:
    - jobId: string, non-empty
    - exportId: string, non-empty
    """

    jobId: str = Field(..., min_length=1, description="Business job identifier")
    exportId: str = Field(..., min_length=1, description="Export identifier at the Export API")
    callbackUrl: Optional[str] = Field(default=None, description="Optional completion callback")
    metadata: ExportMetadata = Field(default_factory=ExportMetadata)

    @field_validator("jobId", "exportId")
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Identifiers must contain something other than whitespace."""
        if not v.strip():
            raise ValueError("must be a non-empty string")
        return v.strip()

    @field_validator("metadata", mode="before")
    @classmethod
    def default_metadata(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def customer_id(self) -> str:
        return self.metadata.customerId or UNKNOWN_CUSTOMER


class LeaseStatus(str, Enum):
    """Persisted lease states. A lease is created directly IN_PROGRESS."""

    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int | str | bytes) -> datetime:
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


class JobLease(BaseModel):
    """Durable ownership and progress record for one queue delivery.

    Timestamps are serialized as epoch milliseconds so the backing store can
    compare `lease_expiry` atomically.
    """

    lease_key: str
    status: LeaseStatus
    lease_expiry: datetime
    owner_token: str
    business_job_id: str
    error_detail: Optional[str] = None
    progress_marker: Optional[str] = None
    records_processed: int = 0
    created_at: datetime
    updated_at: datetime
    expire_after: datetime

    TIMESTAMP_FIELDS: ClassVar[tuple[str, ...]] = ("lease_expiry", "created_at", "updated_at", "expire_after")

    def to_fields(self) -> dict[str, str]:
        """Flatten into string fields suitable for a Redis hash."""
        return encode_fields(self.model_dump(exclude_none=True))

    @classmethod
    def from_fields(cls, fields: dict[Any, Any]) -> "JobLease":
        decoded: dict[str, Any] = {}
        for key, value in fields.items():
            if isinstance(key, bytes):
                key = key.decode("utf-8")
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            decoded[key] = value

        for name in cls.TIMESTAMP_FIELDS:
            if name in decoded:
                decoded[name] = from_epoch_ms(decoded[name])

        return cls(**decoded)


def encode_fields(values: dict[str, Any]) -> dict[str, str]:
    """Encode lease field values the way they are stored."""
    encoded: dict[str, str] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, datetime):
            encoded[key] = str(to_epoch_ms(value))
        elif isinstance(value, Enum):
            encoded[key] = str(value.value)
        else:
            encoded[key] = str(value)
    return encoded
