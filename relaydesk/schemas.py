"""
Pydantic schemas for request/response validation.

This module contains:
- Enumerations for message status, verification status and error kinds
- Request models for operator input and bulk import
- The MessageRecord snapshot shared by the store and the dispatcher
- Outcome models returned by the external-service clients
- Response models for API responses
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# =============================================================================
# Enumerations
# =============================================================================

class MessageStatus(str, Enum):
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    UNVERIFIED = "unverified"
    PENDING = "pending"


class ErrorKind(str, Enum):
    """
    Machine-distinguishable reason attached to a failed message.

    SKIPPED marks conversation members that were never attempted because
    an earlier message of the same conversation hit ORDER_VIOLATION.
    """
    ORDER_VIOLATION = "ORDER_VIOLATION"
    TRANSPORT_ERROR = "TRANSPORT_ERROR"
    PROTOCOL_ERROR = "PROTOCOL_ERROR"
    EXCEPTION = "EXCEPTION"
    SKIPPED = "SKIPPED"


class DeliveryError(BaseModel):
    """Error kind plus human-readable text recorded on a failed message."""
    kind: ErrorKind = Field(..., description="Machine-distinguishable error kind")
    detail: str = Field("", description="Human-readable error text")


# =============================================================================
# Pydantic Request Models
# =============================================================================

def strip_handle(v: str, info) -> str:
    v = v.strip()
    if not v:
        raise ValueError(f"{info.field_name} must not be blank")
    return v


def content_not_blank(v: str) -> str:
    if not v.strip():
        raise ValueError("content must not be blank")
    return v


class MessageCreate(BaseModel):
    """
    Operator input for a new message.

    Validates:
    - sender/receiver: non-blank handles (surrounding whitespace stripped)
    - scheduled_time: ISO-8601 datetime, with or without offset
    - content: non-blank text
    """
    sender: str = Field(..., min_length=1, description="Sender handle")
    receiver: str = Field(..., min_length=1, description="Receiver handle")
    scheduled_time: datetime = Field(
        ...,
        description="When the message claims to have been sent (ISO-8601)"
    )
    content: str = Field(..., min_length=1, description="Message body")

    strip_handles = field_validator("sender", "receiver")(strip_handle)
    check_content = field_validator("content")(content_not_blank)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "sender": "alice",
                    "receiver": "bob",
                    "scheduled_time": "2025-01-15T10:00:00",
                    "content": "Hello"
                }
            ]
        }
    }


class MessageUpdate(MessageCreate):
    """Full replacement of the editable fields of a message."""


class MessageRecord(BaseModel):
    """
    Snapshot of one message as held by the Message Store.

    This is also the import/export record: a list of MessageRecord
    serialized as JSON round-trips without loss.
    """
    id: str
    sender: str
    receiver: str
    scheduled_time: datetime
    unix_timestamp: int
    content: str
    status: MessageStatus = MessageStatus.PENDING
    delivery_receipt_id: Optional[int] = None
    verification_status: Optional[VerificationStatus] = None
    last_error: Optional[DeliveryError] = None


class MessageImport(BaseModel):
    """
    One record of a bulk import.

    unix_timestamp is accepted for compatibility with exported files but is
    always recomputed from scheduled_time by the store. A record exported
    while in flight ("sending") comes back as pending, and last_error is
    only kept on failed records.
    """
    id: Optional[str] = Field(None, min_length=1)
    sender: str = Field(..., min_length=1)
    receiver: str = Field(..., min_length=1)
    scheduled_time: datetime
    unix_timestamp: Optional[int] = None
    content: str = Field(..., min_length=1)
    status: MessageStatus = MessageStatus.PENDING
    delivery_receipt_id: Optional[int] = None
    verification_status: Optional[VerificationStatus] = None
    last_error: Optional[DeliveryError] = None

    strip_handles = field_validator("sender", "receiver")(strip_handle)
    check_content = field_validator("content")(content_not_blank)

    @model_validator(mode="after")
    def normalize_state(self) -> "MessageImport":
        if self.status == MessageStatus.SENDING:
            self.status = MessageStatus.PENDING
        if self.status != MessageStatus.FAILED:
            self.last_error = None
        return self


class IdentityRequest(BaseModel):
    handle: str = Field("", description="Handle to look up in the directory")


# =============================================================================
# Client Outcome Models
# =============================================================================

class IdentityResult(BaseModel):
    """Result of a directory lookup. exists=False covers every failure."""
    exists: bool
    display_name: Optional[str] = None
    external_id: Optional[int] = None


class SendOutcome(BaseModel):
    """Typed result of a single relay send attempt."""
    success: bool
    delivery_receipt_id: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error_detail: Optional[str] = None

    @classmethod
    def failed(cls, kind: ErrorKind, detail: str) -> "SendOutcome":
        return cls(success=False, error_kind=kind, error_detail=detail)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


class MessagesListResponse(BaseModel):
    """All messages of the store in list order."""
    data: list[MessageRecord] = Field(default_factory=list)
    total: int = Field(..., ge=0)


class ImportResponse(BaseModel):
    imported: int = Field(..., ge=0, description="Number of records now in the store")


class ClearResponse(BaseModel):
    removed: int = Field(..., ge=0, description="Number of messages removed")


class VerifyResponse(BaseModel):
    verified: bool
    message: MessageRecord


class DispatchProgress(BaseModel):
    """
    Observable progress of the current (or last) dispatch run.

    current counts messages processed so far, including members skipped
    after an ordering failure; a finished, uncancelled run ends with
    current == total.
    """
    dispatch_id: Optional[str] = None
    current: int = Field(0, ge=0)
    total: int = Field(0, ge=0)
    running: bool = False
    cancelled: bool = False


class DispatchReport(BaseModel):
    """Summary of a finished dispatch run."""
    dispatch_id: str
    total: int = Field(..., ge=0)
    processed: int = Field(..., ge=0)
    sent: int = Field(0, ge=0)
    failed: int = Field(0, ge=0)
    skipped: int = Field(0, ge=0)
    cancelled: bool = False


class ConversationSummary(BaseModel):
    sender: str
    receiver: str
    count: int = Field(..., ge=1)


class DispatchPreview(BaseModel):
    """What a bulk send would touch, for the operator's confirmation step."""
    total: int = Field(..., ge=0)
    conversations: list[ConversationSummary] = Field(default_factory=list)
