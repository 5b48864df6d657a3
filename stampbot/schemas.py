"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the command routes
- Response models for API responses

Verification inputs and proofs live in verification.py and proofs.py.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from stampbot.proofs import Proof


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SubscribeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128, description="Subscriber identity")
    username: Optional[str] = Field(None, max_length=256, description="Optional display name")

    @field_validator("user_id")
    @classmethod
    def strip_user_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("user_id must not be blank")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [{"user_id": "123456789", "username": "alice"}]
        }
    }


class UnsubscribeRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128, description="Subscriber identity")


class BroadcastRequest(BaseModel):
    subject: str = Field(..., min_length=1, max_length=256)
    body: str = Field(..., min_length=1, max_length=4096)


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class VerdictResponse(BaseModel):
    """A verdict as shown to callers."""
    verdict: str = Field(..., description="Verdict name")
    code: int = Field(..., description="Numeric verdict code")
    label: str = Field(..., description="Human-readable verdict")
    category: str = Field(..., description="input_rejection, transient, policy or internal")
    retryable: bool


class SubscriberResponse(BaseModel):
    """Subscriber row, timestamps rendered as ISO-8601 UTC."""
    user_id: str
    username: Optional[str] = None
    subscribed: bool
    consent_token: str
    consent_timestamp: str
    created_at: str
    updated_at: str


class MessageResponse(BaseModel):
    id: int
    subject: str
    body: str
    sent_at: str


class SubscribeResponse(BaseModel):
    status: str = Field(..., description="subscribed or already_subscribed")
    verdict: Optional[VerdictResponse] = None
    subscriber: SubscriberResponse
    proof: Optional[Proof] = None


class UnsubscribeResponse(BaseModel):
    status: str = Field(default="unsubscribed")
    verdict: VerdictResponse
    removed_at: str
    latency_ms: int
    proof: Proof


class VerifyResponse(BaseModel):
    message: MessageResponse
    proof: Optional[Proof] = Field(None, description="Null when the stored proof is unreadable")
    signature_valid: bool


class StatsResponse(BaseModel):
    total_subscribers: int = Field(..., ge=0)
    active_subscribers: int = Field(..., ge=0)
    total_messages: int = Field(..., ge=0)


class StatusResponse(BaseModel):
    subscriber: SubscriberResponse
    recent_messages: List[MessageResponse] = Field(default_factory=list)
    consent_proof: Optional[Proof] = None
    stats: StatsResponse


class BroadcastResponse(BaseModel):
    attempted: int
    sent: int
    skipped: int
    failed: int
    halted_by: Optional[VerdictResponse] = None
    message_ids: List[int] = Field(default_factory=list)


class HelpResponse(BaseModel):
    name: str
    description: str
    commands: dict


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
