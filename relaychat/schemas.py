"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the local ingest and peer relay endpoints
- Response models for API responses
- Event builders for the live subscription stream
"""

from typing import Any, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendRequest(BaseModel):
    """
    Body of a message submitted by a local client.

    Presence and type are checked here; trimming, emptiness and length
    limits are enforced by the gateway so every ingest path shares them.
    """
    message: str = Field(..., description="Message text")
    sender: str = Field(..., description="Display name of the sender")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"message": "hi", "sender": "alice"}
            ]
        }
    }


class RelayRequest(BaseModel):
    """Body of a message forwarded by the paired node."""
    message: str = Field(..., description="Message text")
    sender: Optional[str] = Field(
        None,
        description="Display name of the original sender"
    )
    timestamp: Optional[str] = Field(
        None,
        description="Time the peer accepted the message (ISO-8601 UTC)"
    )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class MessageResponse(BaseModel):
    """
    A stored message as seen by clients.
    Maps ORM fields to the wire names used by chat clients.
    """
    id: int = Field(..., description="Per-node message id, strictly increasing")
    sender: str = Field(..., description="Display name of the sender")
    body: str = Field(
        ...,
        alias="message",
        serialization_alias="message",
        description="Message text"
    )
    created_at: str = Field(
        ...,
        alias="timestamp",
        serialization_alias="timestamp",
        description="Time this node accepted the message"
    )
    origin: str = Field(..., description="local or relayed")
    sent_at: Optional[str] = Field(
        None,
        description="Peer timestamp for relayed messages"
    )

    model_config = {
        "populate_by_name": True,  # Allow both "message" and "body"
        "from_attributes": True,  # Allow creating from ORM objects
    }


class IngestResponse(BaseModel):
    """Response for a successfully stored message."""
    success: bool = Field(default=True)
    status: str = Field(default="Message received", description="Operation status")
    message: str = Field(default="Message sent and saved")
    data: MessageResponse


class SnapshotResponse(BaseModel):
    """Wrapped polling snapshot."""
    success: bool = Field(default=True)
    data: list[MessageResponse] = Field(
        default_factory=list,
        description="Every message known to this node, in append order"
    )


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


# =============================================================================
# Live Subscription Events
# =============================================================================

def serialize_message(message: Any) -> dict:
    """Render an ORM message as the JSON dict clients receive."""
    return MessageResponse.model_validate(message).model_dump(by_alias=True)


def make_initial_messages(messages: list) -> dict:
    return {
        "type": "initial_messages",
        "messages": [serialize_message(m) for m in messages],
    }


def make_new_message(message: Any) -> dict:
    return {"type": "new_message", "message": serialize_message(message)}


def make_error(code: str, message: str) -> dict:
    return {"type": "error", "error": {"code": code, "message": message}}
