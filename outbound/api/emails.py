"""Email queue API endpoints."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from outbound.api.dependencies import get_service
from outbound.email.models import MessageStatus, OutboundMessage
from outbound.errors import MessageValidationError
from outbound.service import OutboundService

router = APIRouter(prefix="/emails", tags=["Emails"])

ServiceDep = Annotated[OutboundService, Depends(get_service)]


class EmailCreateRequest(BaseModel):
    """Request to queue an email."""

    recipient: str = Field(..., description="Destination address")
    subject: str = Field(..., description="Subject line")
    body: str = Field(default="", description="HTML body")
    scheduled_for: datetime | None = Field(
        default=None,
        description="Earliest send time (null = now)",
    )


class EmailQueuedResponse(BaseModel):
    id: str


class EmailStatusResponse(BaseModel):
    """Delivery status of a queued email."""

    id: str
    recipient: str
    subject: str
    status: MessageStatus
    attempts: int
    last_error: str | None
    scheduled_for: str
    sent_at: str | None
    created_at: str

    @classmethod
    def from_message(cls, message: OutboundMessage) -> "EmailStatusResponse":
        return cls(
            id=message.id,
            recipient=message.recipient,
            subject=message.subject,
            status=message.status,
            attempts=message.attempts,
            last_error=message.last_error,
            scheduled_for=message.scheduled_for.isoformat(),
            sent_at=message.sent_at.isoformat() if message.sent_at else None,
            created_at=message.created_at.isoformat(),
        )


@router.post(
    "",
    response_model=EmailQueuedResponse,
    responses={
        202: {"description": "Email queued"},
        422: {"description": "Invalid recipient or subject"},
    },
    status_code=202,
)
async def queue_email(
    request: EmailCreateRequest,
    service: ServiceDep,
) -> EmailQueuedResponse:
    """Queue an email for delivery by the dispatcher."""
    try:
        message_id = await service.enqueue_email(
            request.recipient,
            request.subject,
            request.body,
            request.scheduled_for,
        )
    except MessageValidationError as e:
        raise HTTPException(status_code=422, detail=e.message) from e

    return EmailQueuedResponse(id=message_id)


@router.get(
    "/{message_id}",
    response_model=EmailStatusResponse,
    responses={
        404: {"description": "Email not found"},
    },
)
async def get_email(message_id: str, service: ServiceDep) -> EmailStatusResponse:
    """Get the delivery status of a queued email."""
    message = await service.get_email(message_id)
    if message is None:
        raise HTTPException(status_code=404, detail=f"Email {message_id} not found")
    return EmailStatusResponse.from_message(message)
