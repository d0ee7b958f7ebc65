"""Message, conversation and diagnostics endpoints."""

from typing import Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from mancy.app.core.logging import get_logger
from mancy.app.exceptions import AdmissionDenied
from mancy.app.middleware.request_id import get_request_id
from mancy.app.services.factory import ServiceContainer
from mancy.app.services.pipeline import InboundMessage, ReplyKind

logger = get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["messages"])


class MessageEvent(BaseModel):
    """Inbound chat-platform event."""
    principal_id: str = Field(..., min_length=1, max_length=64)
    text: str = Field(default="", max_length=4000)
    message_id: Optional[str] = None
    replied_to_id: Optional[str] = None
    mentions_bot: bool = False
    guild_id: Optional[str] = None
    display_name: Optional[str] = Field(default=None, max_length=100)


class ReplyResponse(BaseModel):
    reply_id: Optional[str] = None
    text: str
    kind: Literal["reply", "greeting", "rate_limited", "invalid", "error", "ignored"]
    from_cache: bool = False
    model_used: Optional[str] = None


class ResetResponse(BaseModel):
    principal_id: str
    conversation_cleared: bool
    cached_responses_purged: int


def get_container(request: Request) -> ServiceContainer:
    """FastAPI dependency returning the application's service container."""
    return request.app.state.container


@router.post("/messages", response_model=ReplyResponse)
async def post_message(
    event: MessageEvent,
    request: Request,
    container: ServiceContainer = Depends(get_container),
) -> ReplyResponse:
    """Process one inbound event and return what to send back.

    Raises:
        AdmissionDenied: When the rate limiter refuses the request (HTTP 429)
    """
    message = InboundMessage(
        principal_id=event.principal_id,
        text=event.text,
        message_id=event.message_id or get_request_id(request),
        replied_to_id=event.replied_to_id,
        mentions_bot=event.mentions_bot,
        guild_id=event.guild_id,
        display_name=event.display_name,
    )
    reply = await container.pipeline.handle(message)

    if reply.kind is ReplyKind.RATE_LIMITED:
        raise AdmissionDenied(
            wait_time=reply.wait_time or 0.0,
            reason=reply.denial_reason or "rate_limited",
            text=reply.text,
        )

    return ReplyResponse(
        reply_id=reply.reply_id,
        text=reply.text,
        kind=reply.kind.value,
        from_cache=reply.from_cache,
        model_used=reply.model_used,
    )


@router.delete("/conversations/{principal_id}", response_model=ResetResponse)
async def reset_conversation(
    principal_id: str,
    container: ServiceContainer = Depends(get_container),
) -> ResetResponse:
    """Reset a principal's conversation, rate state and cached responses."""
    result = await container.pipeline.reset_principal(principal_id)
    return ResetResponse(**result)


@router.get("/diagnostics")
async def diagnostics(
    principal_id: Optional[str] = None,
    container: ServiceContainer = Depends(get_container),
) -> dict:
    """Component statistics, optionally with one principal's state."""
    data = await container.pipeline.diagnostics(principal_id)
    data["version"] = container.settings.bot_version
    data["model"] = container.settings.groq_model
    data["completion_configured"] = container.completion.configured
    data["maintenance"] = {
        "running": container.maintenance.running,
        "cycles": container.maintenance.cycles,
        "last_results": container.maintenance.last_results,
    }
    return data
