"""
Chat Fanout - REST API Endpoints.

FastAPI router that receives document-created triggers from the chat layer,
exposes the test push, and reports health.

Architecture Layer: Interface/Adapter
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import structlog

from .domain.dispatcher import PushTestResult
from .domain.orchestrator import FanoutOrchestrator
from .events import ChannelMessageCreated, DmMessageCreated, FanoutResult, ThreadMessageCreated

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/v1/fanout", tags=["fanout"])


class PushTestRequest(BaseModel):
    """Request body for a test push."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    uid: str = Field(..., min_length=1, max_length=128)
    device_id: str | None = Field(default=None, max_length=256)


def _get_orchestrator() -> FanoutOrchestrator:
    from .main import get_orchestrator
    try:
        return get_orchestrator()
    except RuntimeError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e)) from e


@router.post("/triggers/channel-message", response_model=FanoutResult,
             status_code=status.HTTP_202_ACCEPTED)
async def channel_message_created(
    event: ChannelMessageCreated,
    orchestrator: FanoutOrchestrator = Depends(_get_orchestrator),
) -> FanoutResult:
    """Fan out a message created in a server channel."""
    return await orchestrator.handle_channel_message(event)


@router.post("/triggers/thread-message", response_model=FanoutResult,
             status_code=status.HTTP_202_ACCEPTED)
async def thread_message_created(
    event: ThreadMessageCreated,
    orchestrator: FanoutOrchestrator = Depends(_get_orchestrator),
) -> FanoutResult:
    """Fan out a message created in a thread."""
    return await orchestrator.handle_thread_message(event)


@router.post("/triggers/dm-message", response_model=FanoutResult,
             status_code=status.HTTP_202_ACCEPTED)
async def dm_message_created(
    event: DmMessageCreated,
    orchestrator: FanoutOrchestrator = Depends(_get_orchestrator),
) -> FanoutResult:
    """Fan out a direct message."""
    return await orchestrator.handle_dm_message(event)


@router.post("/push/test", response_model=PushTestResult)
async def send_test_push(
    request: PushTestRequest,
    orchestrator: FanoutOrchestrator = Depends(_get_orchestrator),
) -> PushTestResult:
    """Send a test notification to a user's registered devices."""
    logger.info("test_push_requested", uid=request.uid, device_id=request.device_id)
    return await orchestrator.send_test_push(request.uid, request.device_id)


@router.get("/health")
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready")
async def ready() -> dict[str, str]:
    from .main import get_orchestrator
    try:
        get_orchestrator()
    except RuntimeError:
        return {"status": "not_ready", "reason": "orchestrator_not_initialized"}
    return {"status": "ready"}
