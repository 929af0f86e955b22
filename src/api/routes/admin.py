"""
Admin / observability endpoints
===============================

GET /api/v1/admin/health -- liveness plus message-channel state
"""

from fastapi import APIRouter, Request

from src.api.schemas import HealthResponse

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(request: Request):
    channel = getattr(request.app.state, "channel", None)
    connected = bool(channel and channel.connected)
    return HealthResponse(message_channel="connected" if connected else "disconnected")
