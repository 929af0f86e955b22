"""
Tracking endpoints
==================

GET /api/v1/bookings/{id}/tracking   -- one-shot reconciled view
WS  /api/v1/ws/bookings/{id}/track   -- live view

The socket opens a ``TrackingSession`` on connect and closes it on
disconnect.  It pushes a ``TrackingResponse`` on every change and accepts
``{"event": "<booking event>", "reason": "..."}`` frames from the client,
answering each with ``{"outcome", "booking"}``, or with ``{"error", "retryable"}``
when the action is refused.

Browsers cannot set headers on a socket, so identity may also come from the
``user_id`` / ``role`` query parameters.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request, WebSocket, WebSocketDisconnect, status
from pydantic import BaseModel, ValidationError

from src.api.dependencies import get_current_session, parse_identity
from src.api.middleware import limiter
from src.api.schemas import BookingResponse, TrackingResponse, TransitionResponse
from src.config import settings
from src.domain.entities import Session
from src.domain.enums import BookingEvent
from src.domain.exceptions import (
    ActorNotPermitted,
    BookingNotFound,
    DispatchError,
    StoreUnavailable,
)
from src.domain.reconciler import TrackingView
from src.services.tracking import TrackingSession

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tracking"])


class ActionFrame(BaseModel):
    event: BookingEvent
    reason: Optional[str] = None


def _open_session(app, booking_id: str, caller: Session, **kwargs) -> TrackingSession:
    state = app.state
    return TrackingSession(
        booking_id,
        caller,
        session_factory=state.session_factory,
        routing=state.routing,
        actions=state.dispatch,
        change_feed=state.change_feed,
        channel=state.channel,
        **kwargs,
    )


def _payload(view: TrackingView) -> dict:
    return TrackingResponse.from_view(view).model_dump(mode="json")


@router.get(
    "/bookings/{booking_id}/tracking",
    response_model=TrackingResponse,
    summary="Where is the ambulance and how long until it arrives",
)
@limiter.limit(settings.rate_limit)
async def get_tracking(
    request: Request,
    booking_id: str,
    caller: Session = Depends(get_current_session),
):
    tracking = _open_session(request.app, booking_id, caller)
    try:
        view = await tracking.open()
    finally:
        tracking.close()
    return TrackingResponse.from_view(view)


@router.websocket("/ws/bookings/{booking_id}/track")
async def track(websocket: WebSocket, booking_id: str, simulate: bool = False):
    caller = parse_identity(
        websocket.headers.get("x-user-id") or websocket.query_params.get("user_id"),
        websocket.headers.get("x-user-role") or websocket.query_params.get("role"),
    )
    if caller is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    views: asyncio.Queue[TrackingView] = asyncio.Queue()
    tracking = _open_session(
        websocket.app, booking_id, caller, on_view=views.put_nowait, simulate=simulate
    )
    try:
        first = await tracking.open()
    except (BookingNotFound, ActorNotPermitted) as exc:
        tracking.close()
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=str(exc))
        return
    except StoreUnavailable:
        tracking.close()
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR, reason="Try again")
        return

    async def pump() -> None:
        while True:
            await websocket.send_json(_payload(await views.get()))

    sender = asyncio.create_task(pump())
    try:
        await websocket.send_json(_payload(first))
        while True:
            raw = await websocket.receive_text()
            try:
                frame = ActionFrame.model_validate_json(raw)
            except ValidationError:
                await websocket.send_json({"error": "Unknown action"})
                continue
            try:
                result = await tracking.perform(frame.event, frame.reason)
            except DispatchError as exc:
                await websocket.send_json(
                    {"error": str(exc), "retryable": isinstance(exc, StoreUnavailable)}
                )
                continue
            response = TransitionResponse(
                outcome=result.outcome,
                booking=BookingResponse.from_booking(result.booking),
            )
            await websocket.send_json(response.model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.info("Tracking socket for booking %s disconnected", booking_id)
    finally:
        tracking.close()
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect):
            await sender
