"""
POS Stream API - websocket feed of order events per theater
"""
import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket

from canteen.context import ServerContext
from canteen.core.errors import CanteenError, SubscriptionClosedError
from canteen.models import Theater
from canteen.schemas.pos import BroadcastTestRequest, PosEvent
from canteen.services.pos_event_bus import CLOSE_INTERNAL_ERROR, CLOSE_POLICY_VIOLATION
from .deps import get_context

router = APIRouter(prefix="/pos-stream", tags=["pos-stream"])
logger = logging.getLogger(__name__)


def _parse_theater_id(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


async def _theater_exists(ctx: ServerContext, theater_id: uuid.UUID) -> bool:
    def query(session):
        theater = session.get(Theater, theater_id)
        return theater is not None and theater.is_active and not theater.is_deleted

    return await ctx.database.execute("pos_stream.check_theater", query, max_retries=1)


@router.websocket("")
async def pos_stream(websocket: WebSocket, theaterId: Optional[str] = None):
    ctx: ServerContext = websocket.app.state.context
    await websocket.accept()

    theater_id = _parse_theater_id(theaterId)
    if theater_id is None:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="theaterId is required")
        return

    try:
        known = await _theater_exists(ctx, theater_id)
    except CanteenError as e:
        logger.error(f"POS stream theater lookup failed: {e}")
        await websocket.close(code=CLOSE_INTERNAL_ERROR, reason="database unavailable")
        return
    if not known:
        await websocket.close(code=CLOSE_POLICY_VIOLATION, reason="unknown theater")
        return

    try:
        sub = await ctx.pos_bus.subscribe(theater_id, websocket)
    except SubscriptionClosedError:
        return

    try:
        while True:
            frame = await websocket.receive()
            if frame["type"] == "websocket.disconnect":
                logger.debug(f"POS client {sub.handle} disconnected")
                break
            text = frame.get("text")
            if text is None:
                logger.debug(f"POS client {sub.handle} sent a binary frame; ignored")
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                logger.debug(f"POS client {sub.handle} sent non-JSON frame")
                continue
            if isinstance(message, dict) and message.get("type") == "pong":
                ctx.pos_bus.mark_pong(sub)
    finally:
        await ctx.pos_bus.unsubscribe(sub)


@router.get("/status")
async def pos_stream_status(ctx: ServerContext = Depends(get_context)):
    return ctx.pos_bus.status()


@router.post("/broadcast-test")
async def broadcast_test(data: BroadcastTestRequest, ctx: ServerContext = Depends(get_context)):
    """Send a synthetic order event to every client of a theater"""
    order_id = data.order_id or f"test-{uuid.uuid4().hex[:8]}"
    event = PosEvent(
        theater_id=data.theater_id,
        event=data.event,
        order_id=order_id,
        payload={"orderId": order_id, "test": True, "message": data.message},
    )
    delivered = ctx.pos_bus.broadcast(event)
    return {"delivered": delivered, "orderId": order_id}
