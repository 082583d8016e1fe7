"""
POS Stream Schemas
"""
from pydantic import BaseModel
from typing import Any, Dict, Literal, Optional
from uuid import UUID

PosEventType = Literal["created", "updated", "cancelled", "completed"]


class PosEvent(BaseModel):
    theater_id: UUID
    event: PosEventType
    order_id: str
    payload: Dict[str, Any] = {}

    def to_frame(self) -> dict:
        return {
            "type": "pos_order",
            "event": self.event,
            "orderId": self.order_id,
            "order": self.payload,
        }


class BroadcastTestRequest(BaseModel):
    theater_id: UUID
    event: PosEventType = "created"
    order_id: Optional[str] = None
    message: str = "Test broadcast"
