"""
QR Code Schemas
"""
from pydantic import BaseModel, Field, constr
from typing import Optional, List, Literal
from datetime import datetime
from uuid import UUID


class QRSingleCreate(BaseModel):
    theater_id: UUID
    qr_name: str = Field(..., min_length=1)
    seat_class: str = Field(..., min_length=1)
    logo_ref: Optional[str] = None
    orientation: Literal["portrait", "landscape"] = "landscape"
    created_by: Optional[str] = None


class QRScreenCreate(QRSingleCreate):
    seats: List[constr(strip_whitespace=True, min_length=1)] = Field(..., min_length=1)


class QRArtifactResponse(BaseModel):
    id: UUID
    theater_id: UUID
    kind: str
    qr_name: str
    seat_class: str
    seat: Optional[str] = None
    orientation: str
    data_payload: str
    image_location: str
    batch_id: Optional[str] = None
    created_at: Optional[datetime] = None
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class FailedSeat(BaseModel):
    seat: str
    error: str


class ScreenBatchResponse(BaseModel):
    batch_id: str
    artifacts: List[QRArtifactResponse]
    failed: List[FailedSeat] = []
