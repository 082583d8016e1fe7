"""
QR Codes API - generate and delete QR artifacts
"""
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from canteen.context import ServerContext
from canteen.models import QRArtifact
from canteen.schemas.qr import (
    QRArtifactResponse,
    QRScreenCreate,
    QRSingleCreate,
    ScreenBatchResponse,
)
from .deps import get_context, get_db

router = APIRouter(prefix="/qr-codes", tags=["qr-codes"])


@router.get("", response_model=List[QRArtifactResponse])
def list_qr_codes(
    theater_id: UUID = Query(..., alias="theaterId"),
    db: Session = Depends(get_db),
):
    return (
        db.query(QRArtifact)
        .filter(QRArtifact.theater_id == theater_id)
        .order_by(QRArtifact.qr_name, QRArtifact.seat)
        .all()
    )


@router.post("/single", response_model=QRArtifactResponse, status_code=201)
async def create_single_qr(data: QRSingleCreate, ctx: ServerContext = Depends(get_context)):
    return await ctx.qr_service.generate_single(
        theater_id=data.theater_id,
        qr_name=data.qr_name,
        seat_class=data.seat_class,
        logo_ref=data.logo_ref,
        orientation=data.orientation,
        created_by=data.created_by,
    )


@router.post("/screen", response_model=ScreenBatchResponse, status_code=201)
async def create_screen_qrs(data: QRScreenCreate, ctx: ServerContext = Depends(get_context)):
    result = await ctx.qr_service.generate_screen(
        theater_id=data.theater_id,
        qr_name=data.qr_name,
        seat_class=data.seat_class,
        seats=data.seats,
        logo_ref=data.logo_ref,
        orientation=data.orientation,
        created_by=data.created_by,
    )
    return ScreenBatchResponse(
        batch_id=result.batch_id,
        artifacts=[QRArtifactResponse.model_validate(a) for a in result.artifacts],
        failed=result.failed,
    )


@router.delete("/{artifact_id}")
async def delete_qr(artifact_id: UUID, ctx: ServerContext = Depends(get_context)):
    if not await ctx.qr_service.delete_artifact(artifact_id):
        raise HTTPException(status_code=404, detail="QR code not found")
    return {"deleted": True, "id": str(artifact_id)}
