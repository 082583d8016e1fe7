"""
API Router - JSON and websocket endpoints
"""
from fastapi import APIRouter

from canteen.api.pos_stream import router as pos_stream_router
from canteen.api.settings import router as settings_router
from canteen.api.notifications import router as notifications_router
from canteen.api.qr_codes import router as qr_codes_router

api_router = APIRouter(tags=["API"])

api_router.include_router(pos_stream_router)
api_router.include_router(settings_router)
api_router.include_router(notifications_router)
api_router.include_router(qr_codes_router)
