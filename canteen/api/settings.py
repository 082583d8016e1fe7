"""
Settings API - redacted reads and partial updates per section
"""
from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from canteen.context import ServerContext
from .deps import get_context

router = APIRouter(prefix="/settings", tags=["settings"])


@router.get("/{section}")
async def get_settings_section(section: str, ctx: ServerContext = Depends(get_context)):
    return await ctx.settings_service.get_redacted(section)


@router.put("/{section}")
async def update_settings_section(
    section: str,
    patch: Dict[str, Any] = Body(...),
    ctx: ServerContext = Depends(get_context),
):
    await ctx.settings_service.update(section, patch)
    return await ctx.settings_service.get_redacted(section)
