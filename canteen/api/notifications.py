"""
Notifications API - inspect and trigger the stock e-mail jobs
"""
from fastapi import APIRouter, Depends

from canteen.context import ServerContext
from .deps import get_context

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("/jobs")
async def list_jobs(ctx: ServerContext = Depends(get_context)):
    supervisor = ctx.supervisor
    return {
        "running": supervisor.is_running,
        "using_defaults": supervisor.using_defaults,
        "jobs": supervisor.jobs(),
    }


@router.post("/jobs/{name}/run")
async def run_job(name: str, ctx: ServerContext = Depends(get_context)):
    result = await ctx.supervisor.run_now(name)
    return {"job": name, "result": result}
