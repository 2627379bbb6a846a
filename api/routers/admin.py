"""Admin subscription endpoints: manual scheduler runs and scheduler health."""

from fastapi import APIRouter, Depends

from deps import get_scheduler, require_admin
from models.user import User

router = APIRouter()


@router.post("/scheduler/run")
async def run_scheduler(
    admin: User = Depends(require_admin),
    scheduler=Depends(get_scheduler),
):
    """Run every lifecycle scan now, outside the daily loop."""
    results = await scheduler.run_once()
    return {"success": True, "data": {"results": results, "stats": scheduler.stats}}


@router.get("/scheduler/stats")
async def scheduler_stats(
    admin: User = Depends(require_admin),
    scheduler=Depends(get_scheduler),
):
    return {"success": True, "data": scheduler.stats}
