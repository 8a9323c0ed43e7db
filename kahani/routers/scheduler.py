from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from kahani.config import Settings
from kahani.dependencies import get_scheduler, get_settings
from kahani.schemas.trial import ScheduledRunResponse
from kahani.services.scheduler_service import Scheduler

router = APIRouter(prefix="/api/internal")


def _require_cron_secret(authorization: Optional[str], config: Settings) -> None:
    expected = config.cron_secret
    if not expected:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="CRON_SECRET not configured",
        )
    if authorization != f"Bearer {expected}":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


@router.post("/process-scheduled", response_model=ScheduledRunResponse)
async def process_scheduled(
    authorization: Optional[str] = Header(default=None),
    scheduler: Scheduler = Depends(get_scheduler),
    config: Settings = Depends(get_settings),
):
    """Run one scheduler tick now (external cron or manual trigger)."""
    _require_cron_secret(authorization, config)
    summary = await scheduler.tick()
    if summary.get("skipped"):
        return ScheduledRunResponse(
            success=True,
            skipped=True,
            timestamp=scheduler.clock(),
            message="Scheduler tick already running",
        )
    return ScheduledRunResponse(
        success=True,
        timestamp=scheduler.clock(),
        message="Scheduled tasks processed",
        summary=summary,
    )
