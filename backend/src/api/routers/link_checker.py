"""Link checker status and manual run endpoints."""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_async_session, get_current_user, get_scheduler
from api.routers.settings import to_link_checker_response
from core.config import Settings, get_settings
from models.user import User
from schemas.enrichment import (
    LinkCheckerStatusResponse,
    PassSummaryResponse,
    SchedulerStatusResponse,
)
from services import settings_service
from services.exceptions import SchedulerUnavailableError
from tasks.enrichment_scheduler import EnrichmentScheduler

router = APIRouter(prefix="/link-checker", tags=["link-checker"])


@router.get("/status", response_model=LinkCheckerStatusResponse)
async def get_link_checker_status(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    app_settings: Settings = Depends(get_settings),
    scheduler: EnrichmentScheduler = Depends(get_scheduler),
) -> LinkCheckerStatusResponse:
    """Get the current user's link checker preferences and the scheduler state."""
    user_settings = await settings_service.get_or_create_settings(db, current_user.id)
    status = scheduler.status()
    return LinkCheckerStatusResponse(
        settings=to_link_checker_response(user_settings, app_settings),
        scheduler=SchedulerStatusResponse(
            state=status.state.value,
            pass_in_progress=status.pass_in_progress,
            link_check_enabled=status.link_check_enabled,
            interval_minutes=status.interval_minutes,
            max_concurrent=status.max_concurrent,
            active_operations=status.active_operations,
            last_run_at=status.last_run_at,
            next_run_at=status.next_run_at,
            last_summary=(
                PassSummaryResponse(**status.last_summary.to_dict())
                if status.last_summary is not None
                else None
            ),
        ),
    )


@router.post("/run-now", response_model=PassSummaryResponse)
async def run_link_check_now(
    current_user: User = Depends(get_current_user),
    scheduler: EnrichmentScheduler = Depends(get_scheduler),
) -> PassSummaryResponse:
    """
    Check the current user's due bookmarks now.

    Runs even if background link checking is disabled for this user. If a
    pass is already running, nothing is checked and `ran` is false.
    """
    try:
        summary = await scheduler.run_once(user_id=current_user.id)
    except SchedulerUnavailableError:
        raise HTTPException(
            status_code=503,
            detail="Enrichment is temporarily unavailable, please retry shortly",
        )
    return PassSummaryResponse(**summary.to_dict())
