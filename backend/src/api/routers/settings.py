"""User settings endpoints."""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_async_session, get_current_user
from core.config import Settings, get_settings
from models.user import User
from models.user_settings import UserSettings
from schemas.user_settings import LinkCheckerSettingsResponse, LinkCheckerSettingsUpdate
from services import settings_service

router = APIRouter(prefix="/settings", tags=["settings"])


def to_link_checker_response(
    user_settings: UserSettings, app_settings: Settings,
) -> LinkCheckerSettingsResponse:
    """Combine stored preferences with the server defaults they fall back to."""
    return LinkCheckerSettingsResponse(
        link_check_enabled=user_settings.link_check_enabled,
        link_check_interval_minutes=user_settings.link_check_interval_minutes,
        link_check_batch_size=user_settings.link_check_batch_size,
        effective_interval_minutes=(
            user_settings.link_check_interval_minutes or app_settings.link_check_interval_minutes
        ),
        effective_batch_size=(
            user_settings.link_check_batch_size or app_settings.link_check_batch_size
        ),
        updated_at=user_settings.updated_at,
    )


@router.get("/link-checker", response_model=LinkCheckerSettingsResponse)
async def get_link_checker_settings(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    app_settings: Settings = Depends(get_settings),
) -> LinkCheckerSettingsResponse:
    """
    Get link checker preferences.

    Creates default settings (link checking disabled) if none exist.
    """
    user_settings = await settings_service.get_or_create_settings(db, current_user.id)
    return to_link_checker_response(user_settings, app_settings)


@router.patch("/link-checker", response_model=LinkCheckerSettingsResponse)
async def update_link_checker_settings(
    data: LinkCheckerSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_async_session),
    app_settings: Settings = Depends(get_settings),
) -> LinkCheckerSettingsResponse:
    """
    Update link checker preferences.

    - **link_check_enabled**: include this user's bookmarks in background passes
    - **link_check_interval_minutes**: minutes between checks of the same bookmark (null = default)
    - **link_check_batch_size**: max bookmarks checked per pass, 1-500 (null = default)
    """
    user_settings = await settings_service.update_link_checker_settings(
        db, current_user.id, data,
    )
    return to_link_checker_response(user_settings, app_settings)
