"""Service layer for per-user link checker preferences."""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from models.user_settings import UserSettings
from schemas.user_settings import LinkCheckerSettingsUpdate


async def get_settings(db: AsyncSession, user_id: int) -> UserSettings | None:
    """Get user settings, returns None if not exists."""
    query = select(UserSettings).where(UserSettings.user_id == user_id)
    result = await db.execute(query)
    return result.scalar_one_or_none()


async def get_or_create_settings(db: AsyncSession, user_id: int) -> UserSettings:
    """Get user settings, creating default if not exists."""
    settings = await get_settings(db, user_id)
    if settings is None:
        settings = UserSettings(user_id=user_id)
        db.add(settings)
        await db.flush()
        await db.refresh(settings)
    return settings


async def update_link_checker_settings(
    db: AsyncSession,
    user_id: int,
    data: LinkCheckerSettingsUpdate,
) -> UserSettings:
    """
    Update link checker preferences.

    Only fields present in the request are changed. An explicit null for the
    interval or batch size reverts that field to the server default.
    """
    settings = await get_or_create_settings(db, user_id)
    for field, value in data.model_dump(exclude_unset=True).items():
        if field == "link_check_enabled" and value is None:
            continue
        setattr(settings, field, value)
    await db.flush()
    await db.refresh(settings)
    return settings
