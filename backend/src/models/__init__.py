"""SQLAlchemy models."""
from models.base import Base, TimestampMixin
from models.bookmark import Bookmark, LinkStatus, ScreenshotStatus
from models.user import User
from models.user_settings import UserSettings

__all__ = [
    "Base",
    "Bookmark",
    "LinkStatus",
    "ScreenshotStatus",
    "TimestampMixin",
    "User",
    "UserSettings",
]
