"""UserSettings model for storing per-user link checker preferences."""
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, ForeignKey, Integer, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from models.user import User


class UserSettings(Base, TimestampMixin):
    """
    User settings - per-user preferences for background link checking.

    Only users with link_check_enabled are included in periodic link-check passes.
    A NULL interval or batch size means the server-wide default applies
    (LINK_CHECK_INTERVAL_MINUTES / LINK_CHECK_BATCH_SIZE).
    """

    __tablename__ = "user_settings"

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        primary_key=True,
    )
    link_check_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=false(),
    )
    link_check_interval_minutes: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Minutes between checks of the same bookmark. NULL uses the server default.",
    )
    link_check_batch_size: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Max bookmarks of this user checked per pass. NULL uses the server default.",
    )

    user: Mapped["User"] = relationship(back_populates="settings")
