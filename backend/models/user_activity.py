"""
User activity model - who did what, derived from issue history.

Each history row yields at most one activity (unique issue_history_id),
so re-running derivation never duplicates. Activities added by hand carry
no history row.
"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.database import Base

if TYPE_CHECKING:
    from models.activity_type import ActivityType


class UserActivity(Base):
    """An activity performed by a Jira user."""

    __tablename__ = "user_activities"
    __table_args__ = (
        Index("idx_user_activities_user", "user_id"),
        Index("idx_user_activities_occurred_at", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("jira_users.id", ondelete="CASCADE"), nullable=False
    )
    activity_type_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("activity_types.id", ondelete="CASCADE"), nullable=False
    )
    # NULL for activities recorded by hand rather than derived
    issue_history_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("issue_histories.id", ondelete="CASCADE"), unique=True, nullable=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    activity_type: Mapped["ActivityType"] = relationship("ActivityType", lazy="joined")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        from config import to_iso8601

        return {
            "id": self.id,
            "user_id": self.user_id,
            "activity_type_id": self.activity_type_id,
            "activity_type": self.activity_type.name if self.activity_type else None,
            "issue_history_id": self.issue_history_id,
            "occurred_at": to_iso8601(self.occurred_at),
        }
