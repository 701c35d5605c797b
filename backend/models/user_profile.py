"""
User profile model - auxiliary attributes of a Jira account (1:1 with JiraUser).
"""
from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import Boolean, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class UserProfile(Base):
    """Profile attributes refreshed from the same payload as the user."""

    __tablename__ = "user_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("jira_users.id", ondelete="CASCADE"), unique=True, nullable=False
    )

    time_zone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    account_type: Mapped[Optional[str]] = mapped_column(
        String(30), nullable=True
    )  # atlassian, app, customer
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    locale: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "time_zone": self.time_zone,
            "avatar_url": self.avatar_url,
            "account_type": self.account_type,
            "active": self.active,
            "locale": self.locale,
        }
