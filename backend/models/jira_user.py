"""
Jira user model - one row per Jira account, keyed by accountId.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base, utcnow


class JiraUser(Base):
    """A Jira account mirrored into the local store."""

    __tablename__ = "jira_users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Natural key from Jira, e.g. "5b10ac8d82e05b22cc7d4ef5"
    account_id: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)

    # Mutable on re-sync
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        from config import to_iso8601

        return {
            "id": self.id,
            "account_id": self.account_id,
            "display_name": self.display_name,
            "email": self.email,
            "created_at": to_iso8601(self.created_at),
            "updated_at": to_iso8601(self.updated_at),
        }
