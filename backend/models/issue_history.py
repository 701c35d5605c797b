"""
Issue history model - append-only log of field changes on an issue.

Rows come from two places: local diffs taken when a re-sync changes an
issue's Fields (source="diff"), and the remote Jira changelog
(source="changelog", deduplicated by source_change_id). Rows are never
updated or deleted.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base

SOURCE_DIFF: str = "diff"
SOURCE_CHANGELOG: str = "changelog"


class IssueHistory(Base):
    """One field change on one issue."""

    __tablename__ = "issue_histories"
    __table_args__ = (
        Index("idx_issue_histories_issue", "issue_id"),
        Index("idx_issue_histories_changed_at", "changed_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    issue_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("jira_issues.id", ondelete="CASCADE"), nullable=False
    )

    field_changed: Mapped[str] = mapped_column(String(100), nullable=False)
    old_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    new_value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # accountId, email or display name of whoever made the change
    changed_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    source: Mapped[str] = mapped_column(String(20), nullable=False, default=SOURCE_DIFF)
    source_change_id: Mapped[Optional[str]] = mapped_column(
        String(255), unique=True, nullable=True
    )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        from config import to_iso8601

        return {
            "id": self.id,
            "issue_id": self.issue_id,
            "field_changed": self.field_changed,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_at": to_iso8601(self.changed_at),
            "changed_by": self.changed_by,
            "source": self.source,
        }
