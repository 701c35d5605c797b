"""
Jira issue model - one row per issue key, owning its current Fields.

The Fields (summary, description, status, remote updated timestamp) are
read and replaced as one value through :attr:`JiraIssue.fields`.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from connectors.models import IssueFields
from models.database import Base, utcnow


class JiraIssue(Base):
    """An issue mirrored from Jira."""

    __tablename__ = "jira_issues"
    __table_args__ = (
        Index("idx_jira_issues_updated", "updated"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Human-readable natural key: "PROJ-456"
    key: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)

    # Jira's own numeric id (stringified)
    jira_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Fields
    summary: Mapped[str] = mapped_column(String(1024), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    updated: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # People (account ids, not FKs: the account may not be synced yet)
    assignee_account_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    reporter_account_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    synced_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    @property
    def fields(self) -> IssueFields:
        return IssueFields(
            summary=self.summary or "",
            description=self.description,
            status=self.status_name,
            updated=self.updated,
        )

    def replace_fields(self, fields: IssueFields) -> None:
        """Overwrite the whole Fields value."""
        self.summary = fields.summary
        self.description = fields.description
        self.status_name = fields.status
        self.updated = fields.updated

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        from config import to_iso8601

        return {
            "id": self.id,
            "key": self.key,
            "jira_id": self.jira_id,
            "summary": self.summary,
            "description": self.description,
            "status": self.status_name,
            "updated": to_iso8601(self.updated),
            "assignee_account_id": self.assignee_account_id,
            "reporter_account_id": self.reporter_account_id,
            "created_at": to_iso8601(self.created_at),
            "synced_at": to_iso8601(self.synced_at),
        }
