"""
Canonical Pydantic record models for the Jira connector.

The normalizer turns loosely-typed Jira JSON into these records; the
reconciler is the only place that turns them into SQLAlchemy rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import BaseModel, Field


class JiraCredentials(BaseModel):
    """Credential context for one sync run. Validated before any network call."""

    base_url: Optional[str] = None
    username: Optional[str] = None
    api_token: Optional[str] = None


# ---------------------------------------------------------------------------
# Issue models
# ---------------------------------------------------------------------------


class IssueFields(BaseModel):
    """The mutable Fields value owned by an issue. Replaced wholesale on re-sync."""

    summary: str = ""
    description: str | None = None
    status: str | None = None
    updated: datetime | None = None


class IssueRecord(BaseModel):
    """A normalized Jira issue."""

    key: str
    jira_id: str | None = None
    fields: IssueFields = Field(default_factory=IssueFields)
    assignee_account_id: str | None = None
    reporter_account_id: str | None = None


# ---------------------------------------------------------------------------
# User models
# ---------------------------------------------------------------------------


class UserProfileRecord(BaseModel):
    """Auxiliary per-user attributes carried alongside the account."""

    time_zone: str | None = None
    avatar_url: str | None = None
    account_type: str | None = None
    active: bool = True
    locale: str | None = None


class UserRecord(BaseModel):
    """A normalized Jira account."""

    account_id: str
    display_name: str = ""
    email: str | None = None
    profile: UserProfileRecord = Field(default_factory=UserProfileRecord)


# ---------------------------------------------------------------------------
# Changelog models
# ---------------------------------------------------------------------------


class ChangeRecord(BaseModel):
    """One field change from the remote issue changelog."""

    issue_key: str
    source_change_id: str
    field: str
    old_value: str | None = None
    new_value: str | None = None
    changed_at: datetime
    changed_by: str | None = None


# ---------------------------------------------------------------------------
# Parse variants
# ---------------------------------------------------------------------------


@dataclass
class MalformedRecord:
    """A single record that could not be normalized. Skipped and counted."""

    kind: str
    reason: str
    raw: Any = None

    def __str__(self) -> str:
        return f"malformed {self.kind}: {self.reason}"


@dataclass
class Page:
    """One page of raw records from the remote API."""

    items: list[dict[str, Any]] = field(default_factory=list)
    is_last: bool = False


NormalizedIssue = Union[IssueRecord, MalformedRecord]
NormalizedUser = Union[UserRecord, MalformedRecord]
