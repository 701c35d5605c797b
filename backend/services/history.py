"""
Field-level diffing of issue Fields and the append-only history it feeds.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from connectors.errors import PersistenceError
from connectors.models import IssueFields
from models.database import utcnow
from models.issue_history import SOURCE_DIFF, IssueHistory
from models.jira_issue import JiraIssue

logger = logging.getLogger(__name__)

# Fields compared between syncs; ``updated`` is bookkeeping, not content
TRACKED_FIELDS: tuple[str, ...] = ("summary", "description", "status")


class FieldChange(BaseModel):
    """One tracked field whose value differs between two Fields snapshots."""

    field: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None


def diff_fields(previous: Optional[IssueFields], new: IssueFields) -> list[FieldChange]:
    """
    Compare two Fields values, one FieldChange per differing tracked field.

    ``previous`` is None on an issue's first sync; creation records no history.
    """
    if previous is None:
        return []

    changes: list[FieldChange] = []
    for name in TRACKED_FIELDS:
        old: Optional[str] = getattr(previous, name)
        current: Optional[str] = getattr(new, name)
        if old != current:
            changes.append(FieldChange(field=name, old_value=old, new_value=current))
    return changes


def is_stale(previous: Optional[IssueFields], incoming: IssueFields) -> bool:
    """True when ``incoming`` was last updated strictly before what we hold."""
    if previous is None or previous.updated is None or incoming.updated is None:
        return False
    return incoming.updated < previous.updated


def build_history_rows(
    issue: JiraIssue,
    changes: list[FieldChange],
    *,
    changed_by: Optional[str],
    changed_at: Optional[datetime] = None,
) -> list[IssueHistory]:
    stamp: datetime = changed_at or utcnow()
    return [
        IssueHistory(
            issue_id=issue.id,
            field_changed=change.field,
            old_value=change.old_value,
            new_value=change.new_value,
            changed_at=stamp,
            changed_by=changed_by,
            source=SOURCE_DIFF,
        )
        for change in changes
    ]


async def record_changes(
    session: AsyncSession,
    issue: JiraIssue,
    changes: list[FieldChange],
    *,
    changed_by: Optional[str],
) -> list[IssueHistory]:
    """Append ``changes`` to the issue's history in one commit."""
    if not changes:
        return []

    rows: list[IssueHistory] = build_history_rows(issue, changes, changed_by=changed_by)
    session.add_all(rows)
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError(
            f"Could not record history for {issue.key}: {exc}"
        ) from exc

    for row in rows:
        session.expunge(row)
    logger.debug(
        "Recorded issue history",
        extra={"issue_key": issue.key, "changes": [c.field for c in changes]},
    )
    return rows
