"""
User activity derivation.

Maps a history row's field name onto a closed taxonomy of activity kinds,
resolves whoever made the change to a JiraUser, and records one
UserActivity per history row.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from connectors.errors import PersistenceError, ValidationError
from models.activity_type import ActivityType
from models.database import utcnow
from models.issue_history import IssueHistory
from models.jira_user import JiraUser
from models.user_activity import UserActivity
from services.reconcile import Reconciler, find_by_id

logger = logging.getLogger(__name__)


class ActivityKind(str, Enum):
    ASSIGNED_ISSUE = "Assigned Issue"
    UPDATED_DESCRIPTION = "Updated Description"
    CHANGED_STATUS = "Changed Status"
    UPDATED_SUMMARY = "Updated Summary"
    CHANGED_PRIORITY = "Changed Priority"
    UPDATED_LABELS = "Updated Labels"


# Jira field name (lowercase) -> activity kind. Anything else is not an activity.
ACTIVITY_TAXONOMY: dict[str, ActivityKind] = {
    "assignee": ActivityKind.ASSIGNED_ISSUE,
    "description": ActivityKind.UPDATED_DESCRIPTION,
    "status": ActivityKind.CHANGED_STATUS,
    "summary": ActivityKind.UPDATED_SUMMARY,
    "priority": ActivityKind.CHANGED_PRIORITY,
    "labels": ActivityKind.UPDATED_LABELS,
}


def activity_kind_for(field_name: Optional[str]) -> Optional[ActivityKind]:
    if not field_name:
        return None
    return ACTIVITY_TAXONOMY.get(field_name.strip().lower())


def _keep_activity_type(entity: ActivityType, _incoming: object) -> None:
    # The name is the whole row; nothing to merge
    return None


activity_types: Reconciler[ActivityType] = Reconciler(
    ActivityType,
    "name",
    apply_changes=_keep_activity_type,
    build_entity=lambda name, _incoming: ActivityType(name=name),
)


async def get_or_create_activity_type(session: AsyncSession, name: str) -> ActivityType:
    """Return the ActivityType called ``name``, creating it at most once."""
    cleaned: str = (name or "").strip()
    if not cleaned:
        raise ValidationError("Missing required fields: name", missing=["name"])
    entity, created = await activity_types.reconcile(session, cleaned, None)
    if created:
        logger.info("Created activity type", extra={"activity_type": cleaned})
    return entity


async def resolve_user(session: AsyncSession, identity: Optional[str]) -> Optional[JiraUser]:
    """Find the user behind a changer identity: account id, then email, then display name."""
    if not identity:
        return None

    for column in (JiraUser.account_id, JiraUser.email, JiraUser.display_name):
        try:
            result = await session.execute(
                select(JiraUser).where(column == identity).order_by(JiraUser.id).limit(1)
            )
        except SQLAlchemyError as exc:
            raise PersistenceError(f"User lookup for {identity!r} failed: {exc}") from exc
        user: Optional[JiraUser] = result.scalar_one_or_none()
        if user is not None:
            return user
    return None


@dataclass
class DerivationResult:
    activities: list[UserActivity] = field(default_factory=list)
    unresolved: int = 0
    unmapped: int = 0
    already_derived: int = 0


async def _has_activity(session: AsyncSession, history_id: int) -> bool:
    result = await session.execute(
        select(UserActivity.id).where(UserActivity.issue_history_id == history_id)
    )
    return result.scalar_one_or_none() is not None


async def derive_activities(
    session: AsyncSession, history_rows: Sequence[IssueHistory]
) -> DerivationResult:
    """
    Record a UserActivity for every history row that maps to an activity kind.

    Rows with an unmapped field or an unknown changer are skipped and
    counted. Rows that already have an activity are skipped, so running
    this twice over the same history is a no-op the second time.
    """
    outcome = DerivationResult()
    user_ids: dict[str, Optional[int]] = {}

    # Plain values: a rollback below would expire the ORM rows
    pending: list[tuple[int, str, Optional[str], datetime]] = [
        (row.id, row.field_changed, row.changed_by, row.changed_at) for row in history_rows
    ]

    for history_id, field_changed, changed_by, changed_at in pending:
        kind: Optional[ActivityKind] = activity_kind_for(field_changed)
        if kind is None:
            outcome.unmapped += 1
            continue

        try:
            if await _has_activity(session, history_id):
                outcome.already_derived += 1
                continue
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Activity lookup for history {history_id} failed: {exc}") from exc

        identity: str = changed_by or ""
        if identity not in user_ids:
            user: Optional[JiraUser] = await resolve_user(session, identity)
            user_ids[identity] = user.id if user is not None else None
        user_id: Optional[int] = user_ids[identity]
        if user_id is None:
            outcome.unresolved += 1
            logger.debug(
                "No user for changer, skipping activity",
                extra={"history_id": history_id, "changed_by": changed_by},
            )
            continue

        activity_type: ActivityType = await get_or_create_activity_type(session, kind.value)
        activity = UserActivity(
            user_id=user_id,
            activity_type_id=activity_type.id,
            issue_history_id=history_id,
            occurred_at=changed_at,
        )
        session.add(activity)
        try:
            await session.commit()
        except IntegrityError as exc:
            await session.rollback()
            if await _has_activity(session, history_id):
                # Another run derived this row first
                outcome.already_derived += 1
                continue
            raise PersistenceError(
                f"Could not record activity for history {history_id}: {exc.orig}"
            ) from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceError(
                f"Could not record activity for history {history_id}: {exc}"
            ) from exc

        session.expunge(activity)
        set_committed_value(activity, "activity_type", activity_type)
        outcome.activities.append(activity)

    logger.info(
        "Derived user activities",
        extra={
            "derived": len(outcome.activities),
            "unresolved": outcome.unresolved,
            "unmapped": outcome.unmapped,
            "already_derived": outcome.already_derived,
        },
    )
    return outcome


async def pending_history(session: AsyncSession) -> list[IssueHistory]:
    """History rows that have no activity yet, oldest first."""
    try:
        result = await session.execute(
            select(IssueHistory)
            .outerjoin(UserActivity, UserActivity.issue_history_id == IssueHistory.id)
            .where(UserActivity.id.is_(None))
            .order_by(IssueHistory.changed_at, IssueHistory.id)
        )
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Could not list pending history: {exc}") from exc
    return list(result.scalars().all())


async def record_activity(
    session: AsyncSession,
    user_id: Optional[int],
    activity_type_id: Optional[int],
    occurred_at: Optional[datetime] = None,
) -> UserActivity:
    """
    Record one activity by hand, outside derivation.

    Both references must point at existing rows; a missing or unknown one is
    a ValidationError so nothing dangling is ever written.
    """
    missing: list[str] = [
        name
        for name, value in (("user_id", user_id), ("activity_type_id", activity_type_id))
        if value is None
    ]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", missing=missing)

    if await find_by_id(session, JiraUser, user_id) is None:
        raise ValidationError(f"Unknown user {user_id}")
    activity_type: Optional[ActivityType] = await find_by_id(session, ActivityType, activity_type_id)
    if activity_type is None:
        raise ValidationError(f"Unknown activity type {activity_type_id}")

    activity = UserActivity(
        user_id=user_id,
        activity_type_id=activity_type_id,
        issue_history_id=None,
        occurred_at=occurred_at or utcnow(),
    )
    session.add(activity)
    try:
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError(f"Could not record activity for user {user_id}: {exc}") from exc

    session.expunge(activity)
    set_committed_value(activity, "activity_type", activity_type)
    logger.info(
        "Recorded user activity",
        extra={"user_id": user_id, "activity_type": activity_type.name},
    )
    return activity
