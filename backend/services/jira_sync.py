"""
Jira sync orchestration.

A full run moves through the stages in :class:`SyncStage` strictly in order:
users are fetched and reconciled, then issues, then the history diffs and
remote changelog are recorded, and finally user activities are derived.
Each stage commits entity by entity, so work finished by an earlier stage
stays in the store when a later one fails.

The store is injected as a session factory; nothing here holds a global
engine or session.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import settings
from connectors.errors import (
    ConflictError,
    JiraSyncError,
    PersistenceError,
    ValidationError,
)
from connectors.jira import JiraClient, validate_credentials
from connectors.models import (
    ChangeRecord,
    IssueRecord,
    JiraCredentials,
    MalformedRecord,
    UserProfileRecord,
    UserRecord,
)
from connectors.normalize import normalize_changelog, normalize_issue, normalize_user
from connectors.pagination import ensure_not_cancelled
from models.activity_type import ActivityType
from models.database import session_scope
from models.issue_history import SOURCE_CHANGELOG, IssueHistory
from models.jira_issue import JiraIssue
from models.jira_user import JiraUser
from models.user_activity import UserActivity
from models.user_profile import UserProfile
from services.activity import (
    derive_activities,
    get_or_create_activity_type,
    pending_history,
    record_activity,
)
from services.history import FieldChange, diff_fields, is_stale, record_changes
from services.reconcile import Reconciler, find_by_id

logger = logging.getLogger(__name__)


class SyncStage(str, Enum):
    IDLE = "idle"
    FETCHING_USERS = "fetching_users"
    RECONCILING_USERS = "reconciling_users"
    FETCHING_ISSUES = "fetching_issues"
    RECONCILING_ISSUES = "reconciling_issues"
    DIFFING_HISTORY = "diffing_history"
    DERIVING_ACTIVITY = "deriving_activity"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Counters for one run. Also the partial result carried by a failure."""

    issues_processed: int = 0
    users_processed: int = 0
    history_recorded: int = 0
    activities_derived: int = 0
    errors: list[MalformedRecord] = field(default_factory=list)
    stage: SyncStage = SyncStage.IDLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "issues_processed": self.issues_processed,
            "users_processed": self.users_processed,
            "history_recorded": self.history_recorded,
            "activities_derived": self.activities_derived,
            "errors": [str(error) for error in self.errors],
        }


@dataclass
class SyncFailure:
    """A run that stopped in ``stage`` because of ``cause``."""

    stage: SyncStage
    cause: JiraSyncError
    partial: SyncResult

    def to_dict(self) -> dict[str, Any]:
        return {
            "stage": SyncStage.FAILED.value,
            "failed_stage": self.stage.value,
            "error": str(self.cause),
            "error_type": type(self.cause).__name__,
            "client_error": self.cause.client_error,
            "partial": self.partial.to_dict(),
        }


SyncOutcome = Union[SyncResult, SyncFailure]
ClientFactory = Callable[[JiraCredentials], JiraClient]


# ── Reconcilers ──────────────────────────────────────────────────────────


def _merge_user(user: JiraUser, record: UserRecord) -> None:
    user.display_name = record.display_name
    user.email = record.email


def _new_user(account_id: str, record: UserRecord) -> JiraUser:
    return JiraUser(account_id=account_id, display_name=record.display_name, email=record.email)


def _merge_profile(profile: UserProfile, record: UserProfileRecord) -> None:
    profile.time_zone = record.time_zone
    profile.avatar_url = record.avatar_url
    profile.account_type = record.account_type
    profile.active = record.active
    profile.locale = record.locale


def _new_profile(user_id: int, record: UserProfileRecord) -> UserProfile:
    profile = UserProfile(user_id=user_id)
    _merge_profile(profile, record)
    return profile


def _new_issue(key: str, record: IssueRecord) -> JiraIssue:
    issue = JiraIssue(
        key=key,
        jira_id=record.jira_id,
        assignee_account_id=record.assignee_account_id,
        reporter_account_id=record.reporter_account_id,
    )
    issue.replace_fields(record.fields)
    return issue


class _IssueMerge:
    """
    Merge step for issues. Keeps the field diffs of each merged key.

    Offset paging can return the same issue twice in one walk, so diffs
    accumulate per key instead of replacing the earlier merge's.
    """

    def __init__(self) -> None:
        self.changes: dict[str, list[FieldChange]] = {}
        self.stale: set[str] = set()

    def __call__(self, issue: JiraIssue, record: IssueRecord) -> None:
        previous = issue.fields
        if is_stale(previous, record.fields):
            self.stale.add(issue.key)
            self.changes.setdefault(issue.key, [])
            logger.info(
                "Ignoring stale issue payload",
                extra={
                    "issue_key": issue.key,
                    "stored_updated": str(previous.updated),
                    "incoming_updated": str(record.fields.updated),
                },
            )
            return

        self.changes.setdefault(issue.key, []).extend(diff_fields(previous, record.fields))
        issue.replace_fields(record.fields)
        if record.jira_id:
            issue.jira_id = record.jira_id
        issue.assignee_account_id = record.assignee_account_id
        issue.reporter_account_id = record.reporter_account_id


users_reconciler: Reconciler[JiraUser] = Reconciler(JiraUser, "account_id", _merge_user, _new_user)
profiles_reconciler: Reconciler[UserProfile] = Reconciler(
    UserProfile, "user_id", _merge_profile, _new_profile
)


class JiraSyncService:
    """Runs Jira syncs against the store behind ``session_factory``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client_factory: Optional[ClientFactory] = None,
        *,
        fetch_changelog: Optional[bool] = None,
    ) -> None:
        self.session_factory = session_factory
        self.client_factory: ClientFactory = client_factory or self._default_client
        self.fetch_changelog: bool = (
            settings.JIRA_FETCH_CHANGELOG if fetch_changelog is None else fetch_changelog
        )

    @staticmethod
    def _default_client(credentials: JiraCredentials) -> JiraClient:
        return JiraClient(
            credentials,
            page_size=settings.JIRA_PAGE_SIZE,
            timeout=settings.JIRA_TIMEOUT_SECONDS,
            max_retries=settings.JIRA_MAX_RETRIES,
            backoff_seconds=settings.JIRA_BACKOFF_SECONDS,
        )

    # ── Full run ─────────────────────────────────────────────────────────

    async def sync(
        self,
        credentials: Optional[JiraCredentials],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> SyncOutcome:
        """
        Run every stage for one credential context.

        Raises ValidationError for bad credentials before any request is
        made. Every other failure is returned as a SyncFailure naming the
        stage it happened in, with the counters reached so far.
        """
        # Validation first: bad credentials never reach the network
        validated: JiraCredentials = validate_credentials(credentials)
        result = SyncResult()
        client: JiraClient = self.client_factory(validated)
        changed_by: str = validated.username or ""

        logger.info("Starting Jira sync", extra={"base_url": validated.base_url})
        try:
            async with client, session_scope(self.session_factory) as session:
                result.stage = SyncStage.FETCHING_USERS
                raw_users = await client.fetch_users(cancel_event)

                result.stage = SyncStage.RECONCILING_USERS
                await self._reconcile_users(session, raw_users, result, cancel_event)

                result.stage = SyncStage.FETCHING_ISSUES
                raw_issues = await client.fetch_issues(cancel_event=cancel_event)

                result.stage = SyncStage.RECONCILING_ISSUES
                merge = _IssueMerge()
                issues = await self._reconcile_issues(
                    session, raw_issues, result, cancel_event, merge
                )

                result.stage = SyncStage.DIFFING_HISTORY
                await self._record_diffs(session, issues, merge, changed_by, result, cancel_event)
                if self.fetch_changelog:
                    await self._ingest_changelog(client, session, issues, result, cancel_event)

                result.stage = SyncStage.DERIVING_ACTIVITY
                await self._derive(session, result)
        except JiraSyncError as exc:
            failed_stage: SyncStage = result.stage
            exc.with_stage(failed_stage.value)
            logger.warning(
                "Jira sync failed",
                extra={
                    "stage": failed_stage.value,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
            return SyncFailure(stage=failed_stage, cause=exc, partial=result)

        result.stage = SyncStage.COMPLETE
        logger.info("Jira sync complete", extra=result.to_dict())
        return result

    # ── Operation surface ────────────────────────────────────────────────

    async def fetch_and_reconcile_users(
        self,
        credentials: Optional[JiraCredentials],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[JiraUser]:
        client: JiraClient = self.client_factory(validate_credentials(credentials))
        result = SyncResult()
        async with client, session_scope(self.session_factory) as session:
            raw_users = await _staged(SyncStage.FETCHING_USERS, client.fetch_users(cancel_event))
            return await _staged(
                SyncStage.RECONCILING_USERS,
                self._reconcile_users(session, raw_users, result, cancel_event),
            )

    async def fetch_and_reconcile_issues(
        self,
        credentials: Optional[JiraCredentials],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[JiraIssue]:
        """Fetch every issue, reconcile it and record the diffs of re-synced ones."""
        validated: JiraCredentials = validate_credentials(credentials)
        client: JiraClient = self.client_factory(validated)
        changed_by: str = validated.username or ""
        result = SyncResult()
        merge = _IssueMerge()
        async with client, session_scope(self.session_factory) as session:
            raw_issues = await _staged(
                SyncStage.FETCHING_ISSUES, client.fetch_issues(cancel_event=cancel_event)
            )
            issues = await _staged(
                SyncStage.RECONCILING_ISSUES,
                self._reconcile_issues(session, raw_issues, result, cancel_event, merge),
            )
            await _staged(
                SyncStage.DIFFING_HISTORY,
                self._record_diffs(session, issues, merge, changed_by, result, cancel_event),
            )
        return issues

    async def fetch_and_save_issue_history(
        self,
        credentials: Optional[JiraCredentials],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> list[IssueHistory]:
        """Pull the remote changelog of every stored issue; return the new rows."""
        client: JiraClient = self.client_factory(validate_credentials(credentials))
        result = SyncResult()
        async with client, session_scope(self.session_factory) as session:
            issues = await self._stored_issues(session)
            saved = await _staged(
                SyncStage.DIFFING_HISTORY,
                self._ingest_changelog(client, session, issues, result, cancel_event),
            )
            await _staged(SyncStage.DERIVING_ACTIVITY, self._derive(session, result))
        return saved

    async def get_issues_from_store(self) -> list[JiraIssue]:
        async with session_scope(self.session_factory) as session:
            return await self._stored_issues(session)

    async def get_users_from_store(self) -> list[JiraUser]:
        async with session_scope(self.session_factory) as session:
            return await _select_all(session, select(JiraUser).order_by(JiraUser.id))

    async def get_user_activities(self, user_id: int) -> list[UserActivity]:
        async with session_scope(self.session_factory) as session:
            return await _select_all(
                session,
                select(UserActivity)
                .where(UserActivity.user_id == user_id)
                .order_by(UserActivity.occurred_at, UserActivity.id),
            )

    async def get_user_profile(self, user_id: int) -> Optional[UserProfile]:
        async with session_scope(self.session_factory) as session:
            return await profiles_reconciler.lookup(session, user_id)

    async def list_activity_types(self) -> list[ActivityType]:
        async with session_scope(self.session_factory) as session:
            return await _select_all(session, select(ActivityType).order_by(ActivityType.id))

    async def add_activity_type(self, name: str) -> ActivityType:
        """Return the activity type called ``name``, creating it if absent."""
        async with session_scope(self.session_factory) as session:
            return await get_or_create_activity_type(session, name)

    async def add_user(
        self, account_id: Optional[str], display_name: Optional[str], email: Optional[str] = None
    ) -> JiraUser:
        """Add a user by hand. An existing account id is merged, never duplicated."""
        account_id = (account_id or "").strip()
        display_name = (display_name or "").strip()
        missing: list[str] = [
            name
            for name, value in (("account_id", account_id), ("display_name", display_name))
            if not value
        ]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}", missing=missing
            )

        record = UserRecord(account_id=account_id, display_name=display_name, email=email or None)
        async with session_scope(self.session_factory) as session:
            user, created = await users_reconciler.reconcile(session, account_id, record)
        logger.info("Added Jira user", extra={"account_id": account_id, "created": created})
        return user

    async def add_user_profile(
        self, user_id: Optional[int], profile: Optional[UserProfileRecord] = None
    ) -> UserProfile:
        """Set the profile of an existing user, creating it if the user has none."""
        if user_id is None:
            raise ValidationError("Missing required fields: user_id", missing=["user_id"])
        async with session_scope(self.session_factory) as session:
            if await find_by_id(session, JiraUser, user_id) is None:
                raise ValidationError(f"Unknown user {user_id}")
            entity, _ = await profiles_reconciler.reconcile(
                session, user_id, profile or UserProfileRecord()
            )
        return entity

    async def add_user_activity(
        self,
        user_id: Optional[int],
        activity_type_id: Optional[int],
        occurred_at: Optional[datetime] = None,
    ) -> UserActivity:
        """Record an activity for an existing user and activity type."""
        async with session_scope(self.session_factory) as session:
            return await record_activity(session, user_id, activity_type_id, occurred_at)

    async def derive_pending_activities(self) -> list[UserActivity]:
        """Derive activities for every history row that has none yet."""
        result = SyncResult()
        async with session_scope(self.session_factory) as session:
            return await _staged(SyncStage.DERIVING_ACTIVITY, self._derive(session, result))

    # ── Stages ───────────────────────────────────────────────────────────

    async def _reconcile_users(
        self,
        session: AsyncSession,
        raw_users: list[dict[str, Any]],
        result: SyncResult,
        cancel_event: Optional[asyncio.Event],
    ) -> list[JiraUser]:
        users: list[JiraUser] = []
        for raw in raw_users:
            ensure_not_cancelled(cancel_event, SyncStage.RECONCILING_USERS.value)
            record = normalize_user(raw)
            if isinstance(record, MalformedRecord):
                logger.warning("Skipping malformed user", extra={"reason": record.reason})
                result.errors.append(record)
                continue

            user, _ = await users_reconciler.reconcile(session, record.account_id, record)
            await profiles_reconciler.reconcile(session, user.id, record.profile)
            users.append(user)
            result.users_processed += 1

        logger.info(
            "Reconciled Jira users",
            extra={"users": result.users_processed, "errors": len(result.errors)},
        )
        return users

    async def _reconcile_issues(
        self,
        session: AsyncSession,
        raw_issues: list[dict[str, Any]],
        result: SyncResult,
        cancel_event: Optional[asyncio.Event],
        merge: _IssueMerge,
    ) -> list[JiraIssue]:
        reconciler: Reconciler[JiraIssue] = Reconciler(JiraIssue, "key", merge, _new_issue)
        issues: list[JiraIssue] = []
        seen: set[str] = set()
        created_count: int = 0
        for raw in raw_issues:
            ensure_not_cancelled(cancel_event, SyncStage.RECONCILING_ISSUES.value)
            record = normalize_issue(raw)
            if isinstance(record, MalformedRecord):
                logger.warning("Skipping malformed issue", extra={"reason": record.reason})
                result.errors.append(record)
                continue

            issue, created = await reconciler.reconcile(session, record.key, record)
            if created:
                created_count += 1
            issues.append(issue)
            if record.key not in seen:
                seen.add(record.key)
                result.issues_processed += 1

        logger.info(
            "Reconciled Jira issues",
            extra={
                "issues": result.issues_processed,
                "created": created_count,
                "stale": len(merge.stale),
                "errors": len(result.errors),
            },
        )
        return _distinct_by_key(issues)

    async def _record_diffs(
        self,
        session: AsyncSession,
        issues: list[JiraIssue],
        merge: _IssueMerge,
        changed_by: str,
        result: SyncResult,
        cancel_event: Optional[asyncio.Event],
    ) -> list[IssueHistory]:
        recorded: list[IssueHistory] = []
        for issue in issues:
            changes: list[FieldChange] = merge.changes.get(issue.key, [])
            if not changes:
                continue
            ensure_not_cancelled(cancel_event, SyncStage.DIFFING_HISTORY.value)
            rows = await record_changes(session, issue, changes, changed_by=changed_by or None)
            recorded.extend(rows)
        result.history_recorded += len(recorded)
        return recorded

    async def _ingest_changelog(
        self,
        client: JiraClient,
        session: AsyncSession,
        issues: list[JiraIssue],
        result: SyncResult,
        cancel_event: Optional[asyncio.Event],
    ) -> list[IssueHistory]:
        saved: list[IssueHistory] = []
        for issue in issues:
            ensure_not_cancelled(cancel_event, SyncStage.DIFFING_HISTORY.value)
            entries = await client.fetch_changelog(issue.key, cancel_event)

            changes: list[ChangeRecord] = []
            for entry in entries:
                parsed = normalize_changelog(issue.key, entry)
                if isinstance(parsed, MalformedRecord):
                    logger.warning(
                        "Skipping malformed changelog entry",
                        extra={"issue_key": issue.key, "reason": parsed.reason},
                    )
                    result.errors.append(parsed)
                    continue
                changes.extend(parsed)

            if changes:
                saved.extend(await _save_changelog(session, issue, changes))

        result.history_recorded += len(saved)
        logger.info(
            "Ingested Jira changelog",
            extra={"issues": len(issues), "new_history": len(saved)},
        )
        return saved

    async def _derive(self, session: AsyncSession, result: SyncResult) -> list[UserActivity]:
        history: list[IssueHistory] = await pending_history(session)
        outcome = await derive_activities(session, history)
        result.activities_derived += len(outcome.activities)
        return outcome.activities

    async def _stored_issues(self, session: AsyncSession) -> list[JiraIssue]:
        return await _select_all(session, select(JiraIssue).order_by(JiraIssue.key))


# ── Helpers ──────────────────────────────────────────────────────────────


def _distinct_by_key(issues: list[JiraIssue]) -> list[JiraIssue]:
    """One issue per key in first-seen order; a later copy replaces an earlier one."""
    by_key: dict[str, JiraIssue] = {}
    for issue in issues:
        by_key[issue.key] = issue
    return list(by_key.values())


async def _staged(stage: SyncStage, awaitable: Any) -> Any:
    """Await ``awaitable``, tagging any sync error with ``stage``."""
    try:
        return await awaitable
    except JiraSyncError as exc:
        raise exc.with_stage(stage.value)


async def _select_all(session: AsyncSession, statement: Any) -> list[Any]:
    try:
        result = await session.execute(statement)
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Store query failed: {exc}") from exc
    rows: list[Any] = list(result.scalars().unique().all())
    for row in rows:
        session.expunge(row)
    return rows


async def _save_changelog(
    session: AsyncSession, issue: JiraIssue, changes: list[ChangeRecord]
) -> list[IssueHistory]:
    """Insert the changelog items of one issue not stored yet, in one commit."""
    try:
        return await _save_changelog_once(session, issue, changes)
    except ConflictError:
        logger.info(
            "Changelog insert raced another writer, retrying",
            extra={"issue_key": issue.key},
        )
        try:
            return await _save_changelog_once(session, issue, changes)
        except ConflictError as second:
            raise PersistenceError(f"Changelog of {issue.key} conflicted twice") from second


async def _save_changelog_once(
    session: AsyncSession, issue: JiraIssue, changes: list[ChangeRecord]
) -> list[IssueHistory]:
    change_ids: list[str] = [change.source_change_id for change in changes]
    try:
        existing = await session.execute(
            select(IssueHistory.source_change_id).where(
                IssueHistory.source_change_id.in_(change_ids)
            )
        )
    except SQLAlchemyError as exc:
        raise PersistenceError(f"Changelog lookup for {issue.key} failed: {exc}") from exc
    known: set[str] = set(existing.scalars().all())

    rows: list[IssueHistory] = [
        IssueHistory(
            issue_id=issue.id,
            field_changed=change.field,
            old_value=change.old_value,
            new_value=change.new_value,
            changed_at=change.changed_at,
            changed_by=change.changed_by,
            source=SOURCE_CHANGELOG,
            source_change_id=change.source_change_id,
        )
        for change in changes
        if change.source_change_id not in known
    ]
    if not rows:
        return []

    session.add_all(rows)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise ConflictError(
            f"Changelog rows for {issue.key} already exist", natural_key=issue.key
        ) from exc
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceError(f"Could not save changelog of {issue.key}: {exc}") from exc

    for row in rows:
        session.expunge(row)
    return rows
