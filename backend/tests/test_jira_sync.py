import asyncio
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
import pytest
from sqlalchemy import func, select

from connectors.errors import DecodeFailure, SyncCancelledError, TransportError, ValidationError
from connectors.jira import JiraClient
from connectors.models import JiraCredentials, UserProfileRecord
from models.issue_history import IssueHistory
from models.jira_issue import JiraIssue
from models.jira_user import JiraUser
from models.user_activity import UserActivity
from models.user_profile import UserProfile
from services.jira_sync import JiraSyncService, SyncFailure, SyncResult, SyncStage

CREDENTIALS = JiraCredentials(
    base_url="https://example.atlassian.net",
    username="testuser",
    api_token="apitoken",
)


def _issue(key: str, summary: str, status: str = "To Do", updated: Optional[str] = None) -> dict[str, Any]:
    fields: dict[str, Any] = {"summary": summary, "description": None, "status": {"name": status}}
    if updated:
        fields["updated"] = updated
    return {"id": key.split("-")[1], "key": key, "fields": fields}


USERS = [
    {"accountId": "acc-1", "displayName": "Ada", "emailAddress": "ada@example.com", "timeZone": "UTC"},
    {"accountId": "acc-2", "displayName": "Grace"},
]

CHANGELOG = {
    "TEST-1": [
        {
            "id": "100",
            "author": {"accountId": "acc-1"},
            "created": "2024-03-02T08:00:00.000+0000",
            "items": [
                {"field": "status", "fromString": "To Do", "toString": "In Progress"},
                {"field": "assignee", "fromString": None, "toString": "Grace"},
            ],
        }
    ]
}


class FakeJira:
    """In-memory Jira REST API served through httpx.MockTransport."""

    def __init__(
        self,
        issues: Optional[list[dict[str, Any]]] = None,
        users: Optional[list[dict[str, Any]]] = None,
        changelogs: Optional[dict[str, list[dict[str, Any]]]] = None,
    ) -> None:
        self.issues = issues or []
        self.users = users or []
        self.changelogs = changelogs or {}
        self.search_response: Optional[httpx.Response] = None
        self.on_search: Optional[Callable[[], None]] = None
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        start = int(request.url.params.get("startAt", 0))
        size = int(request.url.params.get("maxResults", 50))

        if path.endswith("/users/search"):
            return httpx.Response(200, json=self.users[start:start + size])
        if path.endswith("/search"):
            if self.on_search is not None:
                self.on_search()
            if self.search_response is not None:
                return self.search_response
            return httpx.Response(
                200, json={"issues": self.issues[start:start + size], "total": len(self.issues)}
            )
        if path.endswith("/changelog"):
            entries = self.changelogs.get(path.split("/")[-2], [])
            return httpx.Response(
                200,
                json={"values": entries[start:start + size], "isLast": start + size >= len(entries)},
            )
        return httpx.Response(404)

    def service(self, session_factory, **kwargs) -> JiraSyncService:
        def client_factory(credentials: JiraCredentials) -> JiraClient:
            return JiraClient(credentials, page_size=2, transport=httpx.MockTransport(self.handler))

        return JiraSyncService(session_factory, client_factory=client_factory, **kwargs)


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


async def _all(session_factory, model) -> list:
    async with session_factory() as session:
        return list((await session.execute(select(model).order_by(model.id))).scalars().all())


def test_resync_overwrites_fields_and_keeps_one_issue(make_store) -> None:
    jira = FakeJira(issues=[_issue("TEST-1", "Initial Summary")])

    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = jira.service(session_factory)
            first = await service.fetch_and_reconcile_issues(CREDENTIALS)
            jira.issues = [_issue("TEST-1", "Updated Summary")]
            second = await service.fetch_and_reconcile_issues(CREDENTIALS)
            return first, second, await _all(session_factory, JiraIssue), await _all(session_factory, IssueHistory)
        finally:
            await engine.dispose()

    first, second, issues, history = asyncio.run(scenario())

    assert len(issues) == 1
    assert issues[0].key == "TEST-1"
    assert issues[0].summary == "Updated Summary"
    assert first[0].id == second[0].id
    assert [(h.field_changed, h.old_value, h.new_value) for h in history] == [
        ("summary", "Initial Summary", "Updated Summary")
    ]
    assert history[0].changed_by == "testuser"


def test_reconciling_same_issues_twice_is_idempotent(make_store) -> None:
    jira = FakeJira(issues=[_issue("TEST-1", "One"), _issue("TEST-2", "Two"), _issue("TEST-3", "Three")])

    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = jira.service(session_factory)
            await service.fetch_and_reconcile_issues(CREDENTIALS)
            after_first = await _count(session_factory, JiraIssue)
            await service.fetch_and_reconcile_issues(CREDENTIALS)
            return after_first, await _count(session_factory, JiraIssue), await _count(session_factory, IssueHistory)
        finally:
            await engine.dispose()

    after_first, after_second, history_count = asyncio.run(scenario())

    assert after_first == 3
    assert after_second == 3
    assert history_count == 0


@pytest.mark.parametrize("body", [{"issues": []}, {"issues": None}])
def test_zero_remote_issues_is_empty_result(make_store, body) -> None:
    jira = FakeJira()
    jira.search_response = httpx.Response(200, json=body)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            return await jira.service(session_factory).fetch_and_reconcile_issues(CREDENTIALS)
        finally:
            await engine.dispose()

    assert asyncio.run(scenario()) == []


def test_malformed_json_writes_no_issues(make_store) -> None:
    jira = FakeJira()
    jira.search_response = httpx.Response(200, text="INVALID_JSON")

    async def scenario():
        engine, session_factory = await make_store()
        try:
            with pytest.raises(DecodeFailure) as excinfo:
                await jira.service(session_factory).fetch_and_reconcile_issues(CREDENTIALS)
            return excinfo.value, await _count(session_factory, JiraIssue)
        finally:
            await engine.dispose()

    error, count = asyncio.run(scenario())

    assert str(error) == "Malformed JSON response."
    assert error.stage == SyncStage.FETCHING_ISSUES.value
    assert count == 0


def test_stale_issue_payload_is_ignored(make_store) -> None:
    jira = FakeJira(issues=[_issue("TEST-1", "Newer", updated="2024-03-02T00:00:00.000+0000")])

    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = jira.service(session_factory)
            await service.fetch_and_reconcile_issues(CREDENTIALS)
            jira.issues = [_issue("TEST-1", "Older", updated="2024-03-01T00:00:00.000+0000")]
            await service.fetch_and_reconcile_issues(CREDENTIALS)
            return await _all(session_factory, JiraIssue), await _count(session_factory, IssueHistory)
        finally:
            await engine.dispose()

    issues, history_count = asyncio.run(scenario())

    assert issues[0].summary == "Newer"
    assert history_count == 0


def test_users_are_unique_by_account_and_carry_profiles(make_store) -> None:
    users = USERS + [
        {"accountId": "acc-1", "displayName": "Ada Lovelace", "emailAddress": "ada@example.com"},
        {"displayName": "No Account"},
    ]
    jira = FakeJira(users=users)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            reconciled = await jira.service(session_factory).fetch_and_reconcile_users(CREDENTIALS)
            return reconciled, await _all(session_factory, JiraUser), await _all(session_factory, UserProfile)
        finally:
            await engine.dispose()

    reconciled, stored, profiles = asyncio.run(scenario())

    assert len(reconciled) == 3
    assert [u.account_id for u in stored] == ["acc-1", "acc-2"]
    assert stored[0].display_name == "Ada Lovelace"
    assert len(profiles) == 2
    assert {p.user_id for p in profiles} == {u.id for u in stored}


def test_full_sync_runs_every_stage(make_store) -> None:
    jira = FakeJira(
        issues=[_issue("TEST-1", "One"), _issue("TEST-2", "Two")],
        users=USERS + [{"displayName": "No Account"}],
        changelogs=CHANGELOG,
    )

    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = jira.service(session_factory)
            first = await service.sync(CREDENTIALS)
            second = await service.sync(CREDENTIALS)
            return first, second, await _all(session_factory, IssueHistory), await _all(session_factory, UserActivity)
        finally:
            await engine.dispose()

    first, second, history, activities = asyncio.run(scenario())

    assert isinstance(first, SyncResult)
    assert first.stage is SyncStage.COMPLETE
    assert first.users_processed == 2
    assert first.issues_processed == 2
    assert first.history_recorded == 2
    assert first.activities_derived == 2
    assert len(first.errors) == 1
    assert first.errors[0].kind == "user"

    assert isinstance(second, SyncResult)
    assert second.history_recorded == 0
    assert second.activities_derived == 0

    assert sorted(h.field_changed for h in history) == ["assignee", "status"]
    assert all(h.source == "changelog" for h in history)
    assert len(activities) == 2


def test_sync_without_changelog_skips_remote_history(make_store) -> None:
    jira = FakeJira(issues=[_issue("TEST-1", "One")], users=USERS, changelogs=CHANGELOG)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            return await jira.service(session_factory, fetch_changelog=False).sync(CREDENTIALS)
        finally:
            await engine.dispose()

    result = asyncio.run(scenario())

    assert isinstance(result, SyncResult)
    assert result.history_recorded == 0
    assert not any(r.url.path.endswith("/changelog") for r in jira.requests)


def test_sync_rejects_invalid_credentials_before_network(make_store) -> None:
    jira = FakeJira(issues=[_issue("TEST-1", "One")])

    async def scenario():
        engine, session_factory = await make_store()
        try:
            await jira.service(session_factory).sync(
                JiraCredentials(base_url="", username="testuser", api_token="apitoken")
            )
        finally:
            await engine.dispose()

    with pytest.raises(ValidationError) as excinfo:
        asyncio.run(scenario())

    assert "base_url" in str(excinfo.value)
    assert jira.requests == []


def test_failed_stage_keeps_earlier_work(make_store) -> None:
    jira = FakeJira(users=USERS)
    jira.search_response = httpx.Response(500)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            outcome = await jira.service(session_factory).sync(CREDENTIALS)
            return outcome, await _count(session_factory, JiraUser)
        finally:
            await engine.dispose()

    outcome, user_count = asyncio.run(scenario())

    assert isinstance(outcome, SyncFailure)
    assert outcome.stage is SyncStage.FETCHING_ISSUES
    assert isinstance(outcome.cause, TransportError)
    assert outcome.cause.status_code == 500
    assert outcome.partial.users_processed == 2
    assert outcome.to_dict()["failed_stage"] == "fetching_issues"
    assert user_count == 2


def test_cancelled_sync_stops_before_network(make_store) -> None:
    jira = FakeJira(users=USERS)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            cancel = asyncio.Event()
            cancel.set()
            return await jira.service(session_factory).sync(CREDENTIALS, cancel_event=cancel)
        finally:
            await engine.dispose()

    outcome = asyncio.run(scenario())

    assert isinstance(outcome, SyncFailure)
    assert isinstance(outcome.cause, SyncCancelledError)
    assert outcome.stage is SyncStage.FETCHING_USERS
    assert jira.requests == []


def test_changelog_ingest_saves_only_new_rows(make_store) -> None:
    jira = FakeJira(issues=[_issue("TEST-1", "One")], users=USERS, changelogs=CHANGELOG)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = jira.service(session_factory)
            await service.fetch_and_reconcile_users(CREDENTIALS)
            await service.fetch_and_reconcile_issues(CREDENTIALS)
            first = await service.fetch_and_save_issue_history(CREDENTIALS)
            second = await service.fetch_and_save_issue_history(CREDENTIALS)
            users = await service.get_users_from_store()
            activities = await service.get_user_activities(users[0].id)
            return first, second, activities
        finally:
            await engine.dispose()

    first, second, activities = asyncio.run(scenario())

    assert len(first) == 2
    assert first[0].old_value == "To Do"
    assert first[0].new_value == "In Progress"
    assert second == []
    assert sorted(a.activity_type.name for a in activities) == ["Assigned Issue", "Changed Status"]


def test_store_reads(make_store) -> None:
    jira = FakeJira(issues=[_issue("TEST-2", "Two"), _issue("TEST-1", "One")], users=USERS)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = jira.service(session_factory)
            empty = await service.get_issues_from_store()
            await service.fetch_and_reconcile_users(CREDENTIALS)
            await service.fetch_and_reconcile_issues(CREDENTIALS)
            issues = await service.get_issues_from_store()
            users = await service.get_users_from_store()
            profile = await service.get_user_profile(users[0].id)
            missing = await service.get_user_profile(999)
            created = await service.add_activity_type("Changed Status")
            reused = await service.add_activity_type("Changed Status")
            types = await service.list_activity_types()
            return empty, issues, users, profile, missing, created, reused, types
        finally:
            await engine.dispose()

    empty, issues, users, profile, missing, created, reused, types = asyncio.run(scenario())

    assert empty == []
    assert [i.key for i in issues] == ["TEST-1", "TEST-2"]
    assert [u.account_id for u in users] == ["acc-1", "acc-2"]
    assert profile is not None and profile.time_zone == "UTC"
    assert missing is None
    assert created.id == reused.id
    assert [t.name for t in types] == ["Changed Status"]


@pytest.mark.parametrize(
    "repeat_summary, expected_history",
    [
        ("B", [("A", "B")]),
        ("C", [("A", "B"), ("B", "C")]),
    ],
)
def test_issue_returned_twice_in_one_walk_keeps_its_history(
    make_store, repeat_summary, expected_history
) -> None:
    jira = FakeJira(issues=[_issue("TEST-1", "A")])

    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = jira.service(session_factory)
            await service.fetch_and_reconcile_issues(CREDENTIALS)
            # Page size 2: TEST-1 lands on both pages of the second walk
            jira.issues = [_issue("TEST-1", "B"), _issue("TEST-2", "Two"), _issue("TEST-1", repeat_summary)]
            outcome = await service.sync(CREDENTIALS)
            return outcome, await _all(session_factory, JiraIssue), await _all(session_factory, IssueHistory)
        finally:
            await engine.dispose()

    outcome, issues, history = asyncio.run(scenario())

    assert isinstance(outcome, SyncResult)
    assert outcome.issues_processed == 2
    assert [i.key for i in issues] == ["TEST-1", "TEST-2"]
    assert issues[0].summary == repeat_summary
    assert [(h.old_value, h.new_value) for h in history if h.source == "diff"] == expected_history


def test_cancel_during_issue_reconciliation_keeps_users(make_store) -> None:
    jira = FakeJira(issues=[_issue("TEST-1", "One")], users=USERS)
    cancel = asyncio.Event()
    jira.on_search = cancel.set

    async def scenario():
        engine, session_factory = await make_store()
        try:
            outcome = await jira.service(session_factory).sync(CREDENTIALS, cancel_event=cancel)
            return outcome, await _count(session_factory, JiraUser), await _count(session_factory, JiraIssue)
        finally:
            await engine.dispose()

    outcome, user_count, issue_count = asyncio.run(scenario())

    assert isinstance(outcome, SyncFailure)
    assert isinstance(outcome.cause, SyncCancelledError)
    assert outcome.stage is SyncStage.RECONCILING_ISSUES
    assert outcome.partial.users_processed == 2
    assert user_count == 2
    assert issue_count == 0


def test_add_user_merges_by_account_id(make_store) -> None:
    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = JiraSyncService(session_factory)
            created = await service.add_user("acc-9", "User1")
            merged = await service.add_user("acc-9", "User One", "one@example.com")
            with pytest.raises(ValidationError) as excinfo:
                await service.add_user("", None)
            return created, merged, excinfo.value, await _all(session_factory, JiraUser)
        finally:
            await engine.dispose()

    created, merged, error, users = asyncio.run(scenario())

    assert created.id == merged.id
    assert len(users) == 1
    assert users[0].display_name == "User One"
    assert users[0].email == "one@example.com"
    assert error.missing == ["account_id", "display_name"]
    assert str(error) == "Missing required fields: account_id, display_name"


def test_add_user_profile_requires_existing_user(make_store) -> None:
    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = JiraSyncService(session_factory)
            user = await service.add_user("acc-9", "User1")
            profile = await service.add_user_profile(
                user.id, UserProfileRecord(time_zone="Europe/Oslo", locale="nb_NO")
            )
            replaced = await service.add_user_profile(user.id, UserProfileRecord(time_zone="UTC"))
            with pytest.raises(ValidationError) as unknown:
                await service.add_user_profile(999)
            with pytest.raises(ValidationError) as missing:
                await service.add_user_profile(None)
            return user, profile, replaced, unknown.value, missing.value, await _count(session_factory, UserProfile)
        finally:
            await engine.dispose()

    user, profile, replaced, unknown, missing, profile_count = asyncio.run(scenario())

    assert profile.user_id == user.id
    assert profile.time_zone == "Europe/Oslo"
    assert replaced.id == profile.id
    assert replaced.time_zone == "UTC"
    assert replaced.locale is None
    assert profile_count == 1
    assert str(unknown) == "Unknown user 999"
    assert missing.missing == ["user_id"]


def test_add_user_activity_checks_references(make_store) -> None:
    occurred = datetime(2024, 3, 2, 8, 0)

    async def scenario():
        engine, session_factory = await make_store()
        try:
            service = JiraSyncService(session_factory)
            user = await service.add_user("acc-9", "User1")
            activity_type = await service.add_activity_type("Changed Status")
            activity = await service.add_user_activity(user.id, activity_type.id, occurred)
            with pytest.raises(ValidationError) as unknown_type:
                await service.add_user_activity(user.id, 999)
            with pytest.raises(ValidationError) as unknown_user:
                await service.add_user_activity(999, activity_type.id)
            with pytest.raises(ValidationError) as missing:
                await service.add_user_activity(user.id, None)
            listed = await service.get_user_activities(user.id)
            derived = await service.derive_pending_activities()
            return activity, unknown_type.value, unknown_user.value, missing.value, listed, derived
        finally:
            await engine.dispose()

    activity, unknown_type, unknown_user, missing, listed, derived = asyncio.run(scenario())

    assert activity.id is not None
    assert activity.issue_history_id is None
    assert activity.occurred_at == occurred
    assert activity.to_dict()["activity_type"] == "Changed Status"
    assert str(unknown_type) == "Unknown activity type 999"
    assert str(unknown_user) == "Unknown user 999"
    assert missing.missing == ["activity_type_id"]
    assert [a.id for a in listed] == [activity.id]
    assert derived == []
