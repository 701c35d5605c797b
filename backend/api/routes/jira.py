"""
Jira sync and store endpoints.

Endpoints:
- POST /api/jira/users/sync - Fetch and reconcile users
- POST /api/jira/issues/sync - Fetch and reconcile issues (records diffs)
- POST /api/jira/history/sync - Pull the remote changelog of stored issues
- POST /api/jira/sync - Run every stage
- GET /api/jira/issues - Stored issues
- GET /api/jira/users - Stored users
- GET /api/jira/users/{user_id}/activities - Activities of one user
- GET /api/jira/users/{user_id}/profile - Profile of one user
- GET /api/jira/activity-types - Known activity types
- POST /api/jira/activity-types - Look up or create an activity type
- POST /api/jira/users - Add a user
- POST /api/jira/users/{user_id}/profile - Add or replace a user's profile
- POST /api/jira/users/{user_id}/activities - Record an activity by hand

Sync endpoints take an optional credentials body; blank fields fall back to
the JIRA_* settings.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from config import settings
from connectors.errors import (
    DecodeFailure,
    JiraSyncError,
    SyncCancelledError,
    TransportError,
    ValidationError,
)
from connectors.models import JiraCredentials, UserProfileRecord
from services.jira_sync import JiraSyncService, SyncFailure

router = APIRouter()
logger = logging.getLogger(__name__)


class CredentialsRequest(BaseModel):
    """Request body for sync endpoints."""

    base_url: Optional[str] = None
    username: Optional[str] = None
    api_token: Optional[str] = None


class ActivityTypeRequest(BaseModel):
    """Request body for creating an activity type."""

    name: Optional[str] = None


class UserRequest(BaseModel):
    """Request body for adding a user."""

    account_id: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None


class UserProfileRequest(BaseModel):
    """Request body for a user profile. Omitted fields take the defaults."""

    time_zone: Optional[str] = None
    avatar_url: Optional[str] = None
    account_type: Optional[str] = None
    active: bool = True
    locale: Optional[str] = None


class UserActivityRequest(BaseModel):
    """Request body for recording an activity."""

    activity_type_id: Optional[int] = None
    occurred_at: Optional[datetime] = None


class ItemsResponse(BaseModel):
    """List response for store reads and sync operations."""

    items: list[dict[str, Any]]
    total: int


def get_sync_service(request: Request) -> JiraSyncService:
    """Service bound to the app's session factory (overridden in tests)."""
    return JiraSyncService(request.app.state.session_factory)


def _credentials(body: Optional[CredentialsRequest]) -> JiraCredentials:
    body = body or CredentialsRequest()
    return JiraCredentials(
        base_url=body.base_url or settings.JIRA_BASE_URL,
        username=body.username or settings.JIRA_USERNAME,
        api_token=body.api_token or settings.JIRA_API_TOKEN,
    )


def _raise_http(exc: JiraSyncError) -> NoReturn:
    """Translate a sync error into the matching HTTP status."""
    status_code: int
    if isinstance(exc, (ValidationError, DecodeFailure)):
        status_code = 400
    elif isinstance(exc, TransportError):
        status_code = 502
    elif isinstance(exc, SyncCancelledError):
        status_code = 409
    else:
        status_code = 500

    log = logger.warning if exc.client_error else logger.error
    log(
        "Jira request failed",
        extra={
            "error_type": type(exc).__name__,
            "stage": exc.stage,
            "status_code": status_code,
            "error": str(exc),
        },
    )
    raise HTTPException(status_code=status_code, detail=str(exc)) from exc


def _items(rows: list[Any]) -> ItemsResponse:
    return ItemsResponse(items=[row.to_dict() for row in rows], total=len(rows))


# =============================================================================
# Sync operations
# =============================================================================


@router.post("/users/sync", response_model=ItemsResponse)
async def sync_users(
    body: Optional[CredentialsRequest] = None,
    service: JiraSyncService = Depends(get_sync_service),
) -> ItemsResponse:
    try:
        users = await service.fetch_and_reconcile_users(_credentials(body))
    except JiraSyncError as exc:
        _raise_http(exc)
    return _items(users)


@router.post("/issues/sync", response_model=ItemsResponse)
async def sync_issues(
    body: Optional[CredentialsRequest] = None,
    service: JiraSyncService = Depends(get_sync_service),
) -> ItemsResponse:
    try:
        issues = await service.fetch_and_reconcile_issues(_credentials(body))
    except JiraSyncError as exc:
        _raise_http(exc)
    return _items(issues)


@router.post("/history/sync", response_model=ItemsResponse)
async def sync_history(
    body: Optional[CredentialsRequest] = None,
    service: JiraSyncService = Depends(get_sync_service),
) -> ItemsResponse:
    try:
        history = await service.fetch_and_save_issue_history(_credentials(body))
    except JiraSyncError as exc:
        _raise_http(exc)
    return _items(history)


@router.post("/sync")
async def sync_all(
    body: Optional[CredentialsRequest] = None,
    service: JiraSyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    """Run a full sync and report the counters reached."""
    try:
        outcome = await service.sync(_credentials(body))
    except JiraSyncError as exc:
        _raise_http(exc)
    if isinstance(outcome, SyncFailure):
        _raise_http(outcome.cause)
    return outcome.to_dict()


# =============================================================================
# Store reads
# =============================================================================


@router.get("/issues", response_model=ItemsResponse)
async def list_issues(service: JiraSyncService = Depends(get_sync_service)) -> ItemsResponse:
    try:
        issues = await service.get_issues_from_store()
    except JiraSyncError as exc:
        _raise_http(exc)
    if not issues:
        raise HTTPException(status_code=404, detail="No issues found")
    return _items(issues)


@router.get("/users", response_model=ItemsResponse)
async def list_users(service: JiraSyncService = Depends(get_sync_service)) -> ItemsResponse:
    try:
        users = await service.get_users_from_store()
    except JiraSyncError as exc:
        _raise_http(exc)
    return _items(users)


@router.get("/users/{user_id}/activities", response_model=ItemsResponse)
async def list_user_activities(
    user_id: int, service: JiraSyncService = Depends(get_sync_service)
) -> ItemsResponse:
    try:
        activities = await service.get_user_activities(user_id)
    except JiraSyncError as exc:
        _raise_http(exc)
    if not activities:
        raise HTTPException(status_code=404, detail="No activities found")
    return _items(activities)


@router.get("/users/{user_id}/profile")
async def get_user_profile(
    user_id: int, service: JiraSyncService = Depends(get_sync_service)
) -> dict[str, Any]:
    try:
        profile = await service.get_user_profile(user_id)
    except JiraSyncError as exc:
        _raise_http(exc)
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return profile.to_dict()


@router.get("/activity-types", response_model=ItemsResponse)
async def list_activity_types(
    service: JiraSyncService = Depends(get_sync_service),
) -> ItemsResponse:
    try:
        activity_types = await service.list_activity_types()
    except JiraSyncError as exc:
        _raise_http(exc)
    return _items(activity_types)


@router.post("/activity-types", status_code=201)
async def add_activity_type(
    body: ActivityTypeRequest,
    service: JiraSyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    try:
        activity_type = await service.add_activity_type(body.name or "")
    except JiraSyncError as exc:
        _raise_http(exc)
    return activity_type.to_dict()


@router.post("/users", status_code=201)
async def add_user(
    body: UserRequest,
    service: JiraSyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    try:
        user = await service.add_user(body.account_id, body.display_name, body.email)
    except JiraSyncError as exc:
        _raise_http(exc)
    return user.to_dict()


@router.post("/users/{user_id}/profile", status_code=201)
async def add_user_profile(
    user_id: int,
    body: UserProfileRequest,
    service: JiraSyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    try:
        profile = await service.add_user_profile(
            user_id, UserProfileRecord(**body.model_dump())
        )
    except JiraSyncError as exc:
        _raise_http(exc)
    return profile.to_dict()


@router.post("/users/{user_id}/activities", status_code=201)
async def add_user_activity(
    user_id: int,
    body: UserActivityRequest,
    service: JiraSyncService = Depends(get_sync_service),
) -> dict[str, Any]:
    try:
        activity = await service.add_user_activity(
            user_id, body.activity_type_id, body.occurred_at
        )
    except JiraSyncError as exc:
        _raise_http(exc)
    return activity.to_dict()
