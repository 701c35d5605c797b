"""
Jira connector – reads users, issues and issue changelogs via the REST API.

Authenticates with HTTP basic auth (account email + API token) against a
Jira Cloud site. Everything here is read-only; the sync service owns all
persistence.

Jira Cloud REST API docs: https://developer.atlassian.com/cloud/jira/platform/rest/v3/
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

import httpx

from connectors.errors import DecodeFailure, TransportError, ValidationError
from connectors.models import JiraCredentials, Page
from connectors.pagination import collect_pages

logger = logging.getLogger(__name__)

API_PREFIX: str = "/rest/api/3"
ISSUE_FIELDS: str = "summary,description,status,updated,assignee,reporter"
DEFAULT_JQL: str = "ORDER BY updated DESC"


def validate_credentials(credentials: Optional[JiraCredentials]) -> JiraCredentials:
    """Reject a credential context with any blank field. No network involved."""
    if credentials is None:
        raise ValidationError(
            "Missing required fields: base_url, username, api_token",
            missing=["base_url", "username", "api_token"],
        )
    missing: list[str] = [
        name
        for name in ("base_url", "username", "api_token")
        if not (getattr(credentials, name) or "").strip()
    ]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}", missing=missing
        )
    base_url: str = credentials.base_url.strip().rstrip("/")
    if not base_url.startswith(("http://", "https://")):
        raise ValidationError(
            f"base_url must be an http(s) URL, got {base_url!r}", missing=[]
        )
    return JiraCredentials(
        base_url=base_url,
        username=credentials.username.strip(),
        api_token=credentials.api_token.strip(),
    )


class JiraClient:
    """Async client for the subset of the Jira REST API the sync needs."""

    def __init__(
        self,
        credentials: JiraCredentials,
        *,
        page_size: int = 50,
        timeout: float = 30.0,
        max_retries: int = 0,
        backoff_seconds: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.credentials: JiraCredentials = validate_credentials(credentials)
        self.page_size: int = page_size
        self.max_retries: int = max(0, max_retries)
        self.backoff_seconds: float = backoff_seconds
        self._client: httpx.AsyncClient = httpx.AsyncClient(
            base_url=f"{self.credentials.base_url}{API_PREFIX}",
            auth=(self.credentials.username, self.credentials.api_token),
            headers={"Accept": "application/json"},
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    async def __aenter__(self) -> "JiraClient":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── REST helpers ─────────────────────────────────────────────────────

    async def _get_once(self, path: str, params: dict[str, Any] | None) -> Any:
        try:
            resp: httpx.Response = await self._client.get(path, params=params)
        except httpx.TimeoutException as exc:
            raise TransportError(f"Timed out calling Jira {path}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Request to Jira {path} failed: {exc}") from exc

        if not resp.is_success:
            raise TransportError(
                f"Jira returned HTTP {resp.status_code} for {path}",
                status_code=resp.status_code,
            )

        try:
            return resp.json()
        except ValueError as exc:
            raise DecodeFailure("Malformed JSON response.") from exc

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """Execute a GET, retrying retryable transport failures within budget."""
        attempt: int = 0
        while True:
            try:
                return await self._get_once(path, params)
            except TransportError as exc:
                if not exc.retryable or attempt >= self.max_retries:
                    raise
                wait: float = self.backoff_seconds * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Retrying Jira request after transport failure",
                    extra={
                        "path": path,
                        "attempt": attempt,
                        "status_code": exc.status_code,
                        "wait_seconds": wait,
                    },
                )
                await asyncio.sleep(wait)

    # ── Pages ────────────────────────────────────────────────────────────

    async def search_issues_page(
        self, start_at: int, max_results: int, jql: str = DEFAULT_JQL
    ) -> Page:
        """One page of ``/search``. A missing or null ``issues`` is an empty page."""
        body: Any = await self._get(
            "/search",
            {
                "jql": jql,
                "startAt": start_at,
                "maxResults": max_results,
                "fields": ISSUE_FIELDS,
            },
        )
        if not isinstance(body, dict):
            raise DecodeFailure("Malformed JSON response.")
        issues: Any = body.get("issues") or []
        if not isinstance(issues, list):
            raise DecodeFailure("Malformed JSON response.")

        is_last: bool = bool(body.get("isLast", False))
        total: Any = body.get("total")
        if isinstance(total, int) and start_at + len(issues) >= total:
            is_last = True
        return Page(items=issues, is_last=is_last)

    async def users_page(self, start_at: int, max_results: int) -> Page:
        """One page of ``/users/search`` (a bare JSON array)."""
        body: Any = await self._get(
            "/users/search", {"startAt": start_at, "maxResults": max_results}
        )
        if isinstance(body, dict):
            body = body.get("values") or []
        if not isinstance(body, list):
            raise DecodeFailure("Malformed JSON response.")
        return Page(items=body)

    async def changelog_page(self, issue_key: str, start_at: int, max_results: int) -> Page:
        """One page of ``/issue/{key}/changelog``."""
        body: Any = await self._get(
            f"/issue/{issue_key}/changelog",
            {"startAt": start_at, "maxResults": max_results},
        )
        if not isinstance(body, dict):
            raise DecodeFailure("Malformed JSON response.")
        values: Any = body.get("values") or []
        if not isinstance(values, list):
            raise DecodeFailure("Malformed JSON response.")
        return Page(items=values, is_last=bool(body.get("isLast", False)))

    # ── Full collections ─────────────────────────────────────────────────

    async def fetch_issues(
        self, jql: str = DEFAULT_JQL, cancel_event: Optional[asyncio.Event] = None
    ) -> list[dict[str, Any]]:
        """All raw issues matching ``jql``. Fails whole on any page failure."""

        async def _page(start_at: int, max_results: int) -> Page:
            return await self.search_issues_page(start_at, max_results, jql)

        return await collect_pages(
            _page, self.page_size, cancel_event=cancel_event, stage="fetching_issues"
        )

    async def fetch_users(
        self, cancel_event: Optional[asyncio.Event] = None
    ) -> list[dict[str, Any]]:
        """All raw user accounts visible to the credential."""
        return await collect_pages(
            self.users_page, self.page_size, cancel_event=cancel_event, stage="fetching_users"
        )

    async def fetch_changelog(
        self, issue_key: str, cancel_event: Optional[asyncio.Event] = None
    ) -> list[dict[str, Any]]:
        """All raw changelog entries of one issue."""

        async def _page(start_at: int, max_results: int) -> Page:
            return await self.changelog_page(issue_key, start_at, max_results)

        return await collect_pages(
            _page, self.page_size, cancel_event=cancel_event, stage="diffing_history"
        )
