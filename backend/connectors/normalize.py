"""
Normalization of raw Jira payloads into connector records.

Each function returns either a well-formed record or a MalformedRecord; it
never raises on bad input and never returns a half-filled record with a
defaulted natural key.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Union

from connectors.models import (
    ChangeRecord,
    IssueFields,
    IssueRecord,
    MalformedRecord,
    NormalizedIssue,
    NormalizedUser,
    UserProfileRecord,
    UserRecord,
)

_OFFSET_WITHOUT_COLON = re.compile(r"([+-]\d{2})(\d{2})$")


def _required_str(raw: dict[str, Any], key: str) -> str | None:
    value: Any = raw.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def normalize_issue(raw: Any) -> NormalizedIssue:
    """Map a raw ``/search`` issue into an IssueRecord."""
    if not isinstance(raw, dict):
        return MalformedRecord("issue", "record is not an object", raw)

    key: str | None = _required_str(raw, "key")
    if key is None:
        return MalformedRecord("issue", "missing issue key", raw)

    fields: Any = raw.get("fields") or {}
    if not isinstance(fields, dict):
        return MalformedRecord("issue", f"fields of {key} is not an object", raw)

    status_data: Any = fields.get("status")
    status_name: str | None = None
    if isinstance(status_data, dict):
        status_name = _optional_str(status_data.get("name"))
    elif isinstance(status_data, str):
        status_name = status_data

    # Jira v3 uses ADF for descriptions; v2 and tests send plain strings
    description_text: str | None = None
    desc_field: Any = fields.get("description")
    if isinstance(desc_field, str):
        description_text = desc_field
    elif isinstance(desc_field, dict):
        description_text = extract_adf_text(desc_field)

    assignee: Any = fields.get("assignee")
    reporter: Any = fields.get("reporter")

    return IssueRecord(
        key=key,
        jira_id=_optional_str(raw.get("id")),
        fields=IssueFields(
            summary=_optional_str(fields.get("summary")) or "",
            description=description_text,
            status=status_name,
            updated=parse_datetime_optional(fields.get("updated")),
        ),
        assignee_account_id=assignee.get("accountId") if isinstance(assignee, dict) else None,
        reporter_account_id=reporter.get("accountId") if isinstance(reporter, dict) else None,
    )


def normalize_user(raw: Any) -> NormalizedUser:
    """Map a raw ``/users/search`` entry into a UserRecord."""
    if not isinstance(raw, dict):
        return MalformedRecord("user", "record is not an object", raw)

    account_id: str | None = _required_str(raw, "accountId")
    if account_id is None:
        return MalformedRecord("user", "missing account id", raw)

    avatar_urls: Any = raw.get("avatarUrls")
    avatar_url: str | None = None
    if isinstance(avatar_urls, dict):
        avatar_url = avatar_urls.get("48x48") or next(iter(avatar_urls.values()), None)

    active: Any = raw.get("active")
    return UserRecord(
        account_id=account_id,
        display_name=_optional_str(raw.get("displayName")) or "",
        email=_optional_str(raw.get("emailAddress")),
        profile=UserProfileRecord(
            time_zone=_optional_str(raw.get("timeZone")),
            avatar_url=avatar_url,
            account_type=_optional_str(raw.get("accountType")),
            active=active if isinstance(active, bool) else True,
            locale=_optional_str(raw.get("locale")),
        ),
    )


def normalize_changelog(issue_key: str, raw_entry: Any) -> Union[list[ChangeRecord], MalformedRecord]:
    """Map one ``/issue/{key}/changelog`` entry into its field changes."""
    if not isinstance(raw_entry, dict):
        return MalformedRecord("changelog", f"entry for {issue_key} is not an object", raw_entry)

    entry_id: str | None = _required_str(raw_entry, "id")
    if entry_id is None:
        return MalformedRecord("changelog", f"entry for {issue_key} has no id", raw_entry)

    changed_at: datetime | None = parse_datetime_optional(raw_entry.get("created"))
    if changed_at is None:
        return MalformedRecord("changelog", f"entry {entry_id} has no timestamp", raw_entry)

    author: Any = raw_entry.get("author")
    changed_by: str | None = None
    if isinstance(author, dict):
        changed_by = author.get("accountId") or author.get("emailAddress") or author.get("displayName")

    items: Any = raw_entry.get("items") or []
    if not isinstance(items, list):
        return MalformedRecord("changelog", f"entry {entry_id} items is not a list", raw_entry)

    changes: list[ChangeRecord] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict) or not item.get("field"):
            continue
        changes.append(
            ChangeRecord(
                issue_key=issue_key,
                source_change_id=f"{issue_key}:{entry_id}:{index}",
                field=str(item["field"]),
                old_value=_optional_str(item.get("fromString", item.get("from"))),
                new_value=_optional_str(item.get("toString", item.get("to"))),
                changed_at=changed_at,
                changed_by=changed_by,
            )
        )
    return changes


# ── ADF text extraction helper ────────────────────────────────────────────


def extract_adf_text(adf: dict[str, Any]) -> str | None:
    """Extract plain text from Atlassian Document Format (ADF)."""
    if not adf:
        return None

    texts: list[str] = []

    def _walk(node: dict[str, Any] | list[Any] | str) -> None:
        if isinstance(node, str):
            texts.append(node)
        elif isinstance(node, dict):
            if node.get("type") == "text" and "text" in node:
                texts.append(node["text"])
            for child in node.get("content", []):
                _walk(child)
        elif isinstance(node, list):
            for item in node:
                _walk(item)

    _walk(adf)
    return " ".join(texts) if texts else None


# ── Date parsing helpers ─────────────────────────────────────────────────


def parse_datetime_optional(dt_str: Any) -> datetime | None:
    """Parse a Jira ISO-8601 timestamp into naive UTC, or None."""
    if isinstance(dt_str, datetime):
        parsed = dt_str
    elif not dt_str or not isinstance(dt_str, str):
        return None
    else:
        cleaned: str = dt_str.strip().replace("Z", "+00:00")
        # Jira sends offsets as +0000
        cleaned = _OFFSET_WITHOUT_COLON.sub(r"\1:\2", cleaned)
        try:
            parsed = datetime.fromisoformat(cleaned)
        except (ValueError, TypeError):
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
