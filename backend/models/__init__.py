"""Database models package."""
from models.database import (
    Base,
    close_db,
    init_db,
    make_engine,
    make_session_factory,
    session_scope,
    utcnow,
)
from models.jira_user import JiraUser
from models.user_profile import UserProfile
from models.jira_issue import JiraIssue
from models.issue_history import IssueHistory
from models.activity_type import ActivityType
from models.user_activity import UserActivity

__all__ = [
    "Base",
    "make_engine",
    "make_session_factory",
    "session_scope",
    "init_db",
    "close_db",
    "utcnow",
    "JiraUser",
    "UserProfile",
    "JiraIssue",
    "IssueHistory",
    "ActivityType",
    "UserActivity",
]
