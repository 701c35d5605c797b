"""Jira connector package: REST client, pagination and record normalization."""
from connectors.errors import (
    ConflictError,
    DecodeFailure,
    JiraSyncError,
    PersistenceError,
    SyncCancelledError,
    TransportError,
    ValidationError,
)
from connectors.jira import JiraClient, validate_credentials

__all__ = [
    "JiraClient",
    "validate_credentials",
    "JiraSyncError",
    "ValidationError",
    "TransportError",
    "DecodeFailure",
    "ConflictError",
    "PersistenceError",
    "SyncCancelledError",
]
