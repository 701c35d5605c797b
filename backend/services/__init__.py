"""Services package."""
from services.jira_sync import JiraSyncService, SyncFailure, SyncResult, SyncStage

__all__ = ["JiraSyncService", "SyncFailure", "SyncResult", "SyncStage"]
