"""Sync orchestration: admission policy, batches, ingestion jobs, status."""

from .batch import BatchManager, BatchProgress, BatchState, FinalizeResult
from .job import IngestionJobRunner, JobResult
from .policy import (
    SyncAction,
    SyncDecision,
    SyncReason,
    calculate_sync_since,
    can_start,
    evaluate,
    reason_to_user_message,
)
from .service import SyncRequestResult, SyncService
from .status import SyncStatusView, get_status, normalize_error_message

__all__ = [
    "BatchManager",
    "BatchProgress",
    "BatchState",
    "FinalizeResult",
    "IngestionJobRunner",
    "JobResult",
    "SyncAction",
    "SyncDecision",
    "SyncReason",
    "SyncRequestResult",
    "SyncService",
    "SyncStatusView",
    "calculate_sync_since",
    "can_start",
    "evaluate",
    "get_status",
    "normalize_error_message",
    "reason_to_user_message",
]
