"""
Background workers for the messaging feature.
"""

from .attachment_scan_worker import AttachmentScanWorker
from .moderation_worker import ModerationWorker, burst_key, seen_key
from .queue_worker import MalformedEvent, QueueWorker, parse_event
from .retention_job import RetentionJob, start_retention_scheduler

__all__ = [
    "AttachmentScanWorker",
    "MalformedEvent",
    "ModerationWorker",
    "QueueWorker",
    "RetentionJob",
    "burst_key",
    "parse_event",
    "seen_key",
    "start_retention_scheduler",
]
