"""
Background job queue and workers.
"""

from .queue import JobQueue, QueueSettings, ClaimedJob, SCAN_QUEUE, UNSUBSCRIBE_QUEUE, unsubscribe_job_id
from .handlers import ScanJobHandler, UnsubscribeJobHandler
from .workers import WorkerPool, WorkerRuntime

__all__ = [
    'JobQueue',
    'QueueSettings',
    'ClaimedJob',
    'SCAN_QUEUE',
    'UNSUBSCRIBE_QUEUE',
    'unsubscribe_job_id',
    'ScanJobHandler',
    'UnsubscribeJobHandler',
    'WorkerPool',
    'WorkerRuntime',
]
