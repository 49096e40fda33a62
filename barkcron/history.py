"""
Notification history, duplicate detection and bounded retention.

Only successful deliveries count as prior matches: failed or skipped
attempts never suppress a future send.
"""

import logging
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from barkcron.background import BackgroundTasks
from barkcron.config import RetentionConfig
from barkcron.database import Database
from barkcron.models import (
    DEDUP_HASH,
    DEDUP_RECENT_N,
    DEDUP_TIME_WINDOW,
    DeduplicationPolicy,
    NotificationRecord,
    utcnow,
)

logger = logging.getLogger(__name__)


class NotificationHistory:
    """Duplicate checks and record persistence for Bark pushes."""

    def __init__(
        self,
        db: Database,
        background: BackgroundTasks,
        max_records: int = RetentionConfig.max_notification_records,
    ):
        self.db = db
        self.background = background
        self.max_records = max_records
        self._evict_lock = threading.Lock()

    def check_duplicate(self, record: NotificationRecord, policy: DeduplicationPolicy) -> bool:
        """
        Decide whether record repeats an earlier successful push.

        Modes:
            recentN     the task's N most recent successes contain the fingerprint
            hash        any success of any task has the fingerprint
            timeWindow  a success of the task with the fingerprint within the last N minutes
            disabled    never a duplicate
        """
        if policy.mode == DEDUP_RECENT_N:
            if policy.recent_n <= 0:
                return False
            recent = self.db.recent_success_hashes(record.task_id, policy.recent_n)
            return record.content_hash in recent

        if policy.mode == DEDUP_HASH:
            return self.db.success_hash_exists(record.content_hash)

        if policy.mode == DEDUP_TIME_WINDOW:
            if policy.time_window <= 0:
                return False
            since = utcnow() - timedelta(minutes=policy.time_window)
            return self.db.success_hash_exists(record.content_hash, task_id=record.task_id, since=since)

        return False

    def save_record(self, record: NotificationRecord) -> NotificationRecord:
        """Persist record, then trim history in the background."""
        saved = self.db.insert_record(record)
        self.background.submit(self.evict_excess, description="notification record eviction")
        return saved

    def evict_excess(self) -> int:
        """Delete the oldest records beyond the cap; returns how many went."""
        with self._evict_lock:
            deleted = self.db.evict_records(self.max_records)
        if deleted:
            logger.info(f"Evicted {deleted} notification records over cap {self.max_records}")
        return deleted

    def get_records(self, task_id: Optional[int] = None, page: int = 1, page_size: int = 20) -> List[NotificationRecord]:
        page = max(page, 1)
        return self.db.list_records(task_id, limit=page_size, offset=(page - 1) * page_size)

    def get_stats(self) -> Dict[str, Any]:
        stats = self.db.record_stats()
        stats['max_records'] = self.max_records
        return stats

    def delete_all(self) -> int:
        deleted = self.db.delete_all_records()
        logger.info(f"Deleted all {deleted} notification records")
        return deleted


class LogRetention:
    """Per-task and global caps on execution logs."""

    def __init__(self, db: Database, retention: Optional[RetentionConfig] = None):
        self.db = db
        self.retention = retention or RetentionConfig()
        self._lock = threading.Lock()

    def cleanup_after_execution(self, task_id: int) -> int:
        """Enforce the per-task cap, then the global cap."""
        with self._lock:
            per_task = self.db.evict_logs(self.retention.max_logs_per_task, task_id=task_id)
            overall = self.db.evict_logs(self.retention.max_total_logs)

        if per_task:
            logger.info(f"Task {task_id}: removed {per_task} execution logs over per-task cap")
        if overall:
            logger.info(f"Removed {overall} execution logs over global cap")
        return per_task + overall

    def get_stats(self) -> Dict[str, Any]:
        stats = self.db.log_stats()
        stats['max_logs_per_task'] = self.retention.max_logs_per_task
        stats['max_total_logs'] = self.retention.max_total_logs
        return stats
