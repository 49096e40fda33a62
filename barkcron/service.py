"""
Core scheduler service using APScheduler.

Keeps one cron job per active task:
- Tasks are (re)registered as they are created, edited or toggled
- Each firing starts the task on its own thread, so a slow task never holds
  up the others; a task still running from its previous firing is skipped
- The run reloads the task, honours its exclusion windows and executes it
- An hourly sweep drops jobs whose task was deleted or deactivated
- Job events are logged
"""

import itertools
import logging
import threading
from concurrent.futures import Future
from datetime import datetime
from typing import Any, Dict, List, Optional

from apscheduler.events import (
    EVENT_JOB_ADDED,
    EVENT_JOB_ERROR,
    EVENT_JOB_EXECUTED,
    EVENT_JOB_MISSED,
    EVENT_JOB_REMOVED,
)
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from barkcron.background import BackgroundTasks
from barkcron.cron import parse_cron_expression
from barkcron.database import Database
from barkcron.errors import ValidationError
from barkcron.executor import ScriptRunner, TaskExecutor
from barkcron.history import LogRetention, NotificationHistory
from barkcron.models import TASK_ACTIVE, Task, TimeExclusionConfig
from barkcron.notifier import BarkSender, Notifier
from barkcron.timeexclusion import get_next_allowed_time, is_time_excluded

logger = logging.getLogger(__name__)

RECONCILE_JOB_ID = "barkcron-reconcile"
RECONCILE_CRON = "0 0 * * * *"  # hourly


class TaskScheduler:
    """
    Registry of scheduled tasks on top of a BackgroundScheduler.

    The task id -> job id map is only touched under the registry lock.
    Reconciliation sweeps take a separate lock so two never overlap.
    """

    def __init__(
        self,
        db: Database,
        executor: TaskExecutor,
        background: BackgroundTasks,
        max_workers: int = 10,
        misfire_grace_time: int = 60,
        timezone=None,
    ):
        """
        Initialize scheduler service.

        Args:
            db: Task store
            executor: Runs a task and records the execution log
            background: Pool for best-effort side work
            max_workers: Threads dispatching due jobs (task runs get their own thread)
            misfire_grace_time: Seconds a late firing is still honoured
            timezone: tzinfo for cron evaluation (None = local time)
        """
        self.db = db
        self.executor = executor
        self.background = background
        self.timezone = timezone

        executors = {
            'default': ThreadPoolExecutor(max_workers)
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple missed runs into one
            'max_instances': 1,
            'misfire_grace_time': misfire_grace_time
        }

        scheduler_kwargs = {'executors': executors, 'job_defaults': job_defaults}
        if timezone is not None:
            scheduler_kwargs['timezone'] = timezone
        self.scheduler = BackgroundScheduler(**scheduler_kwargs)

        self._jobs: Dict[int, str] = {}
        self._registry_lock = threading.Lock()
        self._reconcile_lock = threading.Lock()
        self._job_counter = itertools.count(1)
        self._running: Dict[int, threading.Thread] = {}
        self._running_lock = threading.Lock()

        self._setup_event_listeners()

    def _setup_event_listeners(self):
        """Setup APScheduler event listeners for logging."""

        def job_executed_listener(event):
            logger.debug(f"Job '{event.job_id}' executed")

        def job_error_listener(event):
            logger.error(
                f"Job '{event.job_id}' raised exception: {event.exception}",
                exc_info=event.exception
            )

        def job_missed_listener(event):
            logger.warning(f"Job '{event.job_id}' missed scheduled run time {event.scheduled_run_time}")

        def job_added_listener(event):
            logger.debug(f"Job '{event.job_id}' added to scheduler")

        def job_removed_listener(event):
            logger.debug(f"Job '{event.job_id}' removed from scheduler")

        self.scheduler.add_listener(job_executed_listener, EVENT_JOB_EXECUTED)
        self.scheduler.add_listener(job_error_listener, EVENT_JOB_ERROR)
        self.scheduler.add_listener(job_missed_listener, EVENT_JOB_MISSED)
        self.scheduler.add_listener(job_added_listener, EVENT_JOB_ADDED)
        self.scheduler.add_listener(job_removed_listener, EVENT_JOB_REMOVED)

    def now(self) -> datetime:
        if self.timezone is not None:
            return datetime.now(self.timezone)
        return datetime.now().astimezone()

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def _remove_locked(self, task_id: int) -> bool:
        job_id = self._jobs.pop(task_id, None)
        if job_id is None:
            return False
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            logger.debug(f"Job '{job_id}' already gone from scheduler")
        return True

    def _add_locked(self, task: Task) -> Optional[CronTrigger]:
        self._remove_locked(task.id)
        if not task.is_active:
            logger.debug(f"Task {task.id} is {task.status}, not scheduling")
            return None

        trigger = parse_cron_expression(task.cron_expr, self.timezone)
        job_id = f"task-{task.id}-{next(self._job_counter)}"
        self.scheduler.add_job(
            self.dispatch_due_task,
            trigger=trigger,
            args=[task.id],
            id=job_id,
            name=task.name,
            replace_existing=True,
        )
        self._jobs[task.id] = job_id
        return trigger

    def add_task(self, task: Task) -> bool:
        """
        Schedule a task, replacing any existing registration.

        Inactive tasks are left unscheduled.

        Returns:
            True if a trigger is now registered for the task

        Raises:
            ValidationError: If the cron expression is invalid
        """
        with self._registry_lock:
            trigger = self._add_locked(task)
        if trigger is None:
            return False

        logger.info(f"Scheduled task '{task.name}' ({task.id}) with '{task.cron_expr}'")
        self._persist_next_run(task, trigger)
        return True

    def remove_task(self, task_id: int) -> bool:
        """Unschedule a task. Returns False if it was not scheduled."""
        with self._registry_lock:
            removed = self._remove_locked(task_id)
        if removed:
            logger.info(f"Unscheduled task {task_id}")
        return removed

    def update_task(self, task: Task) -> bool:
        """Replace a task's registration in one step."""
        with self._registry_lock:
            self._remove_locked(task.id)
            trigger = self._add_locked(task)
        if trigger is None:
            logger.info(f"Task {task.id} updated and left unscheduled")
            return False

        logger.info(f"Rescheduled task '{task.name}' ({task.id}) with '{task.cron_expr}'")
        self._persist_next_run(task, trigger)
        return True

    def scheduled_count(self) -> int:
        with self._registry_lock:
            return len(self._jobs)

    def scheduled_task_ids(self) -> List[int]:
        with self._registry_lock:
            return sorted(self._jobs)

    def is_scheduled(self, task_id: int) -> bool:
        with self._registry_lock:
            return task_id in self._jobs

    def list_entries(self) -> List[Dict[str, Any]]:
        """
        Get list of scheduled tasks.

        Returns:
            List of dicts with task_id, job_id, name, next_run, trigger
        """
        entries = []
        with self._registry_lock:
            for task_id, job_id in sorted(self._jobs.items()):
                job = self.scheduler.get_job(job_id)
                if job is None:
                    continue
                next_run = getattr(job, 'next_run_time', None)
                entries.append({
                    'task_id': task_id,
                    'job_id': job_id,
                    'name': job.name,
                    'next_run': next_run.isoformat() if next_run else None,
                    'trigger': str(job.trigger),
                })
        return entries

    # ------------------------------------------------------------------
    # Next-run bookkeeping
    # ------------------------------------------------------------------

    @staticmethod
    def _exclusion_config(task: Task) -> Optional[TimeExclusionConfig]:
        try:
            return task.get_time_exclusion_config()
        except ValidationError as e:
            logger.warning(f"Task {task.id}: ignoring unreadable time exclusion config: {e}")
            return None

    def _persist_next_run(self, task: Task, trigger: CronTrigger, last_run: Optional[datetime] = None):
        """Best-effort write of next_run (and last_run)."""
        try:
            next_run = get_next_allowed_time(trigger, self._exclusion_config(task), self.now())
            self.db.update_run_times(task.id, last_run=last_run, next_run=next_run)
        except Exception as e:
            logger.warning(f"Failed to update run times for task {task.id}: {e}")

    # ------------------------------------------------------------------
    # Trigger callback
    # ------------------------------------------------------------------

    def dispatch_due_task(self, task_id: int) -> bool:
        """
        Called by APScheduler when a task is due.

        Hands the run to a dedicated thread and returns at once, so the
        scheduler's pool only ever waits on dispatching.

        Returns:
            False if the task's previous run is still in progress
        """
        with self._running_lock:
            running = self._running.get(task_id)
            if running is not None and running.is_alive():
                logger.warning(f"Task {task_id} is still running, skipping this firing")
                return False
            thread = threading.Thread(
                target=self._run_episode,
                args=(task_id,),
                name=f"barkcron-task-{task_id}",
                daemon=True,
            )
            self._running[task_id] = thread
            thread.start()
        return True

    def _run_episode(self, task_id: int):
        try:
            self.execute_due_task(task_id)
        except Exception as e:
            logger.error(f"Scheduled run of task {task_id} failed: {e}", exc_info=True)
        finally:
            with self._running_lock:
                if self._running.get(task_id) is threading.current_thread():
                    del self._running[task_id]

    def running_task_ids(self) -> List[int]:
        """Tasks with a scheduled run in progress."""
        with self._running_lock:
            return sorted(t for t, thread in self._running.items() if thread.is_alive())

    def wait_for_running(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for in-progress scheduled runs to finish.

        Returns:
            True if none are left running
        """
        with self._running_lock:
            threads = list(self._running.values())
        for thread in threads:
            thread.join(timeout)
        return not any(thread.is_alive() for thread in threads)

    def execute_due_task(self, task_id: int):
        """
        Run one due firing of a task.

        Works from a fresh copy of the task so edits made since
        registration are honoured.
        """
        try:
            task = self.db.get_task(task_id)
        except Exception as e:
            logger.error(f"Failed to load task {task_id}, skipping this run: {e}")
            return

        if task is None:
            logger.warning(f"Task {task_id} no longer exists, removing from scheduler")
            self.remove_task(task_id)
            return

        now = self.now()
        exclusion = self._exclusion_config(task)
        excluded, reason = is_time_excluded(now, exclusion)

        try:
            trigger = parse_cron_expression(task.cron_expr, self.timezone)
        except ValidationError as e:
            logger.error(f"Task {task_id}: cannot compute next run: {e}")
            trigger = None

        if excluded:
            logger.info(f"Skipping task '{task.name}' ({task_id}) due to time exclusion: {reason}")
            if trigger is not None:
                self.background.submit(
                    self._persist_next_run, task, trigger,
                    description=f"next run update task {task_id}",
                )
            return

        if trigger is not None:
            self._persist_next_run(task, trigger, last_run=now)
        else:
            try:
                self.db.update_run_times(task_id, last_run=now)
            except Exception as e:
                logger.warning(f"Failed to update last run for task {task_id}: {e}")

        self.executor.execute_task(task)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self) -> int:
        """
        Drop registrations whose task was deleted or deactivated.

        Returns:
            Number of registrations removed
        """
        with self._reconcile_lock:
            with self._registry_lock:
                snapshot = dict(self._jobs)
            if not snapshot:
                return 0

            try:
                active = self.db.active_task_ids(snapshot.keys())
            except Exception as e:
                logger.error(f"Reconciliation query failed, retrying next cycle: {e}")
                return 0

            removed = 0
            with self._registry_lock:
                for task_id, job_id in snapshot.items():
                    if task_id in active:
                        continue
                    # Re-registered since the snapshot: leave it alone
                    if self._jobs.get(task_id) != job_id:
                        continue
                    if self._remove_locked(task_id):
                        removed += 1
                        logger.info(f"Cleaned up deleted/inactive task {task_id} from scheduler")

            if removed:
                logger.info(f"Reconciliation removed {removed} task(s)")
            return removed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_active_tasks(self) -> int:
        """Register every active task from the store."""
        tasks = self.db.list_tasks(status=TASK_ACTIVE)
        loaded = 0
        for task in tasks:
            try:
                if self.add_task(task):
                    loaded += 1
            except ValidationError as e:
                logger.error(f"Failed to schedule task '{task.name}' ({task.id}): {e}")
        logger.info(f"Loaded {loaded} of {len(tasks)} active task(s)")
        return loaded

    def start(self):
        """Start the scheduler."""
        if self.scheduler.running:
            logger.warning("Scheduler is already running")
            return

        logger.info("Starting scheduler...")
        self.scheduler.start()
        self.load_active_tasks()
        self.reconcile()
        self.scheduler.add_job(
            self.reconcile,
            trigger=parse_cron_expression(RECONCILE_CRON, self.timezone),
            id=RECONCILE_JOB_ID,
            name="reconcile",
            replace_existing=True,
        )
        logger.info("Scheduler started successfully")

    def stop(self, wait: bool = True):
        """
        Stop the scheduler.

        Args:
            wait: If True, wait for running tasks and background work to complete
        """
        if self.scheduler.running:
            logger.info("Stopping scheduler...")
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler stopped")
        if wait:
            self.wait_for_running()
        self.background.shutdown(wait=wait)

    def is_running(self) -> bool:
        return self.scheduler.running

    def run_task_now(self, task_id: int) -> Optional[Future]:
        """
        Execute a task immediately, ignoring status and exclusion windows.

        Raises:
            TaskNotFoundError: If the task does not exist
        """
        task = self.db.require_task(task_id)
        logger.info(f"Running task '{task.name}' ({task_id}) now")
        return self.background.submit(
            self.executor.execute_task, task, description=f"run task {task_id} now",
        )


class Runtime:
    """
    Wires the store, executor, notifier and scheduler from settings.

    Callers hold this handle instead of reaching for module globals.
    """

    def __init__(self, settings, db: Optional[Database] = None, sender=None):
        self.settings = settings
        self.db = db or Database(settings.database_path, retry=settings.retry)
        self.db.init_schema()

        self.background = BackgroundTasks(max_workers=settings.notifications.background_workers)
        self.history = NotificationHistory(
            self.db, self.background,
            max_records=settings.retention.max_notification_records,
        )
        self.retention = LogRetention(self.db, settings.retention)
        self.notifier = Notifier(
            self.db, self.history,
            sender=sender or BarkSender(timeout=settings.notifications.request_timeout_seconds),
        )
        self.executor = TaskExecutor(
            self.db,
            ScriptRunner(
                python_executable=settings.execution.python_executable,
                timeout=settings.execution.timeout_seconds,
            ),
            self.background,
            retention=self.retention,
            notifier=self.notifier,
        )
        self.scheduler = TaskScheduler(
            self.db,
            self.executor,
            self.background,
            max_workers=settings.execution.max_workers,
            misfire_grace_time=settings.execution.misfire_grace_time,
            timezone=settings.tzinfo(),
        )

    def close(self, wait: bool = True):
        self.scheduler.stop(wait=wait)
