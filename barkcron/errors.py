"""
Error taxonomy for the task scheduler.

Validation errors are raised synchronously to callers. Everything else is
either retried locally (store contention), recorded (execution failures)
or logged and aggregated (notification failures).
"""


class BarkcronError(Exception):
    """Base class for all scheduler errors."""
    pass


class ValidationError(BarkcronError, ValueError):
    """Raised for malformed cron expressions, scripts or configuration JSON."""
    pass


class TransientStoreError(BarkcronError):
    """Raised when a store operation keeps failing on lock contention."""
    pass


class TaskNotFoundError(BarkcronError, LookupError):
    """Raised when a task id does not exist in the store."""

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class NotificationError(BarkcronError):
    """Raised when rendering or delivering a notification fails."""
    pass


class ConfigurationError(NotificationError):
    """Raised when no delivery server can be resolved for a destination."""
    pass
