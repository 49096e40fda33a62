"""
Data models for tasks, execution logs, notification configuration and history.
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from barkcron.errors import ValidationError

TASK_ACTIVE = "active"
TASK_INACTIVE = "inactive"

LOG_RUNNING = "running"
LOG_SUCCESS = "success"
LOG_EXECUTION_FAILED = "execution_failed"
LOG_SCRIPT_FAILED = "script_failed"

RECORD_SUCCESS = "success"
RECORD_FAILED = "failed"
RECORD_SKIPPED = "skipped"

DEDUP_DISABLED = "disabled"
DEDUP_RECENT_N = "recentN"
DEDUP_HASH = "hash"
DEDUP_TIME_WINDOW = "timeWindow"
DEDUP_MODES = (DEDUP_DISABLED, DEDUP_RECENT_N, DEDUP_HASH, DEDUP_TIME_WINDOW)

DEFAULT_RECENT_N = 10
DEFAULT_TIME_WINDOW = 60

# Templated text fields of a Bark push, in payload key spelling
NOTIFICATION_FIELDS = (
    "title", "subtitle", "body", "level", "volume", "badge", "call",
    "autoCopy", "copy", "sound", "icon", "group", "ciphertext",
    "isArchive", "url", "action", "id", "delete",
)

# The push id identifies a notification to replace, not its content
FINGERPRINT_FIELDS = tuple(f for f in NOTIFICATION_FIELDS if f != "id")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime as a sortable UTC ISO string."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.astimezone()
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _loads_object(raw: str, what: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid {what} JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid {what} JSON: expected an object")
    return data


def _int_list(value: Any, what: str) -> List[int]:
    """A JSON list of integers; numeric strings are accepted."""
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValidationError(f"{what} must be a list, got {type(value).__name__}")
    items = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (int, float, str)):
            raise ValidationError(f"{what} must contain integers, got {item!r}")
        try:
            items.append(int(item))
        except ValueError:
            raise ValidationError(f"{what} must contain integers, got {item!r}")
    return items


def _int_or_default(value: Any, default: int) -> int:
    """Accept ints, integral floats and numeric strings."""
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return default
    return default


@dataclass
class TimeExclusionRule:
    """A single "do not run" window."""
    type: str  # 'daily', 'weekly', 'date_range'
    name: str = ""
    start_time: str = ""  # HH:MM
    end_time: str = ""  # HH:MM
    weekdays: List[int] = field(default_factory=list)  # 0=Sunday .. 6=Saturday
    start_date: str = ""  # YYYY-MM-DD
    end_date: str = ""  # YYYY-MM-DD
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TimeExclusionRule':
        if not isinstance(data, dict):
            raise ValidationError(f"Exclusion rule must be an object, got {type(data).__name__}")
        return cls(
            type=str(data.get('type') or ''),
            name=str(data.get('name') or ''),
            start_time=str(data.get('start_time') or ''),
            end_time=str(data.get('end_time') or ''),
            weekdays=_int_list(data.get('weekdays'), "weekdays"),
            start_date=str(data.get('start_date') or ''),
            end_date=str(data.get('end_date') or ''),
            description=str(data.get('description') or ''),
        )


@dataclass
class TimeExclusionConfig:
    """Flag plus ordered list of exclusion rules."""
    enabled: bool = False
    exclusion_rules: List[TimeExclusionRule] = field(default_factory=list)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> 'TimeExclusionConfig':
        if not raw or not raw.strip():
            return cls()
        data = _loads_object(raw, "time exclusion config")
        rules = data.get('exclusion_rules')
        if rules is None:
            rules = []
        elif not isinstance(rules, list):
            raise ValidationError("exclusion_rules must be a list")
        return cls(
            enabled=bool(data.get('enabled', False)),
            exclusion_rules=[TimeExclusionRule.from_dict(r) for r in rules],
        )


@dataclass
class DeduplicationPolicy:
    """How duplicate notifications are detected."""
    mode: str = DEDUP_DISABLED
    recent_n: int = DEFAULT_RECENT_N
    time_window: int = DEFAULT_TIME_WINDOW  # minutes

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'DeduplicationPolicy':
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError(f"deduplication must be an object, got {type(data).__name__}")
        mode = str(data.get('mode') or DEDUP_DISABLED)
        if not data.get('enabled', False) or mode not in DEDUP_MODES:
            mode = DEDUP_DISABLED
        return cls(
            mode=mode,
            recent_n=_int_or_default(data.get('recent_n'), DEFAULT_RECENT_N),
            time_window=_int_or_default(data.get('time_window'), DEFAULT_TIME_WINDOW),
        )


@dataclass
class NotificationConfig:
    """Parsed Bark notification configuration of a task."""
    selected_device_ids: List[int] = field(default_factory=list)
    device_key: str = ""  # legacy single destination
    device_keys: str = ""  # legacy comma-separated keys
    fields: Dict[str, str] = field(default_factory=dict)
    deduplication: DeduplicationPolicy = field(default_factory=DeduplicationPolicy)

    @classmethod
    def from_json(cls, raw: Optional[str]) -> 'NotificationConfig':
        if not raw or not raw.strip():
            return cls()
        data = _loads_object(raw, "notification config")
        fields = {}
        for name in NOTIFICATION_FIELDS:
            value = data.get(name)
            if value is not None and value != "":
                fields[name] = str(value)
        return cls(
            selected_device_ids=_int_list(data.get('selected_device_ids'), "selected_device_ids"),
            device_key=str(data.get('device_key') or ''),
            device_keys=str(data.get('device_keys') or ''),
            fields=fields,
            deduplication=DeduplicationPolicy.from_dict(data.get('deduplication')),
        )

    @property
    def legacy_keys(self) -> List[str]:
        """device_key, else the comma-separated device_keys."""
        if self.device_key:
            return [self.device_key]
        return [k.strip() for k in self.device_keys.split(',') if k.strip()]

    @property
    def has_destination(self) -> bool:
        return bool(self.selected_device_ids) or bool(self.legacy_keys)


@dataclass
class Task:
    """A scheduled script task."""
    id: Optional[int]
    name: str
    script: str
    cron_expr: str
    status: str = TASK_INACTIVE
    description: str = ""
    bark_config: str = ""
    time_exclusion_config: str = ""
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == TASK_ACTIVE

    @property
    def has_notification_config(self) -> bool:
        return bool(self.bark_config and self.bark_config.strip())

    def get_notification_config(self) -> NotificationConfig:
        return NotificationConfig.from_json(self.bark_config)

    def get_time_exclusion_config(self) -> TimeExclusionConfig:
        return TimeExclusionConfig.from_json(self.time_exclusion_config)

    @classmethod
    def from_row(cls, row) -> 'Task':
        return cls(
            id=row['id'],
            name=row['name'],
            description=row['description'] or '',
            script=row['script'],
            cron_expr=row['cron_expr'],
            status=row['status'],
            bark_config=row['bark_config'] or '',
            time_exclusion_config=row['time_exclusion_config'] or '',
            last_run=from_db(row['last_run']),
            next_run=from_db(row['next_run']),
            created_at=from_db(row['created_at']),
            updated_at=from_db(row['updated_at']),
        )


@dataclass
class ExecutionLog:
    """One execution attempt of a task."""
    task_id: int
    start_time: datetime
    status: str = LOG_RUNNING
    end_time: Optional[datetime] = None
    duration: int = 0  # milliseconds
    output: str = ""
    error: str = ""
    result: Optional[Dict[str, Any]] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> 'ExecutionLog':
        result = None
        if row['result']:
            try:
                result = json.loads(row['result'])
            except json.JSONDecodeError:
                result = None
        return cls(
            id=row['id'],
            task_id=row['task_id'],
            start_time=from_db(row['start_time']),
            end_time=from_db(row['end_time']),
            duration=row['duration'] or 0,
            status=row['status'],
            output=row['output'] or '',
            error=row['error'] or '',
            result=result if isinstance(result, dict) else None,
            created_at=from_db(row['created_at']),
        )


@dataclass
class BarkServer:
    """A Bark delivery server."""
    name: str
    url: str
    description: str = ""
    is_default: bool = False
    status: str = TASK_ACTIVE
    id: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == TASK_ACTIVE

    @classmethod
    def from_row(cls, row) -> 'BarkServer':
        return cls(
            id=row['id'],
            name=row['name'],
            url=row['url'],
            description=row['description'] or '',
            is_default=bool(row['is_default']),
            status=row['status'],
        )


@dataclass
class BarkDevice:
    """A device key bound to a delivery server."""
    name: str
    device_key: str
    server_id: Optional[int] = None
    description: str = ""
    is_default: bool = False
    status: str = TASK_ACTIVE
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row) -> 'BarkDevice':
        return cls(
            id=row['id'],
            name=row['name'],
            device_key=row['device_key'],
            server_id=row['server_id'],
            description=row['description'] or '',
            is_default=bool(row['is_default']),
            status=row['status'],
        )


def content_fingerprint(task_id: int, device_key: str, fields: Dict[str, str]) -> str:
    """
    MD5 over the semantic content of a rendered notification.

    Status and timestamps are not part of the fingerprint, so the same
    content for the same task and destination always hashes the same.
    """
    content = {
        'task_id': task_id,
        'device_key': device_key,
        'fields': {k: fields.get(k, '') for k in FINGERPRINT_FIELDS},
    }
    data = json.dumps(content, sort_keys=True, ensure_ascii=False, separators=(',', ':'))
    return hashlib.md5(data.encode('utf-8')).hexdigest()


@dataclass
class NotificationRecord:
    """Outcome of one dispatch attempt to one destination."""
    task_id: int
    device_key: str
    fields: Dict[str, str]
    content_hash: str
    status: str = ""
    error_message: str = ""
    response_data: str = ""
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    @classmethod
    def build(cls, task_id: int, device_key: str, fields: Dict[str, str]) -> 'NotificationRecord':
        """Create an unsaved record with its fingerprint computed."""
        return cls(
            task_id=task_id,
            device_key=device_key,
            fields=dict(fields),
            content_hash=content_fingerprint(task_id, device_key, fields),
            created_at=utcnow(),
        )

    @classmethod
    def from_row(cls, row) -> 'NotificationRecord':
        try:
            fields = json.loads(row['fields'] or '{}')
        except json.JSONDecodeError:
            fields = {}
        return cls(
            id=row['id'],
            task_id=row['task_id'],
            device_key=row['device_key'],
            fields=fields,
            content_hash=row['content_hash'],
            status=row['status'],
            error_message=row['error_message'] or '',
            response_data=row['response_data'] or '',
            created_at=from_db(row['created_at']),
        )
