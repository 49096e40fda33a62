"""
Bark push notifications for task results.

A task's notification fields are templates: `$name` tokens are replaced
with values from the latest execution result. A notification is only sent
when at least one referenced placeholder has a value, and each destination
is checked against notification history before delivery.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

import requests

from barkcron.database import Database
from barkcron.errors import ConfigurationError, ValidationError
from barkcron.history import NotificationHistory
from barkcron.models import (
    RECORD_FAILED,
    RECORD_SKIPPED,
    RECORD_SUCCESS,
    BarkDevice,
    NotificationConfig,
    NotificationRecord,
)

logger = logging.getLogger(__name__)

PLACEHOLDER_PATTERN = re.compile(r'\$([A-Za-z_][A-Za-z0-9_]*)')

STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_SUPPRESSED = "suppressed"
STATUS_NO_DESTINATION = "no_destination"


def stringify_value(value: Any) -> str:
    """Format a result value the way it should appear in a notification."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, separators=(',', ':'))
    return str(value)


def lookup_text(lookup: Dict[str, Any], name: str) -> str:
    """Value for a placeholder; missing, null and blank strings give ''."""
    value = lookup.get(name)
    if value is None:
        return ""
    if isinstance(value, str) and not value.strip():
        return ""
    return stringify_value(value)


def extract_placeholders(fields: Dict[str, str]) -> Set[str]:
    names = set()
    for text in fields.values():
        names.update(PLACEHOLDER_PATTERN.findall(text or ""))
    return names


def render_template(text: str, lookup: Dict[str, Any]) -> str:
    return PLACEHOLDER_PATTERN.sub(lambda m: lookup_text(lookup, m.group(1)), text)


def render_fields(fields: Dict[str, str], lookup: Dict[str, Any]) -> Dict[str, str]:
    """Render every template, dropping fields that end up empty."""
    rendered = {}
    for name, text in fields.items():
        value = render_template(text, lookup)
        if value != "":
            rendered[name] = value
    return rendered


def should_send(fields: Dict[str, str], lookup: Dict[str, Any]) -> bool:
    """
    Send gate.

    Templates without placeholders always pass. Otherwise at least one
    referenced placeholder must resolve to a non-empty value.
    """
    names = extract_placeholders(fields)
    if not names:
        return True
    return any(lookup_text(lookup, name) for name in names)


@dataclass
class DeliveryResult:
    ok: bool
    status_code: Optional[int] = None
    body: str = ""
    error: str = ""


class BarkSender:
    """POSTs JSON payloads to a Bark server."""

    def __init__(self, timeout: float = 15.0, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session or requests.Session()
        self.headers = {
            "Content-Type": "application/json; charset=utf-8",
            "User-Agent": "barkcron",
        }

    def send(self, url: str, payload: Dict[str, str]) -> DeliveryResult:
        try:
            response = self.session.post(
                url,
                data=json.dumps(payload, ensure_ascii=False).encode("utf-8"),
                headers=self.headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            return DeliveryResult(ok=False, error=f"Request to {url} failed: {e}")

        if 200 <= response.status_code < 300:
            return DeliveryResult(ok=True, status_code=response.status_code, body=response.text)
        return DeliveryResult(
            ok=False,
            status_code=response.status_code,
            body=response.text,
            error=f"Bark API returned status {response.status_code}",
        )


@dataclass
class NotificationResult:
    """Aggregate outcome of one notification episode."""
    status: str
    sent: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def is_failure(self) -> bool:
        return self.status == STATUS_FAILED

    def summary(self) -> str:
        text = f"{self.status}: sent={self.sent} skipped={self.skipped} failed={self.failed}"
        if self.errors:
            text += f" errors={'; '.join(self.errors)}"
        return text


@dataclass
class Destination:
    device_key: str
    label: str
    device: Optional[BarkDevice] = None


class Notifier:
    """Renders, gates, deduplicates and delivers a task's notification."""

    def __init__(self, db: Database, history: NotificationHistory, sender: Optional[BarkSender] = None):
        self.db = db
        self.history = history
        self.sender = sender or BarkSender()

    def process(self, task_id: int) -> NotificationResult:
        """Run one notification episode for the task's latest execution."""
        task = self.db.get_task(task_id)
        if task is None:
            logger.warning(f"Task {task_id} not found, skipping notification")
            return NotificationResult(status=STATUS_FAILED, errors=[f"Task {task_id} not found"])

        try:
            config = task.get_notification_config()
        except ValidationError as e:
            logger.error(f"Task {task_id}: {e}")
            return NotificationResult(status=STATUS_FAILED, errors=[str(e)])

        if not config.has_destination:
            logger.debug(f"Task {task_id}: no notification destination configured")
            return NotificationResult(status=STATUS_NO_DESTINATION)

        latest = self.db.get_latest_log(task_id)
        lookup = (latest.result if latest and latest.result else {})

        if not should_send(config.fields, lookup):
            logger.info(f"Task {task_id}: all placeholders empty, notification suppressed")
            return NotificationResult(status=STATUS_SUPPRESSED)

        destinations = self._destinations(config)
        if not destinations:
            error = f"No active devices found for selected IDs {config.selected_device_ids}"
            logger.error(f"Task {task_id}: {error}")
            return NotificationResult(status=STATUS_FAILED, errors=[error])

        fields = render_fields(config.fields, lookup)
        result = NotificationResult(status=STATUS_SUCCESS)

        for destination in destinations:
            self._dispatch(task_id, destination, fields, config, result)

        if result.failed and result.failed == len(destinations):
            result.status = STATUS_FAILED
            logger.error(f"Task {task_id}: all destinations failed: {'; '.join(result.errors)}")
        elif result.failed:
            result.status = STATUS_PARTIAL
            logger.warning(
                f"Task {task_id}: partial delivery {result.sent + result.skipped}/{len(destinations)}: "
                f"{'; '.join(result.errors)}"
            )
        else:
            logger.info(f"Task {task_id}: notification {result.summary()}")

        return result

    def _destinations(self, config: NotificationConfig) -> List[Destination]:
        if config.selected_device_ids:
            return [
                Destination(device_key=d.device_key, label=d.name or d.device_key, device=d)
                for d in self.db.get_active_devices(config.selected_device_ids)
            ]
        return [
            Destination(device_key=key, label=key, device=self.db.get_device_by_key(key))
            for key in config.legacy_keys
        ]

    def resolve_server_url(self, device: Optional[BarkDevice]) -> str:
        """
        Delivery endpoint for a destination.

        The device's own active server wins, then the default active server.

        Raises:
            ConfigurationError: If neither is available
        """
        if device is not None and device.status == "active" and device.server_id is not None:
            server = self.db.get_server(device.server_id)
            if server is not None and server.is_active and server.url:
                return server.url

        default = self.db.get_default_server()
        if default is not None and default.url:
            return default.url

        label = device.device_key if device is not None else "destination"
        raise ConfigurationError(f"No Bark server configured for {label}")

    def _dispatch(
        self,
        task_id: int,
        destination: Destination,
        fields: Dict[str, str],
        config: NotificationConfig,
        result: NotificationResult,
    ):
        record = NotificationRecord.build(task_id, destination.device_key, fields)

        try:
            duplicate = self.history.check_duplicate(record, config.deduplication)
        except Exception as e:
            logger.error(f"Duplicate check failed for {destination.label}: {e}")
            duplicate = False

        if duplicate:
            logger.info(f"Skipping duplicate notification for {destination.label} (task {task_id})")
            record.status = RECORD_SKIPPED
            record.error_message = "Duplicate content detected"
            result.skipped += 1
            self._save(record)
            return

        payload = dict(fields)
        payload["device_key"] = destination.device_key

        try:
            url = self.resolve_server_url(destination.device)
        except ConfigurationError as e:
            record.status = RECORD_FAILED
            record.error_message = str(e)
            result.failed += 1
            result.errors.append(f"{destination.label}: {e}")
            self._save(record)
            return

        delivery = self.sender.send(url, payload)
        record.response_data = delivery.body
        if delivery.ok:
            record.status = RECORD_SUCCESS
            result.sent += 1
            logger.info(f"Notification sent to {destination.label} (task {task_id})")
        else:
            record.status = RECORD_FAILED
            record.error_message = delivery.error
            result.failed += 1
            result.errors.append(f"{destination.label}: {delivery.error}")
            logger.error(f"Notification to {destination.label} failed: {delivery.error}")

        self._save(record)

    def _save(self, record: NotificationRecord):
        try:
            self.history.save_record(record)
        except Exception as e:
            logger.error(f"Failed to save notification record for task {record.task_id}: {e}")
