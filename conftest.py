"""
Shared pytest fixtures: a throwaway SQLite store and a background pool.
"""

import pytest

from barkcron.background import BackgroundTasks
from barkcron.config import RetryConfig
from barkcron.database import Database
from barkcron.models import TASK_ACTIVE, Task

DEFAULT_SCRIPT = """
import json

def main():
    print(json.dumps({"ok": True}))
"""


@pytest.fixture
def db(tmp_path):
    database = Database(
        str(tmp_path / "barkcron_test.db"),
        retry=RetryConfig(max_attempts=5, initial_delay_seconds=0.001, max_delay_seconds=0.01),
    )
    database.init_schema()
    return database


@pytest.fixture
def background():
    tasks = BackgroundTasks(max_workers=2)
    yield tasks
    tasks.shutdown(wait=True)


@pytest.fixture
def make_task(db):
    """Factory creating persisted tasks with sensible defaults."""

    def _make_task(
        name="test-task",
        cron_expr="0 0 * * * *",
        status=TASK_ACTIVE,
        script=DEFAULT_SCRIPT,
        bark_config="",
        time_exclusion_config="",
    ) -> Task:
        return db.create_task(Task(
            id=None,
            name=name,
            script=script,
            cron_expr=cron_expr,
            status=status,
            bark_config=bark_config,
            time_exclusion_config=time_exclusion_config,
        ))

    return _make_task
