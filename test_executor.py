"""
Tests for script execution, result parsing and the execution-log lifecycle.

These run real subprocesses with the current interpreter.
"""

import os
import textwrap
import time
from pathlib import Path

import pytest

from barkcron import executor as executor_module
from barkcron.errors import ValidationError
from barkcron.executor import (
    MAIN_INVOCATION,
    ScriptExecutionError,
    ScriptRunner,
    TaskExecutor,
    contains_main_guard,
    parse_result,
    prepare_script,
    validate_script,
)
from barkcron.models import (
    LOG_EXECUTION_FAILED,
    LOG_SCRIPT_FAILED,
    LOG_SUCCESS,
)


def script(body: str) -> str:
    return textwrap.dedent(body).strip() + "\n"


class RecordingNotifier:
    def __init__(self):
        self.calls = []

    def process(self, task_id):
        self.calls.append(task_id)


class RecordingRetention:
    def __init__(self):
        self.calls = []

    def cleanup_after_execution(self, task_id):
        self.calls.append(task_id)
        return 0


# ----------------------------------------------------------------------
# parse_result
# ----------------------------------------------------------------------

@pytest.mark.parametrize("stdout,expected", [
    ('starting\n{"ok": true}\n', {"ok": True}),
    ('{"a": 1}\n\n   \n', {"a": 1}),
    ("{'name': 'Ann', 'count': 3}", {"name": "Ann", "count": 3}),
    ('{"error": "boom"}', {"error": "boom"}),
    ('{"ok": true}\nall done', None),
    ("[1, 2, 3]", None),
    ('"just a string"', None),
    ("", None),
    ("\n\n", None),
])
def test_parse_result(stdout, expected):
    assert parse_result(stdout) == expected


def test_main_guard_detection():
    assert contains_main_guard("if __name__ == '__main__':\n    main()")
    assert contains_main_guard('if __name__ == "__main__":\n    run()')
    assert not contains_main_guard("def main():\n    pass")


def test_prepare_script_appends_invocation_only_when_needed():
    bare = "def main():\n    print('hi')\n"
    assert prepare_script(bare) == bare + MAIN_INVOCATION
    guarded = bare + "\nif __name__ == '__main__':\n    main()\n"
    assert prepare_script(guarded) == guarded


def test_validate_script():
    assert validate_script("def main():\n    return 1\n")
    with pytest.raises(ValidationError):
        validate_script("def main(:\n    pass\n")
    with pytest.raises(ValidationError):
        validate_script("   ")


# ----------------------------------------------------------------------
# ScriptRunner
# ----------------------------------------------------------------------

def test_runner_captures_stdout_and_stderr():
    runner = ScriptRunner(timeout=30)
    output = runner.run_script(script("""
        import sys

        def main():
            print("hello")
            print("warning", file=sys.stderr)
            print('{"ok": true}')
    """))
    assert output.returncode == 0
    assert "hello" in output.stdout
    assert "warning" in output.stderr
    assert parse_result(output.stdout) == {"ok": True}


def test_runner_respects_existing_main_guard():
    runner = ScriptRunner(timeout=30)
    output = runner.run_script(script("""
        def run():
            print("ran once")

        if __name__ == "__main__":
            run()
    """))
    assert output.stdout.count("ran once") == 1


def test_runner_uses_and_removes_temporary_directory():
    runner = ScriptRunner(timeout=30)
    output = runner.run_script(script("""
        import os

        def main():
            print(os.getcwd())
    """))
    work_dir = Path(output.stdout.strip())
    assert work_dir.name.startswith("barkcron_task_")
    assert not work_dir.exists()


def test_runner_non_zero_exit_raises_with_output():
    runner = ScriptRunner(timeout=30)
    with pytest.raises(ScriptExecutionError) as exc_info:
        runner.run_script(script("""
            def main():
                print("partial")
                raise RuntimeError("kaboom")
        """))
    assert exc_info.value.returncode != 0
    assert "partial" in exc_info.value.stdout
    assert "kaboom" in exc_info.value.stderr


def test_runner_timeout_kills_process():
    runner = ScriptRunner(timeout=1)
    with pytest.raises(ScriptExecutionError) as exc_info:
        runner.run_script(script("""
            import time

            def main():
                print("sleeping")
                time.sleep(30)
        """))
    assert "timed out" in str(exc_info.value)
    assert "sleeping" in exc_info.value.stdout


@pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")
def test_runner_timeout_kills_children_holding_output_pipes():
    runner = ScriptRunner(timeout=2)
    started = time.monotonic()
    with pytest.raises(ScriptExecutionError) as exc_info:
        runner.run_script(script("""
            import subprocess
            import sys
            import time

            def main():
                subprocess.Popen([sys.executable, "-c", "import time; time.sleep(30)"])
                print("spawned")
                time.sleep(30)
        """))
    assert "timed out" in str(exc_info.value)
    assert "spawned" in exc_info.value.stdout
    assert time.monotonic() - started < 10


def test_runner_returns_when_leftover_child_keeps_pipes_open(monkeypatch):
    monkeypatch.setattr(executor_module, "READER_JOIN_TIMEOUT", 0.5)
    runner = ScriptRunner(timeout=30)
    started = time.monotonic()
    output = runner.run_script(script("""
        import subprocess
        import sys

        def main():
            subprocess.Popen([sys.executable, "-c", "import time; time.sleep(15)"])
            print('{"spawned": true}')
    """))
    assert output.returncode == 0
    assert parse_result(output.stdout) == {"spawned": True}
    assert time.monotonic() - started < 10


def test_runner_launch_failure():
    runner = ScriptRunner(python_executable="/nonexistent/python3", timeout=5)
    with pytest.raises(ScriptExecutionError):
        runner.run_script("def main():\n    pass\n")


# ----------------------------------------------------------------------
# TaskExecutor
# ----------------------------------------------------------------------

def make_executor(db, background, timeout=30):
    notifier = RecordingNotifier()
    retention = RecordingRetention()
    executor = TaskExecutor(db, ScriptRunner(timeout=timeout), background,
                            retention=retention, notifier=notifier)
    return executor, notifier, retention


def test_execute_task_success(db, background, make_task):
    executor, notifier, retention = make_executor(db, background)
    task = make_task(script=script("""
        def main():
            print('{"ok": true}')
    """))

    log = executor.execute_task(task)
    background.drain()

    assert log.status == LOG_SUCCESS
    assert log.result == {"ok": True}
    assert log.end_time is not None and log.duration >= 0

    stored = db.get_latest_log(task.id)
    assert stored.id == log.id
    assert stored.status == LOG_SUCCESS
    assert stored.result == {"ok": True}
    assert retention.calls == [task.id]
    # No notification config, no notification
    assert notifier.calls == []


def test_execute_task_script_failed(db, background, make_task):
    executor, _, _ = make_executor(db, background)
    task = make_task(script=script("""
        def main():
            print('{"error": "boom"}')
    """))

    log = executor.execute_task(task)
    assert log.status == LOG_SCRIPT_FAILED
    assert db.get_latest_log(task.id).status == LOG_SCRIPT_FAILED


def test_null_error_field_is_success(db, background, make_task):
    executor, _, _ = make_executor(db, background)
    task = make_task(script=script("""
        def main():
            print('{"error": null, "value": 1}')
    """))
    assert executor.execute_task(task).status == LOG_SUCCESS


def test_execute_task_timeout_is_execution_failed(db, background, make_task):
    executor, _, _ = make_executor(db, background, timeout=1)
    task = make_task(script=script("""
        import time

        def main():
            time.sleep(30)
    """))

    log = executor.execute_task(task)
    assert log.status == LOG_EXECUTION_FAILED
    assert "timed out" in log.error
    assert log.result is None


def test_execute_task_crash_is_execution_failed(db, background, make_task):
    executor, _, _ = make_executor(db, background)
    task = make_task(script="def main():\n    raise SystemExit(3)\n")
    assert executor.execute_task(task).status == LOG_EXECUTION_FAILED


def test_notification_submitted_regardless_of_status(db, background, make_task):
    executor, notifier, _ = make_executor(db, background)
    task = make_task(
        script="def main():\n    raise SystemExit(1)\n",
        bark_config='{"device_key": "abc", "title": "Run failed"}',
    )

    executor.execute_task(task)
    assert background.drain()
    assert notifier.calls == [task.id]


def test_execution_abandoned_when_log_cannot_be_created(db, background, make_task, monkeypatch):
    executor, notifier, retention = make_executor(db, background)
    task = make_task()

    def broken_create_log(log):
        raise RuntimeError("disk full")

    monkeypatch.setattr(db, "create_log", broken_create_log)
    assert executor.execute_task(task) is None
    background.drain()
    assert notifier.calls == [] and retention.calls == []
