"""
Script execution for scheduled tasks.

Each task carries Python source. The source is written to a throwaway
directory and run with the configured interpreter under a hard timeout;
the last line of stdout may carry a JSON object that becomes the
execution's structured result.
"""

import json
import logging
import os
import signal
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from barkcron.background import BackgroundTasks
from barkcron.database import Database
from barkcron.errors import ValidationError
from barkcron.history import LogRetention
from barkcron.models import (
    LOG_EXECUTION_FAILED,
    LOG_RUNNING,
    LOG_SCRIPT_FAILED,
    LOG_SUCCESS,
    ExecutionLog,
    Task,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 600  # 10 minutes
READER_JOIN_TIMEOUT = 5  # seconds to collect output after the script is gone
SCRIPT_FILENAME = "task_script.py"
MAIN_GUARDS = (
    "if __name__ == '__main__':",
    'if __name__ == "__main__":',
)
MAIN_INVOCATION = "\n\nif __name__ == '__main__':\n    main()\n"


class ScriptExecutionError(Exception):
    """Raised when a script cannot be launched, exits non-zero or times out."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "", returncode: Optional[int] = None):
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        self.returncode = returncode


@dataclass
class ScriptOutput:
    stdout: str
    stderr: str
    returncode: int


def contains_main_guard(script: str) -> bool:
    return any(guard in script for guard in MAIN_GUARDS)


def prepare_script(script: str) -> str:
    """Append a main() invocation unless the script runs itself."""
    if contains_main_guard(script):
        return script
    return script + MAIN_INVOCATION


def validate_script(script: str) -> bool:
    """
    Check that a script compiles.

    Raises:
        ValidationError: On a syntax error or empty script
    """
    if not script or not script.strip():
        raise ValidationError("Script is empty")
    try:
        compile(script, SCRIPT_FILENAME, 'exec')
    except (SyntaxError, ValueError) as e:
        raise ValidationError(f"Script syntax error: {e}") from e
    return True


def parse_result(stdout: str) -> Optional[Dict[str, Any]]:
    """
    Extract the structured result from the last non-blank stdout line.

    Tries strict JSON first, then again with single quotes swapped for
    double quotes to accept dict-repr style output. Only objects count.
    """
    if not stdout:
        return None
    lines = [line.strip() for line in stdout.splitlines() if line.strip()]
    if not lines:
        return None
    last_line = lines[-1]

    try:
        result = json.loads(last_line)
    except ValueError:
        try:
            result = json.loads(last_line.replace("'", '"'))
        except ValueError:
            return None
        logger.debug("Parsed result using single-quote fallback")

    return result if isinstance(result, dict) else None


def _kill_process_group(process: subprocess.Popen):
    """Kill the script and every process it started in its session."""
    if os.name != "posix":
        process.kill()
        return
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass


class ScriptRunner:
    """Runs one script in an isolated temporary directory."""

    def __init__(self, python_executable: Optional[str] = None, timeout: int = DEFAULT_TIMEOUT):
        self.python_executable = python_executable or sys.executable
        self.timeout = timeout

    def run_script(self, script: str, log_prefix: str = "") -> ScriptOutput:
        """
        Execute a script and capture its output.

        Args:
            script: Python source; must define main() unless it has its own guard
            log_prefix: Context prepended to log lines

        Returns:
            ScriptOutput with stdout, stderr and exit code

        Raises:
            ScriptExecutionError: If launch fails, exit code is non-zero or the timeout expires
        """
        with tempfile.TemporaryDirectory(prefix="barkcron_task_") as work_dir:
            script_path = Path(work_dir) / SCRIPT_FILENAME
            script_path.write_text(prepare_script(script), encoding="utf-8")

            env = dict(os.environ)
            env["PYTHONIOENCODING"] = "utf-8"

            try:
                process = subprocess.Popen(
                    [self.python_executable, "-u", str(script_path)],
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    cwd=work_dir,
                    env=env,
                    start_new_session=(os.name == "posix"),
                )
            except OSError as e:
                logger.error(f"{log_prefix}Failed to launch {self.python_executable}: {e}")
                raise ScriptExecutionError(f"Failed to launch script: {e}") from e

            stdout_chunks: List[str] = []
            stderr_chunks: List[str] = []

            def read_stream(stream, chunks):
                for line in stream:
                    chunks.append(line)
                    logger.debug(f"{log_prefix}{line.rstrip()}")

            readers = [
                threading.Thread(target=read_stream, args=(process.stdout, stdout_chunks), daemon=True),
                threading.Thread(target=read_stream, args=(process.stderr, stderr_chunks), daemon=True),
            ]
            for reader in readers:
                reader.start()

            timed_out = False
            try:
                process.wait(timeout=self.timeout)
            except subprocess.TimeoutExpired:
                timed_out = True
                _kill_process_group(process)
                process.wait()

            # Children the script started may still hold the pipes open
            for reader in readers:
                reader.join(timeout=READER_JOIN_TIMEOUT)
                if reader.is_alive():
                    logger.warning(f"{log_prefix}Output pipe still open after exit, leaving it unread")

            stdout = ''.join(stdout_chunks)
            stderr = ''.join(stderr_chunks)

            if timed_out:
                logger.error(f"{log_prefix}Script timed out after {self.timeout}s")
                raise ScriptExecutionError(
                    f"Script execution timed out after {self.timeout}s",
                    stdout=stdout, stderr=stderr, returncode=process.returncode,
                )

            if process.returncode != 0:
                raise ScriptExecutionError(
                    f"Script exited with code {process.returncode}",
                    stdout=stdout, stderr=stderr, returncode=process.returncode,
                )

            return ScriptOutput(stdout=stdout, stderr=stderr, returncode=process.returncode)


class TaskExecutor:
    """
    Runs a task and records the attempt as an ExecutionLog.

    The log is written once as running before launch and once more when
    finalized. Notification and log retention happen in the background
    afterwards.
    """

    def __init__(
        self,
        db: Database,
        runner: ScriptRunner,
        background: BackgroundTasks,
        retention: Optional[LogRetention] = None,
        notifier=None,
    ):
        self.db = db
        self.runner = runner
        self.background = background
        self.retention = retention
        self.notifier = notifier

    def execute_task(self, task: Task) -> Optional[ExecutionLog]:
        """
        Execute a task's script.

        Returns:
            The finalized log, or None if the running log could not be saved
        """
        log_prefix = f"[{task.name}:{task.id}] "
        log = ExecutionLog(task_id=task.id, start_time=utcnow(), status=LOG_RUNNING)

        try:
            self.db.create_log(log)
        except Exception as e:
            logger.error(f"{log_prefix}Failed to create execution log, abandoning run: {e}")
            return None

        logger.info(f"{log_prefix}Starting execution (log {log.id})")

        execution_error = None
        try:
            output = self.runner.run_script(task.script, log_prefix=log_prefix)
            log.output = output.stdout
            log.error = output.stderr
        except ScriptExecutionError as e:
            execution_error = e
            log.output = e.stdout
            log.error = "\n".join(part for part in (e.stderr.rstrip(), str(e)) if part)

        log.end_time = utcnow()
        log.duration = int((log.end_time - log.start_time).total_seconds() * 1000)

        if execution_error is not None:
            log.status = LOG_EXECUTION_FAILED
            logger.error(f"{log_prefix}Execution failed: {execution_error}")
        else:
            log.result = parse_result(log.output)
            if log.result is not None and log.result.get('error') is not None:
                log.status = LOG_SCRIPT_FAILED
                logger.warning(f"{log_prefix}Script reported error: {log.result['error']}")
            else:
                log.status = LOG_SUCCESS
                logger.info(f"{log_prefix}Completed in {log.duration}ms")

        try:
            self.db.finalize_log(log)
        except Exception as e:
            logger.error(f"{log_prefix}Failed to finalize execution log {log.id}: {e}")
            return log

        if task.has_notification_config and self.notifier is not None:
            self.background.submit(self.notifier.process, task.id, description=f"notify task {task.id}")
        if self.retention is not None:
            self.background.submit(
                self.retention.cleanup_after_execution, task.id,
                description=f"log retention task {task.id}",
            )

        return log
