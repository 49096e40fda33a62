"""
Command-line interface for barkcron.

Provides commands for:
- Running the scheduler
- Creating, editing and toggling tasks
- Running a task once and viewing execution logs
- Managing Bark servers/devices and notification history
"""

import argparse
import json
import logging
import signal
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from barkcron.config import Settings
from barkcron.cron import parse_cron_expression, upcoming_fire_times
from barkcron.database import Database
from barkcron.errors import BarkcronError, TaskNotFoundError, ValidationError
from barkcron.executor import validate_script
from barkcron.models import (
    TASK_ACTIVE,
    TASK_INACTIVE,
    BarkDevice,
    BarkServer,
    NotificationConfig,
    Task,
    TimeExclusionConfig,
)
from barkcron.service import Runtime

logger = logging.getLogger(__name__)

RESTART_HINT = "A running 'barkcron start' registers new or changed schedules only after a restart."

EPILOG = """\
Task edits are written to the database. A running scheduler drops removed
or disabled tasks at its hourly reconciliation and reads script, notification
and exclusion changes at the next firing. New tasks, re-enabled tasks and
cron changes are registered only when 'barkcron start' is restarted.
"""


def setup_logging(log_file: str = None, verbose: bool = False, console: bool = True):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Console handler
    if console:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(level)
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_handler.setFormatter(console_formatter)
        root_logger.addHandler(console_handler)

    # File handler
    if log_file:
        log_path = Path(log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path)
        file_handler.setLevel(level)
        file_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        root_logger.addHandler(file_handler)

    # APScheduler is chatty at INFO
    logging.getLogger('apscheduler').setLevel(logging.DEBUG if verbose else logging.WARNING)


def _load_settings(args) -> Settings:
    settings = Settings(args.config)
    errors = settings.validate()
    if errors:
        for error in errors:
            logger.error(f"  - {error}")
        raise BarkcronError("Invalid configuration")
    return settings


def _open_db(args) -> Database:
    settings = _load_settings(args)
    db = Database(settings.database_path, retry=settings.retry)
    db.init_schema()
    return db


def _read_text_arg(value: Optional[str]) -> Optional[str]:
    """Inline text, or the contents of a file when given as @path."""
    if value is None:
        return None
    if value.startswith('@'):
        return Path(value[1:]).expanduser().read_text(encoding='utf-8')
    return value


def _fmt_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime('%Y-%m-%d %H:%M:%S')


def _validate_task_fields(task: Task):
    parse_cron_expression(task.cron_expr)
    validate_script(task.script)
    NotificationConfig.from_json(task.bark_config)
    TimeExclusionConfig.from_json(task.time_exclusion_config)


def cmd_init_db(args):
    """Create the database and a default config file."""
    settings = Settings(args.config)
    db = Database(settings.database_path, retry=settings.retry)
    db.init_schema()
    if not settings.config_path.exists():
        settings.save()
    print(f"Database: {settings.database_path}")
    print(f"Config:   {settings.config_path}")


def cmd_start(args):
    """Start the scheduler and block until interrupted."""
    settings = _load_settings(args)
    if args.workers:
        settings.execution.max_workers = args.workers

    setup_logging(
        log_file=args.log_file or settings.logging.file,
        verbose=args.verbose,
        console=args.foreground,
    )

    runtime = Runtime(settings)

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        runtime.close()
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        runtime.scheduler.start()
        for entry in runtime.scheduler.list_entries():
            logger.info(f"  - task {entry['task_id']} '{entry['name']}': next run at {entry['next_run']}")

        logger.info("Scheduler running. Press Ctrl+C to stop.")
        while runtime.scheduler.is_running():
            time.sleep(1)
    except Exception as e:
        logger.error(f"Scheduler failed: {e}", exc_info=True)
        runtime.close(wait=False)
        sys.exit(1)


def cmd_add(args):
    """Create a task."""
    db = _open_db(args)
    task = Task(
        id=None,
        name=args.name,
        description=args.description or "",
        script=_read_text_arg(args.script) or "",
        cron_expr=args.cron,
        status=TASK_ACTIVE if args.active else TASK_INACTIVE,
        bark_config=_read_text_arg(args.bark_config) or "",
        time_exclusion_config=_read_text_arg(args.exclusion) or "",
    )
    _validate_task_fields(task)
    db.create_task(task)
    print(f"Created task {task.id}: {task.name} ({task.status})")
    if task.is_active:
        print(RESTART_HINT)


def cmd_update(args):
    """Edit a task."""
    db = _open_db(args)
    task = db.require_task(args.task_id)

    if args.name:
        task.name = args.name
    if args.description is not None:
        task.description = args.description
    if args.cron:
        task.cron_expr = args.cron
    if args.script:
        task.script = _read_text_arg(args.script)
    if args.bark_config is not None:
        task.bark_config = _read_text_arg(args.bark_config)
    if args.exclusion is not None:
        task.time_exclusion_config = _read_text_arg(args.exclusion)

    _validate_task_fields(task)
    db.update_task(task)
    print(f"Updated task {task.id}: {task.name}")
    print(RESTART_HINT)


def cmd_remove(args):
    db = _open_db(args)
    if not db.delete_task(args.task_id):
        raise TaskNotFoundError(args.task_id)
    print(f"Removed task {args.task_id}")


def cmd_enable(args):
    db = _open_db(args)
    task = db.set_task_status(args.task_id, TASK_ACTIVE)
    print(f"Enabled task {task.id}: {task.name}")
    print(RESTART_HINT)


def cmd_disable(args):
    db = _open_db(args)
    task = db.set_task_status(args.task_id, TASK_INACTIVE)
    print(f"Disabled task {task.id}: {task.name}")


def cmd_list(args):
    """List tasks."""
    db = _open_db(args)
    tasks = db.list_tasks(status=args.status)

    if not tasks:
        print("No tasks")
        return

    print(f"\n{len(tasks)} task(s):\n")
    for task in tasks:
        print(f"  [{task.id}] {task.name} ({task.status})")
        print(f"    Cron:     {task.cron_expr}")
        print(f"    Last Run: {_fmt_time(task.last_run)}")
        print(f"    Next Run: {_fmt_time(task.next_run)}")
        if task.description:
            print(f"    Description: {task.description}")
        print()


def cmd_run(args):
    """Run a task once in the foreground and wait for its side effects."""
    settings = _load_settings(args)
    setup_logging(verbose=args.verbose)
    runtime = Runtime(settings)
    try:
        task = runtime.db.require_task(args.task_id)
        log = runtime.executor.execute_task(task)
        runtime.background.drain()
    finally:
        runtime.background.shutdown()

    if log is None:
        print("Execution could not be recorded")
        sys.exit(1)

    print(f"Status:   {log.status}")
    print(f"Duration: {log.duration}ms")
    if log.result is not None:
        print(f"Result:   {json.dumps(log.result, ensure_ascii=False)}")
    if log.output and args.show_output:
        print("\n--- stdout ---")
        print(log.output)
    if log.error:
        print("\n--- stderr ---")
        print(log.error)


def cmd_validate(args):
    """Validate a cron expression and/or a script."""
    if args.cron:
        trigger = parse_cron_expression(args.cron)
        print(f"Cron expression OK: {args.cron}")
        for fire_time in upcoming_fire_times(trigger, datetime.now().astimezone(), args.count):
            print(f"  {fire_time.strftime('%Y-%m-%d %H:%M:%S %Z')}")
    if args.script:
        validate_script(_read_text_arg(args.script))
        print("Script OK")
    if not args.cron and not args.script:
        raise ValidationError("Nothing to validate: pass --cron and/or --script")


def cmd_logs(args):
    """Show execution logs."""
    db = _open_db(args)
    logs = db.list_logs(task_id=args.task, limit=args.limit)

    if not logs:
        print("No execution logs")
        return

    for log in logs:
        print(f"  #{log.id} task {log.task_id}  {_fmt_time(log.start_time)}  "
              f"{log.status:<16} {log.duration}ms")
        if args.verbose and log.result is not None:
            print(f"      result: {json.dumps(log.result, ensure_ascii=False)}")


def cmd_records(args):
    """Show or clear notification history."""
    settings = _load_settings(args)
    runtime = Runtime(settings)
    try:
        if args.delete_all:
            deleted = runtime.history.delete_all()
            print(f"Deleted {deleted} notification record(s)")
            return

        records = runtime.history.get_records(args.task, page=args.page, page_size=args.page_size)
        if not records:
            print("No notification records")
            return
        for record in records:
            title = record.fields.get('title', '')
            print(f"  #{record.id} task {record.task_id}  {_fmt_time(record.created_at)}  "
                  f"{record.status:<8} {record.device_key}  {title}")
            if record.error_message:
                print(f"      {record.error_message}")
    finally:
        runtime.background.shutdown()


def cmd_stats(args):
    """Show execution log and notification statistics."""
    settings = _load_settings(args)
    runtime = Runtime(settings)
    try:
        stats = {
            'execution_logs': runtime.retention.get_stats(),
            'notification_records': runtime.history.get_stats(),
        }
    finally:
        runtime.background.shutdown()
    print(json.dumps(stats, indent=2))


def cmd_add_server(args):
    db = _open_db(args)
    server = db.create_server(BarkServer(
        name=args.name,
        url=args.url,
        description=args.description or "",
        is_default=args.default,
    ))
    print(f"Created Bark server {server.id}: {server.name} -> {server.url}")


def cmd_add_device(args):
    db = _open_db(args)
    if args.server_id is not None and db.get_server(args.server_id) is None:
        raise ValidationError(f"Bark server {args.server_id} not found")
    device = db.create_device(BarkDevice(
        name=args.name,
        device_key=args.device_key,
        server_id=args.server_id,
        description=args.description or "",
        is_default=args.default,
    ))
    print(f"Created Bark device {device.id}: {device.name}")


def _add_task_arguments(parser, required: bool):
    parser.add_argument('--cron', required=required, help='6-field cron expression (sec min hour day month dow)')
    parser.add_argument('--script', required=required, help='Python source, or @path to read it from a file')
    parser.add_argument('--description', help='Human-readable description')
    parser.add_argument('--bark-config', dest='bark_config', help='Notification config JSON, or @path')
    parser.add_argument('--exclusion', help='Time exclusion config JSON, or @path')


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog='barkcron',
        description="barkcron - run Python scripts on cron schedules and push results via Bark",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=EPILOG,
    )

    parser.add_argument(
        '-c', '--config',
        type=str,
        help='Path to configuration file'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    subparsers = parser.add_subparsers(dest='command', help='Command to run')

    init_parser = subparsers.add_parser('init-db', help='Create the database and default config')
    init_parser.set_defaults(func=cmd_init_db)

    start_parser = subparsers.add_parser('start', help='Start the scheduler')
    start_parser.add_argument('--foreground', '-f', action='store_true', help='Also log to the console')
    start_parser.add_argument('--workers', '-w', type=int, help='Scheduler threads dispatching due tasks')
    start_parser.add_argument('--log-file', dest='log_file', help='Log file path')
    start_parser.set_defaults(func=cmd_start)

    add_parser = subparsers.add_parser('add', help='Add a task')
    add_parser.add_argument('name', help='Task name')
    _add_task_arguments(add_parser, required=True)
    add_parser.add_argument('--active', action='store_true', help='Create the task enabled')
    add_parser.set_defaults(func=cmd_add)

    update_parser = subparsers.add_parser('update', help='Edit a task')
    update_parser.add_argument('task_id', type=int, help='Task ID')
    update_parser.add_argument('--name', help='New task name')
    _add_task_arguments(update_parser, required=False)
    update_parser.set_defaults(func=cmd_update)

    for name, func, help_text in (
        ('remove', cmd_remove, 'Delete a task'),
        ('enable', cmd_enable, 'Enable a task'),
        ('disable', cmd_disable, 'Disable a task'),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('task_id', type=int, help='Task ID')
        sub.set_defaults(func=func)

    list_parser = subparsers.add_parser('list', help='List tasks')
    list_parser.add_argument('--status', choices=[TASK_ACTIVE, TASK_INACTIVE], help='Filter by status')
    list_parser.set_defaults(func=cmd_list)

    run_parser = subparsers.add_parser('run', help='Run a task once now')
    run_parser.add_argument('task_id', type=int, help='Task ID')
    run_parser.add_argument('--show-output', dest='show_output', action='store_true', help='Print stdout')
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser('validate', help='Validate a cron expression or script')
    validate_parser.add_argument('--cron', help='Cron expression to check')
    validate_parser.add_argument('--script', help='Python source, or @path')
    validate_parser.add_argument('--count', '-n', type=int, default=5, help='Upcoming runs to show (default: 5)')
    validate_parser.set_defaults(func=cmd_validate)

    logs_parser = subparsers.add_parser('logs', help='Show execution logs')
    logs_parser.add_argument('--task', '-t', type=int, help='Filter by task ID')
    logs_parser.add_argument('--limit', '-n', type=int, default=20, help='Number of entries (default: 20)')
    logs_parser.set_defaults(func=cmd_logs)

    records_parser = subparsers.add_parser('records', help='Show notification history')
    records_parser.add_argument('--task', '-t', type=int, help='Filter by task ID')
    records_parser.add_argument('--page', type=int, default=1)
    records_parser.add_argument('--page-size', dest='page_size', type=int, default=20)
    records_parser.add_argument('--delete-all', dest='delete_all', action='store_true',
                                help='Delete every notification record')
    records_parser.set_defaults(func=cmd_records)

    stats_parser = subparsers.add_parser('stats', help='Show log and notification statistics')
    stats_parser.set_defaults(func=cmd_stats)

    server_parser = subparsers.add_parser('add-server', help='Register a Bark server')
    server_parser.add_argument('name', help='Server name')
    server_parser.add_argument('url', help='Push endpoint URL, e.g. https://api.day.app/push')
    server_parser.add_argument('--default', action='store_true', help='Use when a device has no server')
    server_parser.add_argument('--description', help='Description')
    server_parser.set_defaults(func=cmd_add_server)

    device_parser = subparsers.add_parser('add-device', help='Register a Bark device')
    device_parser.add_argument('name', help='Device name')
    device_parser.add_argument('device_key', help='Bark device key')
    device_parser.add_argument('--server-id', dest='server_id', type=int, help='Owning Bark server ID')
    device_parser.add_argument('--default', action='store_true', help='Mark as default device')
    device_parser.add_argument('--description', help='Description')
    device_parser.set_defaults(func=cmd_add_device)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # start and run configure their own logging
    if args.command not in ('start', 'run'):
        if args.verbose:
            setup_logging(verbose=True)
        else:
            logging.basicConfig(level=logging.WARNING)

    try:
        args.func(args)
    except (BarkcronError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    main()
