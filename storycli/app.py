"""storycli — command-line entry point for the task-execution engine."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.table import Table
from rich.text import Text

from storycli.adapters.worker_client import WorkerClient
from storycli.engine.config import ExecutorConfig
from storycli.engine.errors import ConfigError, SessionStateError
from storycli.engine.execution_manager import ExecutionManager
from storycli.engine.feature import FeatureSession
from storycli.engine.recovery import RecoveryCoordinator, RecoveryReport
from storycli.shared.models.log import LogEntry, LogType
from storycli.shared.models.task import TaskStatus
from storycli.shared.services.session_store import SessionStore

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

LOG_STYLES: dict[LogType, str] = {
    LogType.USER: "bold cyan",
    LogType.ASSISTANT: "white",
    LogType.TOOL_USE: "yellow",
    LogType.TOOL_RESULT: "dim",
    LogType.SYSTEM: "magenta",
    LogType.ERROR: "bold red",
}

STATUS_STYLES: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "dim",
    TaskStatus.RUNNING: "yellow",
    TaskStatus.COMPLETED: "green",
    TaskStatus.FAILED: "red",
}


def configure_logging(level: str = "INFO", log_dir: Path | None = None) -> Path:
    """Send engine logs to a rotating file plus stderr."""
    log_dir = log_dir or Path.home() / ".storycli" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "storycli.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    # Engine chatter goes to the file; the console only shows problems.
    stream_handler.setLevel(logging.WARNING)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def render_log(entry: LogEntry) -> Text:
    style = LOG_STYLES.get(entry.type, "")
    stamp = entry.timestamp.astimezone().strftime("%H:%M:%S")
    text = Text(f"{stamp} ", style="dim")
    if entry.type == LogType.TOOL_USE:
        target = ""
        if entry.tool_input:
            target = str(
                entry.tool_input.get("file_path")
                or entry.tool_input.get("path")
                or entry.tool_input.get("command")
                or ""
            )
        text.append(f"▶ {entry.content}", style=style)
        if target:
            text.append(f" {target}", style="dim")
        return text
    if entry.type == LogType.USER:
        text.append(f"> {entry.content}", style=style)
        return text
    content = entry.content
    if entry.type == LogType.TOOL_RESULT and len(content) > 200:
        content = content[:200] + "…"
    text.append(content, style=style)
    return text


def _print_logs(session_id: str, batch: list[LogEntry]) -> None:
    for entry in batch:
        console.print(render_log(entry))


async def _print_event(event: dict[str, Any]) -> None:
    kind = event.get("event")
    if kind == "task_started":
        console.print(f"[bold]● {event.get('label') or event.get('task_id')}[/bold]")
    elif kind == "task_finished":
        if event.get("success"):
            console.print("[green]✓ task completed[/green]")
        else:
            console.print(f"[red]✗ task failed:[/red] {event.get('error') or 'unknown error'}")
    elif kind == "execution_result":
        cost = event.get("cost_usd")
        cost_str = f" ${cost:.4f}" if isinstance(cost, (int, float)) else ""
        console.print(f"[dim]tokens {event.get('tokens')}{cost_str}[/dim]")
    elif kind == "invalidate":
        regions = ", ".join("/".join(r) for r in event.get("regions", []))
        console.print(f"[dim]refresh: {regions}[/dim]")
    elif kind == "queue_empty":
        console.print("[dim]queue empty[/dim]")


def render_sessions(store: SessionStore, session_id: str | None = None) -> Table:
    table = Table(title="Sessions")
    table.add_column("Session")
    table.add_column("Running")
    table.add_column("Auto")
    table.add_column("Task")
    table.add_column("Status")
    table.add_column("Label")
    table.add_column("Execution")
    sessions = store.all_sessions()
    for sid in sorted(sessions):
        if session_id is not None and sid != session_id:
            continue
        session = sessions[sid]
        running = "yes" if session.is_running else "no"
        auto = "yes" if session.auto_start else "no"
        if not session.queue:
            table.add_row(sid, running, auto, "-", "-", "-", session.current_execution_id or "-")
            continue
        for task in session.queue:
            execution = session.current_execution_id if task.id == session.current_task_id else None
            table.add_row(
                sid,
                running,
                auto,
                task.id[:8],
                Text(task.status.value, style=STATUS_STYLES.get(task.status, "")),
                task.label,
                execution or "-",
            )
            sid, running, auto = "", "", ""
    return table


def _report_recovery(report: RecoveryReport) -> None:
    if report.is_empty:
        console.print("[dim]Nothing to recover.[/dim]")
        return
    console.print(
        f"Recovered {report.sessions} session(s): "
        f"{len(report.completed)} completed, {len(report.failed)} failed, "
        f"{len(report.polling)} still running, {len(report.demoted)} requeued"
    )


def _parse_params(pairs: list[str] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid --param {pair!r}, expected KEY=VALUE")
        params[key] = value
    return params


class _Runtime:
    """Store, client and manager wired from one config."""

    def __init__(self, config: ExecutorConfig, *, quiet: bool = False) -> None:
        self.config = config
        self.store = SessionStore(config.state_path)
        self.client = WorkerClient(config.api_base, timeout_seconds=config.request_timeout_seconds)
        self.manager = ExecutionManager(
            self.store,
            self.client,
            config,
            on_event=None if quiet else _print_event,
            on_logs=None if quiet else _print_logs,
        )

    async def close(self) -> None:
        await self.manager.shutdown()
        await self.client.close()


async def _cmd_run(args, config: ExecutorConfig) -> int:
    runtime = _Runtime(config)
    try:
        report = await RecoveryCoordinator(runtime.manager).run()
        if not report.is_empty:
            _report_recovery(report)
        feature = FeatureSession(
            runtime.manager,
            args.feature,
            args.project_id,
            str(Path(args.project_path).resolve()),
        )
        if args.prompt:
            task = feature.execute_prompt(args.prompt, args.label)
        else:
            task = feature.execute(args.skill, _parse_params(args.param), args.label)
        await runtime.manager.wait_idle()
        final = feature.session.get_task(task.id)
        stats = runtime.manager.controller(feature.session_id).file_change_stats()
        if stats["edits"] or stats["writes"]:
            console.print(f"[dim]files: {stats['edits']} edited, {stats['writes']} written[/dim]")
        return 1 if final is not None and final.status == TaskStatus.FAILED else 0
    finally:
        await runtime.close()


async def _cmd_recover(args, config: ExecutorConfig) -> int:
    runtime = _Runtime(config)
    try:
        report = await RecoveryCoordinator(runtime.manager).run()
        _report_recovery(report)
        if not args.no_wait:
            await runtime.manager.wait_idle()
        return 0
    finally:
        await runtime.close()


async def _cmd_abort(args, config: ExecutorConfig) -> int:
    runtime = _Runtime(config, quiet=True)
    try:
        if runtime.store.get_session(args.session) is None:
            err_console.print(f"[red]Unknown session {args.session}[/red]")
            return 1
        stopped = await runtime.manager.abort(args.session)
        console.print("Aborted." if stopped else "Nothing was running.")
        return 0
    finally:
        await runtime.close()


def _cmd_status(args, config: ExecutorConfig) -> int:
    store = SessionStore(config.state_path)
    console.print(render_sessions(store, args.session))
    return 0


def _resolve_task_id(store: SessionStore, session_id: str, prefix: str) -> str | None:
    session = store.get_session(session_id)
    if session is None:
        return None
    matches = [t.id for t in session.queue if t.id.startswith(prefix)]
    return matches[0] if len(matches) == 1 else None


async def _cmd_dismiss(args, config: ExecutorConfig) -> int:
    runtime = _Runtime(config, quiet=True)
    try:
        task_id = _resolve_task_id(runtime.store, args.session, args.task)
        if task_id is None:
            err_console.print(f"[red]No unique task {args.task} in {args.session}[/red]")
            return 1
        if args.retry:
            if runtime.manager.retry(args.session, task_id) is None:
                err_console.print("[red]Only failed tasks can be retried[/red]")
                return 1
            console.print("Requeued; run `storycli recover` to continue the queue.")
            return 0
        try:
            removed = runtime.manager.dismiss(args.session, task_id)
        except SessionStateError as exc:
            err_console.print(f"[red]{exc}[/red]")
            return 1
        console.print("Dismissed." if removed else "Nothing to dismiss.")
        return 0
    finally:
        await runtime.close()


def build_parser():
    import argparse

    parser = argparse.ArgumentParser(
        prog="storycli",
        description="storycli — queued, streamed execution of story generation tasks",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (executor: section)",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Log level for the log file (default from config)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Queue a skill or prompt and stream it")
    run.add_argument("feature", help="Feature id, e.g. characters")
    run.add_argument("--project-id", required=True)
    run.add_argument("--project-path", default=".")
    target = run.add_mutually_exclusive_group(required=True)
    target.add_argument("--skill", metavar="SKILL_ID")
    target.add_argument("--prompt", metavar="TEXT")
    run.add_argument(
        "--param", metavar="KEY=VALUE", action="append",
        help="Context parameter for the skill (repeatable)",
    )
    run.add_argument("--label")

    recover = sub.add_parser("recover", help="Reconcile interrupted sessions")
    recover.add_argument(
        "--no-wait", action="store_true",
        help="Report and exit without waiting for resumed work",
    )

    status = sub.add_parser("status", help="Show persisted sessions and queues")
    status.add_argument("session", nargs="?")

    abort = sub.add_parser("abort", help="Abort a session's running task")
    abort.add_argument("session")

    dismiss = sub.add_parser("dismiss", help="Remove (or retry) a finished task")
    dismiss.add_argument("session")
    dismiss.add_argument("task", help="Task id or unique prefix")
    dismiss.add_argument("--retry", action="store_true", help="Requeue instead of removing")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = ExecutorConfig.load(args.config or os.getenv("STORYCLI_CONFIG"))
    except ConfigError as exc:
        err_console.print(f"[red]{exc}[/red]")
        sys.exit(2)

    log_file = configure_logging(args.log_level or config.log_level)
    logger.info(
        "storycli %s cwd=%s config=%s state=%s log=%s",
        args.command, Path.cwd(), args.config or "<none>", config.state_path, log_file,
    )

    if args.command == "status":
        sys.exit(_cmd_status(args, config))

    handlers = {
        "run": _cmd_run,
        "recover": _cmd_recover,
        "abort": _cmd_abort,
        "dismiss": _cmd_dismiss,
    }
    try:
        code = asyncio.run(handlers[args.command](args, config))
    except KeyboardInterrupt:
        code = 130
    except ValueError as exc:
        err_console.print(f"[red]{exc}[/red]")
        code = 2
    sys.exit(code)


if __name__ == "__main__":
    main()
