"""Command-line interface: start, stop, list, inspect and rerun DAGs."""

from __future__ import annotations

import argparse
import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from .connections import load_all_connections
from .dag import get, list_dags
from .examples import register_examples

PID_DIR = Path("dagsflow-pid")
LOG_DIR = Path("logs")
CONNECTIONS_DIR = "connections"
_KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)
_TAIL_INTERVAL = 0.5


def _pid_file(dag_name: str) -> Path:
    return PID_DIR / f"{dag_name}.pid"


def _running_file(dag_name: str) -> Path:
    return PID_DIR / f"{dag_name}.running"


def write_pid_files(dag_name: str, pid: int) -> None:
    """Record the pid of a detached DAG runner and mark the DAG as running."""
    PID_DIR.mkdir(parents=True, exist_ok=True)
    _pid_file(dag_name).write_text(str(pid))
    _running_file(dag_name).write_text("running")


def stop_by_pid_file(dag_name: str) -> None:
    """Kill the runner recorded for ``dag_name`` and remove its pid files."""
    try:
        data = _pid_file(dag_name).read_text()
    except OSError as exc:
        raise RuntimeError("pid file not found") from exc
    try:
        pid = int(data.strip())
    except ValueError as exc:
        raise RuntimeError(f"failed to find process: invalid pid {data.strip()!r}") from exc
    try:
        os.kill(pid, _KILL_SIGNAL)
    except OSError as exc:
        raise RuntimeError(f"failed to kill process: {exc}") from exc
    _pid_file(dag_name).unlink(missing_ok=True)
    _running_file(dag_name).unlink(missing_ok=True)


def check_running(dag_name: str) -> bool:
    """Whether the DAG is marked as running."""
    return _running_file(dag_name).exists()


def spawn_detached(dag_name: str) -> int:
    """Start a background runner for ``dag_name`` and return its pid."""
    command = [sys.executable, "-m", "dagsflow.cli", "internal-run", dag_name]
    if os.name == "nt":
        flags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0) | getattr(
            subprocess, "CREATE_NO_WINDOW", 0
        )
        proc = subprocess.Popen(
            command,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            creationflags=flags,
        )
    else:
        proc = subprocess.Popen(command, start_new_session=True)
    write_pid_files(dag_name, proc.pid)
    return proc.pid


def _cmd_run(args: argparse.Namespace) -> int:
    print(f"Starting DAG {args.dag_name} in background...")
    try:
        spawn_detached(args.dag_name)
    except OSError as exc:
        print("Failed to start:", exc)
    return 0


def _cmd_run_all(args: argparse.Namespace) -> int:
    for d in list_dags():
        print(f"Starting DAG {d.name} in background...")
        try:
            spawn_detached(d.name)
        except OSError as exc:
            print(f"Failed to start DAG {d.name}: {exc}")
    return 0


def _cmd_stop(args: argparse.Namespace) -> int:
    try:
        stop_by_pid_file(args.dag_name)
    except RuntimeError as exc:
        print("Failed to stop:", exc)
    else:
        print("Stopped DAG:", args.dag_name)
    return 0


def _cmd_stop_all(args: argparse.Namespace) -> int:
    for d in list_dags():
        try:
            stop_by_pid_file(d.name)
        except RuntimeError as exc:
            print(f"Failed to stop DAG {d.name}: {exc}")
        else:
            print(f"Stopped DAG {d.name}")
    return 0


def _cmd_list(args: argparse.Namespace) -> int:
    print(f"{'DAG Name':<15} | {'Is Running':<10} | {'Schedule':<20}")
    print("-" * 15 + "-|-" + "-" * 10 + "-|-" + "-" * 20)
    for d in list_dags():
        running = "true" if check_running(d.name) else "false"
        print(f"{d.name:<15} | {running:<10} | {d.schedule:<20}")
    return 0


def _cmd_graph(args: argparse.Namespace) -> int:
    d = get(args.dag_name)
    if d is None:
        print(f"DAG {args.dag_name} not found")
        return 0
    d.print_graph()
    return 0


def _cmd_internal_run(args: argparse.Namespace) -> int:
    name = args.dag_name
    d = get(name)
    if d is None:
        print("DAG not found:", name)
        return 0
    d.connections = load_all_connections(CONNECTIONS_DIR)

    def _stop(signum, frame) -> None:
        print("Stopping DAG:", name)
        raise SystemExit(0)

    signal.signal(signal.SIGTERM, _stop)
    try:
        d.run()
    except KeyboardInterrupt:
        print("Stopping DAG:", name)
    return 0


def _cmd_log(args: argparse.Namespace) -> int:
    path = LOG_DIR / f"{args.dag_name}.log"
    try:
        handle = open(path, encoding="utf-8")
    except OSError as exc:
        print(f"Failed to open log file: {exc}")
        return 0
    with handle:
        for line in handle:
            print(line.rstrip("\r\n"))
        pending = ""
        while True:
            chunk = handle.readline()
            if not chunk:
                time.sleep(_TAIL_INTERVAL)
                continue
            pending += chunk
            if pending.endswith("\n"):
                print(pending, end="", flush=True)
                pending = ""


def _cmd_rerun_dag(args: argparse.Namespace) -> int:
    if args.dag_name is None:
        print("Please provide DAG name")
        return 0
    d = get(args.dag_name)
    if d is None:
        print("DAG not found")
        return 0
    d.rerun_dag()
    return 0


def _cmd_rerun_job(args: argparse.Namespace) -> int:
    if args.dag_name is None or args.job_id is None:
        print("Please provide DAG name and job ID")
        return 0
    d = get(args.dag_name)
    if d is None:
        print("DAG not found")
        return 0
    try:
        d.rerun_job(args.job_id, args.downstream, args.upstream)
    except KeyError:
        print(f"Job {args.job_id} not found")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dagsflow", description="DAG scheduler with cron-style schedules"
    )
    commands = parser.add_subparsers(dest="command")

    def add(name: str, help_text: str, handler, dag_arg: bool = True):
        sub = commands.add_parser(name, help=help_text)
        if dag_arg:
            sub.add_argument("dag_name")
        sub.set_defaults(handler=handler)
        return sub

    add("run", "Run DAG detached", _cmd_run)
    add("run-all", "Run all DAGs detached", _cmd_run_all, dag_arg=False)
    add("stop", "Stop a running DAG", _cmd_stop)
    add("stop-all", "Stop all running DAGs", _cmd_stop_all, dag_arg=False)
    add("list", "List DAGs and status", _cmd_list, dag_arg=False)
    add("graph", "Print DAG graph", _cmd_graph)
    add("internal-run", "Internal runner (do not call manually)", _cmd_internal_run)
    add("log", "Show realtime log output of a DAG", _cmd_log)

    rerun_dag = add("rerun-dag", "Rerun entire DAG", _cmd_rerun_dag, dag_arg=False)
    rerun_dag.add_argument("dag_name", nargs="?")

    rerun_job = add("rerun-job", "Rerun job in DAG", _cmd_rerun_job, dag_arg=False)
    rerun_job.add_argument("dag_name", nargs="?")
    rerun_job.add_argument("job_id", nargs="?")
    rerun_job.add_argument("--downstream", action="store_true", help="Rerun downstream jobs")
    rerun_job.add_argument("--upstream", action="store_true", help="Rerun upstream jobs")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point of the command-line tool."""
    register_examples()
    parser = _build_parser()
    args = parser.parse_args(argv)
    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 0
    return handler(args)


if __name__ == "__main__":
    sys.exit(main())