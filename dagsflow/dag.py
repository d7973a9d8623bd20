"""DAG definitions, their registry, execution, logging and graph output."""

from __future__ import annotations

import contextlib
import io
import sys
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from .connections import Connection
from .job import Job, JobStatus, TriggerRule
from .operators import BigQueryOperator, QueryClient
from .schedule import parse_schedule
from .templating import TemplateError, render_template

POLL_INTERVAL = 0.3
_DONE = frozenset({JobStatus.SUCCESS, JobStatus.FAILED, JobStatus.SKIPPED})
_BRANCH_LABEL = "\x1b[3m\x1b[38;5;245m [from {parent}]\x1b[0m"


def _show(value: Any) -> str:
    """Format a value the way log messages present it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "<nil>"
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda item: str(item[0]))
        return "map[" + " ".join(f"{k}:{_show(v)}" for k, v in items) + "]"
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_show(item) for item in value) + "]"
    return str(value)


class _WaitGroup:
    """Counts outstanding job threads and lets a caller wait for all of them."""

    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self) -> None:
        with self._cond:
            self._count += 1

    def done(self) -> None:
        with self._cond:
            self._count -= 1
            self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count <= 0)


class _LogWriter(io.TextIOBase):
    """A text stream that turns every printed line into an INFO log line."""

    def __init__(self, dag: "DAG") -> None:
        super().__init__()
        self._dag = dag
        self._pending = ""
        self._lock = threading.Lock()

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        with self._lock:
            *lines, self._pending = (self._pending + text).split("\n")
        for line in lines:
            self._dag.log_info(line)
        return len(text)

    def flush(self) -> None:
        with self._lock:
            pending, self._pending = self._pending, ""
        if pending:
            self._dag.log_info(pending)


@dataclass(eq=False)
class Context:
    """What a running job sees: its DAG and the DAG's shared XCom values."""

    dag: "DAG"

    def set_xcom(self, key: str, value: Any) -> None:
        with self.dag._xcom_lock:
            self.dag._xcom[key] = value

    def get_xcom(self, key: str) -> Any:
        with self.dag._xcom_lock:
            return self.dag._xcom.get(key)


class DAG:
    """A named set of jobs with dependencies, run on a schedule."""

    def __init__(
        self,
        name: str,
        schedule: str,
        config: Optional[dict[str, Any]] = None,
        *,
        log_dir: str | Path = "logs",
        query_client: Optional[QueryClient] = None,
    ) -> None:
        self.name = name
        self.schedule = schedule
        self.config: dict[str, Any] = config if config is not None else {}
        self.jobs: list[Job] = []
        self.connections: dict[str, Connection] = {}
        self.log_dir = Path(log_dir)
        self.query_client = query_client
        self._job_map: dict[str, Job] = {}
        self._xcom: dict[str, Any] = {}
        self._xcom_lock = threading.Lock()
        self._active_jobs: set[str] = set()
        self._active_lock = threading.Lock()
        self._running = False
        self._running_lock = threading.Lock()
        self._log_file: Optional[io.TextIOBase] = None
        self._log_users = 0
        self._log_lock = threading.Lock()

    def _add(self, job: Job) -> Job:
        self.jobs.append(job)
        self._job_map[job.id] = job
        return job

    def new_job(self, job_id: str, action: Callable[[Context], None]) -> Job:
        """Add a job that runs ``action`` and return it."""
        return self._add(Job(id=job_id, action=action, trigger_rule=TriggerRule.ALL_SUCCESS))

    def new_branch_job(self, job_id: str, branch_func: Callable[[Context], list[str]]) -> Job:
        """Add a job whose function picks which child jobs run next."""
        return self._add(Job(id=job_id, branch_func=branch_func))

    def new_bigquery_job(self, job_id: str, query_path: str, params: Mapping[str, Any]) -> Job:
        """Add a job that renders the SQL file at ``query_path`` and runs it."""
        params = params if params is not None else {}

        def action(ctx: Context) -> None:
            try:
                raw = Path(query_path).read_text(encoding="utf-8")
            except OSError as exc:
                self.log_error(f"Failed to read query file {query_path}: {exc}")
                raise

            def xcom(key: str) -> str:
                value = ctx.get_xcom(key)
                return value if isinstance(value, str) else ""

            funcs = {"xcom": xcom}
            try:
                query = render_template(raw, params, funcs)
            except TemplateError as exc:
                self.log_error(f"Failed to render query template: {exc}")
                raise

            project_id = ""
            value = params.get("project_id")
            if isinstance(value, str) and value:
                project_id = render_template(value, params, funcs)
            else:
                conn = self.connections.get("env_bigquery")
                for value in (ctx.get_xcom("project_id"), self.config.get("project_id"),
                              conn.config.get("project_id") if conn is not None else None):
                    if isinstance(value, str):
                        project_id = value
                        break

            BigQueryOperator(task_id=job_id, query=query, project_id=project_id,
                             log_info=self.log_info, log_error=self.log_error,
                             client=self.query_client).execute()

        return self.new_job(job_id, action)

    @contextlib.contextmanager
    def _open_log(self) -> Iterator[None]:
        with self._log_lock:
            if self._log_users == 0:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                self._log_file = open(self.log_dir / f"{self.name}.log", "a", encoding="utf-8")
            self._log_users += 1
        try:
            yield
        finally:
            with self._log_lock:
                self._log_users -= 1
                if self._log_users == 0 and self._log_file is not None:
                    self._log_file.close()
                    self._log_file = None

    def _log_line(self, level: str, message: str) -> None:
        line = f"[{datetime.now():%Y-%m-%d %H:%M:%S}] [{level}] {message}\n"
        with self._log_lock:
            if self._log_file is not None:
                self._log_file.write(line)
                self._log_file.flush()

    def log_info(self, message: str) -> None:
        """Append an INFO line to the DAG's log, if a run has it open."""
        self._log_line("INFO", message)

    def log_error(self, message: str) -> None:
        """Append an ERROR line to the DAG's log, if a run has it open."""
        self._log_line("ERROR", message)

    def children(self, job: Job) -> list[Job]:
        """Jobs that depend directly on ``job``, in definition order."""
        return [other for other in self.jobs for dep in other.depends if dep is job]

    def _tree(self, job: Job, prefix: str, is_last: bool, visited: set[str],
              parent_id: str, lines: list[str]) -> None:
        connector = "└──" if is_last else "├──"
        label = _BRANCH_LABEL.format(parent=parent_id) if parent_id else ""
        lines.append(f"{prefix}{connector} {job.id}{label}")
        if job.id in visited:
            return
        visited.add(job.id)
        new_prefix = prefix + ("    " if is_last else "│   ")
        kids = self.children(job)
        for position, child in enumerate(kids, 1):
            self._tree(child, new_prefix, position == len(kids), visited, job.id, lines)

    def format_graph(self) -> str:
        """Render the DAG's jobs as a tree, one line per job."""
        lines = [f"DAG: {self.name}"]
        visited: set[str] = set()
        for job in self.jobs:
            if not job.depends:
                self._tree(job, "", True, visited, "", lines)
        return "\n".join(lines)

    def print_graph(self) -> None:
        """Write the DAG's tree to standard output."""
        sys.stdout.write(self.format_graph() + "\n")

    def _should_run(self, job: Job) -> bool:
        if job.trigger_rule == TriggerRule.ALWAYS:
            return True
        wanted = JobStatus.FAILED if job.trigger_rule == TriggerRule.ALL_FAILED else JobStatus.SUCCESS
        return all(upstream.status == wanted for upstream in job.upstreams)

    def _unset_running(self) -> None:
        with self._running_lock:
            self._running = False

    def _reset_active(self) -> None:
        with self._active_lock:
            self._active_jobs = set()

    def _spawn(self, job: Job, ctx: Context, wg: _WaitGroup, cancel: threading.Event) -> None:
        wg.add()
        threading.Thread(target=self._run_job, args=(job, ctx, wg, cancel), daemon=True,
                         name=f"{self.name}:{job.id}").start()

    def _run_job(self, job: Job, ctx: Context, wg: _WaitGroup, cancel: threading.Event) -> None:
        try:
            while not all(dep.status in _DONE for dep in job.depends):
                if cancel.is_set():
                    self.log_error(f"Job {job.id} canceled before parent finished")
                    return
                cancel.wait(POLL_INTERVAL)
            if not self._should_run(job):
                job.status = JobStatus.SKIPPED
                self.log_info(f"Skipping job {job.id} due to unmet trigger rule")
                return
            with self._active_lock:
                self._active_jobs.add(job.id)
            job.status = JobStatus.RUNNING
            self.log_info(f"Starting job {job.id}")
            try:
                if job.branch_func is not None and job.action is None:
                    self._run_branch(job, ctx, wg, cancel)
                    return
                if job.action is not None:
                    job.action(ctx)
                job.status = JobStatus.SUCCESS
                self.log_info(f"Completed job {job.id}")
                for child in self.children(job):
                    if self._should_run(child):
                        self._spawn(child, ctx, wg, cancel)
                    else:
                        child.status = JobStatus.SKIPPED
                        self.log_info(f"Skipping job {child.id} due to unmet trigger rule")
            except Exception as exc:
                job.status = JobStatus.FAILED
                self.log_error(f"Job {job.id} panic: {exc}")
        finally:
            wg.done()

    def _run_branch(self, job: Job, ctx: Context, wg: _WaitGroup, cancel: threading.Event) -> None:
        selected = list(job.branch_func(ctx))
        self.log_info(f"Branch {job.id} selected {_show(selected)}")
        job.status = JobStatus.SUCCESS
        for other in self.jobs:
            if not other.is_branch and other.id not in selected and any(
                    dep.is_branch for dep in other.depends):
                self.log_info(f"Skipping job {other.id} (auto-success to unblock DAG)")
                other.status = JobStatus.SKIPPED
        for selected_id in selected:
            child = self._job_map.get(selected_id)
            if child is not None:
                self._spawn(child, ctx, wg, cancel)

    def _start_roots(self, roots: Iterable[Job], cancel: threading.Event) -> None:
        ctx = Context(self)
        wg = _WaitGroup()
        for job in roots:
            self._spawn(job, ctx, wg, cancel)
        wg.wait()

    def _execute(self, cancel: threading.Event) -> None:
        self._reset_active()
        self.log_info(f"Running DAG: {self.name}")
        for job in self.jobs:
            job.status = JobStatus.PENDING
        self._start_roots([j for j in self.jobs if not j.depends and self._should_run(j)], cancel)
        self.log_info(f"DAG {self.name} finished.")
        self._unset_running()

    def run_once(self, cancel: Optional[threading.Event] = None) -> None:
        """Run every job once, blocking until done; ``cancel`` stops jobs still waiting."""
        with self._open_log():
            self._execute(cancel if cancel is not None else threading.Event())

    def _fire(self) -> None:
        with self._running_lock:
            already, self._running = self._running, True
        if already:
            self.log_info(f"DAG {self.name} is still running, skipping new trigger")
            return
        self.log_info(f"Cron triggered for DAG {self.name}")
        self._reset_active()
        threading.Thread(target=self._execute, args=(threading.Event(),), daemon=True).start()

    def run(self) -> None:
        """Run the DAG on its schedule forever, sending printed output to its log."""
        schedule = parse_schedule(self.schedule)
        idle = threading.Event()
        with self._open_log(), contextlib.redirect_stdout(_LogWriter(self)):
            while True:
                now = datetime.now()
                due = schedule.next_after(now)
                if due is None:
                    idle.wait()
                    continue
                idle.wait(max(0.0, (due - now).total_seconds()))
                self._fire()

    def rerun_dag(self) -> None:
        """Reset every job and run the whole DAG again, blocking until done."""
        with self._open_log():
            self.log_info(f"Rerunning DAG: {self.name}")
            self._reset_active()
            for job in self.jobs:
                job.status = JobStatus.PENDING
            self._start_roots([job for job in self.jobs if not job.depends], threading.Event())

    @staticmethod
    def _reset(start: Job, visited: set[str], neighbours: Callable[[Job], list[Job]]) -> None:
        stack = [start]
        while stack:
            job = stack.pop()
            if job.id not in visited:
                visited.add(job.id)
                job.status = JobStatus.PENDING
                stack.extend(reversed(neighbours(job)))

    def rerun_job(self, job_id: str, downstream: bool = False, upstream: bool = False) -> None:
        """Run one job again, optionally resetting its upstream or downstream jobs.

        Raises KeyError if the DAG has no job with that id.
        """
        with self._open_log():
            target = self._job_map.get(job_id)
            if target is None:
                self.log_error(f"[ERROR] Job {job_id} not found")
                raise KeyError(job_id)
            self.log_info(f"Rerunning job {job_id} "
                          f"(downstream={_show(downstream)}, upstream={_show(upstream)})")
            visited: set[str] = set()
            if upstream:
                self._reset(target, visited, lambda job: job.depends)
            if downstream:
                self._reset(target, visited, self.children)
            if not upstream and not downstream:
                target.status = JobStatus.PENDING
            self._start_roots([target], threading.Event())

    def _launch(self, dag_name: str, message: str, blocking: bool,
                config: Optional[dict[str, Any]] = None) -> None:
        target = get(dag_name)
        if target is None:
            self.log_error(f"DAG {dag_name} not found to trigger")
            return
        self.log_info(message)
        if config is not None:
            target.config = config
        if blocking:
            target.run_once()
        else:
            threading.Thread(target=target.run_once, daemon=True).start()

    def trigger_dag_with_config(
        self, dag_name: str, config: dict[str, Any], blocking: bool = False
    ) -> None:
        """Give the named DAG ``config`` and run it once, waiting if ``blocking``."""
        self._launch(dag_name, f"Triggering DAG {dag_name} from DAG {self.name} "
                     f"with config {_show(config)}", blocking, config)

    def trigger_dag(self, dag_name: str) -> None:
        """Start one run of the named DAG in the background."""
        self._launch(dag_name, f"Triggering DAG {dag_name} from DAG {self.name}", False)

    def trigger_dag_blocking(self, dag_name: str) -> None:
        """Run the named DAG once and wait for it to finish."""
        self._launch(dag_name, f"Triggering DAG {dag_name} (blocking) from DAG {self.name}", True)


_registry: dict[str, DAG] = {}
_registry_lock = threading.RLock()


def register(dag: DAG) -> None:
    """Add ``dag`` to the registry under its name, replacing any earlier one."""
    with _registry_lock:
        _registry[dag.name] = dag


def get(name: str) -> Optional[DAG]:
    """Return the registered DAG with this name, or None."""
    with _registry_lock:
        return _registry.get(name)


def list_dags() -> list[DAG]:
    """Return every registered DAG."""
    with _registry_lock:
        return list(_registry.values())