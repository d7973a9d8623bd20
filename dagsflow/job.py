"""Jobs, their trigger rules and their run states."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional


class TriggerRule(str, Enum):
    """Condition on upstream jobs that decides whether a job runs."""

    ALL_SUCCESS = "all_success"
    ALL_FAILED = "all_failed"
    ALWAYS = "always"


class JobStatus(str, Enum):
    """State of a job within one DAG run."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(eq=False)
class Job:
    """A unit of work in a DAG: either an action or a branch chooser."""

    id: str
    action: Optional[Callable[[Any], None]] = None
    branch_func: Optional[Callable[[Any], list[str]]] = None
    trigger_rule: TriggerRule = TriggerRule.ALL_SUCCESS
    depends: list["Job"] = field(default_factory=list)
    upstreams: list["Job"] = field(default_factory=list)
    downstreams: list["Job"] = field(default_factory=list)
    _status: JobStatus = field(default=JobStatus.PENDING, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @property
    def status(self) -> JobStatus:
        with self._lock:
            return self._status

    @status.setter
    def status(self, value: JobStatus) -> None:
        with self._lock:
            self._status = JobStatus(value)

    @property
    def is_branch(self) -> bool:
        return self.branch_func is not None

    def with_trigger_rule(self, rule: TriggerRule | str) -> "Job":
        """Set the trigger rule and return this job for chaining."""
        self.trigger_rule = TriggerRule(rule)
        return self

    def _depends_on(self, *parents: "Job") -> None:
        self.depends.extend(parents)
        self.upstreams.extend(parents)

    def then(self, next_job: "Job") -> "Job":
        """Make ``next_job`` depend on this job and return ``next_job``."""
        next_job._depends_on(self)
        return next_job

    def branch(self, *args: "Job") -> None:
        """Make every given job depend on this job."""
        for next_job in args:
            next_job._depends_on(self)