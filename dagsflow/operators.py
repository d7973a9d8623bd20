"""Operators that run work against external systems."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

LogFunc = Callable[[str], None]
QueryClient = Callable[[str, str, timedelta], None]

QUERY_TIMEOUT = timedelta(minutes=10)

_logger = logging.getLogger(__name__)


class OperatorError(RuntimeError):
    """Raised when an operator fails to do its work."""


@dataclass
class BigQueryOperator:
    """Runs one SQL query on a project through a query client.

    The client is called as ``client(project_id, query, timeout)`` and must
    raise on failure.
    """

    task_id: str
    query: str = ""
    project_id: str = ""
    log_info: LogFunc = _logger.info
    log_error: LogFunc = _logger.error
    client: Optional[QueryClient] = None

    def _fail(self, message: str) -> OperatorError:
        self.log_error(f"[BigQueryOperator {self.task_id}] {message}")
        return OperatorError(message)

    def execute(self) -> None:
        """Validate, run and wait for the query; raise OperatorError on failure."""
        if not self.project_id:
            raise self._fail("project ID is empty")
        if not self.query:
            raise self._fail("query is empty")

        prefix = f"[BigQueryOperator {self.task_id}]"
        self.log_info(f"{prefix} Running query on project {self.project_id}")
        self.log_info(f"{prefix} Query:\n{self.query}")

        if self.client is None:
            self.log_error(f"{prefix} Failed to create client: no query client configured")
            raise OperatorError("failed to create BQ client: no query client configured")
        try:
            self.client(self.project_id, self.query, QUERY_TIMEOUT)
        except Exception as exc:
            self.log_error(f"{prefix} Query execution error: {exc}")
            raise OperatorError(f"query execution error: {exc}") from exc

        self.log_info(f"{prefix} Query executed successfully at {datetime.now()}")