"""Cron-driven DAG scheduler with branching jobs, trigger rules, XCom values and a command-line tool."""

__version__ = "0.1.0"