"""Loading named connection definitions from JSON files and the environment."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass
class Connection:
    """A named external connection: its kind and its settings."""

    type: str = ""
    config: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, data: Any) -> "Connection":
        if not isinstance(data, dict):
            raise ValueError(f"connection must be an object, got {type(data).__name__}")
        conn = cls()
        for key, value in data.items():
            lowered = key.lower()
            if lowered == "type":
                if value is not None and not isinstance(value, str):
                    raise ValueError("connection type must be a string")
                conn.type = value or ""
            elif lowered == "config":
                if value is not None and not isinstance(value, dict):
                    raise ValueError("connection config must be an object")
                conn.config = dict(value or {})
        return conn


def _parse_file(raw: str) -> dict[str, Connection]:
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("connection file must hold an object")
    return {name: Connection.from_json(value) for name, value in data.items()}


def load_all_connections(directory: str | os.PathLike) -> dict[str, Connection]:
    """Merge every ``*.json`` file in ``directory`` into one connection map."""
    connections: dict[str, Connection] = {}
    base = Path(directory)
    try:
        entries = sorted(base.iterdir(), key=lambda p: p.name)
    except OSError as exc:
        print(f"Failed to read connections dir: {exc}")
        entries = None

    for entry in entries or []:
        if entry.is_dir() or entry.suffix != ".json":
            continue
        path = base / entry.name
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            print(f"Failed to read connection file {path}: {exc}")
            continue
        try:
            parsed = _parse_file(raw)
        except ValueError as exc:
            print(f"Failed to parse connection file {path}: {exc}")
            continue
        connections.update(parsed)
        print(f"Loaded connections from {path}")

    if entries is None:
        return connections

    credentials = os.environ.get("GOOGLE_APPLICATION_CREDENTIALS", "")
    if credentials:
        connections["env_bigquery"] = Connection(
            type="bigquery",
            config={
                "credentials_path": credentials,
                "project_id": os.environ.get("GOOGLE_CLOUD_PROJECT", ""),
            },
        )
        print("Loaded env_bigquery connection from ENV")
    return connections