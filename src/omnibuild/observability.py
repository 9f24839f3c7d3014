"""Structured logging and observability helpers."""

from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

Sink = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class StructuredLogger:
    records: list[dict[str, Any]] = field(default_factory=list)
    sinks: list[Sink] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def log(
        self,
        *,
        operation: str,
        component: str | None,
        phase: str | None,
        message: str,
        step: int | None = None,
        level: str = "info",
        extra: dict[str, Any] | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "level": level,
            "operation": operation,
            "component": component,
            "phase": phase,
            "step": step,
            "message": message,
        }
        if extra is not None:
            record["extra"] = extra
        # Builds may log from worker threads.
        with self._lock:
            self.records.append(record)
            sinks = list(self.sinks)
        for sink in sinks:
            sink(record)

    def records_for_component(self, component: str) -> list[dict[str, Any]]:
        with self._lock:
            return [record for record in self.records if record.get("component") == component]

    def to_json_lines(self, path: str | Path) -> Path:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            lines = [json.dumps(record, sort_keys=True) for record in self.records]
        output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return output_path
