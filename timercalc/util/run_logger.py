"""Structured run journal (JSON lines) for calculation ticks."""

from __future__ import annotations

import json
import os
import threading
import time
from pathlib import Path
from typing import Any, List, Optional, Set

from timercalc.util.time import utc_now_str


class RunLogger:
    def __init__(self, log_path: Path, mirror_paths: Optional[List[Path]] = None):
        self.log_path = log_path
        self.mirror_paths: List[Path] = []
        self._ensure_parent(self.log_path)
        seen: Set[str] = {str(self.log_path)}
        for mirror in mirror_paths or []:
            resolved = mirror
            if not resolved.is_absolute():
                resolved = (Path.cwd() / resolved).absolute()
            if str(resolved) in seen:
                continue
            self._ensure_parent(resolved)
            self.mirror_paths.append(resolved)
            seen.add(str(resolved))
        self.run_id = f"run-{int(time.time() * 1000)}-pid{os.getpid()}"
        self.current_tick: Optional[int] = None
        self._lock = threading.Lock()

    @staticmethod
    def _ensure_parent(path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_db_path(cls, db_path: str, extra_targets: Optional[List[str]] = None) -> "RunLogger":
        if not db_path or db_path == ":memory:":
            base_dir = Path.cwd()
        else:
            expanded = Path(db_path).expanduser()
            if not expanded.is_absolute():
                expanded = (Path.cwd() / expanded).absolute()
            base_dir = expanded.parent
        log_path = base_dir / "timercalc-run.log"
        extra_paths = [Path(target).expanduser() for target in extra_targets or [] if target]
        return cls(log_path, extra_paths)

    def start_tick(self, tick: int, **metadata: Any) -> None:
        self.current_tick = tick
        self.log("tick", **metadata)

    def log(self, event: str, **fields: Any) -> None:
        record = {
            "ts": utc_now_str(),
            "run_id": self.run_id,
            "tick": self.current_tick,
            "event": event,
            **fields,
        }
        line = json.dumps(record, default=str) + "\n"
        with self._lock:
            for target in [self.log_path] + self.mirror_paths:
                try:
                    with target.open("a", encoding="utf-8") as fh:
                        fh.write(line)
                except OSError:
                    continue
