import json
import threading
from pathlib import Path

from patchwright.event_bus import TaskEvent


class AuditLogger:
    """Append-only JSONL log of task events. Subscribe an instance to an EventBus."""

    def __init__(self, log_file: Path | str = "audit.jsonl", batch_size: int = 10):
        self.log_file = Path(log_file)
        self.batch_size = batch_size
        self._buffer: list[str] = []
        self._lock = threading.Lock()

    def __call__(self, event: TaskEvent) -> None:
        self.log(event)

    def log(self, event: TaskEvent) -> None:
        with self._lock:
            self._buffer.append(event.model_dump_json() + "\n")
            # Errors are written through immediately.
            if len(self._buffer) >= self.batch_size or event.severity == "error":
                self._flush_locked()

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def _flush_locked(self) -> None:
        if not self._buffer:
            return
        self.log_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.log_file, "a") as f:
            f.writelines(self._buffer)
        self._buffer.clear()

    def read(self) -> list[dict]:
        """All flushed entries, oldest first."""
        if not self.log_file.exists():
            return []
        with open(self.log_file) as f:
            return [json.loads(line) for line in f if line.strip()]
