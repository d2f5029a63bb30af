"""
Append-only event log.

One line per event: "[YYYY-mm-dd HH:MM:SS] - EVENT - details". An EventLog's
``log`` method is the ``session_logger`` callable the orchestrator expects.
"""

import sys
import threading
from datetime import datetime
from pathlib import Path


class EventLog:
    """Writes timestamped events to a text file."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        self._lock = threading.Lock()

    def log(self, event: str, details: str = ""):
        """Append an entry to the log."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        log_entry = f"[{timestamp}] - {event}"
        if details:
            log_entry += f" - {details}"
        log_entry += "\n"

        try:
            with self._lock:
                with open(self.log_path, 'a', encoding='utf-8') as f:
                    f.write(log_entry)
        except OSError as e:
            print(f"Warning: could not write event log {self.log_path}: {e}", file=sys.stderr)

    def read_events(self):
        """Return (event, details) pairs in order. Missing file means no events."""
        if not self.log_path.exists():
            return []

        events = []
        with open(self.log_path, 'r', encoding='utf-8') as f:
            for line in f:
                parts = line.rstrip("\n").split(" - ", 2)
                if len(parts) >= 2:
                    events.append((parts[1], parts[2] if len(parts) == 3 else ""))
        return events
