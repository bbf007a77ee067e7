"""
Operator event log.

Lines have the form `[YYYY-mm-dd HH:MM:SS] - EVENT - details` (the details
part is omitted when empty). An EventLog is
a callable, so it can be handed to any component as its `event_logger`.
"""

import threading
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union


class EventLog:
    """Appends timestamped event lines to a file and keeps them in memory."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else None
        self.entries: List[str] = []
        self._lock = threading.Lock()

    def __call__(self, event: str, details: str = ""):
        self.log(event, details)

    def log(self, event: str, details: str = ""):
        """Write an event line."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        line = f"[{timestamp}] - {event}"
        if details:
            line += f" - {details}"
        with self._lock:
            self.entries.append(line)
            if self.path:
                with open(self.path, 'a', encoding='utf-8') as f:
                    f.write(line + "\n")

    def events(self) -> List[str]:
        """Event names in order of logging."""
        with self._lock:
            return [line.split(" - ", 2)[1] for line in self.entries]
