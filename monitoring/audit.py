import json
import logging
import time
from collections import deque
from pathlib import Path
from typing import Any, Deque, Dict, List, Mapping, Optional


logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only JSON-lines trail of execution, job and alert events.

    ``record`` never raises: a failed write is logged and the caller carries on.
    The last ``keep_recent`` entries stay in memory for status endpoints.
    """

    def __init__(self, log_path: Optional[str] = None, keep_recent: int = 500, clock=time.time):
        self.log_path = Path(log_path) if log_path else None
        self.clock = clock
        self._recent: Deque[Dict[str, Any]] = deque(maxlen=max(1, keep_recent))

    def record(self, event: str, details: Optional[Mapping[str, Any]] = None) -> None:
        entry = {
            'timestamp': self.clock(),
            'event': event,
            'details': dict(details or {}),
        }
        self._recent.append(entry)
        self._write_entry(entry)

    def recent(self, event: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        entries = [e for e in self._recent if event is None or e['event'] == event]
        return entries[-limit:]

    def _write_entry(self, payload: Dict[str, Any]) -> None:
        if self.log_path is None:
            return
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to persist audit log: %s", exc)
