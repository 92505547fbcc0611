# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""JSONL event log for GitVan hook events."""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional


class EventClient:
    """Append-only JSONL event logger, safe to share between threads."""

    def __init__(self, log_path: Path):
        self.log_path = Path(log_path)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def log_event(
        self,
        event_type: str,
        correlation_id: Optional[str] = None,
        status: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """Log an event to the JSONL file."""
        event: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
        }
        if correlation_id:
            event["correlation_id"] = correlation_id
        if status:
            event["status"] = status
        if payload:
            event["payload"] = payload
        if error_message:
            event["error_message"] = error_message

        line = json.dumps(event, default=str) + "\n"
        with self._lock:
            with open(self.log_path, "a") as f:
                f.write(line)
