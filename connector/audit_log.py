"""JSON file sink that records appointment changes as audit trail entries."""
from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Dict, List, Set

from scheduling.events import ChangeEvent

__all__ = ["JsonFileEventSink"]

logger = logging.getLogger(__name__)


def _format_timestamp(event: ChangeEvent) -> str:
    return event.timestamp.isoformat().replace("+00:00", "Z")


class JsonFileEventSink:
    """Persists change events into a JSON list shaped like ``audit_logs`` rows.

    Events already present (by ``event_id``) are skipped, so redelivery does
    not duplicate entries.
    """

    def __init__(self, log_path: Path | str) -> None:
        self._log_path = Path(log_path)
        self._lock = threading.Lock()
        self._log_path.parent.mkdir(parents=True, exist_ok=True)

    def handle(self, event: ChangeEvent) -> None:
        entry: Dict[str, object] = {
            "event_id": event.event_id,
            "user_id": event.actor_id,
            "action": f"appointment_{event.event_type.value}",
            "target_table": "appointments",
            "target_id": event.appointment_id,
            "clinic_id": event.clinic_id,
            "details": event.details,
            "created_at": _format_timestamp(event),
        }

        with self._lock:
            history = self._read_history()
            seen: Set[object] = {item.get("event_id") for item in history}
            if event.event_id in seen:
                logger.debug("Audit entry for event %s already recorded", event.event_id)
                return
            history.append(entry)
            serialized = json.dumps(history, indent=2, default=str)
            self._log_path.write_text(f"{serialized}\n", encoding="utf-8")

    def entries(self) -> List[Dict[str, object]]:
        with self._lock:
            return self._read_history()

    def _read_history(self) -> List[Dict[str, object]]:
        if not self._log_path.exists():
            return []
        raw_content = self._log_path.read_text(encoding="utf-8").strip()
        if not raw_content:
            return []
        try:
            data = json.loads(raw_content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Audit log is corrupted and cannot be parsed: {exc.msg}") from exc
        if not isinstance(data, list):
            raise ValueError("Audit log must contain a JSON list of entries.")
        return data
