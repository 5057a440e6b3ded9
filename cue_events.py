"""
Registro de eventos SCTE-35 enviados y generador de Event IDs.
"""

import json
import logging
import os
import threading
import time
import uuid
import dataclasses
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_CONFIRMED = "confirmed"
STATUS_FAILED = "failed"

VALID_STATUSES = {STATUS_PENDING, STATUS_SENT, STATUS_CONFIRMED, STATUS_FAILED}


class EventIdSequence:
    """
    Secuencia de Event IDs propiedad del llamador.
    Un CUE-OUT consume un ID nuevo; su CUE-IN reutiliza el mismo.
    """
    def __init__(self, start: int = 1):
        if start <= 0:
            raise ValueError(f"La secuencia debe empezar en un entero positivo, no {start}")
        self._next = start
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            value = self._next
            self._next += 1
            return value

    def peek(self) -> int:
        with self._lock:
            return self._next

    def advance_past(self, event_id: int):
        """Evita volver a emitir un ID elegido manualmente."""
        with self._lock:
            if event_id >= self._next:
                self._next = event_id + 1


@dataclass
class CueEventRecord:
    """Entrada del log de eventos."""
    id: str
    action: str
    event_id: int
    stream: str
    payload: str
    ad_duration: Optional[int] = None
    pre_roll: Optional[int] = None
    status: str = STATUS_PENDING
    timestamp: str = ""
    error: Optional[str] = None


def _new_record_id() -> str:
    return f"event_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class CueEventLog:
    """Log en memoria de los eventos inyectados, con persistencia opcional en JSON."""
    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._events: Dict[str, CueEventRecord] = {}
        self._lock = threading.Lock()

    def add(self, action: str, event_id: int, stream: str, payload: str,
            ad_duration: Optional[int] = None, pre_roll: Optional[int] = None) -> CueEventRecord:
        record = CueEventRecord(
            id=_new_record_id(), action=action, event_id=event_id, stream=stream,
            payload=payload, ad_duration=ad_duration, pre_roll=pre_roll,
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        with self._lock:
            self._events[record.id] = record
        self._persist()
        return record

    def update_status(self, record_id: str, status: str, error: Optional[str] = None) -> CueEventRecord:
        if status not in VALID_STATUSES:
            raise ValueError(f"Estado desconocido: {status}")
        with self._lock:
            record = self._events[record_id]
            record.status = status
            record.error = error
        self._persist()
        return record

    def get(self, record_id: str) -> Optional[CueEventRecord]:
        with self._lock:
            return self._events.get(record_id)

    def list_events(self, action: Optional[str] = None, status: Optional[str] = None) -> List[CueEventRecord]:
        """Eventos más recientes primero, filtrados opcionalmente."""
        with self._lock:
            events = list(self._events.values())
        if action:
            events = [e for e in events if e.action == action]
        if status:
            events = [e for e in events if e.status == status]
        return list(reversed(events))

    def stats(self) -> Dict[str, int]:
        with self._lock:
            events = list(self._events.values())
        counts = {
            "total": len(events),
            "cue_out": sum(1 for e in events if e.action == "CUE-OUT"),
            "cue_in": sum(1 for e in events if e.action == "CUE-IN"),
        }
        for status in (STATUS_PENDING, STATUS_SENT, STATUS_CONFIRMED, STATUS_FAILED):
            counts[status] = sum(1 for e in events if e.status == status)
        return counts

    def clear(self):
        with self._lock:
            self._events.clear()
        self._persist()

    def save(self):
        """Guarda el log en el archivo JSON configurado."""
        if not self.path:
            return
        with self._lock:
            records = [dataclasses.asdict(e) for e in self._events.values()]
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(records, f, ensure_ascii=False, indent=2)

    def load(self):
        """Carga el log desde el archivo JSON configurado, si existe."""
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            records = json.load(f)
        with self._lock:
            for data in records:
                record = CueEventRecord(**data)
                self._events[record.id] = record
        logger.info(f"{len(records)} eventos restaurados desde {self.path}")

    def _persist(self):
        try:
            self.save()
        except OSError as e:
            logger.error(f"No se pudo guardar el log de eventos en {self.path}: {e}")
