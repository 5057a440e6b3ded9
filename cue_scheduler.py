"""
Programación de señales SCTE-35 a una hora futura.
Un hilo de fondo revisa la cola y entrega al inyector cada señal cuando vence.
"""

import json
import logging
import os
import threading
import time
import uuid
import dataclasses
from dataclasses import dataclass
from typing import Dict, List, Optional

from ome_client import OMEApiError, StreamTarget
from scte35_encoder import CUE_IN, CUE_OUT

logger = logging.getLogger(__name__)

STATUS_SCHEDULED = "scheduled"
STATUS_EXECUTED = "executed"
STATUS_CANCELLED = "cancelled"
STATUS_FAILED = "failed"

EMERGENCY_PROGRAM = "emergency"


@dataclass
class ScheduledCue:
    """Señal programada"""
    id: str
    action: str
    vhost: str
    app: str
    stream: str
    scheduled_time: float  # epoch en segundos
    event_id: Optional[int] = None  # None en CUE-IN: se empareja con el break abierto al ejecutar
    duration: Optional[int] = None
    pre_roll: int = 0
    program_id: Optional[str] = None
    status: str = STATUS_SCHEDULED
    executed_at: Optional[float] = None
    record_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def target(self) -> StreamTarget:
        return StreamTarget(self.vhost, self.app, self.stream)


class CueScheduler:
    """
    Cola de señales programadas sobre un CueInjector.
    El CUE-OUT reserva su Event ID al programarse, igual que un envío inmediato.
    """
    def __init__(self, injector, interval: float = 1.0, path: Optional[str] = None):
        self.injector = injector
        self.interval = interval
        self.path = path
        self.running = False
        self._cues: Dict[str, ScheduledCue] = {}
        self._lock = threading.Lock()
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def schedule(self, action: str, target: StreamTarget, at: float, duration: Optional[int] = None,
                 pre_roll: int = 0, event_id: Optional[int] = None,
                 program_id: Optional[str] = None) -> ScheduledCue:
        """Programa un CUE-OUT o CUE-IN para la hora `at` (epoch)."""
        if action == CUE_OUT:
            if duration is None:
                raise ValueError("Un CUE-OUT programado necesita duración")
            self.injector.check_cue_out_params(duration, pre_roll)
            event_id = self.injector.resolve_event_id(event_id)
        elif action == CUE_IN:
            if event_id is not None:
                event_id = self.injector.resolve_event_id(event_id)
            duration = None
            pre_roll = 0
        else:
            raise ValueError(f"Acción desconocida: {action!r}")

        cue = ScheduledCue(
            id=f"scheduled_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}",
            action=action, vhost=target.vhost, app=target.app, stream=target.stream,
            scheduled_time=at, event_id=event_id, duration=duration, pre_roll=pre_roll,
            program_id=program_id,
        )
        with self._lock:
            self._cues[cue.id] = cue
        self._persist()
        logger.info(f"[{target.path}] {action} programado ({cue.id}) para {time.ctime(at)}.")
        return cue

    def add_emergency(self, action: str, target: StreamTarget, duration: Optional[int] = None) -> ScheduledCue:
        """Señal de emergencia: vence inmediatamente y se ejecuta en la siguiente pasada."""
        return self.schedule(action, target, time.time(), duration=duration, program_id=EMERGENCY_PROGRAM)

    def cancel(self, cue_id: str) -> ScheduledCue:
        with self._lock:
            cue = self._cues[cue_id]
            if cue.status != STATUS_SCHEDULED:
                raise ValueError(f"Solo se pueden cancelar señales programadas (estado actual: {cue.status})")
            cue.status = STATUS_CANCELLED
        self._persist()
        logger.info(f"Señal programada {cue_id} cancelada.")
        return cue

    def cancel_program(self, program_id: str) -> int:
        """Cancela todas las señales pendientes de un programa."""
        cancelled = 0
        with self._lock:
            for cue in self._cues.values():
                if cue.program_id == program_id and cue.status == STATUS_SCHEDULED:
                    cue.status = STATUS_CANCELLED
                    cancelled += 1
        self._persist()
        logger.info(f"{cancelled} señales canceladas del programa {program_id}.")
        return cancelled

    def delete(self, cue_id: str):
        with self._lock:
            del self._cues[cue_id]
        self._persist()

    def get(self, cue_id: str) -> Optional[ScheduledCue]:
        with self._lock:
            return self._cues.get(cue_id)

    def list_cues(self, status: Optional[str] = None) -> List[ScheduledCue]:
        with self._lock:
            cues = sorted(self._cues.values(), key=lambda c: c.scheduled_time)
        if status:
            cues = [c for c in cues if c.status == status]
        return cues

    def run_pending(self, now: Optional[float] = None) -> List[ScheduledCue]:
        """Ejecuta las señales vencidas en orden cronológico."""
        now = time.time() if now is None else now
        executed = []
        with self._run_lock:
            for cue in self.list_cues(STATUS_SCHEDULED):
                if cue.scheduled_time > now:
                    break
                with self._lock:
                    # Puede haberse cancelado mientras se ejecutaban las anteriores
                    if cue.status != STATUS_SCHEDULED:
                        continue
                self._execute(cue)
                executed.append(cue)
        if executed:
            self._persist()
        return executed

    def _execute(self, cue: ScheduledCue):
        try:
            if cue.action == CUE_OUT:
                record = self.injector.inject_cue_out(
                    cue.target, cue.duration, pre_roll=cue.pre_roll, event_id=cue.event_id
                )
            else:
                record = self.injector.inject_cue_in(cue.target, event_id=cue.event_id)
        except (OMEApiError, ValueError) as e:
            logger.warning(f"[{cue.target.path}] Fallo al ejecutar la señal programada {cue.id}: {e}")
            with self._lock:
                cue.status = STATUS_FAILED
                cue.error = str(e)
            return
        with self._lock:
            cue.status = STATUS_EXECUTED
            cue.executed_at = time.time()
            cue.record_id = record.id
            cue.event_id = record.event_id

    # --- Hilo de fondo ---

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self.running = True
        self._thread = threading.Thread(target=self._loop, name="CueScheduler", daemon=True)
        self._thread.start()
        logger.info("Procesador de señales programadas iniciado.")

    def stop(self):
        self.running = False
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=10)
            if self._thread.is_alive():
                logger.warning("El hilo del programador no terminó a tiempo.")
        logger.info("Procesador de señales programadas detenido.")

    def _loop(self):
        while self.running and not self._stop_event.wait(self.interval):
            try:
                self.run_pending()
            except Exception as e:
                logger.error(f"Error procesando señales programadas: {e}", exc_info=True)

    # --- Persistencia ---

    def save(self):
        """Guarda la cola en el archivo JSON configurado."""
        if not self.path:
            return
        with self._lock:
            cues = [dataclasses.asdict(c) for c in self._cues.values()]
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(cues, f, ensure_ascii=False, indent=2)

    def load(self):
        """Carga la cola desde el archivo JSON configurado, si existe."""
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path, "r", encoding="utf-8") as f:
            cues = json.load(f)
        with self._lock:
            for data in cues:
                cue = ScheduledCue(**data)
                self._cues[cue.id] = cue
        logger.info(f"{len(cues)} señales programadas restauradas desde {self.path}")

    def _persist(self):
        try:
            self.save()
        except OSError as e:
            logger.error(f"No se pudo guardar la cola de señales en {self.path}: {e}")
