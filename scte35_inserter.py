#!/usr/bin/env python3
"""
Inyector de Señales SCTE-35 para OvenMediaEngine
Genera mensajes CUE-OUT / CUE-IN, los registra y los envía a la API sendEvent de OME.
Gestiona la numeración de Event IDs y el emparejamiento de cada CUE-OUT con su CUE-IN.
"""

import sys
import logging
import threading
import time
import dataclasses
from datetime import datetime
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from cue_events import CueEventLog, CueEventRecord, EventIdSequence, STATUS_CONFIRMED, STATUS_FAILED, STATUS_SENT
from cue_scheduler import CueScheduler
from ome_client import OMEApiError, OMEClient, OMEConfig, StreamTarget, load_settings
from scte35_encoder import CUE_IN, CUE_OUT, DecodeError, create_cue_in, create_cue_out, decode, validate

# Configuración de logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Límites del formulario de inyección (segundos)
MAX_BREAK_DURATION = 3600
MAX_PRE_ROLL = 10

EVENTS_FILE = "cue_events.json"
SCHEDULE_FILE = "scheduled_cues.json"


# --- Servicio de Inyección ---

class CueInjector:
    """
    Coordina codificación, registro y envío de señales SCTE-35.
    Mantiene los ad breaks abiertos por stream para emparejar CUE-IN con su CUE-OUT.
    """
    def __init__(self, sender, sequence: Optional[EventIdSequence] = None,
                 event_log: Optional[CueEventLog] = None):
        self.sender = sender
        self.sequence = sequence or EventIdSequence()
        self.event_log = event_log or CueEventLog()
        self._open_breaks: Dict[str, int] = {}
        self._lock = threading.Lock()

    def inject_cue_out(self, target: StreamTarget, duration: int, pre_roll: int = 0,
                       event_id: Optional[int] = None) -> CueEventRecord:
        """
        Inicia un ad break en el stream.
        Con un break ya abierto solo se acepta un Event ID explícito.
        """
        self.check_cue_out_params(duration, pre_roll)
        with self._lock:
            open_id = self._open_breaks.get(target.path)
        if open_id is not None:
            if event_id is None:
                raise ValueError(f"Ya hay un ad break abierto en {target.path} (ID: {open_id})")
            logger.warning(f"[{target.path}] CUE-OUT (ID: {event_id}) sustituye al break abierto (ID: {open_id}).")
        event_id = self.resolve_event_id(event_id)

        payload = create_cue_out(event_id, duration, pre_roll, strict=True)
        record = self.event_log.add(CUE_OUT, event_id, target.path, payload,
                                    ad_duration=duration, pre_roll=pre_roll)
        self._send(target, record)
        with self._lock:
            self._open_breaks[target.path] = event_id
        return record

    def check_cue_out_params(self, duration: int, pre_roll: int = 0):
        if not 1 <= duration <= MAX_BREAK_DURATION:
            raise ValueError(f"La duración del ad debe estar entre 1 y {MAX_BREAK_DURATION}s")
        if not 0 <= pre_roll <= MAX_PRE_ROLL:
            raise ValueError(f"El pre-roll debe estar entre 0 y {MAX_PRE_ROLL}s")

    def inject_cue_in(self, target: StreamTarget, event_id: Optional[int] = None) -> CueEventRecord:
        """Finaliza el ad break; por defecto reutiliza el ID del CUE-OUT abierto en el stream."""
        if event_id is None:
            with self._lock:
                event_id = self._open_breaks.get(target.path)
            if event_id is None:
                raise ValueError(f"No hay ningún ad break abierto en {target.path}")

        payload = create_cue_in(event_id, strict=True)
        record = self.event_log.add(CUE_IN, event_id, target.path, payload)
        self._send(target, record)
        with self._lock:
            if self._open_breaks.get(target.path) == event_id:
                del self._open_breaks[target.path]
        return record

    def confirm(self, record_id: str) -> CueEventRecord:
        """Marca como confirmado un evento ya enviado."""
        record = self.event_log.get(record_id)
        if record is None:
            raise KeyError(record_id)
        if record.status != STATUS_SENT:
            raise ValueError(f"Solo se pueden confirmar eventos enviados (estado actual: {record.status})")
        return self.event_log.update_status(record_id, STATUS_CONFIRMED)

    def open_breaks(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._open_breaks)

    def resolve_event_id(self, event_id: Optional[int]) -> int:
        if event_id is None:
            return self.sequence.next()
        if isinstance(event_id, bool) or not isinstance(event_id, int) or event_id <= 0:
            raise ValueError(f"Event ID inválido: {event_id!r}")
        self.sequence.advance_past(event_id)
        return event_id

    def _send(self, target: StreamTarget, record: CueEventRecord):
        try:
            self.sender.send_cue(target, record.payload)
        except OMEApiError as e:
            logger.warning(f"[{target.path}] Fallo al enviar {record.action} (ID: {record.event_id}): {e}")
            self.event_log.update_status(record.id, STATUS_FAILED, error=str(e))
            raise
        self.event_log.update_status(record.id, STATUS_SENT)
        logger.info(f"[{target.path}] Señal {record.action} (ID: {record.event_id}) enviada.")


# --- Aplicación Flask ---

app = Flask(__name__)
CORS(app)
ome_config = OMEConfig()
cue_injector = CueInjector(OMEClient(ome_config))
cue_scheduler = CueScheduler(cue_injector)

_ACTIONS = {'out': CUE_OUT, 'in': CUE_IN, CUE_OUT: CUE_OUT, CUE_IN: CUE_IN}


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _action_from(data: Dict[str, Any]) -> str:
    action = _ACTIONS.get(data.get('action'))
    if action is None:
        raise ValueError("'action' debe ser CUE-OUT o CUE-IN.")
    return action


def _scheduled_time_from(data: Dict[str, Any]) -> float:
    """Hora de ejecución: 'at' en ISO-8601 o 'delay' en segundos desde ahora."""
    if data.get('at'):
        at = datetime.fromisoformat(str(data['at']).replace('Z', '+00:00'))
        return at.timestamp()
    delay = _optional_int(data, 'delay')
    if delay is None or delay < 0:
        raise ValueError("Falta 'at' o un 'delay' no negativo.")
    return time.time() + delay


def _target_from(data: Dict[str, Any]) -> StreamTarget:
    stream = data.get('stream')
    if not stream:
        raise ValueError("Falta el parámetro 'stream'.")
    return StreamTarget(
        vhost=data.get('vhost') or ome_config.vhost,
        app=data.get('app') or ome_config.app,
        stream=str(stream),
    )


def _optional_int(data: Dict[str, Any], key: str) -> Optional[int]:
    """Entero estricto: rechaza booleanos y números con decimales."""
    value = data.get(key)
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValueError(f"'{key}' debe ser un entero, no un booleano")
    if isinstance(value, float):
        if not value.is_integer():
            raise ValueError(f"'{key}' debe ser un entero: {value}")
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value)
    raise ValueError(f"'{key}' debe ser un entero: {value!r}")


@app.route('/')
def index():
    """Formulario mínimo de inyección."""
    return '''
<!DOCTYPE html>
<html lang="es">
<head>
    <meta charset="UTF-8">
    <title>Inyector SCTE-35</title>
    <style>
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: #0a0e27; color: #e0e6ed; }
        .container { max-width: 900px; margin: 0 auto; padding: 2rem; }
        .card { background: #112240; border-radius: 10px; padding: 1.5rem; margin-bottom: 1.5rem; }
        label { display: block; margin: 0.5rem 0 0.25rem; color: #ccd6f6; }
        input, select { background: #0a0e27; border: 2px solid #233554; color: #e0e6ed; padding: 0.5rem; border-radius: 5px; }
        button { margin-top: 1rem; background: #667eea; color: white; border: none; padding: 0.6rem 1.5rem; border-radius: 5px; cursor: pointer; }
        .out { color: #48bb78; } .in { color: #f56565; }
    </style>
</head>
<body>
    <div class="container">
        <h1>Inyector SCTE-35</h1>
        <div class="card">
            <form id="cueForm">
                <label for="stream">Stream</label><input id="stream" required placeholder="stream">
                <label for="action">Acción</label>
                <select id="action"><option value="out">CUE-OUT (Inicio Ad)</option><option value="in">CUE-IN (Fin Ad)</option></select>
                <label for="duration">Duración del Ad (s)</label><input type="number" id="duration" min="1" max="3600" value="30">
                <label for="preRoll">Pre-roll (s)</label><input type="number" id="preRoll" min="0" max="10" value="0">
                <label for="eventId">Event ID (opcional)</label><input type="number" id="eventId" min="1">
                <button type="submit">Enviar Señal</button>
            </form>
            <p id="result"></p>
        </div>
        <div class="card"><h2>Eventos</h2><ul id="events"></ul></div>
    </div>
    <script>
        async function loadEvents() {
            const response = await fetch('/api/events');
            const events = await response.json();
            document.getElementById('events').innerHTML = events.map(e =>
                `<li class="${e.action === 'CUE-OUT' ? 'out' : 'in'}">${e.timestamp} ${e.action} #${e.event_id} ${e.stream} [${e.status}]</li>`
            ).join('');
        }

        document.getElementById('cueForm').addEventListener('submit', async (ev) => {
            ev.preventDefault();
            const action = document.getElementById('action').value;
            const body = {
                stream: document.getElementById('stream').value,
                event_id: document.getElementById('eventId').value || null
            };
            if (action === 'out') {
                body.duration = parseInt(document.getElementById('duration').value);
                body.pre_roll = parseInt(document.getElementById('preRoll').value);
            }
            const response = await fetch(`/api/cues/${action}`, {
                method: 'POST',
                headers: { 'Content-Type': 'application/json' },
                body: JSON.stringify(body)
            });
            const result = await response.json();
            document.getElementById('result').textContent = response.ok ? result.message : result.error;
            loadEvents();
        });

        loadEvents();
        setInterval(loadEvents, 5000);
    </script>
</body>
</html>
    '''


@app.route('/api/cues/out', methods=['POST'])
def cue_out_api():
    data = _json_body()
    try:
        duration = _optional_int(data, 'duration')
        if duration is None:
            return jsonify({"success": False, "error": "Falta el parámetro 'duration'."}), 400
        target = _target_from(data)
        record = cue_injector.inject_cue_out(
            target, duration,
            pre_roll=_optional_int(data, 'pre_roll') or 0,
            event_id=_optional_int(data, 'event_id'),
        )
    except (ValueError, TypeError) as e:
        return jsonify({"success": False, "error": f"Datos inválidos: {e}"}), 400
    except OMEApiError as e:
        return jsonify({"success": False, "error": f"Error de OME: {e}"}), 502
    except Exception as e:
        logger.error(f"Error enviando CUE-OUT: {e}", exc_info=True)
        return jsonify({"success": False, "error": "Error interno del servidor."}), 500
    return jsonify({"success": True, "message": f"CUE-OUT (ID: {record.event_id}) enviado.",
                    "event": dataclasses.asdict(record)})


@app.route('/api/cues/in', methods=['POST'])
def cue_in_api():
    data = _json_body()
    try:
        target = _target_from(data)
        record = cue_injector.inject_cue_in(target, event_id=_optional_int(data, 'event_id'))
    except (ValueError, TypeError) as e:
        return jsonify({"success": False, "error": f"Datos inválidos: {e}"}), 400
    except OMEApiError as e:
        return jsonify({"success": False, "error": f"Error de OME: {e}"}), 502
    except Exception as e:
        logger.error(f"Error enviando CUE-IN: {e}", exc_info=True)
        return jsonify({"success": False, "error": "Error interno del servidor."}), 500
    return jsonify({"success": True, "message": f"CUE-IN (ID: {record.event_id}) enviado.",
                    "event": dataclasses.asdict(record)})


@app.route('/api/cues/decode', methods=['POST'])
def decode_api():
    data = _json_body()
    payload = data.get('payload')
    if not isinstance(payload, str):
        return jsonify({"success": False, "error": "Falta el parámetro 'payload'."}), 400
    try:
        event = decode(payload)
    except DecodeError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    return jsonify({"success": True, "action": event.action, "event": event.to_dict(),
                    "valid": validate(event)})


@app.route('/api/events', methods=['GET'])
def list_events_api():
    events = cue_injector.event_log.list_events(
        action=request.args.get('action'), status=request.args.get('status')
    )
    return jsonify([dataclasses.asdict(e) for e in events])


@app.route('/api/events/stats', methods=['GET'])
def event_stats_api():
    stats = cue_injector.event_log.stats()
    stats["open_breaks"] = cue_injector.open_breaks()
    return jsonify(stats)


@app.route('/api/events/<record_id>/confirm', methods=['POST'])
def confirm_event_api(record_id):
    try:
        record = cue_injector.confirm(record_id)
    except KeyError:
        return jsonify({"success": False, "error": "Evento no encontrado."}), 404
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    return jsonify({"success": True, "event": dataclasses.asdict(record)})


@app.route('/api/schedule', methods=['GET'])
def list_schedule_api():
    cues = cue_scheduler.list_cues(status=request.args.get('status'))
    return jsonify([dataclasses.asdict(c) for c in cues])


@app.route('/api/schedule', methods=['POST'])
def schedule_api():
    data = _json_body()
    try:
        cue = cue_scheduler.schedule(
            _action_from(data), _target_from(data), _scheduled_time_from(data),
            duration=_optional_int(data, 'duration'),
            pre_roll=_optional_int(data, 'pre_roll') or 0,
            event_id=_optional_int(data, 'event_id'),
            program_id=data.get('program_id'),
        )
    except (ValueError, TypeError) as e:
        return jsonify({"success": False, "error": f"Datos inválidos: {e}"}), 400
    return jsonify({"success": True, "message": f"{cue.action} programado.",
                    "cue": dataclasses.asdict(cue)})


@app.route('/api/schedule/emergency', methods=['POST'])
def emergency_api():
    data = _json_body()
    try:
        cue = cue_scheduler.add_emergency(
            _action_from(data), _target_from(data), duration=_optional_int(data, 'duration')
        )
    except (ValueError, TypeError) as e:
        return jsonify({"success": False, "error": f"Datos inválidos: {e}"}), 400
    return jsonify({"success": True, "message": f"{cue.action} de emergencia en cola.",
                    "cue": dataclasses.asdict(cue)})


@app.route('/api/schedule/<cue_id>/cancel', methods=['POST'])
def cancel_schedule_api(cue_id):
    try:
        cue = cue_scheduler.cancel(cue_id)
    except KeyError:
        return jsonify({"success": False, "error": "Señal programada no encontrada."}), 404
    except ValueError as e:
        return jsonify({"success": False, "error": str(e)}), 400
    return jsonify({"success": True, "cue": dataclasses.asdict(cue)})


@app.route('/api/schedule/<cue_id>', methods=['DELETE'])
def delete_schedule_api(cue_id):
    try:
        cue_scheduler.delete(cue_id)
    except KeyError:
        return jsonify({"success": False, "error": "Señal programada no encontrada."}), 404
    return jsonify({"success": True, "message": "Señal programada eliminada."})


@app.route('/api/schedule/programs/<program_id>/cancel', methods=['POST'])
def cancel_program_api(program_id):
    return jsonify({"success": True, "cancelled": cue_scheduler.cancel_program(program_id)})


@app.route('/api/connection', methods=['GET'])
def connection_api():
    sender = cue_injector.sender
    connected = sender.test_connection() if hasattr(sender, 'test_connection') else False
    return jsonify({"connected": connected, "base_url": ome_config.base_url})


class StartupError(Exception):
    """Estado persistido ilegible al arrancar."""


def restore_state(config: OMEConfig, sender=None, events_path: str = EVENTS_FILE,
                  schedule_path: str = SCHEDULE_FILE):
    """
    Reconstruye inyector y programador desde los archivos JSON.
    La secuencia de Event IDs continúa tras el mayor ID ya usado o reservado.
    """
    event_log = CueEventLog(events_path)
    try:
        event_log.load()
    except (OSError, ValueError, TypeError) as e:
        raise StartupError(f"No se pudo leer el log de eventos {events_path}: {e}") from e
    last_id = max((e.event_id for e in event_log.list_events()), default=0)
    injector = CueInjector(sender or OMEClient(config), EventIdSequence(last_id + 1), event_log)

    scheduler = CueScheduler(injector, path=schedule_path)
    try:
        scheduler.load()
    except (OSError, ValueError, TypeError) as e:
        raise StartupError(f"No se pudo leer la cola de señales {schedule_path}: {e}") from e
    scheduled_ids = [c.event_id for c in scheduler.list_cues() if c.event_id is not None]
    if scheduled_ids:
        injector.sequence.advance_past(max(scheduled_ids))
    return injector, scheduler


if __name__ == "__main__":
    try:
        ome_config = load_settings()
        cue_injector, cue_scheduler = restore_state(ome_config)
    except (OSError, ValueError, TypeError) as e:
        print(f"No se pudo leer la configuración de OME: {e}")
        sys.exit(1)
    except StartupError as e:
        print(e)
        sys.exit(1)
    cue_scheduler.start()

    print("\n" + "="*60)
    print("Inyector SCTE-35 para OvenMediaEngine - Sistema Iniciado")
    print("="*60)
    print(f"API de OME: {ome_config.base_url}")
    print("Interfaz web disponible en: http://127.0.0.1:5000")
    print("\nPresiona Ctrl+C para detener el servidor.")
    print("="*60 + "\n")

    app.run(host='0.0.0.0', port=5000, debug=False, use_reloader=False)
