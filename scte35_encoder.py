"""
Codificador de mensajes SCTE-35 (CUE-OUT / CUE-IN) para la API de OvenMediaEngine.
Construye el evento splice_insert, lo serializa a JSON canónico y lo codifica en Base64.
"""

import base64
import json
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

# Reloj PTS de MPEG (ticks por segundo)
PTS_CLOCK_RATE = 90000

CUE_OUT = "CUE-OUT"
CUE_IN = "CUE-IN"

_WIRE_KEYS = {"splice_event_id", "out_of_network", "break_duration", "splice_time"}


class DecodeError(Exception):
    """Error al decodificar un mensaje SCTE-35."""


class MalformedPayload(DecodeError):
    """El payload no es Base64 válido o no contiene un evento reconocible."""


class ConstructionError(ValueError):
    """Parámetros inválidos al construir un evento en modo estricto."""


@dataclass(frozen=True)
class SpliceEvent:
    """Instrucción de inserción publicitaria (splice_insert simplificado)."""
    event_id: int
    out_of_network: bool
    break_duration: Optional[int] = None  # segundos, solo CUE-OUT
    splice_time_offset: Optional[int] = None  # ticks de 90kHz, solo CUE-OUT con pre-roll

    @property
    def action(self) -> str:
        return CUE_OUT if self.out_of_network else CUE_IN

    def to_dict(self) -> Dict[str, Any]:
        """Representación de cable; los campos opcionales ausentes se omiten."""
        data: Dict[str, Any] = {
            "splice_event_id": self.event_id,
            "out_of_network": self.out_of_network,
        }
        if self.break_duration is not None:
            data["break_duration"] = self.break_duration
        if self.splice_time_offset is not None:
            data["splice_time"] = {"pts_time": self.splice_time_offset}
        return data


def encode(event: SpliceEvent) -> str:
    """Serializa el evento a JSON canónico y lo codifica en Base64."""
    text = json.dumps(event.to_dict(), sort_keys=True, separators=(",", ":"))
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def create_cue_out(event_id: int, duration_seconds: int, pre_roll_seconds: int = 0,
                   strict: bool = False) -> str:
    """
    Construye un CUE-OUT (inicio de ad break).
    Si hay pre-roll, se añade el offset de splice en ticks PTS.
    """
    if strict:
        _check_event_id(event_id)
        if not _is_int(duration_seconds) or duration_seconds <= 0:
            raise ConstructionError(f"Duración de ad inválida: {duration_seconds!r}")
        if not _is_int(pre_roll_seconds) or pre_roll_seconds < 0:
            raise ConstructionError(f"Pre-roll inválido: {pre_roll_seconds!r}")

    offset = pre_roll_seconds * PTS_CLOCK_RATE if pre_roll_seconds > 0 else None
    event = SpliceEvent(
        event_id=event_id,
        out_of_network=True,
        break_duration=duration_seconds,
        splice_time_offset=offset,
    )
    return encode(event)


def create_cue_in(event_id: int, strict: bool = False) -> str:
    """Construye un CUE-IN (fin de ad break). Debe reutilizar el ID del CUE-OUT."""
    if strict:
        _check_event_id(event_id)
    return encode(SpliceEvent(event_id=event_id, out_of_network=False))


def decode(transport: str) -> SpliceEvent:
    """Decodifica un mensaje Base64 de vuelta a SpliceEvent (verificación/depuración)."""
    try:
        raw = base64.b64decode(transport, validate=True)
        data = json.loads(raw.decode("utf-8"))
    except (TypeError, ValueError, RecursionError) as e:
        raise MalformedPayload(f"Formato de mensaje SCTE-35 inválido: {e}") from e

    if not isinstance(data, dict):
        raise MalformedPayload("El mensaje SCTE-35 no es un objeto")
    unknown = set(data) - _WIRE_KEYS
    if unknown:
        raise MalformedPayload(f"Campos desconocidos en el mensaje: {sorted(unknown)}")

    event_id = data.get("splice_event_id")
    out_of_network = data.get("out_of_network")
    if not _is_int(event_id):
        raise MalformedPayload("splice_event_id ausente o no entero")
    if not isinstance(out_of_network, bool):
        raise MalformedPayload("out_of_network ausente o no booleano")

    break_duration = data.get("break_duration")
    if "break_duration" in data and not _is_int(break_duration):
        raise MalformedPayload("break_duration no es entero")

    offset = None
    if "splice_time" in data:
        splice_time = data["splice_time"]
        if not isinstance(splice_time, dict) or set(splice_time) != {"pts_time"} \
                or not _is_int(splice_time["pts_time"]):
            raise MalformedPayload("splice_time mal formado")
        offset = splice_time["pts_time"]

    return SpliceEvent(
        event_id=event_id,
        out_of_network=out_of_network,
        break_duration=break_duration,
        splice_time_offset=offset,
    )


def validate(event: Union[SpliceEvent, Mapping[str, Any]]) -> bool:
    """
    Validación estructural; nunca lanza excepciones.
    Acepta un SpliceEvent o un diccionario con claves de cable o de Python.
    """
    if isinstance(event, SpliceEvent):
        event_id = event.event_id
        out_of_network = event.out_of_network
        break_duration = event.break_duration
    elif isinstance(event, Mapping):
        event_id = event.get("event_id", event.get("splice_event_id"))
        out_of_network = event.get("out_of_network")
        break_duration = event.get("break_duration")
    else:
        return False

    if not _is_int(event_id) or event_id <= 0:
        return False
    if not isinstance(out_of_network, bool):
        return False
    # Para CUE-OUT la duración debe existir y ser positiva
    if out_of_network and (not _is_int(break_duration) or break_duration <= 0):
        return False
    return True


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_event_id(event_id: Any):
    if not _is_int(event_id) or event_id <= 0:
        raise ConstructionError(f"Event ID inválido: {event_id!r}")
