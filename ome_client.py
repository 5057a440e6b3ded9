"""
Cliente mínimo de la API REST de OvenMediaEngine para inyectar eventos SCTE-35.
"""

import base64
import json
import logging
import os
import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from scte35_encoder import decode

logger = logging.getLogger(__name__)

SETTINGS_FILE = "ome_settings.json"


class OMEApiError(Exception):
    """Fallo de red o respuesta de error de la API de OME."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass
class OMEConfig:
    """Parámetros de conexión con el servidor OME"""
    host: str = "127.0.0.1"
    port: int = 8081
    username: str = ""
    password: str = ""
    vhost: str = "default"
    app: str = "live"
    timeout: float = 5.0

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}/v1"


@dataclass(frozen=True)
class StreamTarget:
    """Coordenadas del stream destino dentro de OME"""
    vhost: str
    app: str
    stream: str

    @property
    def path(self) -> str:
        return f"{self.vhost}/{self.app}/{self.stream}"


def save_settings(config: OMEConfig, path: str = SETTINGS_FILE):
    """Guarda la configuración de conexión en un archivo JSON."""
    with open(path, "w", encoding="utf-8") as f:
        json.dump(dataclasses.asdict(config), f, ensure_ascii=False, indent=2)


def load_settings(path: str = SETTINGS_FILE) -> OMEConfig:
    """Carga la configuración de conexión; si no existe el archivo, usa los valores por defecto."""
    if not os.path.exists(path):
        return OMEConfig()
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    known = {field.name for field in dataclasses.fields(OMEConfig)}
    return OMEConfig(**{k: v for k, v in data.items() if k in known})


class OMEClient:
    """Envía eventos a /v1/vhosts/{vhost}/apps/{app}/streams/{stream}:sendEvent"""
    def __init__(self, config: OMEConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        # Basic auth sobre "usuario:password"; con solo token queda "token:"
        if self.config.username or self.config.password:
            credentials = f"{self.config.username}:{self.config.password}"
            headers["Authorization"] = "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")
        return headers

    def _request(self, method: str, path: str, **kwargs) -> Any:
        url = f"{self.config.base_url}{path}"
        try:
            response = self.session.request(
                method, url, headers=self._headers(), timeout=self.config.timeout, **kwargs
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            raise OMEApiError(f"OME respondió con error en {method} {path}: {e}", status) from e
        except requests.exceptions.RequestException as e:
            raise OMEApiError(f"No se pudo conectar con OME ({url}): {e}") from e
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise OMEApiError(f"Respuesta no JSON de OME en {method} {path}", response.status_code) from e

    def send_event(self, target: StreamTarget, event_data: Dict[str, Any]) -> Any:
        path = f"/vhosts/{target.vhost}/apps/{target.app}/streams/{target.stream}:sendEvent"
        return self._request("POST", path, json=event_data)

    def send_cue(self, target: StreamTarget, payload: str) -> Any:
        """
        Entrega un mensaje SCTE-35 codificado al stream.
        OME solo admite spliceInsert y espera la duración en milisegundos.
        """
        event = decode(payload)
        splice: Dict[str, Any] = {
            "spliceCommand": "spliceInsert",
            "id": event.event_id,
            "type": "out" if event.out_of_network else "in",
            "autoReturn": False,
        }
        if event.out_of_network:
            splice["duration"] = (event.break_duration or 0) * 1000
        result = self.send_event(target, {"eventFormat": "scte35", "events": [splice]})
        logger.info(f"[{target.path}] {event.action} (ID: {event.event_id}) enviado a OME.")
        return result

    def list_streams(self, vhost: Optional[str] = None, app: Optional[str] = None) -> List[str]:
        vhost = vhost or self.config.vhost
        app = app or self.config.app
        data = self._request("GET", f"/vhosts/{vhost}/apps/{app}/streams")
        return data.get("response") or []

    def test_connection(self) -> bool:
        try:
            self._request("GET", "/stats/current")
            return True
        except OMEApiError as e:
            logger.warning(f"Prueba de conexión con OME fallida: {e}")
            return False
