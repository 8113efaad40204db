"""
trello_api.py - REST client wrapper for Trello (cards for reported bugs).

Responsibilities:
- key/token authentication (sent as query parameters, never logged)
- create a card for a bug: card, then severity label, then metadata comment
- board / list discovery and credential check for the configuration screen
- map HTTP / network failures to ErrorCode categories with a Spanish message

create_card() never raises for tracker-side problems; it returns a
TrelloCardResult so the caller can record the outcome on the bug row.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import requests

from .logger import get_logger
from .results import ErrorCode, TrackerError


DEFAULT_API_BASE = "https://api.trello.com/1"

DEFAULT_ENDPOINTS: Dict[str, str] = {
    "card_create": "/cards",
    "card": "/cards/{cardId}",
    "card_labels": "/cards/{cardId}/labels",
    "card_comments": "/cards/{cardId}/actions/comments",
    "member_boards": "/members/me/boards",
    "member_me": "/members/me",
    "board_lists": "/boards/{boardId}/lists",
}

LABEL_COLORS: Dict[str, str] = {
    "Crítica": "red",
    "Alta": "orange",
    "Media": "yellow",
    "Baja": "green",
}

CARD_TITLE_MAX = 200


@dataclass
class TrelloConfig:
    api_key: str = ""
    token: str = ""
    board_id: str = ""
    list_id: str = ""
    board_url: str = ""
    board_name: str = ""
    list_name: str = ""
    endpoints: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENDPOINTS))

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.token and self.list_id)


@dataclass
class TrelloCardResult:
    success: bool
    attempted: bool
    card_id: str = ""
    card_url: str = ""
    error: str = ""
    error_code: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"exito": self.success, "intentado": self.attempted}
        if self.success:
            out["cardId"] = self.card_id
            out["cardUrl"] = self.card_url
        else:
            out["error"] = self.error
            out["codigo"] = self.error_code
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out


def truncate(text: str, max_length: int) -> str:
    if len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def classify_status(status_code: int, body: str = "") -> Tuple[ErrorCode, str]:
    """HTTP status -> (code, user-facing message)."""
    if status_code == 401:
        return ErrorCode.INVALID_CREDENTIALS, "Trello rechazó las credenciales (API Key o Token inválidos)"
    if status_code == 403:
        return ErrorCode.FORBIDDEN, "El token de Trello no tiene permisos sobre la lista o tablero"
    if status_code == 404:
        return ErrorCode.NOT_FOUND, "La lista o tarjeta de Trello no existe"
    if status_code == 429:
        return ErrorCode.RATE_LIMITED, "Trello limitó las solicitudes, intenta de nuevo en unos minutos"
    message = f"Error de Trello API ({status_code})"
    if body:
        message += ": " + body[:100]
    return ErrorCode.TRACKER_ERROR, message


def classify_exception(exc: requests.RequestException) -> Tuple[ErrorCode, str]:
    if isinstance(exc, requests.Timeout):
        return ErrorCode.TIMEOUT, "Timeout al conectar con Trello"
    if isinstance(exc, requests.ConnectionError):
        return ErrorCode.NETWORK_ERROR, f"No se pudo conectar con Trello: {exc}"
    return ErrorCode.TRACKER_ERROR, f"Error de red con Trello: {exc}"


def _present(value: Any) -> bool:
    text = "" if value is None else str(value).strip()
    return bool(text) and text != "-"


def _text(bug: Mapping[str, Any], key: str) -> str:
    value = bug.get(key)
    return "" if value is None else str(value)


def format_card_description(bug: Mapping[str, Any]) -> str:
    """Markdown card body built from a bug record (Bugs sheet header names as keys)."""
    parts: List[str] = []
    parts.append("🐛 **Bug reportado desde QA Management System**\n\n---\n\n")
    parts.append(f"**🔴 Severidad:** {_text(bug, 'Severidad')}\n")
    parts.append(f"**⚡ Prioridad:** {_text(bug, 'Prioridad')}\n")
    if _present(bug.get("CasosRelacionados")):
        parts.append(f"**📋 Caso relacionado:** {_text(bug, 'CasosRelacionados')}\n")
    parts.append("\n---\n\n")

    parts.append(f"## 📝 Descripción del problema\n\n{_text(bug, 'Descripcion')}\n\n")
    if _present(bug.get("Precondiciones")):
        parts.append(f"## ✅ Precondiciones\n\n{_text(bug, 'Precondiciones')}\n\n")
    if _present(bug.get("DatosPrueba")):
        parts.append(f"## 🔢 Datos de prueba\n\n{_text(bug, 'DatosPrueba')}\n\n")
    parts.append(f"## 👣 Pasos para reproducir\n\n{_text(bug, 'PasosReproducir')}\n\n")

    parts.append("## 📊 Resultados\n\n")
    parts.append(f"**✅ Resultado esperado:**\n{_text(bug, 'ResultadoEsperado')}\n\n")
    parts.append(f"**❌ Resultado obtenido:**\n{_text(bug, 'ResultadoObtenido')}\n\n")

    if _present(bug.get("Navegador")) or _present(bug.get("Ambiente")):
        parts.append("## 🌐 Información adicional\n\n")
        if _present(bug.get("Navegador")):
            parts.append(f"- **Navegador:** {_text(bug, 'Navegador')}\n")
        if _present(bug.get("Ambiente")):
            parts.append(f"- **Ambiente:** {_text(bug, 'Ambiente')}\n")
        parts.append("\n")

    evidence = [u.strip() for u in _text(bug, "EvidenciasURL").splitlines() if u.strip()]
    if evidence:
        parts.append("## 📎 Evidencias\n\n")
        parts.extend(f"- {url}\n" for url in evidence)
        parts.append("\n")

    parts.append("---\n\n")
    parts.append(f"_Reportado por: {_text(bug, 'DetectadoPor')}_\n")
    parts.append(f"_Fecha: {_text(bug, 'FechaDeteccion')}_\n")
    return "".join(parts)


def format_metadata_comment(bug: Mapping[str, Any]) -> str:
    lines = [
        "📊 **Bug registrado en QA Management System**",
        "",
        f"- **ID:** {_text(bug, 'ID')}",
        f"- **Estado:** {_text(bug, 'Estado')}",
    ]
    if _present(bug.get("CasosRelacionados")):
        lines.append(f"- **Caso relacionado:** {_text(bug, 'CasosRelacionados')}")
    lines.append(f"- **Fecha reporte:** {_text(bug, 'FechaDeteccion')}")
    lines.append(f"- **Reportado por:** {_text(bug, 'DetectadoPor')}")
    return "\n".join(lines) + "\n"


class TrelloClient:
    def __init__(
        self,
        config: TrelloConfig,
        api_base: str = DEFAULT_API_BASE,
        timeout: float = 10.0,
        label_delay: float = 0.1,
    ):
        self.config = config
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.label_delay = label_delay
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------ low-level

    def _ep(self, key: str) -> str:
        eps = self.config.endpoints or {}
        return eps.get(key) or DEFAULT_ENDPOINTS[key]

    def _auth_params(self, api_key: str | None = None, token: str | None = None) -> Dict[str, str]:
        return {
            "key": api_key if api_key is not None else self.config.api_key,
            "token": token if token is not None else self.config.token,
        }

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Dict[str, Any] | None = None,
        data: Dict[str, Any] | None = None,
        api_key: str | None = None,
        token: str | None = None,
    ) -> requests.Response:
        """
        Send one request and return the raw response; status handling is left to
        the caller. requests.RequestException propagates.
        """
        url = self.api_base + path
        query = self._auth_params(api_key, token)
        if params:
            query.update(params)
        self.logger.debug(
            "Trello request %s %s fields=%s",
            method,
            url,
            sorted((data or {}).keys()),
        )
        resp = requests.request(method, url, params=query, data=data, timeout=self.timeout)
        self.logger.debug("Trello response status=%s", resp.status_code)
        return resp

    def _json_or_raise(self, method: str, path: str, **kwargs) -> Any:
        """Like _request, but any non-200 answer or network failure becomes TrackerError."""
        try:
            resp = self._request(method, path, **kwargs)
        except requests.RequestException as e:
            code, message = classify_exception(e)
            self.logger.warning("Trello %s %s failed: %s", method, path, message)
            raise TrackerError(message, code=code) from e
        if resp.status_code != 200:
            code, message = classify_status(resp.status_code, resp.text)
            self.logger.warning("Trello %s %s returned %s", method, path, resp.status_code)
            raise TrackerError(message, code=code)
        if not resp.text:
            return None
        try:
            return resp.json()
        except ValueError:
            return resp.text

    # ------------------------------------------------------------------ cards

    def create_card(self, bug: Mapping[str, Any]) -> TrelloCardResult:
        """
        Create the card for a bug record, then add the severity label and the
        metadata comment. Label/comment failures only produce warnings.
        """
        bug_id = _text(bug, "ID")
        if not self.config.api_key or not self.config.token:
            return TrelloCardResult(
                success=False,
                attempted=True,
                error="Configuración de Trello incompleta (falta API Key o Token)",
                error_code=ErrorCode.TRACKER_NOT_CONFIGURED.value,
            )
        if not self.config.list_id:
            return TrelloCardResult(
                success=False,
                attempted=True,
                error="No se especificó lista de destino en Trello",
                error_code=ErrorCode.TRACKER_NOT_CONFIGURED.value,
            )

        payload = {
            "idList": self.config.list_id,
            "name": f"[{bug_id}] " + truncate(_text(bug, "Titulo"), CARD_TITLE_MAX),
            "desc": format_card_description(bug),
            "pos": "top",
        }
        self.logger.info("Creating Trello card for %s", bug_id)
        try:
            resp = self._request("POST", self._ep("card_create"), data=payload)
        except requests.RequestException as e:
            code, message = classify_exception(e)
            self.logger.error("Trello card for %s failed: %s", bug_id, message)
            return TrelloCardResult(success=False, attempted=True, error=message, error_code=code.value)

        if resp.status_code != 200:
            code, message = classify_status(resp.status_code, resp.text)
            self.logger.error("Trello card for %s rejected (%s): %s", bug_id, resp.status_code, resp.text[:200])
            return TrelloCardResult(success=False, attempted=True, error=message, error_code=code.value)

        try:
            card = resp.json()
        except ValueError:
            card = None
        if not isinstance(card, dict) or not card.get("id"):
            self.logger.error("Trello card for %s: unexpected response body %r", bug_id, resp.text[:200])
            return TrelloCardResult(
                success=False,
                attempted=True,
                error="Respuesta de Trello no es JSON válido",
                error_code=ErrorCode.TRACKER_ERROR.value,
            )
        result = TrelloCardResult(
            success=True,
            attempted=True,
            card_id=str(card.get("id") or ""),
            card_url=str(card.get("shortUrl") or card.get("url") or ""),
        )
        self.logger.info("Trello card created for %s: %s", bug_id, result.card_url)

        try:
            self.add_severity_label(result.card_id, _text(bug, "Severidad") or "Media")
        except TrackerError as e:
            self.logger.warning("Could not add severity label to %s: %s", result.card_id, e.message)
            result.warnings.append(f"No se pudo agregar etiqueta: {e.message}")
        try:
            self.add_comment(result.card_id, format_metadata_comment(bug))
        except TrackerError as e:
            self.logger.warning("Could not add metadata comment to %s: %s", result.card_id, e.message)
            result.warnings.append(f"No se pudo agregar comentario: {e.message}")
        return result

    def add_severity_label(self, card_id: str, severity: str) -> Any:
        color = LABEL_COLORS.get(severity, "yellow")
        # Trello throttles bursts of label writes right after card creation
        if self.label_delay:
            time.sleep(self.label_delay)
        path = self._ep("card_labels").format(cardId=card_id)
        return self._json_or_raise("POST", path, data={"color": color, "name": severity})

    def add_comment(self, card_id: str, text: str) -> Any:
        path = self._ep("card_comments").format(cardId=card_id)
        return self._json_or_raise("POST", path, data={"text": text})

    def move_card(self, card_id: str, list_id: str) -> Any:
        path = self._ep("card").format(cardId=card_id)
        return self._json_or_raise("PUT", path, data={"idList": list_id})

    # ------------------------------------------------------------------ configuration helpers

    def list_boards(self) -> List[Dict[str, Any]]:
        """Open boards of the authenticated member as [{id, nombre, url}]."""
        boards = self._json_or_raise(
            "GET", self._ep("member_boards"), params={"fields": "name,url,closed"}
        ) or []
        return [
            {"id": b.get("id"), "nombre": b.get("name"), "url": b.get("url")}
            for b in boards
            if not b.get("closed")
        ]

    def list_lists(self, board_id: str) -> List[Dict[str, Any]]:
        path = self._ep("board_lists").format(boardId=board_id)
        lists = self._json_or_raise("GET", path, params={"fields": "name,closed"}) or []
        return [{"id": lst.get("id"), "nombre": lst.get("name")} for lst in lists if not lst.get("closed")]

    def validate_credentials(self, api_key: str | None = None, token: str | None = None) -> Dict[str, Any]:
        """Call /members/me; returns {valido, usuario, nombre} or raises TrackerError."""
        key = self.config.api_key if api_key is None else api_key
        tok = self.config.token if token is None else token
        if not key or not tok:
            raise TrackerError("API Key y Token son requeridos", code=ErrorCode.TRACKER_NOT_CONFIGURED)
        me = self._json_or_raise("GET", self._ep("member_me"), api_key=key, token=tok) or {}
        self.logger.info("Trello credentials valid for %s", me.get("username"))
        return {"valido": True, "usuario": me.get("username"), "nombre": me.get("fullName")}
