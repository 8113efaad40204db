"""
headers.py - Logical field name -> physical header resolution.

Case sheets are edited by hand, so the same field can show up with or without
accents, with spaces, or under a legacy name. HEADER_ALIASES lists the accepted
spellings per logical name; lookups try the literal name first.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence


HEADER_ALIASES: Dict[str, List[str]] = {
    "ID": ["ID", "Id"],
    "Hoja": ["Hoja", "Modulo", "Módulo"],
    "Titulo": ["Titulo", "Título"],
    "Descripcion": ["Descripcion", "Descripción"],
    "Formato": ["Formato"],
    "Prioridad": ["Prioridad"],
    "TipoPrueba": ["TipoPrueba", "Tipo de Prueba"],
    "Pasos": ["Pasos"],
    "ResultadoEsperado": ["ResultadoEsperado", "Resultado Esperado"],
    "ScenarioGiven": ["ScenarioGiven", "Dado"],
    "ScenarioWhen": ["ScenarioWhen", "Cuando"],
    "ScenarioThen": ["ScenarioThen", "Entonces"],
    "Precondiciones": ["Precondiciones", "Pre-condiciones"],
    "FlujoCritico": ["FlujoCritico", "FlujoCrítico"],
    "CandidatoRegresion": ["CandidatoRegresion", "CandidatoRegresión"],
    "EstadoDiseno": ["EstadoDiseño", "EstadoDiseo", "Estado Diseño", "Estado"],
    "FechaCreacion": ["FechaCreacion", "Fecha Creacion", "FechaCreación", "Fecha Creación"],
    "CreadoPor": ["CreadoPor", "Creado Por"],
    "FechaUltimaEjecucion": [
        "FechaUltimaEjecucion",
        "Fecha Última Ejecucion",
        "Fecha Última Ejecución",
        "FechaUltimaEjecución",
    ],
    "ResultadoUltimaEjecucion": [
        "ResultadoUltimaEjecucion",
        "Resultado Última Ejecucion",
        "Resultado Última Ejecución",
        "EstadoEjecucion",
        "EstadoEjecución",
    ],
    "ComentariosEjecucion": ["ComentariosEjecucion", "Comentarios Ejecucion", "Comentarios Ejecución"],
    "EvidenciasURL": ["EvidenciasURL", "Evidencias URL"],
    "LinkTrelloHU": ["LinkTrelloHU", "Link Trello HU"],
    "LinkBugRelacionado": ["LinkBugRelacionado", "Link Bug Relacionado"],
    "CasoURI": ["CasoURI", "Caso URI"],
    "Notas": ["Notas"],
}


def _normalize(header: Any) -> str:
    return "" if header is None else str(header).strip()


def find_header_index(headers: Sequence[Any], logical_name: str) -> int:
    """Return the 0-based column of a logical field, or -1 if no known spelling is present."""
    if not headers:
        return -1
    names = [_normalize(h) for h in headers]
    if logical_name in names:
        return names.index(logical_name)
    for alias in HEADER_ALIASES.get(logical_name, []):
        if alias in names:
            return names.index(alias)
    return -1


def get_cell_by_logical(headers: Sequence[Any], row: Sequence[Any], logical_name: str) -> Optional[Any]:
    idx = find_header_index(headers, logical_name)
    if idx == -1 or idx >= len(row):
        return None
    return row[idx]


def set_cell_by_logical(sheet, row_1based: int, headers: Sequence[Any], logical_name: str, value: Any) -> bool:
    """Write through a SheetHandle. False when the sheet has no column for the field."""
    idx = find_header_index(headers, logical_name)
    if idx == -1:
        return False
    sheet.write_cell(row_1based, idx + 1, value)
    return True


def row_to_record(headers: Sequence[Any], row: Sequence[Any]) -> Dict[str, Any]:
    """Project a raw row to {header: value}; blank headers are skipped."""
    record: Dict[str, Any] = {}
    for i, h in enumerate(headers):
        name = _normalize(h)
        if not name:
            continue
        record[name] = row[i] if i < len(row) else None
    return record


def row_to_logical(headers: Sequence[Any], row: Sequence[Any]) -> Dict[str, Any]:
    """
    Like row_to_record, but keys are logical names when a header matches a known
    alias, so callers can read case["ResultadoUltimaEjecucion"] regardless of spelling.
    """
    record = row_to_record(headers, row)
    for logical in HEADER_ALIASES:
        if logical in record:
            continue
        value = get_cell_by_logical(headers, row, logical)
        if find_header_index(headers, logical) != -1:
            record[logical] = value
    return record
