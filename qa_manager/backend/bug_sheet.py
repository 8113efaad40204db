"""
bug_sheet.py - Layout of the "Bugs" sheet and helpers shared by the bug services.

- BUG_HEADERS: column order used when the sheet is created
- BUG_EXTRA_HEADERS: columns added lazily to sheets created before they existed
- FIELD_TO_HEADER: request field names (snake_case) -> sheet headers
- ID list cells ("TC-1, TC-2") are parsed / joined here and nowhere else
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional

from .headers import row_to_record
from .results import NotFoundError
from .workbook import RowLocation, SheetHandle, WorkbookStore, cell_text


BUGS_SHEET = "Bugs"

BUG_HEADERS = [
    "ID",
    "Titulo",
    "Descripcion",
    "Severidad",
    "Prioridad",
    "Estado",
    "Etiquetas",
    "TieneCasoDiseñado",
    "CasosRelacionados",
    "OrigenSinCaso",
    "Precondiciones",
    "DatosPrueba",
    "PasosReproducir",
    "ResultadoEsperado",
    "ResultadoObtenido",
    "Ambiente",
    "Navegador",
    "EvidenciasURL",
    "FechaDeteccion",
    "DetectadoPor",
    "AsignadoA",
    "FechaResolucion",
    "TrelloCardID",
    "TrelloCardURL",
    "Notas",
]

BUG_EXTRA_HEADERS = ["LinkCasoPrueba", "EliminadoPorUsuario", "FechaEliminacion", "EliminadoPor"]

FIELD_TO_HEADER: Dict[str, str] = {
    "titulo": "Titulo",
    "descripcion": "Descripcion",
    "severidad": "Severidad",
    "prioridad": "Prioridad",
    "estado": "Estado",
    "etiquetas": "Etiquetas",
    "origen_sin_caso": "OrigenSinCaso",
    "precondiciones": "Precondiciones",
    "datos_prueba": "DatosPrueba",
    "pasos_reproducir": "PasosReproducir",
    "resultado_esperado": "ResultadoEsperado",
    "resultado_obtenido": "ResultadoObtenido",
    "ambiente": "Ambiente",
    "navegador": "Navegador",
    "evidencias": "EvidenciasURL",
    "asignado_a": "AsignadoA",
    "notas": "Notas",
}

# maintained only through link / unlink / refresh_case_links
LINK_HEADERS = ("CasosRelacionados", "TieneCasoDiseñado", "LinkCasoPrueba")

STATE_OPEN = "Abierto"
STATE_CLOSED = "Cerrado"
STATE_PENDING_SYNC = "Pendiente sincronización Trello"
# states in which a bug still blocks its cases
UNRESOLVED_STATES = (STATE_OPEN, STATE_PENDING_SYNC)

SEVERITIES = ("Crítica", "Alta", "Media", "Baja")
DEFAULT_SEVERITY = "Media"
DEFAULT_PRIORITY = "Media"

YES = "Si"
NO = "No"


def parse_id_list(value: Any) -> List[str]:
    """'A, B,,A' -> ['A', 'B']; also accepts an iterable of IDs."""
    if value is None:
        return []
    if isinstance(value, str):
        parts: Iterable[Any] = value.split(",")
    else:
        parts = value
    seen: List[str] = []
    for part in parts:
        item = cell_text(part)
        if item and item not in seen:
            seen.append(item)
    return seen


def join_id_list(ids: Iterable[str]) -> str:
    return ", ".join(ids)


def is_deleted(bug: Mapping[str, Any]) -> bool:
    return cell_text(bug.get("EliminadoPorUsuario")) == YES


def is_unresolved(bug: Mapping[str, Any]) -> bool:
    return cell_text(bug.get("Estado")) in UNRESOLVED_STATES and not is_deleted(bug)


def bugs_sheet(store: WorkbookStore, create: bool = False) -> Optional[SheetHandle]:
    """
    The Bugs sheet with every known column present. With create=True a missing
    sheet is created; callers must then be inside a transaction.
    """
    sheet = store.sheet_by_name(BUGS_SHEET)
    if sheet is None:
        if not create:
            return None
        sheet = store.create_sheet(BUGS_SHEET, BUG_HEADERS + BUG_EXTRA_HEADERS)
        return sheet
    if create:
        sheet.ensure_columns(BUG_EXTRA_HEADERS)
    return sheet


def find_bug(store: WorkbookStore, bug_id: Any, sheet: Optional[SheetHandle] = None) -> RowLocation:
    """Locate a bug row or raise NotFoundError."""
    if sheet is None:
        sheet = bugs_sheet(store)
    loc = store.find_row(sheet, bug_id) if sheet is not None else None
    if loc is None:
        raise NotFoundError(f"Bug no encontrado: {bug_id}", details={"bug_id": cell_text(bug_id)})
    return loc


def bug_record(loc: RowLocation) -> Dict[str, Any]:
    return row_to_record(loc.headers, loc.values)


def all_bug_records(store: WorkbookStore) -> List[Dict[str, Any]]:
    sheet = bugs_sheet(store)
    if sheet is None:
        return []
    rows = sheet.all_rows()
    if len(rows) < 2:
        return []
    headers = rows[0]
    return [row_to_record(headers, row) for row in rows[1:] if row and cell_text(row[0])]
