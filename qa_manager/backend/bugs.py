"""
bugs.py - Bug repository over the "Bugs" sheet.

Public operations return a Result (see results.py). Writes run inside a store
transaction; a bug created with related cases is linked in the same
transaction, so a missing case leaves no bug row and no consumed ID behind.

Soft delete and close feed back into the related cases through
ExecutionUpdater; failures on those cases are reported in the outcome
(casos_con_error) instead of being dropped.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from .bug_sheet import (
    BUG_HEADERS,
    DEFAULT_PRIORITY,
    DEFAULT_SEVERITY,
    FIELD_TO_HEADER,
    LINK_HEADERS,
    NO,
    STATE_CLOSED,
    STATE_OPEN,
    YES,
    all_bug_records,
    bug_record,
    bugs_sheet,
    find_bug,
    is_deleted,
    is_unresolved,
    parse_id_list,
)
from .config_store import BUG_COUNTER_KEY, ConfigStore
from .crossref import CrossReference
from .evidence_fs import BUG, EvidenceFile, upload_evidence
from .execution import NOT_RUN, ExecutionUpdater
from .headers import find_header_index, get_cell_by_logical, row_to_logical, set_cell_by_logical
from .logger import get_logger
from .results import ErrorCode, PreconditionError, QAError, Result, result_boundary
from .settings import current_user
from .workbook import WorkbookStore, cell_text


logger = get_logger(__name__)

ANY_SEVERITY = "Todas"
ANY_STATE = "Todos"


def _has_case(bug: Dict[str, Any]) -> bool:
    return any(cell_text(bug.get(k)) for k in ("CasosRelacionados", "LinkCasoPrueba", "CasoURI"))


def apply_filters(bugs: List[Dict[str, Any]], filters: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Filters run in a fixed order: busqueda, severidad, estado, con_caso, solo_abiertos."""
    if not filters:
        return bugs
    result = bugs

    search = cell_text(filters.get("busqueda")).lower()
    if search:
        result = [
            b for b in result
            if search in cell_text(b.get("Titulo")).lower() or search in cell_text(b.get("Descripcion")).lower()
        ]

    severity = cell_text(filters.get("severidad"))
    if severity and severity != ANY_SEVERITY:
        result = [b for b in result if cell_text(b.get("Severidad")) == severity]

    state = cell_text(filters.get("estado"))
    if state and state != ANY_STATE:
        result = [b for b in result if cell_text(b.get("Estado")) == state]

    with_case = filters.get("con_caso")
    if with_case is not None:
        result = [b for b in result if _has_case(b) == bool(with_case)]

    if filters.get("solo_abiertos") is True:
        result = [b for b in result if cell_text(b.get("Estado")) == STATE_OPEN and not is_deleted(b)]

    return result


class BugRepository:
    def __init__(
        self,
        store: WorkbookStore,
        config: ConfigStore,
        crossref: CrossReference,
        execution: ExecutionUpdater,
        settings: Optional[Dict[str, Any]] = None,
        sync=None,
    ):
        self.store = store
        self.config = config
        self.crossref = crossref
        self.execution = execution
        self.settings = settings or {}
        # TrackerSync; None disables pushing to Trello on create
        self.sync = sync

    # ------------------------------------------------------------------ create

    @result_boundary("crear bug")
    def create(self, fields: Dict[str, Any]) -> Result:
        """
        fields: snake_case keys (titulo, descripcion, severidad, prioridad,
        etiquetas, casos_relacionados, pasos_reproducir, evidencias, ...),
        plus sincronizar_trello to push the new bug right away.
        """
        title = cell_text(fields.get("titulo"))
        if not title:
            raise PreconditionError("El título del bug es obligatorio")
        case_ids = parse_id_list(fields.get("casos_relacionados"))
        user = current_user(self.settings)

        with self.store.transaction():
            sheet = bugs_sheet(self.store, create=True)
            bug_id = f"BUG-{self.config.next_counter(BUG_COUNTER_KEY)}"

            values: Dict[str, Any] = {header: "" for header in BUG_HEADERS}
            for key, header in FIELD_TO_HEADER.items():
                value = fields.get(key)
                if value is None:
                    continue
                if header == "EvidenciasURL" and not isinstance(value, str):
                    value = "\n".join(cell_text(v) for v in value if cell_text(v))
                values[header] = value
            values.update(
                {
                    "ID": bug_id,
                    "Titulo": title,
                    "Severidad": cell_text(fields.get("severidad")) or DEFAULT_SEVERITY,
                    "Prioridad": cell_text(fields.get("prioridad")) or DEFAULT_PRIORITY,
                    "Estado": STATE_OPEN,
                    "TieneCasoDiseñado": NO,
                    "CasosRelacionados": "",
                    "FechaDeteccion": datetime.now(),
                    "DetectadoPor": user,
                    "FechaResolucion": "",
                    "TrelloCardID": "",
                    "TrelloCardURL": "",
                }
            )
            headers = sheet.headers()
            row = [""] * len(headers)
            for header, value in values.items():
                idx = find_header_index(headers, header)
                if idx != -1:
                    row[idx] = value
            sheet.append_row(row)
            logger.info("Bug %s created by %s: %s", bug_id, user, title)

            if case_ids:
                self.crossref.link_cases(bug_id, case_ids)

            files = fields.get("archivos") or []
            if files:
                uploaded = self._upload(title, case_ids, files)
                self._append_evidence(bug_id, uploaded)

        data: Dict[str, Any] = {
            "bug_id": bug_id,
            "titulo": title,
            "estado": STATE_OPEN,
            "casos_relacionados": case_ids,
        }
        if files:
            data["evidencias_subidas"] = uploaded
        if fields.get("sincronizar_trello") and self.sync is not None:
            pushed = self.sync.push_bug(bug_id)
            data["estado"] = pushed.data.get("estado", data["estado"]) if pushed.data else data["estado"]
            data["trello"] = (pushed.data or {}).get("trello")
            if not pushed.success:
                return Result(
                    success=True,
                    mensaje=f"Bug {bug_id} creado, pendiente de sincronización con Trello",
                    data=data,
                    warnings=[pushed.mensaje],
                )
        return Result.ok(f"Bug {bug_id} creado exitosamente", data)

    # ------------------------------------------------------------------ queries

    @result_boundary("listar bugs")
    def list(self, filters: Optional[Dict[str, Any]] = None) -> Result:
        with self.store.reading():
            bugs = all_bug_records(self.store)
        total_before = len(bugs)
        bugs = apply_filters(bugs, filters)
        logger.debug("Bug list: %d of %d after filters %s", len(bugs), total_before, filters)
        return Result.ok("", {"bugs": bugs, "total": len(bugs)})

    @result_boundary("obtener detalle del bug")
    def get_by_id(self, bug_id: str) -> Result:
        with self.store.reading():
            bug = bug_record(find_bug(self.store, bug_id))
        bug["casos"] = parse_id_list(bug.get("CasosRelacionados"))
        bug["eliminado"] = is_deleted(bug)
        return Result.ok("", bug)

    def bugs_for_case_records(self, case_id: str) -> List[Dict[str, Any]]:
        case_id = cell_text(case_id)
        with self.store.reading():
            records = all_bug_records(self.store)
        return [b for b in records if case_id in parse_id_list(b.get("CasosRelacionados"))]

    @result_boundary("obtener bugs del caso")
    def bugs_for_case(self, case_id: str) -> Result:
        bugs = self.bugs_for_case_records(case_id)
        return Result.ok("", {"caso_id": case_id, "bugs": bugs, "total": len(bugs)})

    @result_boundary("validar bugs abiertos del caso")
    def open_bugs_for_case(self, case_id: str) -> Result:
        bugs = [b for b in self.bugs_for_case_records(case_id) if is_unresolved(b)]
        return Result.ok(
            "",
            {"caso_id": case_id, "tiene_bugs_abiertos": bool(bugs), "bugs": [cell_text(b.get("ID")) for b in bugs]},
        )

    @result_boundary("obtener casos del bug")
    def cases_for_bug(self, bug_id: str) -> Result:
        cases: List[Dict[str, Any]] = []
        missing: List[str] = []
        with self.store.reading():
            bug = bug_record(find_bug(self.store, bug_id))
            for case_id in parse_id_list(bug.get("CasosRelacionados")):
                loc = self.store.find_case(case_id)
                if loc is None:
                    missing.append(case_id)
                    continue
                case = row_to_logical(loc.headers, loc.values)
                case["hoja"] = loc.sheet_name
                case["link"] = self.store.case_deep_link(loc)
                cases.append(case)
        warnings = [f"Caso no encontrado: {c}" for c in missing]
        return Result.ok("", {"bug_id": bug_id, "casos": cases, "no_encontrados": missing}, warnings=warnings)

    # ------------------------------------------------------------------ updates

    @result_boundary("actualizar bug")
    def update(self, bug_id: str, fields: Dict[str, Any]) -> Result:
        """
        Write every field that maps to a sheet column; others are reported in
        'ignorados'. 'archivos' uploads new evidence and appends it to EvidenciasURL.
        """
        updated: List[str] = []
        ignored: List[str] = []
        warnings: List[str] = []
        uploaded: List[str] = []
        with self.store.transaction():
            sheet = bugs_sheet(self.store, create=True)
            loc = find_bug(self.store, bug_id, sheet)
            for key, value in fields.items():
                if key == "archivos":
                    continue
                header = FIELD_TO_HEADER.get(key, key)
                if header == "ID" or header in LINK_HEADERS:
                    ignored.append(key)
                    warnings.append(f"{header} solo se modifica al vincular o desvincular casos")
                    continue
                if header == "EvidenciasURL" and value is not None and not isinstance(value, str):
                    value = "\n".join(cell_text(v) for v in value if cell_text(v))
                if set_cell_by_logical(sheet, loc.row, loc.headers, header, value):
                    updated.append(header)
                else:
                    ignored.append(key)

            files = fields.get("archivos") or []
            if files:
                bug = bug_record(find_bug(self.store, bug_id, sheet))
                uploaded = self._upload(
                    cell_text(bug.get("Titulo")), parse_id_list(bug.get("CasosRelacionados")), files
                )
                self._append_evidence(bug_id, uploaded)
                if "EvidenciasURL" not in updated:
                    updated.append("EvidenciasURL")
        logger.info("Bug %s updated: %s", bug_id, ", ".join(updated) or "-")
        data: Dict[str, Any] = {"bug_id": bug_id, "actualizados": updated, "ignorados": ignored}
        if uploaded:
            data["evidencias_subidas"] = uploaded
        return Result.ok("Bug actualizado exitosamente", data, warnings=warnings)

    def _upload(self, bug_title: str, case_ids: List[str], files: List[Dict[str, Any]]) -> List[str]:
        """Store files in the bug evidence folder, named after the first related case when there is one."""
        folder = self.config.get_evidence_folders().get(BUG, "")
        root_dir = (self.settings.get("evidence") or {}).get("root_dir", "")
        case_id = case_ids[0] if case_ids else ""
        case_title = ""
        if case_id:
            loc = self.store.find_case(case_id)
            if loc is not None:
                case_title = cell_text(get_cell_by_logical(loc.headers, loc.values, "Titulo"))
        urls: List[str] = []
        for f in files:
            ref = upload_evidence(
                EvidenceFile(
                    name=f.get("nombre") or "evidencia",
                    content_base64=f.get("contenido_base64") or "",
                    mime_type=f.get("mime_type") or "application/octet-stream",
                ),
                BUG,
                folder,
                root_dir=root_dir,
                case_id=case_id,
                case_title=case_title,
                bug_title=bug_title,
            )
            urls.append(ref.url)
        return urls

    def _append_evidence(self, bug_id: str, urls: List[str]) -> None:
        sheet = bugs_sheet(self.store, create=True)
        loc = find_bug(self.store, bug_id, sheet)
        current = [u.strip() for u in cell_text(get_cell_by_logical(loc.headers, loc.values, "EvidenciasURL")).split("\n")]
        merged = [u for u in current if u] + [u for u in urls if u not in current]
        set_cell_by_logical(sheet, loc.row, loc.headers, "EvidenciasURL", "\n".join(merged))

    def _release_cases(self, bug_id: str, case_ids: List[str], action) -> Dict[str, Any]:
        """
        Run action(case_id) for each case that has no other unresolved bug.
        Returns {afectados, sin_cambios, con_error}; must run inside a transaction.
        """
        others_by_case: Dict[str, List[str]] = {}
        for bug in all_bug_records(self.store):
            other_id = cell_text(bug.get("ID"))
            if other_id == bug_id or not is_unresolved(bug):
                continue
            for cid in parse_id_list(bug.get("CasosRelacionados")):
                others_by_case.setdefault(cid, []).append(other_id)

        affected: List[str] = []
        untouched: List[str] = []
        errors: List[Dict[str, str]] = []
        for case_id in case_ids:
            if others_by_case.get(case_id):
                untouched.append(case_id)
                continue
            try:
                change = action(case_id)
            except QAError as e:
                logger.warning("Bug %s: could not update case %s: %s", bug_id, case_id, e.message)
                errors.append({"caso_id": case_id, "error": e.message, "codigo": e.code.value})
                continue
            (affected if change is not None else untouched).append(case_id)
        return {"afectados": affected, "sin_cambios": untouched, "con_error": errors}

    @result_boundary("cambiar estado del bug")
    def change_state(self, bug_id: str, new_state: str) -> Result:
        new_state = cell_text(new_state)
        if not new_state:
            raise PreconditionError("El nuevo estado es obligatorio")

        released: Dict[str, Any] = {"afectados": [], "sin_cambios": [], "con_error": []}
        with self.store.transaction():
            sheet = bugs_sheet(self.store, create=True)
            loc = find_bug(self.store, bug_id, sheet)
            previous = cell_text(get_cell_by_logical(loc.headers, loc.values, "Estado"))
            set_cell_by_logical(sheet, loc.row, loc.headers, "Estado", new_state)
            if new_state == STATE_CLOSED:
                set_cell_by_logical(sheet, loc.row, loc.headers, "FechaResolucion", datetime.now())
            elif new_state == STATE_OPEN:
                set_cell_by_logical(sheet, loc.row, loc.headers, "FechaResolucion", "")

            if new_state == STATE_CLOSED and previous != STATE_CLOSED:
                cases = parse_id_list(get_cell_by_logical(loc.headers, loc.values, "CasosRelacionados"))
                released = self._release_cases(bug_id, cases, self.execution.on_bug_closed)

        logger.info("Bug %s: %s -> %s", bug_id, previous or "-", new_state)
        data = {
            "bug_id": bug_id,
            "estado_anterior": previous,
            "estado": new_state,
            "casos_actualizados": released["afectados"],
            "casos_con_error": released["con_error"],
        }
        if released["con_error"]:
            return Result.fail(
                f"Estado cambiado a {new_state}, pero {len(released['con_error'])} caso(s) no se pudieron actualizar",
                ErrorCode.PARTIAL_FAILURE,
                data,
            )
        return Result.ok(f"Estado cambiado a {new_state}", data)

    @result_boundary("eliminar bug")
    def soft_delete(self, bug_id: str, actor: Optional[str] = None) -> Result:
        actor = actor or current_user(self.settings)
        comment = f"Bug {bug_id} eliminado por {actor} - se reinicia ejecución"

        with self.store.transaction():
            sheet = bugs_sheet(self.store, create=True)
            loc = find_bug(self.store, bug_id, sheet)
            set_cell_by_logical(sheet, loc.row, loc.headers, "EliminadoPorUsuario", YES)
            set_cell_by_logical(sheet, loc.row, loc.headers, "FechaEliminacion", datetime.now())
            set_cell_by_logical(sheet, loc.row, loc.headers, "EliminadoPor", actor)

            cases = parse_id_list(get_cell_by_logical(loc.headers, loc.values, "CasosRelacionados"))
            released = self._release_cases(
                bug_id, cases, lambda case_id: self.execution.apply_result(case_id, NOT_RUN, comment)
            )

        logger.info("Bug %s soft-deleted by %s; cases reset: %s", bug_id, actor, ", ".join(released["afectados"]) or "-")
        data = {
            "bug_id": bug_id,
            "casos_afectados": cases,
            "casos_reiniciados": released["afectados"],
            "casos_con_error": released["con_error"],
        }
        if released["con_error"]:
            return Result.fail(
                f"Bug eliminado, pero {len(released['con_error'])} caso(s) no se pudieron reiniciar",
                ErrorCode.PARTIAL_FAILURE,
                data,
            )
        return Result.ok("Bug eliminado (soft delete) y casos recalculados", data)

    # ------------------------------------------------------------------ cross references

    def link(self, bug_id: str, case_ids: Any) -> Result:
        return self.crossref.link(bug_id, case_ids)

    def unlink(self, bug_id: str, case_id: str) -> Result:
        return self.crossref.unlink(bug_id, case_id)
