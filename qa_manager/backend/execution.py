"""
execution.py - Execution results on case rows and the execution summary.

- set_execution_result / save_execution: write ResultadoUltimaEjecucion,
  FechaUltimaEjecucion, comments and evidence on one case row
- remove_evidence: drop one URL from a case's evidence list
- summary: per-result counts over every case sheet (SummaryPolicy decides
  whether Descartado rows count toward the total)
- on_bug_closed: a failed/blocked case goes back to the configured result
  once its last open bug is closed
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence

from .evidence_fs import EXECUTION, EvidenceFile, upload_evidence
from .headers import find_header_index, get_cell_by_logical, set_cell_by_logical
from .logger import get_logger
from .results import ErrorCode, NotFoundError, PreconditionError, QAError, Result, result_boundary
from .workbook import RowLocation, WorkbookStore, cell_text


logger = get_logger(__name__)

NOT_RUN = "Sin ejecutar"
RUNNING = "Ejecutando"
PASSED = "OK"
FAILED = "No_OK"
BLOCKED = "Bloqueado"
DISCARDED = "Descartado"
RESULTS = (NOT_RUN, RUNNING, PASSED, FAILED, BLOCKED, DISCARDED)

# results a closed bug can release
BUG_BOUND_RESULTS = (FAILED, BLOCKED)

DESIGN_DELETED = "Eliminado"


@dataclass
class SummaryPolicy:
    count_discarded: bool = False
    skip_deleted_design: bool = True

    @classmethod
    def from_settings(cls, settings: Dict[str, Any]) -> "SummaryPolicy":
        ex = settings.get("execution") or {}
        return cls(
            count_discarded=bool(ex.get("count_discarded", False)),
            skip_deleted_design=bool(ex.get("skip_deleted_design", True)),
        )


@dataclass
class ExecutionSummary:
    total: int = 0
    sin_ejecutar: int = 0
    ejecutando: int = 0
    bloqueados: int = 0
    ok: int = 0
    no_ok: int = 0
    descartados: int = 0
    porcentaje: int = 0
    descartados_en_total: bool = False
    omitidos_eliminados: int = 0
    por_hoja: Dict[str, int] = field(default_factory=dict)

    def counted(self) -> int:
        """Sum of the per-result counts that make up total."""
        n = self.sin_ejecutar + self.ejecutando + self.bloqueados + self.ok + self.no_ok
        if self.descartados_en_total:
            n += self.descartados
        return n

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


_COUNTER_FOR = {
    NOT_RUN: "sin_ejecutar",
    RUNNING: "ejecutando",
    BLOCKED: "bloqueados",
    PASSED: "ok",
    FAILED: "no_ok",
    DISCARDED: "descartados",
}


def percentage(ok: int, total: int) -> int:
    if total <= 0:
        return 0
    value = Decimal(ok) * 100 / Decimal(total)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_result(value: Any) -> str:
    """Cell value -> result; blank and unknown values read as 'Sin ejecutar'."""
    text = cell_text(value)
    return text if text in RESULTS else NOT_RUN


def split_evidence(value: Any) -> List[str]:
    return [line.strip() for line in cell_text(value).splitlines() if line.strip()]


class ExecutionUpdater:
    def __init__(self, store: WorkbookStore, settings: Optional[Dict[str, Any]] = None, config=None):
        self.store = store
        self.settings = settings or {}
        # ConfigStore; only needed for evidence uploads
        self.config = config

    @property
    def _exec_settings(self) -> Dict[str, Any]:
        return self.settings.get("execution") or {}

    def _timestamp(self, now: datetime) -> str:
        return now.strftime(self._exec_settings.get("timestamp_format") or "%Y-%m-%d %H:%M")

    def _find(self, case_id: str) -> RowLocation:
        loc = self.store.find_case(case_id)
        if loc is None:
            raise NotFoundError(f"Caso no encontrado: {case_id}", details={"caso_id": case_id})
        return loc

    # ------------------------------------------------------------------ single case

    def apply_result(
        self,
        case_id: str,
        result: str,
        comment: Optional[str] = None,
        evidence_urls: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """Write one execution outcome; raises QAError subclasses."""
        if result not in RESULTS:
            raise QAError(
                f"Resultado de ejecución inválido: {result!r}",
                code=ErrorCode.INVALID_VALUE,
                details={"validos": list(RESULTS)},
            )
        now = datetime.now()
        with self.store.transaction():
            loc = self._find(case_id)
            sheet, row, headers = loc.sheet, loc.row, loc.headers

            if not set_cell_by_logical(sheet, row, headers, "ResultadoUltimaEjecucion", result):
                raise PreconditionError(
                    f"La hoja {loc.sheet_name} no tiene columna de resultado de ejecución"
                )
            set_cell_by_logical(sheet, row, headers, "FechaUltimaEjecucion", now)

            if comment:
                if find_header_index(headers, "ComentariosEjecucion") != -1:
                    set_cell_by_logical(sheet, row, headers, "ComentariosEjecucion", comment)
                elif find_header_index(headers, "Notas") != -1:
                    notes = cell_text(get_cell_by_logical(headers, loc.values, "Notas"))
                    if notes:
                        notes = f"{notes}\n\n[Ejecución {self._timestamp(now)}]\n{comment}"
                    else:
                        notes = comment
                    set_cell_by_logical(sheet, row, headers, "Notas", notes)
                else:
                    logger.warning("Case %s has no comments or notes column; comment dropped", case_id)

            # evidence is replaced, not appended, and only when new evidence is given
            if evidence_urls:
                set_cell_by_logical(sheet, row, headers, "EvidenciasURL", "\n".join(evidence_urls))

        logger.info("Case %s (%s row %s) -> %s", case_id, loc.sheet_name, row, result)
        return {"caso_id": case_id, "resultado": result, "hoja": loc.sheet_name, "fila": row}

    @result_boundary("actualizar estado de ejecución")
    def set_execution_result(
        self,
        case_id: str,
        result: str,
        comment: Optional[str] = None,
        evidence_urls: Optional[Sequence[str]] = None,
    ) -> Result:
        data = self.apply_result(case_id, result, comment, evidence_urls)
        return Result.ok("Estado actualizado correctamente", data)

    @result_boundary("guardar ejecución")
    def save_execution(self, payload: Dict[str, Any]) -> Result:
        """
        Validated entry point for an execution form:
        {caso_id, resultado, comentarios?, evidencias?: [url], archivos?: [{nombre, contenido_base64, mime_type}]}
        Uploaded files are stored in the execution evidence folder and their
        URLs appended to the evidence list of this execution.
        """
        case_id = cell_text(payload.get("caso_id"))
        result = cell_text(payload.get("resultado"))
        errors: List[str] = []
        if not case_id:
            errors.append("Falta el ID del caso")
        if not result:
            errors.append("Falta el resultado de la ejecución")
        elif result not in RESULTS:
            errors.append(f"Resultado inválido: {result}")
        if errors:
            raise PreconditionError("; ".join(errors), details={"errores": errors})

        urls = [u for u in (payload.get("evidencias") or []) if cell_text(u)]
        files = payload.get("archivos") or []
        if files:
            urls.extend(self._upload(case_id, files))

        data = self.apply_result(case_id, result, payload.get("comentarios"), urls)
        data["evidencias"] = urls
        return Result.ok("Ejecución guardada", data)

    def _upload(self, case_id: str, files: Sequence[Dict[str, Any]]) -> List[str]:
        if self.config is None:
            raise PreconditionError("No hay configuración para subir evidencias", code=ErrorCode.NO_FOLDER_CONFIGURED)
        folder = self.config.get_evidence_folders().get(EXECUTION, "")
        root_dir = (self.settings.get("evidence") or {}).get("root_dir", "")
        with self.store.reading():
            loc = self._find(case_id)
            title = cell_text(get_cell_by_logical(loc.headers, loc.values, "Titulo"))
        urls = []
        for f in files:
            ref = upload_evidence(
                EvidenceFile(
                    name=f.get("nombre") or "evidencia",
                    content_base64=f.get("contenido_base64") or "",
                    mime_type=f.get("mime_type") or "application/octet-stream",
                ),
                EXECUTION,
                folder,
                root_dir=root_dir,
                case_id=case_id,
                case_title=title,
            )
            urls.append(ref.url)
        return urls

    @result_boundary("eliminar evidencia")
    def remove_evidence(self, case_id: str, url: str) -> Result:
        with self.store.transaction():
            loc = self._find(case_id)
            if find_header_index(loc.headers, "EvidenciasURL") == -1:
                raise PreconditionError("No existe columna EvidenciasURL")
            current = split_evidence(get_cell_by_logical(loc.headers, loc.values, "EvidenciasURL"))
            if not current:
                return Result.ok("El caso no tiene evidencias", {"caso_id": case_id, "evidencias": []})
            remaining = [u for u in current if u != url.strip()]
            set_cell_by_logical(loc.sheet, loc.row, loc.headers, "EvidenciasURL", "\n".join(remaining))
        logger.info("Evidence removed from %s (%d -> %d)", case_id, len(current), len(remaining))
        return Result.ok(
            "Evidencia eliminada correctamente",
            {"caso_id": case_id, "evidencias": remaining, "total_evidencias": len(remaining)},
        )

    # ------------------------------------------------------------------ bug feedback

    def on_bug_closed(self, case_id: str) -> Optional[Dict[str, Any]]:
        """
        Called once the last unresolved bug of a case is closed. Returns the
        applied change, or None when the case's result is left as is.
        """
        target = cell_text(self._exec_settings.get("result_on_last_bug_closed", PASSED))
        if not target:
            return None
        with self.store.transaction():
            loc = self._find(case_id)
            current = normalize_result(get_cell_by_logical(loc.headers, loc.values, "ResultadoUltimaEjecucion"))
            if current not in BUG_BOUND_RESULTS:
                return None
            return self.apply_result(case_id, target, "Último bug abierto cerrado - resultado actualizado")

    # ------------------------------------------------------------------ summary

    def summary(self, policy: Optional[SummaryPolicy] = None) -> ExecutionSummary:
        policy = policy or SummaryPolicy.from_settings(self.settings)
        out = ExecutionSummary(descartados_en_total=policy.count_discarded)

        with self.store.reading():
            for sheet in self.store.case_sheets():
                rows = sheet.all_rows()
                if len(rows) < 2:
                    continue
                headers = rows[0]
                if find_header_index(headers, "ResultadoUltimaEjecucion") == -1:
                    continue
                has_design = find_header_index(headers, "EstadoDiseno") != -1
                sheet_total = 0
                for row in rows[1:]:
                    if not cell_text(get_cell_by_logical(headers, row, "ID")) and not any(
                        cell_text(v) for v in row
                    ):
                        continue
                    if (
                        policy.skip_deleted_design
                        and has_design
                        and cell_text(get_cell_by_logical(headers, row, "EstadoDiseno")) == DESIGN_DELETED
                    ):
                        out.omitidos_eliminados += 1
                        continue
                    result = normalize_result(get_cell_by_logical(headers, row, "ResultadoUltimaEjecucion"))
                    counter = _COUNTER_FOR[result]
                    setattr(out, counter, getattr(out, counter) + 1)
                    if result == DISCARDED and not policy.count_discarded:
                        continue
                    out.total += 1
                    sheet_total += 1
                out.por_hoja[sheet.name] = sheet_total

        out.porcentaje = percentage(out.ok, out.total)
        logger.info(
            "Execution summary: total=%s ok=%s no_ok=%s blocked=%s discarded=%s (%s%%)",
            out.total,
            out.ok,
            out.no_ok,
            out.bloqueados,
            out.descartados,
            out.porcentaje,
        )
        return out

    @result_boundary("obtener resumen")
    def get_summary(self) -> Result:
        return Result.ok("", self.summary().to_dict())
