"""Read-only access to test cases spread over the case sheets."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .crossref import CASE_BUGS_FIELD
from .bug_sheet import parse_id_list
from .execution import normalize_result
from .headers import find_header_index, get_cell_by_logical, row_to_logical
from .results import NotFoundError, Result, result_boundary
from .workbook import RowLocation, WorkbookStore, cell_text


def case_record(store: WorkbookStore, loc: RowLocation) -> Dict[str, Any]:
    case = row_to_logical(loc.headers, loc.values)
    case["hoja"] = loc.sheet_name
    case["fila"] = loc.row
    case["link"] = store.case_deep_link(loc)
    case["resultado"] = normalize_result(get_cell_by_logical(loc.headers, loc.values, "ResultadoUltimaEjecucion"))
    case["bugs"] = parse_id_list(get_cell_by_logical(loc.headers, loc.values, CASE_BUGS_FIELD))
    return case


class CaseQueries:
    def __init__(self, store: WorkbookStore):
        self.store = store

    @result_boundary("obtener caso")
    def get_case(self, case_id: str) -> Result:
        with self.store.reading():
            loc = self.store.find_case(case_id)
            if loc is None:
                raise NotFoundError(f"Caso no encontrado: {case_id}", details={"caso_id": case_id})
            return Result.ok("", case_record(self.store, loc))

    @result_boundary("listar casos")
    def list_cases(self, sheet_name: Optional[str] = None) -> Result:
        cases: List[Dict[str, Any]] = []
        with self.store.reading():
            sheets = self.store.case_sheets()
            if sheet_name is not None:
                sheets = [s for s in sheets if s.name == sheet_name]
                if not sheets:
                    raise NotFoundError(f"Hoja de casos no encontrada: {sheet_name}")
            for sheet in sheets:
                rows = sheet.all_rows()
                if len(rows) < 2 or find_header_index(rows[0], "ID") == -1:
                    continue
                headers = list(rows[0])
                for i, row in enumerate(rows[1:], start=2):
                    if not cell_text(get_cell_by_logical(headers, row, "ID")):
                        continue
                    loc = RowLocation(sheet=sheet, row=i, headers=headers, values=list(row))
                    cases.append(case_record(self.store, loc))
        return Result.ok("", {"casos": cases, "total": len(cases)})
