"""
crossref.py - Bug <-> test case references.

The relation is stored on both sides: the bug row's CasosRelacionados and the
case row's LinkBugRelacionado, both ", "-joined ID lists. Every change goes
through link()/unlink(), which resolve all rows first and then write both
sides inside one store transaction, so either every cell changes or none does.

LinkCasoPrueba (one deep link per related case, newline-joined) is derived
from CasosRelacionados and recomputed after every link/unlink.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Set, Tuple

from .bug_sheet import (
    NO,
    YES,
    all_bug_records,
    bugs_sheet,
    find_bug,
    join_id_list,
    parse_id_list,
)
from .headers import find_header_index, get_cell_by_logical, set_cell_by_logical
from .logger import get_logger
from .results import NotFoundError, PreconditionError, Result, result_boundary
from .workbook import RowLocation, WorkbookStore, cell_text


logger = get_logger(__name__)

CASE_BUGS_FIELD = "LinkBugRelacionado"

Edge = Tuple[str, str]  # (bug id, case id)


@dataclass
class Divergence:
    bug_id: str
    case_id: str
    kind: str  # "solo_en_bug" | "solo_en_caso" | "caso_inexistente" | "flag_incoherente"
    detail: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"bug_id": self.bug_id, "caso_id": self.case_id, "tipo": self.kind, "detalle": self.detail}


def _case_bug_ids(loc: RowLocation) -> List[str]:
    return parse_id_list(get_cell_by_logical(loc.headers, loc.values, CASE_BUGS_FIELD))


def _write_case_bug_ids(loc: RowLocation, bug_ids: List[str]) -> None:
    # re-read: an earlier write in the same transaction may have added the column
    headers = loc.sheet.headers()
    if find_header_index(headers, CASE_BUGS_FIELD) == -1:
        loc.sheet.insert_column(CASE_BUGS_FIELD)
        headers = loc.sheet.headers()
    loc.headers = list(headers)
    set_cell_by_logical(loc.sheet, loc.row, headers, CASE_BUGS_FIELD, join_id_list(bug_ids))


class CrossReference:
    def __init__(self, store: WorkbookStore):
        self.store = store

    # ------------------------------------------------------------------ resolution

    def _resolve_cases(self, case_ids: Iterable[str]) -> Dict[str, RowLocation]:
        """All-or-nothing: raises NotFoundError naming every missing case."""
        found: Dict[str, RowLocation] = {}
        missing: List[str] = []
        for case_id in case_ids:
            loc = self.store.find_case(case_id)
            if loc is None:
                missing.append(case_id)
            else:
                found[case_id] = loc
        if missing:
            raise NotFoundError(
                "Caso(s) no encontrado(s): " + ", ".join(missing),
                details={"casos_no_encontrados": missing},
            )
        return found

    # ------------------------------------------------------------------ link / unlink

    def link_cases(self, bug_id: str, case_ids: Any) -> Dict[str, Any]:
        """
        Add every case to the bug and the bug to every case. Raises on any
        missing row before writing; callers get the bug's resulting case list.
        """
        ids = parse_id_list(case_ids)
        if not ids:
            raise PreconditionError("No se indicaron casos para vincular")

        with self.store.transaction():
            sheet = bugs_sheet(self.store, create=True)
            bug_loc = find_bug(self.store, bug_id, sheet)
            case_locs = self._resolve_cases(ids)

            current = parse_id_list(get_cell_by_logical(bug_loc.headers, bug_loc.values, "CasosRelacionados"))
            added = [cid for cid in ids if cid not in current]
            current.extend(added)
            set_cell_by_logical(sheet, bug_loc.row, bug_loc.headers, "CasosRelacionados", join_id_list(current))
            set_cell_by_logical(sheet, bug_loc.row, bug_loc.headers, "TieneCasoDiseñado", YES)

            for case_id, loc in case_locs.items():
                bugs = _case_bug_ids(loc)
                if bug_id not in bugs:
                    bugs.append(bug_id)
                    _write_case_bug_ids(loc, bugs)
                    logger.debug("Case %s now references %s", case_id, bug_id)

            links = self._refresh(bug_id)

        logger.info("Bug %s linked to %s (new: %s)", bug_id, ", ".join(ids), ", ".join(added) or "-")
        return {"bug_id": bug_id, "casos_relacionados": current, "agregados": added, "links": links}

    def unlink_case(self, bug_id: str, case_id: str) -> Dict[str, Any]:
        case_id = cell_text(case_id)
        if not case_id:
            raise PreconditionError("No se indicó el caso a desvincular")

        with self.store.transaction():
            sheet = bugs_sheet(self.store, create=True)
            bug_loc = find_bug(self.store, bug_id, sheet)
            case_loc = self._resolve_cases([case_id])[case_id]

            current = parse_id_list(get_cell_by_logical(bug_loc.headers, bug_loc.values, "CasosRelacionados"))
            remaining = [cid for cid in current if cid != case_id]
            set_cell_by_logical(sheet, bug_loc.row, bug_loc.headers, "CasosRelacionados", join_id_list(remaining))
            set_cell_by_logical(sheet, bug_loc.row, bug_loc.headers, "TieneCasoDiseñado", YES if remaining else NO)

            bugs = _case_bug_ids(case_loc)
            if bug_id in bugs:
                _write_case_bug_ids(case_loc, [b for b in bugs if b != bug_id])

            links = self._refresh(bug_id)

        logger.info("Bug %s unlinked from %s", bug_id, case_id)
        return {"bug_id": bug_id, "casos_relacionados": remaining, "eliminado": case_id, "links": links}

    @result_boundary("vincular bug con caso")
    def link(self, bug_id: str, case_ids: Any) -> Result:
        data = self.link_cases(bug_id, case_ids)
        return Result.ok("Bug vinculado con caso(s) exitosamente", data)

    @result_boundary("desvincular bug de caso")
    def unlink(self, bug_id: str, case_id: str) -> Result:
        data = self.unlink_case(bug_id, case_id)
        return Result.ok("Bug desvinculado del caso", data)

    # ------------------------------------------------------------------ deep links

    def case_deep_link(self, loc: RowLocation) -> str:
        return self.store.case_deep_link(loc)

    def _refresh(self, bug_id: str) -> List[str]:
        """Rewrite LinkCasoPrueba from the bug's current case list. Must run inside a transaction."""
        sheet = bugs_sheet(self.store, create=True)
        bug_loc = find_bug(self.store, bug_id, sheet)
        links: List[str] = []
        for case_id in parse_id_list(get_cell_by_logical(bug_loc.headers, bug_loc.values, "CasosRelacionados")):
            loc = self.store.find_case(case_id)
            if loc is None:
                logger.warning("Bug %s references missing case %s; no deep link", bug_id, case_id)
                continue
            links.append(self.case_deep_link(loc))
        set_cell_by_logical(sheet, bug_loc.row, bug_loc.headers, "LinkCasoPrueba", "\n".join(links))
        return links

    @result_boundary("actualizar LinkCasoPrueba")
    def refresh_case_links(self, bug_id: str) -> Result:
        with self.store.transaction():
            links = self._refresh(bug_id)
        return Result.ok("Links de casos actualizados", {"bug_id": bug_id, "links": links})

    # ------------------------------------------------------------------ integrity

    def bug_side_edges(self) -> Set[Edge]:
        with self.store.reading():
            records = all_bug_records(self.store)
        return {
            (cell_text(bug.get("ID")), case_id)
            for bug in records
            for case_id in parse_id_list(bug.get("CasosRelacionados"))
        }

    def case_side_edges(self) -> Set[Edge]:
        edges: Set[Edge] = set()
        with self.store.reading():
            for sheet in self.store.case_sheets():
                rows = sheet.all_rows()
                if len(rows) < 2:
                    continue
                headers = rows[0]
                if find_header_index(headers, "ID") == -1:
                    continue
                for row in rows[1:]:
                    case_id = cell_text(get_cell_by_logical(headers, row, "ID"))
                    if not case_id:
                        continue
                    for bug_id in parse_id_list(get_cell_by_logical(headers, row, CASE_BUGS_FIELD)):
                        edges.add((bug_id, case_id))
        return edges

    def check_consistency(self) -> List[Divergence]:
        """Edges recorded on one side only, and TieneCasoDiseñado flags that disagree with the list."""
        bug_edges = self.bug_side_edges()
        case_edges = self.case_side_edges()
        found: List[Divergence] = []

        with self.store.reading():
            records = all_bug_records(self.store)
            known_bugs = {cell_text(b.get("ID")) for b in records}
            for bug_id, case_id in sorted(bug_edges - case_edges):
                if self.store.find_case(case_id) is None:
                    found.append(Divergence(bug_id, case_id, "caso_inexistente", "El caso no existe en ninguna hoja"))
                else:
                    found.append(Divergence(bug_id, case_id, "solo_en_bug", "Falta el bug en LinkBugRelacionado"))

        for bug_id, case_id in sorted(case_edges - bug_edges):
            detail = "Falta el caso en CasosRelacionados" if bug_id in known_bugs else "El bug no existe"
            found.append(Divergence(bug_id, case_id, "solo_en_caso", detail))

        for bug in records:
            has_cases = bool(parse_id_list(bug.get("CasosRelacionados")))
            flag = cell_text(bug.get("TieneCasoDiseñado"))
            if (flag == YES) != has_cases:
                found.append(
                    Divergence(cell_text(bug.get("ID")), "", "flag_incoherente", f"TieneCasoDiseñado={flag or '-'}")
                )

        if found:
            logger.warning("Cross-reference check found %d divergence(s)", len(found))
        return found

    @result_boundary("reparar referencias")
    def repair(self) -> Result:
        """
        Complete one-sided edges by writing the missing side, and fix
        TieneCasoDiseñado. Edges pointing at rows that no longer exist are left
        untouched and reported.
        """
        divergences = self.check_consistency()
        repaired: List[Dict[str, str]] = []
        skipped: List[Dict[str, str]] = []

        with self.store.transaction():
            sheet = bugs_sheet(self.store, create=True)
            for d in divergences:
                if d.kind == "solo_en_bug":
                    loc = self.store.find_case(d.case_id)
                    bugs = _case_bug_ids(loc)
                    if d.bug_id not in bugs:
                        _write_case_bug_ids(loc, bugs + [d.bug_id])
                    repaired.append(d.to_dict())
                elif d.kind == "solo_en_caso" and self.store.find_row(sheet, d.bug_id) is not None:
                    bug_loc = find_bug(self.store, d.bug_id, sheet)
                    current = parse_id_list(
                        get_cell_by_logical(bug_loc.headers, bug_loc.values, "CasosRelacionados")
                    )
                    if d.case_id not in current:
                        current.append(d.case_id)
                    set_cell_by_logical(sheet, bug_loc.row, bug_loc.headers, "CasosRelacionados", join_id_list(current))
                    set_cell_by_logical(sheet, bug_loc.row, bug_loc.headers, "TieneCasoDiseñado", YES)
                    self._refresh(d.bug_id)
                    repaired.append(d.to_dict())
                elif d.kind == "flag_incoherente":
                    bug_loc = find_bug(self.store, d.bug_id, sheet)
                    has_cases = bool(
                        parse_id_list(get_cell_by_logical(bug_loc.headers, bug_loc.values, "CasosRelacionados"))
                    )
                    set_cell_by_logical(
                        sheet, bug_loc.row, bug_loc.headers, "TieneCasoDiseñado", YES if has_cases else NO
                    )
                    repaired.append(d.to_dict())
                else:
                    skipped.append(d.to_dict())

        logger.info("Cross-reference repair: %d fixed, %d skipped", len(repaired), len(skipped))
        return Result.ok(
            f"{len(repaired)} referencia(s) reparada(s)",
            {"reparadas": repaired, "omitidas": skipped},
        )
