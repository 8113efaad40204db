"""
workbook.py - Row store over an .xlsx workbook (openpyxl).

The workbook is the datastore: one sheet per entity collection, header in row 1,
one record per row. This module exposes the small contract the services use:

- WorkbookStore.open(path)            -> open (or create) a workbook
- store.sheet_by_name(name)           -> SheetHandle | None
- SheetHandle.all_rows / append_row / write_cell / insert_column
- store.find_row(sheet, id)           -> RowLocation | None
- store.find_case(case_id)            -> RowLocation | None  (all non-reserved sheets)
- store.transaction()                 -> lock + rollback-on-error + save-on-success

Every read-locate-write sequence in the services runs inside transaction(), so two
callers sharing a store never interleave between locating a row and writing it.
"""

from __future__ import annotations

import io
import zipfile
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, List, Optional, Sequence

from openpyxl import Workbook, load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .headers import find_header_index
from .logger import get_logger
from .results import StorageError


logger = get_logger(__name__)

DEFAULT_RESERVED_SHEETS = ("Config", "Bugs", "Ejecuciones", "Regresiones")


def cell_text(value: Any) -> str:
    """Cell value as trimmed text (None -> "")."""
    if value is None:
        return ""
    return str(value).strip()


class SheetHandle:
    """Thin wrapper around an openpyxl worksheet; rows and columns are 1-based."""

    def __init__(self, ws):
        self._ws = ws

    @property
    def name(self) -> str:
        return self._ws.title

    def all_rows(self) -> List[List[Any]]:
        rows = [list(r) for r in self._ws.iter_rows(values_only=True)]
        # openpyxl reports one empty row for a blank sheet; drop trailing blank rows
        while rows and all(v is None or v == "" for v in rows[-1]):
            rows.pop()
        return rows

    def headers(self) -> List[Any]:
        if self._ws.max_row < 1:
            return []
        header = [c.value for c in self._ws[1]]
        while header and header[-1] is None:
            header.pop()
        return header

    def append_row(self, values: Sequence[Any]) -> int:
        """Append after the last non-blank row; returns the new row number."""
        row_no = len(self.all_rows()) + 1
        for col, value in enumerate(values, start=1):
            self._ws.cell(row=row_no, column=col, value=value)
        return row_no

    def read_cell(self, row: int, col: int) -> Any:
        return self._ws.cell(row=row, column=col).value

    def write_cell(self, row: int, col: int, value: Any) -> None:
        self._ws.cell(row=row, column=col, value=value)

    def insert_column(self, header: str) -> int:
        """Add a header column after the last one; returns its 1-based index."""
        col = len(self.headers()) + 1
        self._ws.cell(row=1, column=col, value=header)
        return col

    def ensure_columns(self, names: Sequence[str]) -> List[Any]:
        """Append any missing header and return the refreshed header row."""
        headers = self.headers()
        for name in names:
            if find_header_index(headers, name) == -1:
                self.insert_column(name)
                headers = self.headers()
        return headers


@dataclass
class RowLocation:
    sheet: SheetHandle
    row: int  # 1-based sheet row
    headers: List[Any]
    values: List[Any]

    @property
    def sheet_name(self) -> str:
        return self.sheet.name


class WorkbookStore:
    def __init__(
        self,
        workbook: Workbook,
        path: Optional[Path] = None,
        reserved_sheets: Optional[Sequence[str]] = None,
        deep_link_base: str = "",
        placeholder_title: Optional[str] = None,
    ):
        self._wb = workbook
        self.path = Path(path) if path is not None else None
        self.reserved_sheets = tuple(reserved_sheets or DEFAULT_RESERVED_SHEETS)
        self.deep_link_base = deep_link_base
        # a fresh openpyxl workbook ships one empty sheet; it is reused by the first create_sheet()
        self._placeholder_title = placeholder_title
        self._lock = threading.RLock()
        self._depth = 0

    # ------------------------------------------------------------------ open / save

    @classmethod
    def open(cls, path: str | Path | None, **kwargs) -> "WorkbookStore":
        """Open an existing workbook or start a new one (saved on first commit)."""
        if path is None:
            wb = Workbook()
            return cls(wb, None, placeholder_title=wb.active.title, **kwargs)
        p = Path(path)
        if not p.exists():
            logger.info("Workbook %s does not exist, creating a new one", p)
            wb = Workbook()
            return cls(wb, p, placeholder_title=wb.active.title, **kwargs)
        try:
            wb = load_workbook(p)
        except (OSError, InvalidFileException, zipfile.BadZipFile, KeyError, ValueError) as e:
            raise StorageError(f"No se pudo abrir el libro {p}: {e}") from e
        return cls(wb, p, **kwargs)

    def save(self) -> None:
        if self.path is None:
            return
        try:
            self._wb.save(self.path)
        except OSError as e:
            raise StorageError(f"No se pudo guardar el libro {self.path}: {e}") from e

    @property
    def uri(self) -> str:
        if self.deep_link_base:
            return self.deep_link_base
        if self.path is not None:
            return self.path.resolve().as_uri()
        return "workbook"

    # ------------------------------------------------------------------ transactions

    @contextmanager
    def transaction(self) -> Iterator["WorkbookStore"]:
        """
        Hold the store lock for the block. The outermost transaction snapshots the
        workbook on entry, restores it if the block raises, and saves on success.
        """
        with self._lock:
            outermost = self._depth == 0
            snapshot = None
            placeholder = self._placeholder_title
            if outermost:
                snapshot = io.BytesIO()
                self._wb.save(snapshot)
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._restore(snapshot, placeholder)
                raise
            self._depth -= 1
            if outermost:
                try:
                    self.save()
                except StorageError:
                    # memory must not run ahead of the file
                    self._restore(snapshot, placeholder)
                    raise

    def _restore(self, snapshot: io.BytesIO, placeholder: Optional[str]) -> None:
        logger.warning("Rolling back workbook changes")
        snapshot.seek(0)
        self._wb = load_workbook(snapshot)
        self._placeholder_title = placeholder

    @contextmanager
    def reading(self) -> Iterator["WorkbookStore"]:
        """Hold the store lock for a read-only block (no snapshot, no save)."""
        with self._lock:
            yield self

    # ------------------------------------------------------------------ sheets

    def sheets(self) -> List[SheetHandle]:
        return [SheetHandle(ws) for ws in self._wb.worksheets]

    def sheet_by_name(self, name: str) -> Optional[SheetHandle]:
        if name in self._wb.sheetnames and name != self._placeholder_title:
            return SheetHandle(self._wb[name])
        return None

    def create_sheet(self, name: str, headers: Optional[Sequence[str]] = None, index: Optional[int] = None) -> SheetHandle:
        if self._placeholder_title is not None and self._placeholder_title in self._wb.sheetnames:
            ws = self._wb[self._placeholder_title]
            ws.title = name
            self._placeholder_title = None
        else:
            ws = self._wb.create_sheet(title=name, index=index)
        handle = SheetHandle(ws)
        if headers:
            for col, h in enumerate(headers, start=1):
                handle.write_cell(1, col, h)
        logger.info("Sheet %s created", name)
        return handle

    def case_sheets(self) -> List[SheetHandle]:
        return [
            s for s in self.sheets()
            if s.name not in self.reserved_sheets and s.name != self._placeholder_title
        ]

    # ------------------------------------------------------------------ lookup

    def find_row(self, sheet: SheetHandle, id_value: Any, id_field: str = "ID") -> Optional[RowLocation]:
        """Linear scan of one sheet for an exact (trimmed, string) ID match."""
        target = cell_text(id_value)
        if not target:
            return None
        rows = sheet.all_rows()
        if len(rows) < 2:
            return None
        headers = rows[0]
        col = find_header_index(headers, id_field)
        if col == -1:
            return None
        for i, row in enumerate(rows[1:], start=2):
            if col < len(row) and cell_text(row[col]) == target:
                return RowLocation(sheet=sheet, row=i, headers=list(headers), values=list(row))
        return None

    def find_case(self, case_id: Any) -> Optional[RowLocation]:
        """Locate a case across every non-reserved sheet (IDs are workbook-unique)."""
        for sheet in self.case_sheets():
            loc = self.find_row(sheet, case_id)
            if loc is not None:
                logger.debug("Case %s found in %s row %s", case_id, sheet.name, loc.row)
                return loc
        logger.debug("Case %s not found in any sheet", case_id)
        return None

    def case_deep_link(self, loc: RowLocation) -> str:
        """Direct link to a row: <workbook uri>#'<sheet>'!A<row>."""
        return f"{self.uri}#'{loc.sheet_name}'!A{loc.row}"
