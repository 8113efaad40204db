"""
config_store.py - Key/value configuration kept in the workbook's "Config" sheet.

Layout: header row "Clave | Valor | Descripción", one key per row. The sheet is
created with DEFAULT_CONFIG the first time any key is read or written.
Counters (ultimo_bug_id, ...) are allocated with next_counter(), which runs the
read-increment-write inside one store transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from .evidence_fs import validate_folder
from .logger import get_logger
from .results import ErrorCode, PreconditionError, QAError
from .trello_api import TrelloConfig
from .workbook import SheetHandle, WorkbookStore, cell_text


logger = get_logger(__name__)

CONFIG_SHEET = "Config"
CONFIG_HEADERS = ["Clave", "Valor", "Descripción"]

BUG_COUNTER_KEY = "ultimo_bug_id"
CASE_COUNTER_KEY = "ultimo_caso_id"

TRELLO_KEYS = {
    "api_key": "trello_api_key",
    "token": "trello_token",
    "board_id": "trello_board_id",
    "list_id": "trello_list_id",
    "board_url": "trello_board_url",
    "board_name": "trello_board_name",
    "list_name": "trello_list_name",
}

EVIDENCE_FOLDER_KEYS = {
    "ejecucion": "carpeta_evidencias_ejecuciones",
    "bug": "carpeta_evidencias_bugs",
}


def _default_rows(workspace_name: str) -> List[Tuple[str, Any, str]]:
    return [
        ("workspace_nombre", workspace_name, "Nombre del workspace"),
        ("workspace_creado", datetime.now().isoformat(timespec="seconds"), "Fecha de creación"),
        ("workspace_version", "1.0", "Versión del sistema"),
        ("workspace_activo", "SI", "Estado del workspace"),
        (CASE_COUNTER_KEY, "0", "Contador global de casos"),
        (BUG_COUNTER_KEY, "0", "Contador global de bugs"),
        ("trello_api_key", "", "API Key de Trello (32 caracteres)"),
        ("trello_token", "", "Token de Trello (64 caracteres)"),
        ("trello_board_id", "", "ID del tablero de Trello"),
        ("trello_list_id", "", "ID de la lista de Trello para bugs"),
        ("trello_board_url", "", "URL del tablero de Trello"),
        ("trello_board_name", "", "Nombre del tablero de Trello"),
        ("trello_list_name", "", "Nombre de la lista de Trello"),
        ("carpeta_evidencias_ejecuciones", "", "Carpeta de evidencias de ejecuciones"),
        ("carpeta_evidencias_bugs", "", "Carpeta de evidencias de bugs"),
    ]


class ConfigStore:
    def __init__(self, store: WorkbookStore, evidence_root: str = ""):
        self.store = store
        # base for relative evidence folders; same root the uploads resolve against
        self.evidence_root = evidence_root or ""

    # ------------------------------------------------------------------ sheet

    def _sheet(self) -> SheetHandle:
        sheet = self.store.sheet_by_name(CONFIG_SHEET)
        if sheet is not None:
            return sheet
        logger.info("Config sheet missing, creating it with defaults")
        sheet = self.store.create_sheet(CONFIG_SHEET, CONFIG_HEADERS, index=0)
        name = self.store.path.stem if self.store.path is not None else "workspace"
        for row in _default_rows(name):
            sheet.append_row(row)
        return sheet

    def _find_key_row(self, sheet: SheetHandle, key: str) -> Optional[int]:
        for i, row in enumerate(sheet.all_rows()[1:], start=2):
            if row and cell_text(row[0]) == key:
                return i
        return None

    # ------------------------------------------------------------------ generic access

    def get_all(self) -> Dict[str, Any]:
        with self.store.reading():
            sheet = self.store.sheet_by_name(CONFIG_SHEET)
            if sheet is None:
                with self.store.transaction():
                    sheet = self._sheet()
            rows = sheet.all_rows()
        config: Dict[str, Any] = {}
        for row in rows[1:]:
            key = cell_text(row[0]) if row else ""
            if key:
                config[key] = row[1] if len(row) > 1 else None
        return config

    def get(self, key: str, default: Any = None) -> Any:
        value = self.get_all().get(key)
        return default if value is None else value

    def set(self, key: str, value: Any, description: str = "") -> None:
        with self.store.transaction():
            sheet = self._sheet()
            row = self._find_key_row(sheet, key)
            if row is None:
                sheet.append_row([key, value, description])
            else:
                sheet.write_cell(row, 2, value)

    def set_many(self, values: Dict[str, Any]) -> None:
        with self.store.transaction():
            for key, value in values.items():
                self.set(key, value)

    def next_counter(self, key: str) -> int:
        """Increment and persist an integer counter; returns the new value."""
        with self.store.transaction():
            raw = cell_text(self.get(key, "0")) or "0"
            try:
                current = int(float(raw))
            except ValueError as e:
                raise QAError(
                    f"Contador {key} con valor no numérico: {raw!r}", code=ErrorCode.INVALID_VALUE
                ) from e
            new_value = current + 1
            self.set(key, str(new_value))
        logger.debug("Counter %s -> %s", key, new_value)
        return new_value

    # ------------------------------------------------------------------ Trello

    def get_trello_config(self) -> TrelloConfig:
        config = self.get_all()
        values = {attr: cell_text(config.get(key)) for attr, key in TRELLO_KEYS.items()}
        return TrelloConfig(**values)

    def save_trello_config(self, cfg: TrelloConfig) -> None:
        logger.info(
            "Saving Trello config (api key %s, token %s, list %s)",
            "present" if cfg.api_key else "empty",
            "present" if cfg.token else "empty",
            cfg.list_id or "-",
        )
        self.set_many({key: getattr(cfg, attr) or "" for attr, key in TRELLO_KEYS.items()})

    def clear_trello_config(self) -> None:
        self.set_many({key: "" for key in TRELLO_KEYS.values()})

    def validate_trello_config(self) -> Dict[str, Any]:
        cfg = self.get_trello_config()
        errors: List[str] = []
        if not cfg.api_key:
            errors.append("Falta API Key de Trello")
        if not cfg.token:
            errors.append("Falta Token de Trello")
        if not cfg.list_id:
            errors.append("Falta seleccionar lista de destino")
        if cfg.api_key and len(cfg.api_key) != 32:
            errors.append("API Key de Trello inválida (debe tener 32 caracteres)")
        if cfg.token and len(cfg.token) != 64:
            errors.append("Token de Trello inválido (debe tener 64 caracteres)")
        return {"valido": not errors, "errores": errors, "configurado": cfg.configured}

    # ------------------------------------------------------------------ evidence folders

    def get_evidence_folders(self) -> Dict[str, str]:
        config = self.get_all()
        return {kind: cell_text(config.get(key)) for kind, key in EVIDENCE_FOLDER_KEYS.items()}

    def save_evidence_folders(self, ejecucion: Optional[str] = None, bug: Optional[str] = None) -> Dict[str, str]:
        """Validate and store evidence folders; raises PreconditionError listing every invalid one."""
        to_save: Dict[str, str] = {}
        errors: List[str] = []
        for kind, folder in (("ejecucion", ejecucion), ("bug", bug)):
            if not folder or not folder.strip():
                continue
            ok, message = validate_folder(folder, root_dir=self.evidence_root)
            if ok:
                to_save[EVIDENCE_FOLDER_KEYS[kind]] = folder.strip()
            else:
                errors.append(f"{kind}: {message}")
        if errors:
            raise PreconditionError("Errores de validación:\n" + "\n".join(errors))
        if not to_save:
            raise PreconditionError("No se proporcionaron carpetas válidas")
        self.set_many(to_save)
        return to_save
