"""
settings.py - Process-level settings stored as JSON (qa_settings.json).

Workbook-scoped values (counters, Trello credentials, evidence folders) live in
the Config sheet instead; see config_store.py.
"""

import json
import os
from typing import Any, Dict

from .logger import get_logger


logger = get_logger(__name__)


DEFAULT_SETTINGS: Dict[str, Any] = {
    "workbook": {
        # sheets that never hold test cases
        "reserved_sheets": ["Config", "Bugs", "Ejecuciones", "Regresiones"],
        # base used for case deep links; empty means the workbook file URI
        "deep_link_base": "",
    },
    "execution": {
        # whether "Descartado" rows count toward the summary total
        "count_discarded": False,
        # skip rows whose design state is "Eliminado"
        "skip_deleted_design": True,
        # result a No_OK/Bloqueado case takes when its last open bug closes ("" disables)
        "result_on_last_bug_closed": "OK",
        # datetime.strftime format for the [Ejecución ...] header in Notas
        "timestamp_format": "%Y-%m-%d %H:%M",
    },
    "trello": {
        "api_base": "https://api.trello.com/1",
        "timeout": 10.0,
        # pause between repeated label calls (seconds)
        "label_delay": 0.1,
    },
    "evidence": {
        # root used when a configured folder is relative
        "root_dir": "",
    },
    "user": {
        # actor recorded as DetectadoPor / EliminadoPor; empty uses $USER
        "email": "",
    },
}


SETTINGS_FILE_NAME = "qa_settings.json"


def default_path() -> str:
    """Settings file path: $QA_SETTINGS_FILE or qa_settings.json in the working directory."""
    return os.environ.get("QA_SETTINGS_FILE") or os.path.join(os.getcwd(), SETTINGS_FILE_NAME)


def _deep_merge(defaults: Dict[str, Any], user: Dict[str, Any]) -> Dict[str, Any]:
    """Recursive merge; user values win, nested sections merge key by key."""
    merged: Dict[str, Any] = dict(user)
    for key, default in defaults.items():
        override = user.get(key)
        if isinstance(default, dict):
            merged[key] = _deep_merge(default, override if isinstance(override, dict) else {})
        elif key not in user:
            merged[key] = default
    return merged


def _read_json(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        return {}
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return {}
    return data if isinstance(data, dict) else {}


def load_settings(path: str | None = None) -> Dict[str, Any]:
    """Settings from JSON over DEFAULT_SETTINGS; a missing or malformed file yields the defaults."""
    return _deep_merge(DEFAULT_SETTINGS, _read_json(path or default_path()))


def save_settings(settings: Dict[str, Any], path: str | None = None) -> None:
    with open(path or default_path(), "w", encoding="utf-8") as f:
        json.dump(settings, f, ensure_ascii=False, indent=2)


def current_user(settings: Dict[str, Any]) -> str:
    """Actor recorded on bugs: settings user.email, then $USER, then a fixed placeholder."""
    email = str((settings.get("user") or {}).get("email") or "").strip()
    return email or os.environ.get("USER") or "usuario@qa.com"
