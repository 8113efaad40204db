"""
evidence_fs.py - Filesystem blob storage for evidence attachments.

Responsibilities:
- decode base64 uploads and write them into the configured evidence folder
- name files after the case / bug they document
- resolve configured folders (absolute, or relative to evidence.root_dir)
"""

from __future__ import annotations

import base64
import binascii
import os
import re
import stat
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .logger import get_logger
from .results import ErrorCode, PreconditionError, QAError


logger = get_logger(__name__)

EXECUTION = "ejecucion"
BUG = "bug"


@dataclass
class FileRef:
    path: Path
    mime_type: str = "application/octet-stream"

    @property
    def url(self) -> str:
        return self.path.resolve().as_uri()

    def set_public(self) -> None:
        """Make the file world-readable."""
        mode = self.path.stat().st_mode
        self.path.chmod(mode | stat.S_IRUSR | stat.S_IRGRP | stat.S_IROTH)


@dataclass
class EvidenceFile:
    name: str
    content_base64: str
    mime_type: str = "application/octet-stream"


def decode_base64(data: str) -> bytes:
    # data URLs ("data:image/png;base64,....") come straight from browser uploads
    if data.startswith("data:") and "," in data:
        data = data.split(",", 1)[1]
    try:
        return base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise QAError(f"Contenido base64 inválido: {e}", code=ErrorCode.INVALID_VALUE) from e


def resolve_folder(folder: str, root_dir: str = "") -> Path:
    p = Path(folder).expanduser()
    if not p.is_absolute() and root_dir:
        p = Path(root_dir).expanduser() / p
    return p


def validate_folder(folder: str, root_dir: str = "") -> Tuple[bool, str]:
    """(valid, message) for a configured evidence folder."""
    if not folder or not folder.strip():
        return False, "Ruta vacía"
    p = resolve_folder(folder.strip(), root_dir)
    if not p.is_dir():
        return False, f"La carpeta no existe: {p}"
    if not os.access(p, os.W_OK):
        return False, "No se puede escribir en la carpeta. Verifica permisos."
    return True, f"Carpeta válida: {p.name}"


def create_file(folder: Path, content: bytes, mime_type: str, name: str) -> FileRef:
    folder.mkdir(parents=True, exist_ok=True)
    target = folder / name
    # never overwrite an existing evidence file
    counter = 1
    while target.exists():
        target = folder / f"{Path(name).stem}({counter}){Path(name).suffix}"
        counter += 1
    target.write_bytes(content)
    return FileRef(path=target, mime_type=mime_type)


def clean_name_text(text: Optional[str], max_length: int) -> str:
    """Strip accents and symbols, spaces -> '_', cut to max_length; 'Sin_titulo' when nothing is left."""
    if not text:
        return "Sin_titulo"
    cleaned = unicodedata.normalize("NFD", text)
    cleaned = "".join(ch for ch in cleaned if unicodedata.category(ch) != "Mn")
    cleaned = re.sub(r"[^a-zA-Z0-9\s-]", "", cleaned)
    cleaned = re.sub(r"\s+", "_", cleaned)
    cleaned = re.sub(r"_+", "_", cleaned).strip("_")
    cleaned = cleaned[:max_length]
    return cleaned or "Sin_titulo"


def evidence_file_name(
    original_name: str,
    kind: str,
    case_id: str = "",
    case_title: str = "",
    bug_title: str = "",
) -> str:
    """
    Execution evidence: <case>-<case title>_<name><ext>
    Bug evidence:       <case>-<case title>-<bug title>_<name><ext>
                        SIN_CASO-<bug title>_<name><ext> when no case is related
    """
    base, ext = os.path.splitext(original_name)
    base = base or original_name
    if kind == EXECUTION:
        return f"{case_id}-{clean_name_text(case_title, 50)}_{base}{ext}"
    if case_id:
        return f"{case_id}-{clean_name_text(case_title, 30)}-{clean_name_text(bug_title, 30)}_{base}{ext}"
    return f"SIN_CASO-{clean_name_text(bug_title, 50)}_{base}{ext}"


def upload_evidence(
    file: EvidenceFile,
    kind: str,
    folder: str,
    root_dir: str = "",
    case_id: str = "",
    case_title: str = "",
    bug_title: str = "",
) -> FileRef:
    """Store one uploaded file in the folder configured for its kind and return its reference."""
    if not folder:
        raise PreconditionError(
            f"No hay carpeta configurada para {kind}", code=ErrorCode.NO_FOLDER_CONFIGURED
        )
    target_dir = resolve_folder(folder, root_dir)
    if not target_dir.is_dir():
        raise PreconditionError(f"Carpeta inválida: {target_dir}", code=ErrorCode.INVALID_FOLDER)

    name = evidence_file_name(file.name, kind, case_id, case_title, bug_title)
    logger.info("Uploading %s evidence %s as %s", kind, file.name, name)
    ref = create_file(target_dir, decode_base64(file.content_base64), file.mime_type, name)
    try:
        ref.set_public()
    except OSError:
        logger.warning("Could not relax permissions on %s", ref.path, exc_info=True)
    return ref
