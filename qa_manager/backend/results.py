"""
results.py - Error taxonomy and the result shape returned by every public operation.

Domain code raises QAError subclasses; @result_boundary turns them into a Result
at the public edge so callers always get {success, mensaje, data, codigo}.
"""

from __future__ import annotations

import functools
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .logger import get_logger


logger = get_logger(__name__)


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    MISSING_PRECONDITION = "MISSING_PRECONDITION"
    INVALID_VALUE = "INVALID_VALUE"
    STORAGE_ERROR = "STORAGE_ERROR"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"
    ALREADY_SYNCED = "ALREADY_SYNCED"
    # tracker
    TRACKER_NOT_CONFIGURED = "TRACKER_NOT_CONFIGURED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    TRACKER_ERROR = "TRACKER_ERROR"
    # evidence
    NO_FOLDER_CONFIGURED = "NO_CARPETA_CONFIGURADA"
    INVALID_FOLDER = "CARPETA_INVALIDA"
    GENERAL_ERROR = "ERROR_GENERAL"


class QAError(Exception):
    code: ErrorCode = ErrorCode.GENERAL_ERROR

    def __init__(self, message: str, *, code: ErrorCode | None = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


class NotFoundError(QAError):
    code = ErrorCode.NOT_FOUND


class PreconditionError(QAError):
    code = ErrorCode.MISSING_PRECONDITION


class StorageError(QAError):
    code = ErrorCode.STORAGE_ERROR


class TrackerError(QAError):
    code = ErrorCode.TRACKER_ERROR


@dataclass
class Result:
    success: bool
    mensaje: str = ""
    data: Any = None
    codigo: Optional[str] = None
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls, mensaje: str = "", data: Any = None, warnings: Optional[List[str]] = None) -> "Result":
        return cls(True, mensaje, data, None, list(warnings or []))

    @classmethod
    def fail(cls, mensaje: str, codigo: ErrorCode | str = ErrorCode.GENERAL_ERROR, data: Any = None) -> "Result":
        code = codigo.value if isinstance(codigo, ErrorCode) else codigo
        return cls(False, mensaje, data, code)

    @classmethod
    def from_error(cls, exc: QAError) -> "Result":
        return cls.fail(exc.message, exc.code, exc.details or None)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": self.success, "mensaje": self.mensaje}
        if self.data is not None:
            out["data"] = self.data
        if self.codigo:
            out["codigo"] = self.codigo
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out


def result_boundary(label: str) -> Callable[[Callable[..., Result]], Callable[..., Result]]:
    """
    Convert exceptions raised by a public operation into a failed Result.

    QAError keeps its code; anything else becomes STORAGE_ERROR, since the only
    foreign exceptions reaching this point come from openpyxl or the filesystem.
    """

    def decorator(func: Callable[..., Result]) -> Callable[..., Result]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Result:
            try:
                return func(*args, **kwargs)
            except QAError as e:
                logger.warning("%s failed: %s", label, e.message)
                return Result.from_error(e)
            except Exception as e:
                logger.exception("%s failed unexpectedly", label)
                return Result.fail(f"Error al {label}: {e}", ErrorCode.STORAGE_ERROR)

        return wrapper

    return decorator
