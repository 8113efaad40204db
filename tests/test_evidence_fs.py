"""Evidence files on the local filesystem."""

import base64

import pytest

from qa_manager.backend.evidence_fs import (
    BUG,
    EXECUTION,
    EvidenceFile,
    clean_name_text,
    create_file,
    decode_base64,
    evidence_file_name,
    upload_evidence,
    validate_folder,
)
from qa_manager.backend.results import ErrorCode, PreconditionError, QAError


class TestNames:
    def test_clean_name_text(self):
        assert clean_name_text("Árbol de  ñandú!!", 50) == "Arbol_de_nandu"
        assert clean_name_text("Pago - con tarjeta", 50) == "Pago_-_con_tarjeta"

    def test_clean_name_text_limits_and_defaults(self):
        assert clean_name_text("abcdefghij", 4) == "abcd"
        assert clean_name_text("", 10) == "Sin_titulo"
        assert clean_name_text("¡¿!?", 10) == "Sin_titulo"

    def test_execution_file_name(self):
        assert evidence_file_name("log.txt", EXECUTION, "TC-1", "Login correcto") == "TC-1-Login_correcto_log.txt"

    def test_bug_file_name_with_case(self):
        name = evidence_file_name("shot.png", BUG, "TC-1", "Login correcto", "Botón roto")
        assert name == "TC-1-Login_correcto-Boton_roto_shot.png"

    def test_bug_file_name_without_case(self):
        assert evidence_file_name("shot.png", BUG, bug_title="Botón roto") == "SIN_CASO-Boton_roto_shot.png"


class TestStorage:
    def test_decode_plain_and_data_url(self):
        raw = base64.b64encode(b"hola").decode()
        assert decode_base64(raw) == b"hola"
        assert decode_base64("data:text/plain;base64," + raw) == b"hola"

    def test_decode_invalid(self):
        with pytest.raises(QAError) as exc:
            decode_base64("***")
        assert exc.value.code == ErrorCode.INVALID_VALUE

    def test_create_file_never_overwrites(self, tmp_path):
        first = create_file(tmp_path, b"1", "text/plain", "a.txt")
        second = create_file(tmp_path, b"2", "text/plain", "a.txt")
        assert first.path.name == "a.txt"
        assert second.path.name == "a(1).txt"
        assert first.path.read_bytes() == b"1"
        assert second.url.startswith("file://")

    def test_validate_folder(self, tmp_path):
        assert validate_folder(str(tmp_path))[0] is True
        assert validate_folder("")[0] is False
        ok, message = validate_folder(str(tmp_path / "missing"))
        assert ok is False and "no existe" in message

    def test_relative_folder_uses_root_dir(self, tmp_path):
        (tmp_path / "bugs").mkdir()
        assert validate_folder("bugs", root_dir=str(tmp_path))[0] is True


class TestUpload:
    def test_upload_bug_evidence(self, tmp_path):
        f = EvidenceFile("captura.png", base64.b64encode(b"img").decode(), "image/png")
        ref = upload_evidence(f, BUG, str(tmp_path), bug_title="Login fails")
        assert ref.path.name == "SIN_CASO-Login_fails_captura.png"
        assert ref.path.read_bytes() == b"img"
        assert ref.mime_type == "image/png"

    def test_no_folder_configured(self):
        with pytest.raises(PreconditionError) as exc:
            upload_evidence(EvidenceFile("a.png", "YQ=="), BUG, "")
        assert exc.value.code.value == "NO_CARPETA_CONFIGURADA"

    def test_invalid_folder(self, tmp_path):
        with pytest.raises(PreconditionError) as exc:
            upload_evidence(EvidenceFile("a.png", "YQ=="), BUG, str(tmp_path / "nope"))
        assert exc.value.code == ErrorCode.INVALID_FOLDER
