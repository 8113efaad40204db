"""Result shape and the exception -> Result boundary."""

from qa_manager.backend.results import ErrorCode, NotFoundError, Result, result_boundary


@result_boundary("probar")
def _raises(exc):
    raise exc


def test_qa_error_keeps_code_and_details():
    res = _raises(NotFoundError("Bug no encontrado: BUG-1", details={"bug_id": "BUG-1"}))
    assert res.to_dict() == {
        "success": False,
        "mensaje": "Bug no encontrado: BUG-1",
        "data": {"bug_id": "BUG-1"},
        "codigo": "NOT_FOUND",
    }


def test_foreign_error_becomes_storage_error():
    res = _raises(PermissionError("read-only"))
    assert res.codigo == ErrorCode.STORAGE_ERROR.value
    assert res.mensaje == "Error al probar: read-only"


def test_ok_result_dict():
    assert Result.ok("hecho", {"a": 1}, warnings=["w"]).to_dict() == {
        "success": True,
        "mensaje": "hecho",
        "data": {"a": 1},
        "warnings": ["w"],
    }
