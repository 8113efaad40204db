"""Bug repository: create, list, detail, update, state changes and soft delete."""

import base64

import pytest

from qa_manager.backend.headers import set_cell_by_logical


def _ids(result):
    return [b["ID"] for b in result.data["bugs"]]


def _case(ctx, case_id):
    return ctx.cases.get_case(case_id).data


def _file(name, content):
    return {"nombre": name, "contenido_base64": base64.b64encode(content).decode(), "mime_type": "text/plain"}


# ═══════════════════════════════════════════════════════════════════════════
#  CREATE / DETAIL
# ═══════════════════════════════════════════════════════════════════════════


class TestCreate:
    def test_create_without_cases(self, ctx):
        res = ctx.bugs.create({"titulo": "Login fails"})
        assert res.success
        assert res.data["bug_id"] == "BUG-1"

        bug = ctx.bugs.get_by_id("BUG-1").data
        assert bug["Titulo"] == "Login fails"
        assert bug["Estado"] == "Abierto"
        assert bug["TieneCasoDiseñado"] == "No"
        assert bug["Severidad"] == "Media"
        assert bug["Prioridad"] == "Media"
        assert bug["DetectadoPor"] == "qa@example.com"
        assert bug["FechaDeteccion"]

    def test_ids_are_sequential(self, ctx):
        ids = [ctx.bugs.create({"titulo": f"Bug {i}"}).data["bug_id"] for i in range(3)]
        assert ids == ["BUG-1", "BUG-2", "BUG-3"]
        assert ctx.config.get("ultimo_bug_id") == "3"

    def test_create_with_cases_links_both_sides(self, ctx):
        res = ctx.bugs.create(
            {
                "titulo": "Pago rechazado",
                "severidad": "Crítica",
                "casos_relacionados": "TC-1, TC-3",
                "evidencias": ["file:///a.png", "file:///b.png"],
            }
        )
        assert res.success
        bug = ctx.bugs.get_by_id(res.data["bug_id"]).data
        assert bug["casos"] == ["TC-1", "TC-3"]
        assert bug["TieneCasoDiseñado"] == "Si"
        assert bug["EvidenciasURL"] == "file:///a.png\nfile:///b.png"
        assert _case(ctx, "TC-3")["bugs"] == ["BUG-1"]

    def test_create_with_unknown_case_leaves_no_trace(self, ctx):
        res = ctx.bugs.create({"titulo": "Fantasma", "casos_relacionados": "TC-404"})
        assert res.success is False
        assert res.codigo == "NOT_FOUND"
        assert ctx.bugs.list().data["total"] == 0
        assert ctx.config.get("ultimo_bug_id") == "0"

    def test_title_required(self, ctx):
        res = ctx.bugs.create({"titulo": "  "})
        assert res.codigo == "MISSING_PRECONDITION"

    def test_get_by_id_not_found(self, ctx):
        res = ctx.bugs.get_by_id("BUG-99")
        assert res.success is False
        assert res.codigo == "NOT_FOUND"


# ═══════════════════════════════════════════════════════════════════════════
#  LIST / FILTERS
# ═══════════════════════════════════════════════════════════════════════════


class TestList:
    @pytest.fixture
    def seeded(self, ctx):
        ctx.bugs.create({"titulo": "Login fails", "severidad": "Alta", "casos_relacionados": "TC-1"})
        ctx.bugs.create({"titulo": "Pago duplicado", "descripcion": "Se cobra dos veces", "severidad": "Baja"})
        ctx.bugs.create({"titulo": "Error de LOGIN en móvil"})
        ctx.bugs.change_state("BUG-3", "Cerrado")
        return ctx

    def test_no_bugs_sheet(self, ctx):
        res = ctx.bugs.list({"solo_abiertos": True})
        assert res.success
        assert res.data == {"bugs": [], "total": 0}

    def test_search_is_case_insensitive(self, seeded):
        assert _ids(seeded.bugs.list({"busqueda": "login"})) == ["BUG-1", "BUG-3"]
        assert _ids(seeded.bugs.list({"busqueda": "COBRA"})) == ["BUG-2"]

    def test_severity(self, seeded):
        assert _ids(seeded.bugs.list({"severidad": "Alta"})) == ["BUG-1"]
        assert len(_ids(seeded.bugs.list({"severidad": "Todas"}))) == 3

    def test_state(self, seeded):
        assert _ids(seeded.bugs.list({"estado": "Cerrado"})) == ["BUG-3"]
        assert len(_ids(seeded.bugs.list({"estado": "Todos"}))) == 3

    def test_with_case(self, seeded):
        assert _ids(seeded.bugs.list({"con_caso": True})) == ["BUG-1"]
        assert _ids(seeded.bugs.list({"con_caso": False})) == ["BUG-2", "BUG-3"]

    def test_open_only_excludes_closed_and_deleted(self, seeded):
        assert _ids(seeded.bugs.list({"solo_abiertos": True})) == ["BUG-1", "BUG-2"]
        seeded.bugs.soft_delete("BUG-2")
        assert _ids(seeded.bugs.list({"solo_abiertos": True})) == ["BUG-1"]

    def test_filters_combine(self, seeded):
        assert _ids(seeded.bugs.list({"busqueda": "login", "solo_abiertos": True})) == ["BUG-1"]

    def test_bugs_for_case(self, seeded):
        seeded.crossref.link("BUG-2", "TC-1")
        res = seeded.bugs.bugs_for_case("TC-1")
        assert [b["ID"] for b in res.data["bugs"]] == ["BUG-1", "BUG-2"]
        open_bugs = seeded.bugs.open_bugs_for_case("TC-1").data
        assert open_bugs["tiene_bugs_abiertos"] is True
        assert open_bugs["bugs"] == ["BUG-1", "BUG-2"]

    def test_cases_for_bug(self, seeded):
        res = seeded.bugs.cases_for_bug("BUG-1")
        assert [c["ID"] for c in res.data["casos"]] == ["TC-1"]
        assert res.data["casos"][0]["hoja"] == "Login"


# ═══════════════════════════════════════════════════════════════════════════
#  UPDATE / STATE
# ═══════════════════════════════════════════════════════════════════════════


class TestUpdate:
    def test_known_fields_written_unknown_reported(self, ctx):
        ctx.bugs.create({"titulo": "Login fails"})
        res = ctx.bugs.update(
            "BUG-1",
            {"asignado_a": "dev@example.com", "Ambiente": "QA", "color_favorito": "azul", "CasosRelacionados": "TC-1"},
        )
        assert res.success
        assert res.data["actualizados"] == ["AsignadoA", "Ambiente"]
        assert res.data["ignorados"] == ["color_favorito", "CasosRelacionados"]
        bug = ctx.bugs.get_by_id("BUG-1").data
        assert bug["AsignadoA"] == "dev@example.com"
        assert bug["casos"] == []

    def test_update_missing_bug(self, ctx):
        assert ctx.bugs.update("BUG-9", {"titulo": "x"}).codigo == "NOT_FOUND"


class TestEvidence:
    @pytest.fixture
    def bug_folder(self, ctx, tmp_path):
        folder = tmp_path / "evidencias_bugs"
        folder.mkdir()
        ctx.config.save_evidence_folders(bug=str(folder))
        return folder

    def test_create_uploads_named_after_first_case(self, ctx, bug_folder):
        res = ctx.bugs.create(
            {"titulo": "Botón roto", "casos_relacionados": "TC-1", "archivos": [_file("shot.png", b"img")]}
        )
        assert res.success
        saved = bug_folder / "TC-1-Login_correcto-Boton_roto_shot.png"
        assert saved.read_bytes() == b"img"
        assert res.data["evidencias_subidas"] == [saved.resolve().as_uri()]
        assert ctx.bugs.get_by_id("BUG-1").data["EvidenciasURL"] == saved.resolve().as_uri()

    def test_update_appends_to_existing_evidence(self, ctx, bug_folder):
        ctx.bugs.create({"titulo": "Botón roto", "evidencias": ["https://example.com/a.png"]})
        res = ctx.bugs.update("BUG-1", {"archivos": [_file("log.txt", b"trace")]})
        assert res.success
        assert "EvidenciasURL" in res.data["actualizados"]
        assert "archivos" not in res.data["ignorados"]
        urls = ctx.bugs.get_by_id("BUG-1").data["EvidenciasURL"].split("\n")
        assert urls[0] == "https://example.com/a.png"
        assert urls[1].endswith("SIN_CASO-Boton_roto_log.txt")
        assert (bug_folder / "SIN_CASO-Boton_roto_log.txt").read_bytes() == b"trace"

    def test_create_without_folder_leaves_no_bug(self, ctx):
        res = ctx.bugs.create({"titulo": "Botón roto", "archivos": [_file("shot.png", b"img")]})
        assert res.success is False
        assert res.codigo == "NO_CARPETA_CONFIGURADA"
        assert ctx.bugs.list().data["total"] == 0
        assert ctx.bugs.create({"titulo": "Otro"}).data["bug_id"] == "BUG-1"


class TestChangeState:
    def test_close_and_reopen_resolution_date(self, ctx):
        ctx.bugs.create({"titulo": "Login fails"})
        assert ctx.bugs.change_state("BUG-1", "Cerrado").success
        assert ctx.bugs.get_by_id("BUG-1").data["FechaResolucion"]
        assert ctx.bugs.change_state("BUG-1", "Abierto").success
        assert not ctx.bugs.get_by_id("BUG-1").data["FechaResolucion"]

    def test_any_state_accepted(self, ctx):
        ctx.bugs.create({"titulo": "Login fails"})
        res = ctx.bugs.change_state("BUG-1", "En revisión")
        assert res.success
        assert res.data["estado_anterior"] == "Abierto"

    def test_closing_last_bug_releases_failed_case(self, ctx):
        ctx.bugs.create({"titulo": "Login fails", "casos_relacionados": "TC-1"})
        ctx.execution.set_execution_result("TC-1", "No_OK", "falla")
        res = ctx.bugs.change_state("BUG-1", "Cerrado")
        assert res.data["casos_actualizados"] == ["TC-1"]
        assert _case(ctx, "TC-1")["resultado"] == "OK"

    def test_case_with_other_open_bug_is_untouched(self, ctx):
        ctx.bugs.create({"titulo": "Uno", "casos_relacionados": "TC-1"})
        ctx.bugs.create({"titulo": "Dos", "casos_relacionados": "TC-1"})
        ctx.execution.set_execution_result("TC-1", "Bloqueado")
        ctx.bugs.change_state("BUG-1", "Cerrado")
        assert _case(ctx, "TC-1")["resultado"] == "Bloqueado"
        ctx.bugs.change_state("BUG-2", "Cerrado")
        assert _case(ctx, "TC-1")["resultado"] == "OK"

    def test_release_disabled_by_setting(self, ctx):
        ctx.settings["execution"]["result_on_last_bug_closed"] = ""
        ctx.bugs.create({"titulo": "Login fails", "casos_relacionados": "TC-1"})
        ctx.execution.set_execution_result("TC-1", "No_OK")
        ctx.bugs.change_state("BUG-1", "Cerrado")
        assert _case(ctx, "TC-1")["resultado"] == "No_OK"

    def test_empty_state_rejected(self, ctx):
        ctx.bugs.create({"titulo": "Login fails"})
        assert ctx.bugs.change_state("BUG-1", "").codigo == "MISSING_PRECONDITION"


# ═══════════════════════════════════════════════════════════════════════════
#  SOFT DELETE
# ═══════════════════════════════════════════════════════════════════════════


class TestSoftDelete:
    def test_row_kept_and_flagged(self, ctx):
        ctx.bugs.create({"titulo": "Login fails"})
        res = ctx.bugs.soft_delete("BUG-1", actor="lead@example.com")
        assert res.success
        bug = ctx.bugs.get_by_id("BUG-1")
        assert bug.success
        assert bug.data["EliminadoPorUsuario"] == "Si"
        assert bug.data["EliminadoPor"] == "lead@example.com"
        assert bug.data["FechaEliminacion"]
        assert bug.data["eliminado"] is True
        assert ctx.bugs.list({"solo_abiertos": True}).data["total"] == 0
        assert ctx.bugs.list().data["total"] == 1

    def test_only_open_bug_resets_case(self, ctx):
        ctx.bugs.create({"titulo": "Login fails", "casos_relacionados": "TC-1"})
        ctx.execution.set_execution_result("TC-1", "No_OK")
        res = ctx.bugs.soft_delete("BUG-1")
        assert res.data["casos_reiniciados"] == ["TC-1"]
        case = _case(ctx, "TC-1")
        assert case["resultado"] == "Sin ejecutar"
        assert case["ComentariosEjecucion"] == "Bug BUG-1 eliminado por qa@example.com - se reinicia ejecución"

    def test_case_with_other_open_bug_keeps_result(self, ctx):
        ctx.bugs.create({"titulo": "Uno", "casos_relacionados": "TC-1"})
        ctx.bugs.create({"titulo": "Dos", "casos_relacionados": "TC-1"})
        ctx.execution.set_execution_result("TC-1", "No_OK")
        res = ctx.bugs.soft_delete("BUG-1")
        assert res.data["casos_reiniciados"] == []
        assert _case(ctx, "TC-1")["resultado"] == "No_OK"

    def test_failed_case_reset_is_reported(self, ctx):
        ctx.bugs.create({"titulo": "Login fails", "casos_relacionados": "TC-1"})
        with ctx.store.transaction():
            sheet = ctx.store.sheet_by_name("Bugs")
            loc = ctx.store.find_row(sheet, "BUG-1")
            set_cell_by_logical(sheet, loc.row, loc.headers, "CasosRelacionados", "TC-1, TC-99")

        res = ctx.bugs.soft_delete("BUG-1")
        assert res.success is False
        assert res.codigo == "PARTIAL_FAILURE"
        assert [e["caso_id"] for e in res.data["casos_con_error"]] == ["TC-99"]
        assert res.data["casos_reiniciados"] == ["TC-1"]
        assert ctx.bugs.get_by_id("BUG-1").data["eliminado"] is True

    def test_missing_bug(self, ctx):
        assert ctx.bugs.soft_delete("BUG-5").codigo == "NOT_FOUND"
