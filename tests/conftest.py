"""
Shared pytest fixtures for the QA manager test suite.

Provides:
    - settings: default settings with a fixed user and no Trello label pause
    - workbook_path: an .xlsx with two case sheets (Login, Pagos)
    - ctx: services wired over that workbook
    - trello_ok: Trello credentials saved in the workbook's Config sheet
    - fake_response: builder for requests.Response stand-ins
"""

import copy
import json
import os

# no log file while testing; must be set before the first logger is created
os.environ["QA_LOG_FILE"] = ""

from unittest.mock import MagicMock

import pytest
from openpyxl import Workbook

from qa_manager.backend.context import open_context
from qa_manager.backend.settings import DEFAULT_SETTINGS
from qa_manager.backend.trello_api import TrelloConfig


LOGIN_HEADERS = [
    "ID",
    "Titulo",
    "Pasos",
    "EstadoDiseño",
    "ResultadoUltimaEjecucion",
    "FechaUltimaEjecucion",
    "ComentariosEjecucion",
    "EvidenciasURL",
    "LinkBugRelacionado",
    "Notas",
]

# legacy spellings, no comments column and no related-bug column
PAGOS_HEADERS = ["Id", "Título", "Estado", "EstadoEjecución", "Notas"]

VALID_KEY = "k" * 32
VALID_TOKEN = "t" * 64


@pytest.fixture
def settings():
    s = copy.deepcopy(DEFAULT_SETTINGS)
    s["user"]["email"] = "qa@example.com"
    s["trello"]["label_delay"] = 0
    return s


@pytest.fixture
def workbook_path(tmp_path):
    wb = Workbook()
    login = wb.active
    login.title = "Login"
    login.append(LOGIN_HEADERS)
    login.append(["TC-1", "Login correcto", "1. Abrir login", "Activo", "OK", None, None, None, None, None])
    login.append(["TC-2", "Login con clave errónea", "1. Clave mala", "Activo", None, None, None, None, None, None])

    pagos = wb.create_sheet("Pagos")
    pagos.append(PAGOS_HEADERS)
    pagos.append(["TC-3", "Pago con tarjeta", "Activo", "No_OK", "nota previa"])

    path = tmp_path / "qa.xlsx"
    wb.save(path)
    return path


@pytest.fixture
def ctx(workbook_path, settings):
    return open_context(workbook_path, settings)


@pytest.fixture
def trello_ok(ctx):
    ctx.config.save_trello_config(
        TrelloConfig(api_key=VALID_KEY, token=VALID_TOKEN, board_id="B1", list_id="L1")
    )
    return ctx


def _fake_response(status, payload=None, text=None):
    resp = MagicMock()
    resp.status_code = status
    if payload is not None:
        resp.json.return_value = payload
        resp.text = text if text is not None else json.dumps(payload)
    else:
        resp.json.side_effect = ValueError("no json")
        resp.text = text or ""
    return resp


@pytest.fixture
def fake_response():
    return _fake_response
