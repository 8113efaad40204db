"""Settings file loading and user resolution."""

import json

from qa_manager.backend.settings import DEFAULT_SETTINGS, current_user, load_settings, save_settings


def test_missing_file_gives_defaults(tmp_path):
    assert load_settings(str(tmp_path / "none.json")) == DEFAULT_SETTINGS


def test_user_values_override_defaults(tmp_path):
    path = tmp_path / "qa_settings.json"
    path.write_text(
        json.dumps({"execution": {"count_discarded": True}, "trello": {"timeout": 3}, "extra": 1}),
        encoding="utf-8",
    )
    s = load_settings(str(path))
    assert s["execution"]["count_discarded"] is True
    assert s["execution"]["skip_deleted_design"] is True
    assert s["trello"]["timeout"] == 3
    assert s["trello"]["api_base"] == "https://api.trello.com/1"
    assert s["extra"] == 1


def test_malformed_file_gives_defaults(tmp_path):
    path = tmp_path / "qa_settings.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_settings(str(path)) == DEFAULT_SETTINGS


def test_env_var_selects_file(tmp_path, monkeypatch):
    path = tmp_path / "custom.json"
    save_settings({"user": {"email": "env@example.com"}}, str(path))
    monkeypatch.setenv("QA_SETTINGS_FILE", str(path))
    assert current_user(load_settings()) == "env@example.com"


def test_current_user_falls_back_to_environment(monkeypatch):
    monkeypatch.setenv("USER", "tester")
    assert current_user({"user": {"email": ""}}) == "tester"
    monkeypatch.delenv("USER")
    assert current_user({}) == "usuario@qa.com"
