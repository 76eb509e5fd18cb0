import json

import app_config


def test_temperature_defaults_when_unset(monkeypatch):
    monkeypatch.delenv("LIMITLESS_MODEL_TEMPERATURE", raising=False)
    assert app_config._model_temperature({}) == 0.7


def test_temperature_from_env(monkeypatch):
    monkeypatch.setenv("LIMITLESS_MODEL_TEMPERATURE", "0.2")
    assert app_config._model_temperature({}) == 0.2


def test_zero_temperature_in_config_file_is_kept(monkeypatch, tmp_path):
    monkeypatch.setenv("LIMITLESS_MODEL_TEMPERATURE", "0.9")
    path = tmp_path / "model.json"
    path.write_text(json.dumps({"provider": "openai", "temperature": 0}), encoding="utf-8")

    file_cfg = app_config._load_json_file(str(path))
    assert app_config._model_temperature(file_cfg) == 0.0
